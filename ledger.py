"""Balance state transitions.

Every change to a stored balance is one of two moves: applying a
transaction's effect or reversing it. Both are plain functions of
``(balance, effect)`` so the balance invariant can be checked without a
database; ``LedgerService`` is the only caller that writes their output back.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from errors import Failure, FailureKind, Result
from models import TransactionType

CENT = Decimal("0.01")
MAX_DIGITS = 12
MAX_CATEGORY_ID = 36
MAX_NOTE = 500


@dataclass(frozen=True)
class Effect:
    type: TransactionType
    amount: Decimal

    @property
    def signed(self) -> Decimal:
        if self.type == TransactionType.income:
            return self.amount
        return -self.amount


@dataclass(frozen=True)
class LedgerStep:
    balance: Decimal
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def apply_effect(balance: Decimal, effect: Effect) -> LedgerStep:
    if effect.type == TransactionType.expense and balance < effect.amount:
        return LedgerStep(
            balance=balance,
            failure=Failure(
                FailureKind.insufficient_balance,
                "Insufficient balance for this expense.",
            ),
        )
    return LedgerStep(balance=balance + effect.signed)


def reverse_effect(balance: Decimal, effect: Effect) -> Decimal:
    return balance - effect.signed


def net_effect(effects: Iterable[Effect]) -> Decimal:
    """The balance a user should hold for the given set of transactions."""
    return sum((effect.signed for effect in effects), Decimal("0.00"))


def validate_amount(amount: Optional[Decimal]) -> Optional[Failure]:
    if amount is None:
        return Failure(FailureKind.validation_failure, "Amount is required.")
    if not amount.is_finite() or amount <= 0:
        return Failure(FailureKind.validation_failure, "Amount must be positive.")
    # Two of the digits are cents; checked first so quantize stays in context.
    if amount.adjusted() >= MAX_DIGITS - 2:
        return Failure(FailureKind.validation_failure, "Amount is too large.")
    if amount != amount.quantize(CENT):
        return Failure(
            FailureKind.validation_failure,
            "Amount cannot have more than two decimal places.",
        )
    return None


def parse_type(value: Any) -> Result[TransactionType]:
    try:
        return Result.success(TransactionType(value))
    except (ValueError, TypeError):
        return Result.fail(
            FailureKind.validation_failure, "Type must be 'income' or 'expense'."
        )


def parse_amount(value: Any) -> Result[Decimal]:
    """Turn a raw JSON amount into a Decimal, without range checks."""
    if isinstance(value, Decimal):
        return Result.success(value)
    if isinstance(value, (int, float, str)) and not isinstance(value, bool):
        try:
            return Result.success(Decimal(str(value).strip()))
        except InvalidOperation:
            pass
    return Result.fail(FailureKind.validation_failure, "Amount must be a number.")


@dataclass(frozen=True)
class TransactionSnapshot:
    type: TransactionType
    amount: Decimal
    category_id: str
    note: Optional[str] = None

    @property
    def effect(self) -> Effect:
        return Effect(self.type, self.amount)


@dataclass(frozen=True)
class TransactionPatch:
    """Partial update where ``provided`` says which fields were sent.

    Values arrive as the caller sent them; ``clean`` types and range-checks
    them. A field in ``provided`` overrides the snapshot even when its value
    is ``None``; fields outside it keep the snapshot's value.
    """

    type: Any = None
    amount: Any = None
    category_id: Any = None
    note: Any = None
    provided: frozenset[str] = field(default_factory=frozenset)

    REQUIRED = ("type", "amount", "category_id")

    def has(self, name: str) -> bool:
        return name in self.provided

    def clean(self) -> Result[TransactionPatch]:
        for name in self.REQUIRED:
            if self.has(name) and getattr(self, name) is None:
                return Result.fail(
                    FailureKind.validation_failure, f"Field '{name}' cannot be null."
                )

        values = {}
        if self.has("type"):
            kind = parse_type(self.type)
            if not kind.ok:
                return kind
            values["type"] = kind.value
        if self.has("amount"):
            amount = parse_amount(self.amount)
            if not amount.ok:
                return amount
            failure = validate_amount(amount.value)
            if failure:
                return Result.of(failure)
            values["amount"] = amount.value
        if self.has("category_id"):
            category_id = self.category_id
            if not isinstance(category_id, str) or not (
                0 < len(category_id) <= MAX_CATEGORY_ID
            ):
                return Result.fail(
                    FailureKind.validation_failure, "Field 'category_id' is invalid."
                )
        if self.has("note") and self.note is not None:
            if not isinstance(self.note, str):
                return Result.fail(
                    FailureKind.validation_failure, "Field 'note' must be text."
                )
            if len(self.note) > MAX_NOTE:
                return Result.fail(
                    FailureKind.validation_failure,
                    f"Field 'note' cannot be longer than {MAX_NOTE} characters.",
                )
        return Result.success(replace(self, **values))

    def validate(self) -> Optional[Failure]:
        return self.clean().failure

    def merge(self, snapshot: TransactionSnapshot) -> TransactionSnapshot:
        return TransactionSnapshot(
            type=self.type if self.has("type") else snapshot.type,
            amount=self.amount if self.has("amount") else snapshot.amount,
            category_id=(
                self.category_id if self.has("category_id") else snapshot.category_id
            ),
            note=self.note if self.has("note") else snapshot.note,
        )
