from decimal import Decimal

from errors import FailureKind
from ledger import (
    Effect,
    TransactionPatch,
    TransactionSnapshot,
    apply_effect,
    net_effect,
    parse_amount,
    parse_type,
    reverse_effect,
    validate_amount,
)
from models import TransactionType


def income(amount: str) -> Effect:
    return Effect(TransactionType.income, Decimal(amount))


def expense(amount: str) -> Effect:
    return Effect(TransactionType.expense, Decimal(amount))


def test_income_is_added_unconditionally() -> None:
    step = apply_effect(Decimal("-20.00"), income("30.00"))
    assert step.ok
    assert step.balance == Decimal("10.00")


def test_expense_requires_sufficient_balance() -> None:
    step = apply_effect(Decimal("60.00"), expense("200.00"))
    assert not step.ok
    assert step.failure.kind == FailureKind.insufficient_balance
    assert step.balance == Decimal("60.00")


def test_expense_may_spend_entire_balance() -> None:
    step = apply_effect(Decimal("40.00"), expense("40.00"))
    assert step.ok
    assert step.balance == Decimal("0.00")


def test_reversing_income_can_go_negative() -> None:
    assert reverse_effect(Decimal("10.00"), income("30.00")) == Decimal("-20.00")
    assert reverse_effect(Decimal("60.00"), expense("40.00")) == Decimal("100.00")


def test_reverse_then_reapply_is_identity() -> None:
    balance = Decimal("60.00")
    effect = expense("40.00")
    step = apply_effect(reverse_effect(balance, effect), effect)
    assert step.ok
    assert step.balance == balance


def test_net_effect_sums_signed_amounts() -> None:
    effects = [income("100.00"), expense("40.00"), income("30.00")]
    assert net_effect(effects) == Decimal("90.00")
    assert net_effect([]) == Decimal("0.00")


def test_validate_amount() -> None:
    assert validate_amount(Decimal("0.01")) is None
    assert validate_amount(Decimal("9999999999.99")) is None
    assert validate_amount(None).kind == FailureKind.validation_failure
    assert validate_amount(Decimal("0")).kind == FailureKind.validation_failure
    assert validate_amount(Decimal("-5")).kind == FailureKind.validation_failure
    assert validate_amount(Decimal("1.005")).kind == FailureKind.validation_failure
    assert validate_amount(Decimal("NaN")).kind == FailureKind.validation_failure
    assert (
        validate_amount(Decimal("12345678901.00")).kind
        == FailureKind.validation_failure
    )
    assert validate_amount(Decimal("1E+30")).message == "Amount is too large."
    assert validate_amount(Decimal("1E-40")).kind == FailureKind.validation_failure


def test_patch_merge_keeps_absent_fields() -> None:
    current = TransactionSnapshot(
        type=TransactionType.expense,
        amount=Decimal("40.00"),
        category_id="cat-1",
        note="Groceries",
    )
    patch = TransactionPatch(amount=Decimal("50.00"), provided=frozenset({"amount"}))

    merged = patch.merge(current)

    assert merged == TransactionSnapshot(
        type=TransactionType.expense,
        amount=Decimal("50.00"),
        category_id="cat-1",
        note="Groceries",
    )


def test_patch_merge_uses_presence_not_truthiness() -> None:
    current = TransactionSnapshot(
        type=TransactionType.income,
        amount=Decimal("10.00"),
        category_id="cat-1",
        note="Refund",
    )
    cleared = TransactionPatch(note=None, provided=frozenset({"note"}))
    untouched = TransactionPatch(note=None)

    assert cleared.merge(current).note is None
    assert untouched.merge(current).note == "Refund"


def test_patch_rejects_null_for_required_fields() -> None:
    patch = TransactionPatch(amount=None, provided=frozenset({"amount"}))
    failure = patch.validate()
    assert failure is not None
    assert failure.kind == FailureKind.validation_failure

    assert TransactionPatch().validate() is None
    assert (
        TransactionPatch(
            amount=Decimal("-1"), provided=frozenset({"amount"})
        ).validate().kind
        == FailureKind.validation_failure
    )


def test_patch_clean_types_raw_values() -> None:
    patch = TransactionPatch(
        type="income",
        amount="12.50",
        note="Refund",
        provided=frozenset({"type", "amount", "note"}),
    )

    cleaned = patch.clean()

    assert cleaned.ok
    assert cleaned.value.type == TransactionType.income
    assert cleaned.value.amount == Decimal("12.50")
    assert cleaned.value.provided == patch.provided


def test_patch_clean_rejects_malformed_values() -> None:
    bad = [
        TransactionPatch(type="bogus", provided=frozenset({"type"})),
        TransactionPatch(amount="abc", provided=frozenset({"amount"})),
        TransactionPatch(amount=True, provided=frozenset({"amount"})),
        TransactionPatch(amount=1e30, provided=frozenset({"amount"})),
        TransactionPatch(category_id=7, provided=frozenset({"category_id"})),
        TransactionPatch(category_id="x" * 37, provided=frozenset({"category_id"})),
        TransactionPatch(note=["x"], provided=frozenset({"note"})),
        TransactionPatch(note="x" * 501, provided=frozenset({"note"})),
    ]

    for patch in bad:
        result = patch.clean()
        assert not result.ok
        assert result.failure.kind == FailureKind.validation_failure


def test_parse_helpers() -> None:
    assert parse_type("expense").value == TransactionType.expense
    assert not parse_type(["expense"]).ok
    assert parse_amount(40).value == Decimal("40")
    assert parse_amount(0.1).value == Decimal("0.1")
    assert not parse_amount(None).ok
