from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import atomic
from errors import Failure, FailureKind, Result
from ledger import (
    CENT,
    TransactionPatch,
    TransactionSnapshot,
    apply_effect,
    net_effect,
    parse_type,
    reverse_effect,
    validate_amount,
)
from models import Category, Transaction, TransactionType, User, category_key
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryPatchIn,
    LoginIn,
    RegisterIn,
    TransactionIn,
    TransactionOut,
)
from security import (
    MAX_PASSWORD_BYTES,
    Identity,
    generate_token,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_CATEGORY_NAME = 100

DEFAULT_CATEGORIES: list[tuple[str, TransactionType]] = [
    ("Salary", TransactionType.income),
    ("Freelance", TransactionType.income),
    ("Gifts", TransactionType.income),
    ("Other Income", TransactionType.income),
    ("Food", TransactionType.expense),
    ("Transport", TransactionType.expense),
    ("Housing", TransactionType.expense),
    ("Utilities", TransactionType.expense),
    ("Entertainment", TransactionType.expense),
    ("Health", TransactionType.expense),
    ("Shopping", TransactionType.expense),
    ("Other Expense", TransactionType.expense),
]


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass(frozen=True)
class AuthSession:
    user: User
    token: str


@dataclass(frozen=True)
class BalanceCheck:
    stored: Decimal
    expected: Decimal

    @property
    def consistent(self) -> bool:
        return self.stored == self.expected


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(select(User).where(User.email == email))

    @atomic
    def register(self, data: RegisterIn) -> Result[AuthSession]:
        name = data.name.strip()
        email = normalize_email(data.email)
        if not name or not email or not data.password.strip():
            return Result.fail(
                FailureKind.validation_failure, "Please fill out each field."
            )
        if not EMAIL_PATTERN.match(email):
            return Result.fail(
                FailureKind.validation_failure,
                "Please provide a valid email address.",
            )
        if len(data.password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            return Result.fail(
                FailureKind.validation_failure,
                f"Password cannot be longer than {MAX_PASSWORD_BYTES} bytes.",
            )
        if self._by_email(email):
            return Result.fail(
                FailureKind.duplicate_email, "This email is already in use."
            )

        user = User(
            name=name,
            email=email,
            hashed_password=hash_password(data.password),
            balance=Decimal("0.00"),
        )
        self.session.add(user)
        try:
            self.session.flush()
        except IntegrityError:
            # Lost a race with a concurrent registration for the same email.
            return Result.fail(
                FailureKind.duplicate_email, "This email is already in use."
            )
        CategoryService(self.session, user.id).create_defaults()

        token = generate_token(Identity(user_id=user.id, name=user.name))
        logger.info(f"user_registered: user={user.id}")
        return Result.success(AuthSession(user=user, token=token))

    @atomic
    def login(self, data: LoginIn) -> Result[AuthSession]:
        email = normalize_email(data.email)
        if not email or not data.password.strip():
            return Result.fail(
                FailureKind.validation_failure, "Please fill out each field."
            )
        user = self._by_email(email)
        if not user or not verify_password(data.password, user.hashed_password):
            return Result.fail(
                FailureKind.unauthenticated, "Invalid email or password"
            )
        token = generate_token(Identity(user_id=user.id, name=user.name))
        logger.info(f"user_login: user={user.id}")
        return Result.success(AuthSession(user=user, token=token))


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _find_by_name(
        self, name: str, exclude_id: Optional[str] = None
    ) -> Optional[Category]:
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            Category.name_key == category_key(name),
        )
        if exclude_id:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt)

    def _owned(self, category_id: str) -> Result[Category]:
        category = self.session.get(Category, category_id)
        if not category:
            return Result.fail(FailureKind.not_found, "Category does not exist.")
        if category.user_id != self.user_id:
            return Result.fail(
                FailureKind.not_owned, "Category is not owned by user."
            )
        return Result.success(category)

    @staticmethod
    def _duplicate_name() -> Result:
        return Result.fail(
            FailureKind.duplicate_name, "Category with that name already exists."
        )

    def _flush_unique(self) -> bool:
        """Flush, reporting a per-user name clash raced in by another request."""
        try:
            self.session.flush()
        except IntegrityError:
            return False
        return True

    def create_defaults(self) -> list[Category]:
        """Seed a new user's categories inside the caller's unit of work."""
        categories = [
            Category(user_id=self.user_id, name=name, type=kind)
            for name, kind in DEFAULT_CATEGORIES
        ]
        self.session.add_all(categories)
        self.session.flush()
        return categories

    @atomic
    def list_all(self, type: Optional[TransactionType] = None) -> Result[list[Category]]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name, Category.id)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return Result.success(list(self.session.scalars(stmt).all()))

    @atomic
    def create(self, data: CategoryIn) -> Result[Category]:
        name = data.name.strip()
        if not name:
            return Result.fail(
                FailureKind.validation_failure, "Category name cannot be empty."
            )
        if self._find_by_name(name):
            return self._duplicate_name()
        category = Category(user_id=self.user_id, name=name, type=data.type)
        self.session.add(category)
        if not self._flush_unique():
            return self._duplicate_name()
        logger.info(f"category_created: user={self.user_id} category={category.id}")
        return Result.success(category)

    @atomic
    def update(self, category_id: str, data: CategoryPatchIn) -> Result[Category]:
        owned = self._owned(category_id)
        if not owned.ok:
            return owned
        category = owned.value

        name = category.name
        if data.name is not None:
            if not isinstance(data.name, str):
                return Result.fail(
                    FailureKind.validation_failure, "Category name must be text."
                )
            name = data.name.strip()
            if not name:
                return Result.fail(
                    FailureKind.validation_failure, "Category name cannot be empty."
                )
            if len(name) > MAX_CATEGORY_NAME:
                return Result.fail(
                    FailureKind.validation_failure,
                    f"Category name cannot be longer than {MAX_CATEGORY_NAME} "
                    "characters.",
                )
            if self._find_by_name(name, exclude_id=category.id):
                return self._duplicate_name()
        category_type = category.type
        if data.type is not None:
            parsed = parse_type(data.type)
            if not parsed.ok:
                return Result.of(parsed.failure)
            category_type = parsed.value

        category.name = name
        category.type = category_type
        if not self._flush_unique():
            return self._duplicate_name()
        logger.info(f"category_updated: user={self.user_id} category={category.id}")
        return Result.success(category)

    @atomic
    def delete(self, category_id: str) -> Result[CategoryOut]:
        owned = self._owned(category_id)
        if not owned.ok:
            return Result.of(owned.failure)
        category = owned.value

        in_use = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category.id
            )
        )
        if in_use:
            return Result.fail(
                FailureKind.category_in_use,
                "Cannot delete category because it is still in use by a transaction.",
            )

        deleted = CategoryOut.model_validate(category)
        self.session.delete(category)
        self.session.flush()
        logger.info(f"category_deleted: user={self.user_id} category={deleted.id}")
        return Result.success(deleted)


class TransactionStore:
    """Row-level persistence for transactions.

    Holds no balance logic and is only driven by ``LedgerService``, which
    owns the unit of work every call here runs in.
    """

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, transaction_id: str) -> Optional[Transaction]:
        return self.session.get(Transaction, transaction_id, populate_existing=True)

    def insert(
        self, snapshot: TransactionSnapshot, transaction_date: Optional[datetime]
    ) -> Transaction:
        txn = Transaction(
            user_id=self.user_id,
            type=snapshot.type,
            amount=snapshot.amount,
            category_id=snapshot.category_id,
            note=snapshot.note,
        )
        if transaction_date is not None:
            txn.transaction_date = transaction_date
        self.session.add(txn)
        self.session.flush()
        return txn

    def update_fields(
        self, txn: Transaction, snapshot: TransactionSnapshot
    ) -> Transaction:
        txn.type = snapshot.type
        txn.amount = snapshot.amount
        txn.category_id = snapshot.category_id
        txn.note = snapshot.note
        self.session.flush()
        return txn

    def delete(self, txn: Transaction) -> None:
        self.session.delete(txn)
        self.session.flush()

    def list(self, filters: TransactionFilters) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.transaction_date.desc(), Transaction.created_at.desc())
        )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start:
            stmt = stmt.where(Transaction.transaction_date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.transaction_date <= filters.end)
        return list(self.session.scalars(stmt).all())


class LedgerService:
    """Keeps ``User.balance`` equal to the signed sum of the user's transactions.

    Each mutation locks the user row, works out the new balance with the pure
    functions in ``ledger`` and writes the row change and the balance in the
    same unit of work. Nothing is written before every check has passed.
    """

    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id
        self.store = TransactionStore(session, user_id)

    def _lock_user(self) -> Optional[User]:
        stmt = (
            select(User)
            .where(User.id == self.user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.scalar(stmt)

    def _check_category(self, category_id: str) -> Optional[Failure]:
        category = self.session.get(Category, category_id)
        if not category:
            return Failure(FailureKind.category_invalid, "Category does not exist.")
        if category.user_id != self.user_id:
            return Failure(FailureKind.not_owned, "Category is not owned by user.")
        return None

    def _owned_transaction(self, transaction_id: str) -> Result[Transaction]:
        txn = self.store.get(transaction_id)
        if not txn:
            return Result.fail(FailureKind.not_found, "Transaction does not exist.")
        if txn.user_id != self.user_id:
            return Result.fail(
                FailureKind.not_owned, "Transaction is not owned by user."
            )
        return Result.success(txn)

    @staticmethod
    def _missing_user() -> Result:
        return Result.fail(FailureKind.not_found, "User does not exist.")

    @atomic
    def create(self, data: TransactionIn) -> Result[Transaction]:
        snapshot = TransactionSnapshot(
            type=data.type,
            amount=data.amount,
            category_id=data.category_id,
            note=data.note,
        )
        failure = validate_amount(snapshot.amount)
        if failure:
            return Result.of(failure)
        snapshot = replace(snapshot, amount=snapshot.amount.quantize(CENT))

        user = self._lock_user()
        if not user:
            return self._missing_user()
        failure = self._check_category(snapshot.category_id)
        if failure:
            return Result.of(failure)

        step = apply_effect(user.balance, snapshot.effect)
        if not step.ok:
            return Result.of(step.failure)

        txn = self.store.insert(snapshot, data.transaction_date)
        user.balance = step.balance.quantize(CENT)
        self.session.flush()
        logger.info(
            f"ledger_create: user={self.user_id} txn={txn.id} "
            f"type={txn.type.value} amount={txn.amount} balance={user.balance}"
        )
        return Result.success(txn)

    @atomic
    def update(
        self, transaction_id: str, patch: TransactionPatch
    ) -> Result[Transaction]:
        user = self._lock_user()
        if not user:
            return self._missing_user()
        owned = self._owned_transaction(transaction_id)
        if not owned.ok:
            return owned
        txn = owned.value

        cleaned = patch.clean()
        if not cleaned.ok:
            return Result.of(cleaned.failure)
        patch = cleaned.value
        if patch.has("category_id"):
            failure = self._check_category(patch.category_id)
            if failure:
                return Result.of(failure)

        current = TransactionSnapshot(
            type=txn.type,
            amount=txn.amount,
            category_id=txn.category_id,
            note=txn.note,
        )
        merged = patch.merge(current)
        merged = replace(merged, amount=merged.amount.quantize(CENT))

        # Sufficiency is judged against the balance with the old effect
        # already handed back.
        reversed_balance = reverse_effect(user.balance, current.effect)
        step = apply_effect(reversed_balance, merged.effect)
        if not step.ok:
            return Result.of(step.failure)

        self.store.update_fields(txn, merged)
        user.balance = step.balance.quantize(CENT)
        self.session.flush()
        logger.info(
            f"ledger_update: user={self.user_id} txn={txn.id} "
            f"type={txn.type.value} amount={txn.amount} balance={user.balance}"
        )
        return Result.success(txn)

    @atomic
    def delete(self, transaction_id: str) -> Result[TransactionOut]:
        user = self._lock_user()
        if not user:
            return self._missing_user()
        owned = self._owned_transaction(transaction_id)
        if not owned.ok:
            return Result.of(owned.failure)
        txn = owned.value

        deleted = TransactionOut.model_validate(txn)
        effect = TransactionSnapshot(
            type=txn.type, amount=txn.amount, category_id=txn.category_id
        ).effect
        user.balance = reverse_effect(user.balance, effect).quantize(CENT)
        self.store.delete(txn)
        logger.info(
            f"ledger_delete: user={self.user_id} txn={deleted.id} "
            f"balance={user.balance}"
        )
        return Result.success(deleted)

    @atomic
    def get(self, transaction_id: str) -> Result[Transaction]:
        return self._owned_transaction(transaction_id)

    @atomic
    def list(self, filters: Optional[TransactionFilters] = None) -> Result[list[Transaction]]:
        return Result.success(self.store.list(filters or TransactionFilters()))

    @atomic
    def balance(self) -> Result[Decimal]:
        user = self.session.get(User, self.user_id, populate_existing=True)
        if not user:
            return self._missing_user()
        return Result.success(user.balance)

    @atomic
    def check_balance(self) -> Result[BalanceCheck]:
        user = self.session.get(User, self.user_id, populate_existing=True)
        if not user:
            return self._missing_user()
        effects = [
            TransactionSnapshot(
                type=txn.type, amount=txn.amount, category_id=txn.category_id
            ).effect
            for txn in self.store.list(TransactionFilters())
        ]
        check = BalanceCheck(stored=user.balance, expected=net_effect(effects))
        if not check.consistent:
            logger.warning(
                f"ledger_drift: user={self.user_id} stored={check.stored} "
                f"expected={check.expected}"
            )
        return Result.success(check)
