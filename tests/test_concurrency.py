from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import sessionmaker

from database import Base, _begin_immediate, _enable_sqlite_pragmas
from errors import FailureKind
from models import Category, Transaction, TransactionType, User
from schemas import TransactionIn
from services import LedgerService


def make_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    event.listen(engine, "connect", _enable_sqlite_pragmas)
    event.listen(engine, "begin", _begin_immediate)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def seed(SessionLocal) -> tuple[str, str]:
    session = SessionLocal()
    user = User(name="Ada", email="ada@example.com", hashed_password="x")
    session.add(user)
    session.flush()
    salary = Category(user_id=user.id, name="Salary", type=TransactionType.income)
    food = Category(user_id=user.id, name="Food", type=TransactionType.expense)
    session.add_all([salary, food])
    session.commit()
    result = LedgerService(session, user.id).create(
        TransactionIn(type="income", amount=Decimal("100.00"), category_id=salary.id)
    )
    assert result.ok
    session.close()
    return user.id, food.id


def test_racing_expenses_cannot_overdraw(tmp_path) -> None:
    SessionLocal = make_session_factory(tmp_path)
    user_id, food_id = seed(SessionLocal)

    def spend(_):
        session = SessionLocal()
        try:
            result = LedgerService(session, user_id).create(
                TransactionIn(
                    type="expense", amount=Decimal("60.00"), category_id=food_id
                )
            )
            return result.failure.kind if result.failure else None
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(spend, range(8)))

    assert outcomes.count(None) == 1
    assert outcomes.count(FailureKind.insufficient_balance) == 7

    session = SessionLocal()
    assert session.scalar(select(User.balance).where(User.id == user_id)) == Decimal(
        "40.00"
    )
    expenses = session.scalar(
        select(func.count(Transaction.id)).where(
            Transaction.type == TransactionType.expense
        )
    )
    assert expenses == 1
    assert LedgerService(session, user_id).check_balance().value.consistent
    session.close()
