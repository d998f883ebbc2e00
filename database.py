import logging
from contextlib import contextmanager
from functools import wraps
from typing import Callable, Iterator, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import get_settings
from errors import Result, fault

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Result])


def _create_engine() -> Engine:
    settings = get_settings()
    connect_args: dict[str, object] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    from sqlalchemy import create_engine

    eng = create_engine(settings.database_url, connect_args=connect_args)
    if settings.database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
        event.listen(eng, "begin", _begin_immediate)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()
    # SQLAlchemy emits BEGIN itself from here on.
    dbapi_conn.isolation_level = None


def _begin_immediate(conn):
    # SQLite has no row locks; taking the write lock up front serializes
    # balance read-check-write sequences the way SELECT ... FOR UPDATE does.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = _create_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def init_db(bind: Engine = engine) -> None:
    import models  # noqa: F401

    Base.metadata.create_all(bind)


@contextmanager
def session_scope() -> Iterator[Session]:
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def atomic(method: F) -> F:
    """Run a service method as one unit of work on ``self.session``.

    A success result commits, a failure result rolls back. Database errors
    roll back and come back as an opaque fault; anything else rolls back
    and propagates.
    """

    @wraps(method)
    def wrapper(self, *args, **kwargs):
        session: Session = self.session
        try:
            result = method(self, *args, **kwargs)
            if result.ok:
                session.commit()
            else:
                session.rollback()
                logger.warning(
                    f"atomic_rollback: op={method.__qualname__} "
                    f"code={result.failure.error_code}"
                )
            return result
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(f"atomic_fault: op={method.__qualname__}")
            detail = str(exc) if get_settings().expose_fault_detail else None
            return Result.of(fault(detail))
        except Exception:
            session.rollback()
            raise

    return wrapper  # type: ignore[return-value]
