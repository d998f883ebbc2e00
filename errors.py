"""Failure taxonomy shared by the services and the HTTP layer.

Services never raise for conditions a caller can cause. They return a
``Result`` that either holds a value or a ``Failure`` naming one of the
kinds below; the atomic unit commits or rolls back based on it and the
HTTP layer renders it with the kind's status and stable code.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class FailureKind(str, Enum):
    validation_failure = "VALIDATION_FAILURE"
    category_invalid = "CATEGORY_INVALID"
    unauthenticated = "UNAUTHENTICATED"
    not_owned = "NOT_OWNED"
    not_found = "NOT_FOUND"
    duplicate_name = "DUPLICATE_NAME"
    duplicate_email = "DUPLICATE_EMAIL"
    category_in_use = "CATEGORY_IN_USE"
    insufficient_balance = "INSUFFICIENT_BALANCE"
    fault = "FAULT"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES = {
    FailureKind.validation_failure: 400,
    FailureKind.category_invalid: 400,
    FailureKind.unauthenticated: 401,
    FailureKind.not_owned: 403,
    FailureKind.not_found: 404,
    FailureKind.duplicate_name: 409,
    FailureKind.duplicate_email: 409,
    FailureKind.category_in_use: 409,
    FailureKind.insufficient_balance: 422,
    FailureKind.fault: 500,
}


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str
    code: Optional[str] = None

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @property
    def error_code(self) -> str:
        return self.code or self.kind.value


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(
        cls, kind: FailureKind, message: str, code: Optional[str] = None
    ) -> "Result[T]":
        return cls(failure=Failure(kind=kind, message=message, code=code))

    @classmethod
    def of(cls, failure: Failure) -> "Result[T]":
        return cls(failure=failure)


FAULT_MESSAGE = "Internal server error"


def fault(detail: Optional[str] = None) -> Failure:
    return Failure(kind=FailureKind.fault, message=detail or FAULT_MESSAGE)
