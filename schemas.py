from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ledger import TransactionPatch
from models import TransactionType

TYPE_ALIASES = AliasChoices("type", "kind")


class RegisterIn(BaseModel):
    name: str = Field(default="", max_length=100)
    email: str = Field(default="", max_length=255)
    password: str = Field(default="", max_length=200)


class LoginIn(BaseModel):
    email: str = Field(default="", max_length=255)
    password: str = Field(default="", max_length=200)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType = Field(..., validation_alias=TYPE_ALIASES)


class CategoryPatchIn(BaseModel):
    # Raw values; CategoryService.update checks them after ownership.
    name: Any = None
    type: Any = Field(default=None, validation_alias=TYPE_ALIASES)


class TransactionIn(BaseModel):
    type: TransactionType = Field(..., validation_alias=TYPE_ALIASES)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category_id: str = Field(..., min_length=1, max_length=36)
    note: Optional[str] = Field(default=None, max_length=500)
    transaction_date: Optional[datetime] = None


class TransactionPatchIn(BaseModel):
    # Raw values; TransactionPatch.clean checks them once ownership is
    # established.
    type: Any = Field(default=None, validation_alias=TYPE_ALIASES)
    amount: Any = None
    category_id: Any = None
    note: Any = None

    def to_patch(self) -> TransactionPatch:
        return TransactionPatch(
            type=self.type,
            amount=self.amount,
            category_id=self.category_id,
            note=self.note,
            provided=frozenset(self.model_fields_set),
        )


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    balance: Decimal
    created_at: datetime


class BalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    balance: Decimal


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    name: str
    type: TransactionType
    created_at: datetime


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    type: TransactionType
    amount: Decimal
    category_id: str
    note: Optional[str]
    transaction_date: datetime
    created_at: datetime


class Envelope(BaseModel):
    success: bool = True
    message: str
    data: Any = None
    token: Optional[str] = None
