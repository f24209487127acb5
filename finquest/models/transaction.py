"""Transaction records consumed by the challenge engine."""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from finquest.models.challenge import normalize_category


TransactionType = Literal["income", "expense"]


class Transaction(BaseModel):
    """A single money movement. ``amount`` is stored as a magnitude; ``type`` carries the direction."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    amount: int
    type: TransactionType
    category: str = Field(default="other", min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    occurred_at: datetime

    @field_validator("amount")
    @classmethod
    def magnitude(cls, value: int) -> int:
        return abs(value)

    @field_validator("category")
    @classmethod
    def normalize_category_field(cls, value: str) -> str:
        return normalize_category(value)

    @field_validator("occurred_at")
    @classmethod
    def check_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("occurred_at must be timezone-aware")
        return value.astimezone(timezone.utc)

    @property
    def sort_key(self):
        return (self.occurred_at, self.id)


class CreateTransactionRequest(BaseModel):
    amount: int
    type: TransactionType
    category: str = Field(default="other", min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    occurred_at: Optional[datetime] = None

    @field_validator("occurred_at")
    @classmethod
    def check_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("occurred_at must be timezone-aware")
        return value
