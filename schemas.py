import datetime as dt
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RegisterIn(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class TransactionIn(BaseModel):
    description: str
    amount_cents: int
    date: dt.date
    category: str
    is_recurring: bool = False
    repeat_interval: Optional[str] = None
    attachment_ref: Optional[str] = Field(default=None, max_length=255)


class TransactionUpdate(BaseModel):
    """Partial update; only fields that were explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    description: Optional[str] = None
    amount_cents: Optional[int] = None
    date: Optional[dt.date] = None
    category: Optional[str] = None
    is_recurring: Optional[bool] = None
    repeat_interval: Optional[str] = None
    attachment_ref: Optional[str] = Field(default=None, max_length=255)
