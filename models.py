import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


# One billion in either direction, in cents.
MAX_AMOUNT_CENTS = 100_000_000_000


class RepeatInterval(str, Enum):
    weekly = "weekly"
    monthly = "monthly"


class TransactionKind(str, Enum):
    income = "income"
    expense = "expense"


class TimestampMixin:
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.utcnow, onupdate=dt.datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(60), nullable=False)
    last_login_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="owner"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    repeat_interval: Mapped[Optional[RepeatInterval]] = mapped_column(
        SAEnum(RepeatInterval)
    )
    attachment_ref: Mapped[Optional[str]] = mapped_column(String(255))
    origin_template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)

    owner: Mapped["User"] = relationship("User", back_populates="transactions")

    __table_args__ = (
        UniqueConstraint(
            "origin_template_id",
            "occurrence_date",
            name="uq_txn_template_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category", "user_id", "category"),
        Index("ix_transactions_recurring", "is_recurring"),
        CheckConstraint("amount_cents != 0", name="ck_transactions_amount_nonzero"),
        CheckConstraint(
            "(is_recurring AND repeat_interval IS NOT NULL)"
            " OR (NOT is_recurring AND repeat_interval IS NULL)",
            name="ck_transactions_recurring_interval",
        ),
    )

    @property
    def amount(self) -> Decimal:
        return Decimal(self.amount_cents) / 100

    @property
    def kind(self) -> TransactionKind:
        return TransactionKind.income if self.amount_cents >= 0 else TransactionKind.expense
