from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import auth
from models import MAX_AMOUNT_CENTS, RepeatInterval, Transaction, User
from schemas import LoginIn, RegisterIn, TransactionIn, TransactionUpdate


logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    pass


class NotFound(ValueError):
    pass


class AuthError(Exception):
    pass


class PersistenceError(RuntimeError):
    pass


def commit_or_raise(session: Session, action: str) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception(f"persistence_error: action={action}")
        raise PersistenceError(f"Failed to {action}") from exc


def resolve_repeat_interval(
    is_recurring: bool, repeat_interval: Optional[str]
) -> Optional[RepeatInterval]:
    if not is_recurring:
        return None
    if not repeat_interval:
        raise ValidationError("Recurring transactions require a repeat interval")
    try:
        return RepeatInterval(str(repeat_interval).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(i.value for i in RepeatInterval)
        raise ValidationError(f"Repeat interval must be one of: {allowed}") from exc


def _required_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required")
    return text


def _nonzero_amount(amount_cents: Optional[int]) -> int:
    if amount_cents is None:
        raise ValidationError("Amount is required")
    if amount_cents == 0:
        raise ValidationError("Amount must be non-zero")
    if abs(amount_cents) > MAX_AMOUNT_CENTS:
        raise ValidationError("Amount out of range")
    return amount_cents


@dataclass
class TransactionFilters:
    query: Optional[str] = None
    category: Optional[str] = None
    start: Optional[date] = None
    end: Optional[date] = None


class LedgerRepository:
    """Store access for one owner's transactions.

    Every statement built here carries the owner predicate; there is no
    way to construct a repository without an owner.
    """

    def __init__(self, session: Session, owner_id: int) -> None:
        if owner_id is None:
            raise ValueError("owner_id is required")
        self.session = session
        self.owner_id = owner_id

    def _scoped(self):
        return select(Transaction).where(Transaction.user_id == self.owner_id)

    def get(self, transaction_id: int) -> Optional[Transaction]:
        stmt = self._scoped().where(Transaction.id == transaction_id)
        return self.session.scalar(stmt)

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = self._scoped().order_by(Transaction.date.desc(), Transaction.id.desc())
        if filters.query and filters.query.strip():
            stmt = stmt.where(
                Transaction.description.icontains(filters.query.strip(), autoescape=True)
            )
        if filters.category:
            stmt = stmt.where(Transaction.category == filters.category)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        return list(self.session.scalars(stmt).all())

    def categories(self) -> list[str]:
        stmt = (
            select(Transaction.category)
            .where(Transaction.user_id == self.owner_id)
            .distinct()
            .order_by(Transaction.category)
        )
        return list(self.session.scalars(stmt).all())

    def add(self, txn: Transaction) -> Transaction:
        txn.user_id = self.owner_id
        self.session.add(txn)
        return txn

    def delete(self, txn: Transaction) -> None:
        if txn.user_id != self.owner_id:
            raise NotFound("Transaction not found")
        self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.owner_id,
                Transaction.origin_template_id == txn.id,
            )
            .values(origin_template_id=None)
        )
        self.session.delete(txn)


class TransactionService:
    def __init__(self, session: Session, owner_id: int) -> None:
        self.session = session
        self.owner_id = owner_id
        self.ledger = LedgerRepository(session, owner_id)

    def create(self, data: TransactionIn) -> Transaction:
        txn = Transaction(
            description=_required_text(data.description, "Description"),
            amount_cents=_nonzero_amount(data.amount_cents),
            date=data.date,
            category=_required_text(data.category, "Category"),
            is_recurring=bool(data.is_recurring),
            repeat_interval=resolve_repeat_interval(
                bool(data.is_recurring), data.repeat_interval
            ),
            attachment_ref=data.attachment_ref,
        )
        self.ledger.add(txn)
        commit_or_raise(self.session, "add transaction")
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: owner={self.owner_id} id={txn.id} "
            f"recurring={txn.is_recurring}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.ledger.get(transaction_id)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        return self.ledger.list(filters)

    def categories(self) -> list[str]:
        return self.ledger.categories()

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)

        # Validate everything before touching the record.
        values: dict[str, object] = {}
        if "description" in changes:
            values["description"] = _required_text(changes["description"], "Description")
        if "category" in changes:
            values["category"] = _required_text(changes["category"], "Category")
        if "amount_cents" in changes:
            values["amount_cents"] = _nonzero_amount(changes["amount_cents"])
        if "date" in changes:
            if changes["date"] is None:
                raise ValidationError("Date is required")
            values["date"] = changes["date"]
        if "attachment_ref" in changes:
            values["attachment_ref"] = changes["attachment_ref"]
        if "is_recurring" in changes or "repeat_interval" in changes:
            is_recurring = changes.get("is_recurring")
            if is_recurring is None:
                is_recurring = txn.is_recurring
            if "repeat_interval" in changes:
                interval = changes["repeat_interval"]
            else:
                interval = txn.repeat_interval.value if txn.repeat_interval else None
            values["repeat_interval"] = resolve_repeat_interval(is_recurring, interval)
            values["is_recurring"] = is_recurring

        for field, value in values.items():
            setattr(txn, field, value)
        commit_or_raise(self.session, "update transaction")
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        self.ledger.delete(txn)
        commit_or_raise(self.session, "delete transaction")
        logger.info(f"transaction_deleted: owner={self.owner_id} id={transaction_id}")


class AuthService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _find_by_email(self, email: str) -> Optional[User]:
        stmt = select(User).where(User.email == email.strip().lower())
        return self.session.scalar(stmt)

    def register(self, data: RegisterIn) -> tuple[User, str]:
        missing = [
            field
            for field in ("name", "email", "password")
            if not (getattr(data, field) or "").strip()
        ]
        if missing:
            raise ValidationError(f"All fields are required (missing: {', '.join(missing)})")
        email = data.email.strip().lower()
        if "@" not in email:
            raise ValidationError("Email address is invalid")
        if len(data.password) < 6:
            raise ValidationError("Password must be at least 6 characters")
        if self._find_by_email(email):
            logger.info(f"register_failed: email={email} reason=exists")
            raise ValidationError("Email already registered")

        user = User(
            name=data.name.strip(),
            email=email,
            password_hash=auth.hash_password(data.password),
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ValidationError("Email already registered") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("persistence_error: action=register user")
            raise PersistenceError("Registration failed") from exc
        self.session.refresh(user)
        logger.info(f"user_registered: id={user.id} email={user.email}")
        return user, auth.issue_token(user.id, user.email)

    def login(self, data: LoginIn) -> tuple[User, str]:
        if not (data.email or "").strip() or not data.password:
            raise ValidationError("Email and password are required")
        user = self._find_by_email(data.email)
        if not user or not auth.check_password(data.password, user.password_hash):
            logger.info(f"login_failed: email={data.email.strip().lower()}")
            raise AuthError("Invalid credentials")
        user.last_login_at = datetime.utcnow()
        commit_or_raise(self.session, "record login")
        return user, auth.issue_token(user.id, user.email)

    def authenticate(self, authorization: Optional[str]) -> int:
        token = auth.bearer_token(authorization)
        if not token:
            raise AuthError("Unauthorized")
        try:
            user_id = auth.verify_token(token)
        except auth.TokenExpired as exc:
            raise AuthError("Token expired") from exc
        except auth.TokenInvalid as exc:
            raise AuthError("Invalid token") from exc
        # A valid signature outlives the account it was issued for.
        if self.session.get(User, user_id) is None:
            logger.info(f"auth_failed: reason=user_missing id={user_id}")
            raise AuthError("User account not found")
        return user_id

    def refresh(self, authorization: Optional[str]) -> tuple[User, str]:
        token = auth.bearer_token(authorization)
        if not token:
            logger.info("refresh_failed: reason=missing_header")
            raise AuthError("Authorization header missing or malformed")
        try:
            user_id = auth.read_token(token)
        except auth.TokenInvalid as exc:
            logger.info("refresh_failed: reason=bad_signature")
            raise AuthError("Invalid token") from exc
        user = self.session.get(User, user_id)
        if not user:
            logger.info(f"refresh_failed: reason=user_missing id={user_id}")
            raise AuthError("User account not found")
        user.last_login_at = datetime.utcnow()
        commit_or_raise(self.session, "refresh token")
        return user, auth.issue_token(user.id, user.email)

    def get_user(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise AuthError("User account not found")
        return user
