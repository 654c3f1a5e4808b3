from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from models import MAX_AMOUNT_CENTS, TransactionKind

TRUTHY = {"1", "true", "yes", "y", "on"}


def parse_date(value: str) -> date:
    value = value.strip()
    # Browsers and the JS client send full ISO timestamps for date inputs.
    if "T" in value:
        value = value.split("T", 1)[0]
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return datetime.strptime(value, "%d.%m.%Y").date()


def parse_amount(value: Union[str, int, float, Decimal]) -> int:
    """Parse a signed amount into integer cents.

    Accepts `12.50`, `-12,50`, `$1 200.00` and plain numbers. Rounds to
    whole cents.
    """
    if isinstance(value, (int, float, Decimal)):
        clean = str(value)
    else:
        clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
        clean = clean.replace(",", ".")
        if clean.count(".") > 1:
            parts = clean.split(".")
            clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    if abs(amount) > Decimal(MAX_AMOUNT_CENTS) / 100:
        raise ValueError("Amount out of range")
    return int((amount * 100).quantize(Decimal("1")))


def parse_bool(value: Optional[Union[str, bool, int]]) -> bool:
    if value is None:
        return False
    if isinstance(value, (bool, int)):
        return bool(value)
    return str(value).strip().lower() in TRUTHY


def apply_kind(amount_cents: int, kind: Optional[TransactionKind]) -> int:
    if kind is None:
        return amount_cents
    if kind == TransactionKind.expense:
        return -abs(amount_cents)
    return abs(amount_cents)
