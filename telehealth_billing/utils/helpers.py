from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal:
    """
    Decimal from int/str/Decimal without float drift.
    Floats go through str() so 0.1 stays 0.1.
    """
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        if default is None:
            raise
        return default


def round_currency(value: Any) -> Decimal:
    return to_decimal(value, Decimal("0")).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Any) -> int:
    return int((to_decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage(part: Any, whole: Any) -> Decimal:
    """part / whole * 100, or 0 when whole is zero."""
    whole_d = to_decimal(whole, Decimal("0"))
    if whole_d == 0:
        return Decimal("0")
    return to_decimal(part, Decimal("0")) / whole_d * 100


def safe_divide(numerator: Any, denominator: Any) -> Decimal:
    den = to_decimal(denominator, Decimal("0"))
    if den == 0:
        return Decimal("0")
    return to_decimal(numerator, Decimal("0")) / den


def month_key(value: datetime) -> str:
    return f"{value.year}-{value.month:02d}"
