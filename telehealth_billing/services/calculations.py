"""
Pure billing arithmetic. No I/O, no app context: callers pass the configured
rates in, which keeps every function here trivially testable.

All money is Decimal. Sums are exact; derived amounts (tax, shipping,
proration) are quantized to cents with ROUND_HALF_UP.
"""
from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Mapping

from telehealth_billing.utils.helpers import round_currency, to_decimal
from telehealth_billing.utils.validators import normalize_jurisdiction

DEFAULT_TAX_RATES = {"CA": "0.0825", "NY": "0.085", "TX": "0.0625"}
DEFAULT_TAX_RATE = "0.06"
BASE_SHIPPING = "5.99"
EXPRESS_MULTIPLIER = "2.5"


def calculate_total(base, tax=0, shipping=0) -> Decimal:
    return to_decimal(base) + to_decimal(tax) + to_decimal(shipping)


def tax_rate_for(jurisdiction: str | None,
                 rates: Mapping[str, str] | None = None,
                 default_rate: str = DEFAULT_TAX_RATE) -> Decimal:
    table = rates if rates is not None else DEFAULT_TAX_RATES
    code = normalize_jurisdiction(jurisdiction)
    return to_decimal(table.get(code, default_rate))


def calculate_tax(base, jurisdiction: str | None,
                  rates: Mapping[str, str] | None = None,
                  default_rate: str = DEFAULT_TAX_RATE) -> Decimal:
    return round_currency(to_decimal(base) * tax_rate_for(jurisdiction, rates, default_rate))


def calculate_shipping(express: bool = False,
                       base: str = BASE_SHIPPING,
                       multiplier: str = EXPRESS_MULTIPLIER) -> Decimal:
    amount = to_decimal(base)
    if express:
        amount = amount * to_decimal(multiplier)
    return round_currency(amount)


def calculate_due_date(billing_date: datetime, grace_days: int = 0) -> datetime:
    return billing_date + timedelta(days=int(grace_days))


def next_billing_date(from_date: datetime, cadence_days: int) -> datetime:
    if cadence_days <= 0:
        raise ValueError("cadence_days must be positive")
    return from_date + timedelta(days=cadence_days)


def prorated_amount(amount, effective_date: datetime) -> Decimal:
    """
    Share of a monthly amount covering effective_date through month end,
    both days inclusive.
    """
    days_in_month = calendar.monthrange(effective_date.year, effective_date.month)[1]
    days_remaining = days_in_month - effective_date.day + 1
    return round_currency(to_decimal(amount) * Decimal(days_remaining) / Decimal(days_in_month))


def subtract_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    index = value.year * 12 + (value.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)
