"""
Canonical status vocabularies for billing records and subscriptions.

The billing engine, the invoice manager and the analytics aggregator all
import their statuses from here, so the stored strings and the allowed
transitions live in exactly one place.
"""
from __future__ import annotations

import enum
from typing import Dict, FrozenSet, Optional


class BillingStatus(str, enum.Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"
    # Never stored: derived on read from due_date (see BillingRecord.is_overdue)
    OVERDUE = "Overdue"

    @classmethod
    def parse(cls, value: str | None) -> Optional["BillingStatus"]:
        """Case-insensitive lookup by value or name; None when unrecognized."""
        if value is None:
            return None
        needle = str(value).strip().lower()
        for member in cls:
            if needle in (member.value.lower(), member.name.lower()):
                return member
        return None


class BillingType(str, enum.Enum):
    SUBSCRIPTION = "Subscription"
    ONE_TIME = "OneTime"
    ADJUSTMENT = "Adjustment"
    CONSULTATION = "Consultation"
    MEDICATION = "Medication"
    LATE_FEE = "LateFee"
    REFUND = "Refund"
    RECURRING = "Recurring"
    UPFRONT = "Upfront"
    INVOICE = "Invoice"

    @classmethod
    def parse(cls, value: str | None) -> Optional["BillingType"]:
        if value is None:
            return None
        needle = str(value).strip().lower()
        for member in cls:
            if needle in (member.value.lower(), member.name.lower()):
                return member
        return None


class AdjustmentType(str, enum.Enum):
    DISCOUNT = "Discount"
    CREDIT = "Credit"
    REFUND = "Refund"
    LATE_FEE = "LateFee"
    SERVICE_FEE = "ServiceFee"
    TAX_ADJUSTMENT = "TaxAdjustment"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    PAUSED = "Paused"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"
    PAYMENT_FAILED = "PaymentFailed"
    TRIAL_ACTIVE = "TrialActive"
    TRIAL_EXPIRED = "TrialExpired"
    SUSPENDED = "Suspended"


class BillingCycle(str, enum.Enum):
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    ANNUALLY = "Annually"


# Days between charges per billing cycle
CYCLE_DAYS: Dict[BillingCycle, int] = {
    BillingCycle.WEEKLY: 7,
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.ANNUALLY: 365,
}

# Stored-state transitions. Overdue is derived and never a target.
BILLING_TRANSITIONS: Dict[BillingStatus, FrozenSet[BillingStatus]] = {
    BillingStatus.PENDING: frozenset({BillingStatus.PENDING, BillingStatus.PAID, BillingStatus.FAILED}),
    BillingStatus.FAILED: frozenset({BillingStatus.PENDING}),
    BillingStatus.PAID: frozenset({BillingStatus.REFUNDED}),
    BillingStatus.REFUNDED: frozenset(),
}

# Subscriptions the recurring orchestrator may charge
BILLABLE_SUBSCRIPTION_STATUSES: FrozenSet[SubscriptionStatus] = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIAL_ACTIVE,
    SubscriptionStatus.PAYMENT_FAILED,
})


def can_transition(current: BillingStatus, target: BillingStatus) -> bool:
    return target in BILLING_TRANSITIONS.get(current, frozenset())


def is_terminal(status: BillingStatus) -> bool:
    return not BILLING_TRANSITIONS.get(status)
