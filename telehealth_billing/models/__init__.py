from .statuses import (
    AdjustmentType,
    BillingCycle,
    BillingStatus,
    BillingType,
    SubscriptionStatus,
)
from .subscription import Subscription
from .billing_record import BillingRecord
from .billing_adjustment import BillingAdjustment
from .billing_charge import BillingCharge
from .billing_event import BillingEventLog

__all__ = [
    "AdjustmentType",
    "BillingCycle",
    "BillingStatus",
    "BillingType",
    "SubscriptionStatus",
    "Subscription",
    "BillingRecord",
    "BillingAdjustment",
    "BillingCharge",
    "BillingEventLog",
]
