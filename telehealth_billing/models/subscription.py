import uuid
from decimal import Decimal

from telehealth_billing.extensions import db
from telehealth_billing.utils.helpers import utcnow
from .statuses import BillingCycle, SubscriptionStatus, CYCLE_DAYS


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = db.Column(db.Integer, nullable=False, index=True)

    plan_id = db.Column(db.String(64), nullable=False, index=True)
    plan_name = db.Column(db.String(120), nullable=False, default="")

    status = db.Column(
        db.Enum(SubscriptionStatus, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        nullable=False, default=SubscriptionStatus.PENDING, index=True,
    )
    billing_cycle = db.Column(
        db.Enum(BillingCycle, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )
    current_price = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency = db.Column(db.String(3), nullable=False, default="USD")
    payment_method_id = db.Column(db.String(100), nullable=True)

    start_date = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    next_billing_date = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    last_billing_date = db.Column(db.DateTime, nullable=True)
    cancelled_date = db.Column(db.DateTime, nullable=True, index=True)
    cancellation_reason = db.Column(db.String(500), nullable=True)

    auto_renew = db.Column(db.Boolean, nullable=False, default=True)
    recurring_cancelled_at = db.Column(db.DateTime, nullable=True)

    failed_payment_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_payment_error = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False)

    billing_records = db.relationship("BillingRecord", back_populates="subscription", lazy="dynamic")

    __mapper_args__ = {"version_id_col": version}

    def cadence_days(self, default: int = 30) -> int:
        if self.billing_cycle is None:
            return default
        return CYCLE_DAYS.get(self.billing_cycle, default)

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user_id={self.user_id} status={self.status.value!r} plan_id={self.plan_id!r}>"
