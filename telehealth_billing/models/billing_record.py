from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import CheckConstraint, Index

from telehealth_billing.extensions import db
from telehealth_billing.utils.helpers import utcnow
from .statuses import BillingStatus, BillingType


def _new_id() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls):
    return [m.value for m in enum_cls]


class BillingRecord(db.Model):
    __tablename__ = "billing_records"

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    user_id = db.Column(db.Integer, nullable=False, index=True)
    subscription_id = db.Column(db.String(36), db.ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=True, index=True)
    # Refund/adjustment records point back at the record they correct
    original_record_id = db.Column(db.String(36), db.ForeignKey("billing_records.id", ondelete="RESTRICT"), nullable=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    shipping_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)
    amount_paid = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency = db.Column(db.String(3), nullable=False, default="USD")
    description = db.Column(db.String(500), nullable=True)

    status = db.Column(
        db.Enum(BillingStatus, native_enum=False, length=16, values_callable=_enum_values, validate_strings=True),
        nullable=False, default=BillingStatus.PENDING, index=True,
    )
    type = db.Column(
        db.Enum(BillingType, native_enum=False, length=32, values_callable=_enum_values, validate_strings=True),
        nullable=False, default=BillingType.SUBSCRIPTION, index=True,
    )

    billing_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    due_date = db.Column(db.DateTime, nullable=True, index=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    invoice_number = db.Column(db.String(100), nullable=True, unique=True)
    payment_method = db.Column(db.String(100), nullable=True)
    transaction_id = db.Column(db.String(100), nullable=True)
    error_message = db.Column(db.String(500), nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)

    is_recurring = db.Column(db.Boolean, nullable=False, default=False)
    next_billing_date = db.Column(db.DateTime, nullable=True)
    idempotency_key = db.Column(db.String(255), nullable=True, unique=True)

    # Lifecycle / audit
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.Integer, nullable=True)
    updated_by = db.Column(db.Integer, nullable=True)
    created_date = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    updated_date = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False)

    subscription = db.relationship("Subscription", back_populates="billing_records")
    adjustments = db.relationship(
        "BillingAdjustment",
        back_populates="billing_record",
        order_by="BillingAdjustment.applied_at",
        lazy="selectin",
    )
    charges = db.relationship(
        "BillingCharge",
        back_populates="billing_record",
        order_by="BillingCharge.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_billing_records_amount_non_negative"),
        CheckConstraint("amount_paid >= 0", name="ck_billing_records_amount_paid_non_negative"),
        Index("ix_billing_records_status_due_date", "status", "due_date"),
    )

    # --- derived state ---

    @property
    def is_overdue(self) -> bool:
        return (
            self.due_date is not None
            and self.due_date < utcnow()
            and self.status == BillingStatus.PENDING
        )

    @property
    def effective_status(self) -> BillingStatus:
        """Stored status, or Overdue when a pending record is past due."""
        return BillingStatus.OVERDUE if self.is_overdue else self.status

    @property
    def outstanding_amount(self) -> Decimal:
        remaining = Decimal(self.total_amount or 0) - Decimal(self.amount_paid or 0)
        return remaining if remaining > 0 else Decimal("0")

    @property
    def adjusted_amount(self) -> Decimal:
        """Amount with every adjustment line applied (adjustments are signed)."""
        return Decimal(self.amount or 0) + sum((Decimal(a.amount) for a in self.adjustments), Decimal("0"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "subscription_id": self.subscription_id,
            "original_record_id": self.original_record_id,
            "amount": self.amount,
            "tax_amount": self.tax_amount,
            "shipping_amount": self.shipping_amount,
            "total_amount": self.total_amount,
            "amount_paid": self.amount_paid,
            "adjusted_amount": self.adjusted_amount,
            "currency": self.currency,
            "description": self.description,
            "status": self.effective_status.value,
            "type": self.type.value,
            "billing_date": self.billing_date,
            "due_date": self.due_date,
            "paid_at": self.paid_at,
            "invoice_number": self.invoice_number,
            "payment_method": self.payment_method,
            "transaction_id": self.transaction_id,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "is_recurring": self.is_recurring,
            "next_billing_date": self.next_billing_date,
            "created_date": self.created_date,
            "updated_date": self.updated_date,
        }

    def __repr__(self) -> str:
        return f"<BillingRecord id={self.id} user_id={self.user_id} status={self.status.value!r} amount={self.amount}>"
