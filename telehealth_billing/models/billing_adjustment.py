from __future__ import annotations

import uuid

from telehealth_billing.extensions import db
from telehealth_billing.utils.helpers import utcnow
from .statuses import AdjustmentType


class BillingAdjustment(db.Model):
    __tablename__ = "billing_adjustments"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    billing_record_id = db.Column(
        db.String(36), db.ForeignKey("billing_records.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    type = db.Column(
        db.Enum(AdjustmentType, native_enum=False, length=32, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    # Signed: credits/discounts/refunds are negative, fees positive
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    reason = db.Column(db.String(500), nullable=False)
    applied_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    applied_by = db.Column(db.Integer, nullable=True)
    # Gateway refund id for Refund adjustments
    reference = db.Column(db.String(100), nullable=True)

    billing_record = db.relationship("BillingRecord", back_populates="adjustments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "billing_record_id": self.billing_record_id,
            "type": self.type.value,
            "amount": self.amount,
            "reason": self.reason,
            "applied_at": self.applied_at,
            "applied_by": self.applied_by,
            "reference": self.reference,
        }

    def __repr__(self) -> str:
        return f"<BillingAdjustment id={self.id} record={self.billing_record_id} type={self.type.value!r} amount={self.amount}>"
