from __future__ import annotations

from decimal import Decimal

from telehealth_billing.extensions import db
from telehealth_billing.utils.helpers import utcnow


class BillingCharge(db.Model):
    """One successful gateway charge against a billing record."""
    __tablename__ = "billing_charges"

    id = db.Column(db.Integer, primary_key=True)
    billing_record_id = db.Column(
        db.String(36), db.ForeignKey("billing_records.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    transaction_id = db.Column(db.String(100), nullable=False, index=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    refunded_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0"))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    billing_record = db.relationship("BillingRecord", back_populates="charges")

    __table_args__ = (
        db.CheckConstraint("amount > 0", name="ck_billing_charges_amount_positive"),
        db.CheckConstraint("refunded_amount >= 0 AND refunded_amount <= amount", name="ck_billing_charges_refund_bounds"),
    )

    @property
    def refundable_amount(self) -> Decimal:
        return Decimal(self.amount or 0) - Decimal(self.refunded_amount or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "billing_record_id": self.billing_record_id,
            "transaction_id": self.transaction_id,
            "amount": self.amount,
            "refunded_amount": self.refunded_amount,
            "created_at": self.created_at,
        }

    def __repr__(self) -> str:
        return f"<BillingCharge id={self.id} record={self.billing_record_id} txn={self.transaction_id!r} amount={self.amount}>"
