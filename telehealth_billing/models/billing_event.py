from telehealth_billing.extensions import db
from telehealth_billing.utils.helpers import utcnow

class BillingEventLog(db.Model):
    __tablename__ = "billing_event_logs"

    id = db.Column(db.Integer, primary_key=True)
    event_key = db.Column(db.String(255), nullable=False, unique=True, index=True)
    type = db.Column(db.String(80), nullable=False, index=True)
    actor_id = db.Column(db.Integer, nullable=True)
    subject_id = db.Column(db.String(64), nullable=True, index=True)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<BillingEventLog id={self.id} type={self.type!r} subject={self.subject_id!r}>"
