from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from telehealth_billing.extensions import db
from telehealth_billing.models import BillingEventLog
from telehealth_billing.observability import log_structured

log = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED = "payment.failed"
REFUND_ISSUED = "refund.issued"
RECORD_CREATED = "billing_record.created"
ADJUSTMENT_APPLIED = "adjustment.applied"
INVOICE_STATUS_CHANGED = "invoice.status_changed"
RECURRING_CANCELLED = "subscription.recurring_cancelled"


class BillingEventSink:
    """
    Audit trail for business events. Writes a BillingEventLog row in a
    savepoint plus a structured log line. Pending business changes are flushed
    first so their own errors still propagate; a broken audit write after
    that is logged and dropped.
    """

    def emit(self, event_type: str, *, actor_id: Optional[int] = None,
             subject_id: Optional[str] = None, **payload: Any) -> None:
        log_structured(log, event_type, actor_id=actor_id, subject_id=subject_id, **payload)
        db.session.flush()
        try:
            with db.session.begin_nested():
                db.session.add(BillingEventLog(
                    event_key=f"{event_type}:{uuid.uuid4().hex}",
                    type=event_type,
                    actor_id=actor_id,
                    subject_id=subject_id,
                    payload={k: (str(v) if v is not None else None) for k, v in payload.items()},
                ))
        except Exception:
            log.exception("billing event %s could not be recorded", event_type)
