"""
Query helpers over BillingRecord and Subscription.

Services never build queries inline; everything that touches db.session for
reads lives here so filters stay consistent between the engine, the invoice
manager and analytics.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_

from telehealth_billing.extensions import db
from telehealth_billing.models import BillingRecord, BillingStatus, BillingType, Subscription
from telehealth_billing.utils.helpers import utcnow

SORT_COLUMNS = {
    "created_date": BillingRecord.created_date,
    "amount": BillingRecord.amount,
    "status": BillingRecord.status,
}


@dataclass
class RecordQuery:
    page: int = 1
    page_size: int = 20
    search_term: Optional[str] = None
    statuses: Sequence[BillingStatus] = ()
    types: Sequence[BillingType] = ()
    user_ids: Sequence[int] = ()
    subscription_ids: Sequence[str] = ()
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sort_by: str = "created_date"
    sort_order: str = "desc"


def _overdue_clause(now: datetime):
    return and_(
        BillingRecord.status == BillingStatus.PENDING,
        BillingRecord.due_date.isnot(None),
        BillingRecord.due_date < now,
    )


class BillingRepository:
    def add(self, record: BillingRecord) -> BillingRecord:
        db.session.add(record)
        db.session.flush()
        return record

    def get(self, record_id: str) -> Optional[BillingRecord]:
        return db.session.get(BillingRecord, record_id)

    def get_by_invoice_number(self, invoice_number: str) -> Optional[BillingRecord]:
        return BillingRecord.query.filter_by(invoice_number=invoice_number).first()

    def get_by_idempotency_key(self, key: str) -> Optional[BillingRecord]:
        return BillingRecord.query.filter_by(idempotency_key=key).first()

    def invoice_number_exists(self, invoice_number: str) -> bool:
        return db.session.query(
            BillingRecord.query.filter_by(invoice_number=invoice_number).exists()
        ).scalar()

    def for_user(self, user_id: int, start: datetime | None = None,
                 end: datetime | None = None) -> List[BillingRecord]:
        q = BillingRecord.query.filter(BillingRecord.user_id == user_id)
        if start is not None:
            q = q.filter(BillingRecord.created_date >= start)
        if end is not None:
            q = q.filter(BillingRecord.created_date <= end)
        return q.order_by(BillingRecord.created_date.desc()).all()

    def for_subscription(self, subscription_id: str) -> List[BillingRecord]:
        return (
            BillingRecord.query
            .filter(BillingRecord.subscription_id == subscription_id)
            .order_by(BillingRecord.created_date.desc())
            .all()
        )

    def with_status(self, status: BillingStatus) -> List[BillingRecord]:
        return (
            BillingRecord.query
            .filter(BillingRecord.status == status)
            .order_by(BillingRecord.created_date.asc())
            .all()
        )

    def overdue(self, now: datetime | None = None) -> List[BillingRecord]:
        return (
            BillingRecord.query
            .filter(_overdue_clause(now or utcnow()))
            .order_by(BillingRecord.due_date.asc())
            .all()
        )

    def created_between(self, start: datetime, end: datetime,
                        user_id: int | None = None) -> List[BillingRecord]:
        """Half-open window [start, end) on created_date."""
        q = BillingRecord.query.filter(
            BillingRecord.created_date >= start,
            BillingRecord.created_date < end,
        )
        if user_id is not None:
            q = q.filter(BillingRecord.user_id == user_id)
        return q.order_by(BillingRecord.created_date.asc()).all()

    def search(self, params: RecordQuery, now: datetime | None = None) -> Tuple[List[BillingRecord], int]:
        now = now or utcnow()
        q = BillingRecord.query

        if params.statuses:
            stored = [s for s in params.statuses if s != BillingStatus.OVERDUE]
            clauses = []
            if stored:
                clauses.append(BillingRecord.status.in_(stored))
            if BillingStatus.OVERDUE in params.statuses:
                clauses.append(_overdue_clause(now))
            q = q.filter(or_(*clauses))
        if params.types:
            q = q.filter(BillingRecord.type.in_(list(params.types)))
        if params.user_ids:
            q = q.filter(BillingRecord.user_id.in_(list(params.user_ids)))
        if params.subscription_ids:
            q = q.filter(BillingRecord.subscription_id.in_(list(params.subscription_ids)))
        if params.start_date is not None:
            q = q.filter(BillingRecord.created_date >= params.start_date)
        if params.end_date is not None:
            q = q.filter(BillingRecord.created_date <= params.end_date)
        if params.search_term:
            like = f"%{params.search_term}%"
            q = q.filter(or_(
                BillingRecord.description.ilike(like),
                BillingRecord.invoice_number.ilike(like),
                BillingRecord.transaction_id.ilike(like),
            ))

        total = q.count()

        column = SORT_COLUMNS.get((params.sort_by or "").lower(), BillingRecord.created_date)
        ordering = column.asc() if (params.sort_order or "").lower() == "asc" else column.desc()
        page = max(int(params.page or 1), 1)
        size = max(int(params.page_size or 20), 1)
        rows = (
            q.order_by(ordering, BillingRecord.id.asc())
            .offset((page - 1) * size)
            .limit(size)
            .all()
        )
        return rows, total


class SubscriptionRepository:
    def add(self, subscription: Subscription) -> Subscription:
        db.session.add(subscription)
        db.session.flush()
        return subscription

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return db.session.get(Subscription, subscription_id)

    def due_for_billing(self, as_of: datetime, statuses: Iterable) -> List[Subscription]:
        return (
            Subscription.query
            .filter(
                Subscription.status.in_(list(statuses)),
                Subscription.auto_renew.is_(True),
                Subscription.recurring_cancelled_at.is_(None),
                Subscription.next_billing_date <= as_of,
            )
            .order_by(Subscription.next_billing_date.asc(), Subscription.id.asc())
            .all()
        )

    def overlapping(self, start: datetime, end: datetime) -> List[Subscription]:
        """Subscriptions alive at any point in [start, end)."""
        return (
            Subscription.query
            .filter(
                Subscription.start_date < end,
                or_(Subscription.cancelled_date.is_(None), Subscription.cancelled_date >= start),
            )
            .order_by(Subscription.start_date.asc(), Subscription.id.asc())
            .all()
        )
