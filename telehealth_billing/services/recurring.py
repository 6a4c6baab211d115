"""
Recurring billing: turns subscriptions into billing records on their cadence.

The periodic trigger lives outside this module (the `flask billing
run-recurring` command is what a scheduler invokes); every call here is a
single short unit of work.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from telehealth_billing.extensions import db
from telehealth_billing.models import BillingRecord, BillingStatus, BillingType, Subscription, SubscriptionStatus
from telehealth_billing.models.statuses import BILLABLE_SUBSCRIPTION_STATUSES
from telehealth_billing.utils.helpers import utcnow

from . import calculations
from .billing_engine import BillingEngine
from .errors import ConflictError, NotFoundError, ValidationError
from .events import RECURRING_CANCELLED
from .results import ServiceResult, service_operation
from .tokens import CallerContext

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingCancellation:
    subscription_id: str
    cancelled_at: datetime
    reason: Optional[str]


@dataclass(frozen=True)
class PaymentSchedule:
    subscription_id: str
    amount: Decimal
    currency: str
    cadence_days: int
    auto_renew: bool
    upcoming: List[datetime]


@dataclass
class BatchRunSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


def _recurring_key(subscription: Subscription) -> str:
    return f"recurring:{subscription.id}:{subscription.next_billing_date:%Y%m%d}"


class RecurringBillingService:
    def __init__(self, engine: BillingEngine | None = None):
        self.engine = engine or BillingEngine()

    @property
    def subscriptions(self):
        return self.engine.subscriptions

    @property
    def records(self):
        return self.engine.records

    def _require_subscription(self, subscription_id: str) -> Subscription:
        sub = self.subscriptions.get(subscription_id) if subscription_id else None
        if sub is None:
            raise NotFoundError("Subscription not found")
        return sub

    @staticmethod
    def _require_active_recurring(sub: Subscription) -> None:
        if sub.status not in BILLABLE_SUBSCRIPTION_STATUSES:
            raise ConflictError(f"Subscription is {sub.status.value}; only active subscriptions can be billed")
        if sub.recurring_cancelled_at is not None or not sub.auto_renew:
            raise ConflictError("Recurring billing is cancelled for this subscription")

    def _cadence(self, sub: Subscription, override: int | None = None) -> int:
        if override is not None:
            if int(override) <= 0:
                raise ValidationError("cadence_days must be positive")
            return int(override)
        return sub.cadence_days(default=int(current_app.config.get("BILLING_DEFAULT_CADENCE_DAYS", 30)))

    @staticmethod
    def _sync_subscription(sub: Subscription, record: BillingRecord) -> None:
        """Mirror a charge outcome onto the subscription's payment health fields."""
        if record.status == BillingStatus.PAID:
            sub.failed_payment_attempts = 0
            sub.last_payment_error = None
            if sub.status == SubscriptionStatus.PAYMENT_FAILED:
                sub.status = SubscriptionStatus.ACTIVE
        elif record.status == BillingStatus.FAILED:
            sub.failed_payment_attempts = (sub.failed_payment_attempts or 0) + 1
            sub.last_payment_error = record.error_message
            if sub.status == SubscriptionStatus.ACTIVE:
                sub.status = SubscriptionStatus.PAYMENT_FAILED

    def _recurring_details(self, sub: Subscription, cadence: int, **extra) -> dict:
        now = utcnow()
        details = {
            "user_id": sub.user_id,
            "subscription_id": sub.id,
            "amount": sub.current_price,
            "currency": sub.currency,
            "type": BillingType.RECURRING.value,
            "is_recurring": True,
            "payment_method": sub.payment_method_id,
            "description": f"{sub.plan_name or sub.plan_id} subscription",
            "billing_date": now,
            "next_billing_date": calculations.next_billing_date(now, cadence),
        }
        details.update(extra)
        return details

    @service_operation
    def create_recurring_billing(self, ctx: CallerContext, subscription_id: str,
                                 cadence_days: int | None = None) -> ServiceResult:
        sub = self._require_subscription(subscription_id)
        self._require_active_recurring(sub)
        cadence = self._cadence(sub, cadence_days)

        record = self.records.add(self.engine.build_record(ctx, self._recurring_details(sub, cadence)))
        db.session.commit()
        log.info("recurring billing %s created for subscription %s every %d days", record.id, sub.id, cadence)
        return ServiceResult.created(record.to_dict(), "Recurring billing created successfully")

    @service_operation
    def process_recurring_payment(self, ctx: CallerContext, subscription_id: str,
                                  idempotency_key: str | None = None) -> ServiceResult:
        sub = self._require_subscription(subscription_id)
        self._require_active_recurring(sub)

        if idempotency_key:
            existing = self.records.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                return ServiceResult.success(existing.to_dict(), "Recurring payment already processed",
                                             meta={"duplicate": True})

        cadence = self._cadence(sub)
        due = sub.next_billing_date
        record = self.engine.build_record(ctx, self._recurring_details(
            sub, cadence,
            due_date=due,
            next_billing_date=calculations.next_billing_date(due, cadence),
            idempotency_key=idempotency_key,
        ))
        try:
            self.records.add(record)
        except IntegrityError:
            # Another worker won the race for this key
            db.session.rollback()
            existing = self.records.get_by_idempotency_key(idempotency_key) if idempotency_key else None
            if existing is None:
                raise
            return ServiceResult.success(existing.to_dict(), "Recurring payment already processed",
                                         meta={"duplicate": True})

        self.engine.charge_record(ctx, record)

        sub.next_billing_date = calculations.next_billing_date(due, cadence)
        sub.last_billing_date = utcnow()
        self._sync_subscription(sub, record)
        db.session.commit()
        return ServiceResult.created(record.to_dict(), "Recurring payment processed")

    @service_operation
    def cancel_recurring_billing(self, ctx: CallerContext, subscription_id: str,
                                 reason: str | None = None) -> ServiceResult:
        sub = self._require_subscription(subscription_id)
        if sub.recurring_cancelled_at is None:
            sub.auto_renew = False
            sub.recurring_cancelled_at = utcnow()
            if reason and not sub.cancellation_reason:
                sub.cancellation_reason = reason[:500]
            self.engine.events.emit(RECURRING_CANCELLED, actor_id=ctx.user_id, subject_id=sub.id, reason=reason)
            db.session.commit()
        return ServiceResult.success(
            BillingCancellation(
                subscription_id=sub.id,
                cancelled_at=sub.recurring_cancelled_at,
                reason=sub.cancellation_reason,
            ),
            "Recurring billing cancelled",
        )

    @service_operation
    def get_payment_schedule(self, ctx: CallerContext, subscription_id: str, count: int = 3) -> ServiceResult:
        sub = self._require_subscription(subscription_id)
        cadence = self._cadence(sub)
        upcoming: List[datetime] = []
        if sub.recurring_cancelled_at is None and sub.auto_renew:
            when = sub.next_billing_date
            for _ in range(max(int(count), 0)):
                upcoming.append(when)
                when = calculations.next_billing_date(when, cadence)
        return ServiceResult.success(PaymentSchedule(
            subscription_id=sub.id,
            amount=sub.current_price,
            currency=sub.currency,
            cadence_days=cadence,
            auto_renew=sub.auto_renew,
            upcoming=upcoming,
        ))

    # ------------------------------------------------------------------ batch entry points

    @service_operation
    def process_due_subscriptions(self, ctx: CallerContext, as_of: datetime | None = None) -> ServiceResult:
        """Charge every billable subscription whose next_billing_date has arrived."""
        as_of = as_of or utcnow()
        summary = BatchRunSummary()
        due = [(s.id, _recurring_key(s)) for s in self.subscriptions.due_for_billing(as_of, BILLABLE_SUBSCRIPTION_STATUSES)]
        for sub_id, key in due:
            summary.processed += 1
            result = self.process_recurring_payment(ctx, sub_id, idempotency_key=key)
            if not result.ok:
                summary.failed += 1
                summary.errors.append(f"{sub_id}: {result.message}")
                log.warning("recurring run: subscription %s failed (%s)", sub_id, result.message)
            elif result.meta.get("duplicate"):
                summary.skipped += 1
            elif result.data["status"] == BillingStatus.PAID.value:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.errors.append(f"{sub_id}: {result.data.get('error_message')}")
        log.info("recurring run: %s", summary)
        return ServiceResult.success(summary)

    @service_operation
    def retry_failed_payments(self, ctx: CallerContext) -> ServiceResult:
        max_retries = int(current_app.config.get("BILLING_MAX_PAYMENT_RETRIES", 3))
        summary = BatchRunSummary()
        for record in self.records.with_status(BillingStatus.FAILED):
            if (record.retry_count or 0) >= max_retries:
                summary.skipped += 1
                continue
            record_id = record.id
            summary.processed += 1
            result = self.engine.retry_failed_payment(ctx, record_id)
            if not result.ok:
                summary.failed += 1
                summary.errors.append(f"{record_id}: {result.message}")
                continue

            refreshed = self.records.get(record_id)
            if refreshed.subscription is not None:
                self._sync_subscription(refreshed.subscription, refreshed)
                db.session.commit()
            if result.data.status == BillingStatus.PAID.value:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.errors.append(f"{record_id}: {result.data.error_message}")
        log.info("retry run: %s", summary)
        return ServiceResult.success(summary)
