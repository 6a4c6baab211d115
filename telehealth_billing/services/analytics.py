"""
Read-only rollups over billing and subscription history.

The compute_* functions are pure: they take already-fetched rows and a
window and return typed results. AnalyticsService does the fetching and
wraps them in ServiceResults.

Conventions shared by every metric:
  - windows are half-open, [start, end)
  - any ratio with a zero denominator is 0
  - monthly series are chronological
  - ranking series sort by their count/rate descending, ties by key ascending
"""
from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from flask import current_app

from telehealth_billing.models import (
    AdjustmentType,
    BillingRecord,
    BillingStatus,
    Subscription,
    SubscriptionStatus,
)
from telehealth_billing.utils.helpers import month_key, percentage, round_currency, safe_divide, to_naive_utc, utcnow

from .calculations import subtract_months
from .errors import ValidationError
from .exports import export_report, normalize_format
from .repository import BillingRepository, SubscriptionRepository
from .results import ServiceResult, service_operation
from .tokens import CallerContext

log = logging.getLogger(__name__)

NO_REASON = "No reason provided"
ZERO = Decimal("0")


# --- result types ---

@dataclass(frozen=True)
class MonthlyAmount:
    month: str
    amount: Decimal
    count: int


@dataclass(frozen=True)
class MonthlyCount:
    month: str
    count: int


@dataclass(frozen=True)
class LabelCount:
    label: str
    count: int
    percentage: Decimal = ZERO


@dataclass(frozen=True)
class PlanChurn:
    plan: str
    active_at_start: int
    cancelled: int
    churn_rate: Decimal


@dataclass(frozen=True)
class PlanRetention:
    plan: str
    total: int
    active: int
    retention_rate: Decimal


@dataclass(frozen=True)
class MonthlyPayments:
    month: str
    total_transactions: int
    successful_transactions: int
    failed_transactions: int
    amount: Decimal


@dataclass(frozen=True)
class MethodSuccessRate:
    method: str
    total_transactions: int
    successful_transactions: int
    success_rate: Decimal


@dataclass(frozen=True)
class SubscriptionMetrics:
    total_subscriptions: int
    active_subscriptions: int
    trial_subscriptions: int
    paused_subscriptions: int
    cancelled_subscriptions: int
    activation_rate: Decimal
    trial_conversion_rate: Decimal


@dataclass(frozen=True)
class GrowthMetrics:
    total_at_start: int
    new_subscriptions: int
    cancelled_subscriptions: int
    net_growth: int
    growth_rate: Decimal


@dataclass(frozen=True)
class SubscriptionAnalytics:
    window_start: datetime
    window_end: datetime
    subscriptions: SubscriptionMetrics
    growth: GrowthMetrics
    plan_distribution: List[LabelCount]
    retention_by_plan: List[PlanRetention]
    customer_lifetime_value: Decimal


@dataclass(frozen=True)
class RevenueMetrics:
    window_start: datetime
    window_end: datetime
    total_revenue: Decimal
    paid_transactions: int
    average_order_value: Decimal
    revenue_per_day: Decimal
    monthly_revenue: List[MonthlyAmount]


@dataclass(frozen=True)
class ChurnMetrics:
    window_start: datetime
    window_end: datetime
    active_at_start: int
    cancelled_in_period: int
    churn_rate: Decimal
    churn_by_plan: List[PlanChurn]
    churn_by_month: List[MonthlyCount]
    churn_reasons: List[LabelCount]


@dataclass(frozen=True)
class PaymentAnalytics:
    window_start: datetime
    window_end: datetime
    total_transactions: int
    successful_transactions: int
    failed_transactions: int
    total_amount: Decimal
    total_payments: Decimal
    failed_amount: Decimal
    total_refunds: Decimal
    net_payments: Decimal
    average_payment: Decimal
    success_rate: Decimal
    monthly: List[MonthlyPayments]
    by_payment_method: List[MethodSuccessRate]
    by_status: List[LabelCount]
    user_id: Optional[int] = None


@dataclass(frozen=True)
class BillingAnalytics:
    window_start: datetime
    window_end: datetime
    total_records: int
    total_billed: Decimal
    total_collected: Decimal
    outstanding_amount: Decimal
    overdue_records: int
    overdue_amount: Decimal
    collection_rate: Decimal
    by_type: List[LabelCount]


@dataclass(frozen=True)
class AnalyticsReport:
    window_start: datetime
    window_end: datetime
    subscriptions: SubscriptionAnalytics
    revenue: RevenueMetrics
    churn: ChurnMetrics
    payments: PaymentAnalytics
    billing: BillingAnalytics
    generated_at: datetime = field(default_factory=utcnow)


# --- helpers ---

def _rate(part, whole) -> Decimal:
    return round_currency(percentage(part, whole))


def _ranked(counter: Counter, total: int | None = None) -> List[LabelCount]:
    items = sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
    denom = sum(counter.values()) if total is None else total
    return [LabelCount(label=k, count=v, percentage=_rate(v, denom)) for k, v in items]


def _plan_key(sub: Subscription) -> str:
    return sub.plan_name or sub.plan_id or "Unknown"


def _in_window(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    return value is not None and start <= value < end


def _active_at(sub: Subscription, moment: datetime) -> bool:
    """Started before `moment` and not yet cancelled at it."""
    return sub.start_date < moment and (sub.cancelled_date is None or sub.cancelled_date >= moment)


def _sum_amount(records: Iterable[BillingRecord]) -> Decimal:
    return sum((Decimal(r.amount) for r in records), ZERO)


# --- pure computations ---

def compute_subscription_metrics(subs: Sequence[Subscription]) -> SubscriptionMetrics:
    status_counts = Counter(s.status for s in subs)
    total = len(subs)
    active = status_counts[SubscriptionStatus.ACTIVE]
    trial = status_counts[SubscriptionStatus.TRIAL_ACTIVE]
    return SubscriptionMetrics(
        total_subscriptions=total,
        active_subscriptions=active,
        trial_subscriptions=trial,
        paused_subscriptions=status_counts[SubscriptionStatus.PAUSED],
        cancelled_subscriptions=status_counts[SubscriptionStatus.CANCELLED],
        activation_rate=_rate(active, total),
        trial_conversion_rate=_rate(active, trial),
    )


def compute_growth(subs: Sequence[Subscription], start: datetime, end: datetime) -> GrowthMetrics:
    at_start = sum(1 for s in subs if _active_at(s, start))
    new = sum(1 for s in subs if _in_window(s.start_date, start, end))
    cancelled = sum(1 for s in subs if _in_window(s.cancelled_date, start, end))
    return GrowthMetrics(
        total_at_start=at_start,
        new_subscriptions=new,
        cancelled_subscriptions=cancelled,
        net_growth=new - cancelled,
        growth_rate=_rate(new, at_start),
    )


def compute_plan_distribution(subs: Sequence[Subscription]) -> List[LabelCount]:
    return _ranked(Counter(_plan_key(s) for s in subs))


def compute_retention_by_plan(subs: Sequence[Subscription]) -> List[PlanRetention]:
    totals: Counter = Counter()
    actives: Counter = Counter()
    for s in subs:
        plan = _plan_key(s)
        totals[plan] += 1
        if s.status == SubscriptionStatus.ACTIVE:
            actives[plan] += 1
    rows = [
        PlanRetention(plan=p, total=totals[p], active=actives[p], retention_rate=_rate(actives[p], totals[p]))
        for p in totals
    ]
    return sorted(rows, key=lambda r: (-r.retention_rate, r.plan))


def compute_customer_lifetime_value(subs: Sequence[Subscription]) -> Decimal:
    active = [s for s in subs if s.status == SubscriptionStatus.ACTIVE]
    customers = {s.user_id for s in active}
    revenue = sum((Decimal(s.current_price or 0) for s in active), ZERO)
    return round_currency(safe_divide(revenue, len(customers)))


def compute_revenue(records: Sequence[BillingRecord], start: datetime, end: datetime) -> RevenueMetrics:
    paid = [r for r in records if r.status == BillingStatus.PAID]
    total = _sum_amount(paid)

    monthly: Dict[str, List[BillingRecord]] = defaultdict(list)
    for r in paid:
        monthly[month_key(r.created_date)].append(r)

    # Whole days the window touches, at least one
    days = max(1, math.ceil((end - start).total_seconds() / 86400))
    return RevenueMetrics(
        window_start=start,
        window_end=end,
        total_revenue=round_currency(total),
        paid_transactions=len(paid),
        average_order_value=round_currency(safe_divide(total, len(paid))),
        revenue_per_day=round_currency(safe_divide(total, days)),
        monthly_revenue=[
            MonthlyAmount(month=m, amount=round_currency(_sum_amount(rows)), count=len(rows))
            for m, rows in sorted(monthly.items())
        ],
    )


def compute_churn(subs: Sequence[Subscription], start: datetime, end: datetime) -> ChurnMetrics:
    at_start = [s for s in subs if _active_at(s, start)]
    cancelled = [s for s in subs if _in_window(s.cancelled_date, start, end)]

    plan_base = Counter(_plan_key(s) for s in at_start)
    plan_cancelled = Counter(_plan_key(s) for s in cancelled)
    by_plan = [
        PlanChurn(
            plan=p,
            active_at_start=plan_base[p],
            cancelled=plan_cancelled[p],
            churn_rate=_rate(plan_cancelled[p], plan_base[p]),
        )
        for p in set(plan_base) | set(plan_cancelled)
    ]
    by_month = Counter(month_key(s.cancelled_date) for s in cancelled)
    reasons = Counter((s.cancellation_reason or "").strip() or NO_REASON for s in cancelled)

    return ChurnMetrics(
        window_start=start,
        window_end=end,
        active_at_start=len(at_start),
        cancelled_in_period=len(cancelled),
        churn_rate=_rate(len(cancelled), len(at_start)),
        churn_by_plan=sorted(by_plan, key=lambda r: (-r.churn_rate, r.plan)),
        churn_by_month=[MonthlyCount(month=m, count=c) for m, c in sorted(by_month.items())],
        churn_reasons=_ranked(reasons),
    )


def _refunded_amount(record: BillingRecord) -> Decimal:
    """Money returned on a Refunded record; its full amount when no refund lines exist."""
    lines = [-Decimal(a.amount) for a in record.adjustments if a.type == AdjustmentType.REFUND]
    return sum(lines, ZERO) if lines else Decimal(record.amount or 0)


def compute_payment_analytics(records: Sequence[BillingRecord], start: datetime, end: datetime,
                              user_id: int | None = None) -> PaymentAnalytics:
    # Every record in the window is a transaction; only Paid ones count as successful
    succeeded = [r for r in records if r.status == BillingStatus.PAID]
    failed = [r for r in records if r.status == BillingStatus.FAILED]

    total_payments = _sum_amount(succeeded)
    collected = sum((Decimal(r.amount_paid or 0) for r in records), ZERO)
    refunds = sum((_refunded_amount(r) for r in records if r.status == BillingStatus.REFUNDED), ZERO)

    monthly: Dict[str, List[BillingRecord]] = defaultdict(list)
    for r in records:
        monthly[month_key(r.created_date)].append(r)
    monthly_rows = [
        MonthlyPayments(
            month=m,
            total_transactions=len(rows),
            successful_transactions=sum(1 for r in rows if r.status == BillingStatus.PAID),
            failed_transactions=sum(1 for r in rows if r.status == BillingStatus.FAILED),
            amount=round_currency(_sum_amount(rows)),
        )
        for m, rows in sorted(monthly.items())
    ]

    method_total: Counter = Counter()
    method_ok: Counter = Counter()
    for r in records:
        method = r.payment_method or "Unknown"
        method_total[method] += 1
        if r.status == BillingStatus.PAID:
            method_ok[method] += 1
    by_method = sorted(
        (
            MethodSuccessRate(
                method=m,
                total_transactions=method_total[m],
                successful_transactions=method_ok[m],
                success_rate=_rate(method_ok[m], method_total[m]),
            )
            for m in method_total
        ),
        key=lambda r: (-r.success_rate, r.method),
    )

    return PaymentAnalytics(
        window_start=start,
        window_end=end,
        total_transactions=len(records),
        successful_transactions=len(succeeded),
        failed_transactions=len(failed),
        total_amount=round_currency(_sum_amount(records)),
        total_payments=round_currency(total_payments),
        failed_amount=round_currency(_sum_amount(failed)),
        total_refunds=round_currency(refunds),
        net_payments=round_currency(collected - refunds),
        average_payment=round_currency(safe_divide(total_payments, len(succeeded))),
        success_rate=_rate(len(succeeded), len(records)),
        monthly=monthly_rows,
        by_payment_method=by_method,
        by_status=_ranked(Counter(r.effective_status.value for r in records)),
        user_id=user_id,
    )


def compute_billing_analytics(records: Sequence[BillingRecord], start: datetime, end: datetime) -> BillingAnalytics:
    billed = sum((Decimal(r.total_amount) for r in records), ZERO)
    collected = sum((Decimal(r.amount_paid or 0) for r in records), ZERO)
    pending = [r for r in records if r.status == BillingStatus.PENDING]
    overdue = [r for r in pending if r.is_overdue]
    return BillingAnalytics(
        window_start=start,
        window_end=end,
        total_records=len(records),
        total_billed=round_currency(billed),
        total_collected=round_currency(collected),
        outstanding_amount=round_currency(sum((r.outstanding_amount for r in pending), ZERO)),
        overdue_records=len(overdue),
        overdue_amount=round_currency(sum((r.outstanding_amount for r in overdue), ZERO)),
        collection_rate=_rate(collected, billed),
        by_type=_ranked(Counter(r.type.value for r in records)),
    )


# --- service ---

class AnalyticsService:
    def __init__(self, records: BillingRepository | None = None,
                 subscriptions: SubscriptionRepository | None = None):
        self.records = records or BillingRepository()
        self.subscriptions = subscriptions or SubscriptionRepository()

    @staticmethod
    def window(start: datetime | None = None, end: datetime | None = None) -> tuple[datetime, datetime]:
        end = to_naive_utc(end) or utcnow()
        if start is None:
            months = int(current_app.config.get("BILLING_ANALYTICS_LOOKBACK_MONTHS", 12))
            start = subtract_months(end, months)
        start = to_naive_utc(start)
        if start >= end:
            raise ValidationError("start must be before end")
        return start, end

    def _subscription_analytics(self, start, end) -> SubscriptionAnalytics:
        subs = self.subscriptions.overlapping(start, end)
        return SubscriptionAnalytics(
            window_start=start,
            window_end=end,
            subscriptions=compute_subscription_metrics(subs),
            growth=compute_growth(subs, start, end),
            plan_distribution=compute_plan_distribution(subs),
            retention_by_plan=compute_retention_by_plan(subs),
            customer_lifetime_value=compute_customer_lifetime_value(subs),
        )

    @service_operation
    def get_subscription_analytics(self, ctx: CallerContext, start: datetime | None = None,
                                   end: datetime | None = None) -> ServiceResult:
        start, end = self.window(start, end)
        return ServiceResult.success(self._subscription_analytics(start, end))

    @service_operation
    def get_revenue_analytics(self, ctx: CallerContext, start: datetime | None = None,
                              end: datetime | None = None) -> ServiceResult:
        start, end = self.window(start, end)
        return ServiceResult.success(compute_revenue(self.records.created_between(start, end), start, end))

    @service_operation
    def get_churn_analytics(self, ctx: CallerContext, start: datetime | None = None,
                            end: datetime | None = None) -> ServiceResult:
        start, end = self.window(start, end)
        return ServiceResult.success(compute_churn(self.subscriptions.overlapping(start, end), start, end))

    @service_operation
    def get_payment_analytics(self, ctx: CallerContext, start: datetime | None = None,
                              end: datetime | None = None, user_id: int | None = None) -> ServiceResult:
        start, end = self.window(start, end)
        records = self.records.created_between(start, end, user_id=user_id)
        return ServiceResult.success(compute_payment_analytics(records, start, end, user_id=user_id))

    @service_operation
    def get_billing_analytics(self, ctx: CallerContext, start: datetime | None = None,
                              end: datetime | None = None) -> ServiceResult:
        start, end = self.window(start, end)
        return ServiceResult.success(compute_billing_analytics(self.records.created_between(start, end), start, end))

    def build_report(self, start: datetime | None = None, end: datetime | None = None) -> AnalyticsReport:
        start, end = self.window(start, end)
        subs = self.subscriptions.overlapping(start, end)
        records = self.records.created_between(start, end)
        return AnalyticsReport(
            window_start=start,
            window_end=end,
            subscriptions=self._subscription_analytics(start, end),
            revenue=compute_revenue(records, start, end),
            churn=compute_churn(subs, start, end),
            payments=compute_payment_analytics(records, start, end),
            billing=compute_billing_analytics(records, start, end),
        )

    @service_operation
    def export_analytics(self, ctx: CallerContext, format: str = "json",
                         start: datetime | None = None, end: datetime | None = None) -> ServiceResult:
        fmt = normalize_format(format)
        report = self.build_report(start, end)
        export = export_report(report, fmt)
        log.info("analytics export %s (%d bytes)", export.filename, len(export.content))
        return ServiceResult.success(export)

    @service_operation
    def get_revenue_summary(self, ctx: CallerContext, start: datetime | None = None,
                            end: datetime | None = None) -> ServiceResult:
        return ServiceResult.not_implemented("Revenue summary")

    @service_operation
    def export_revenue(self, ctx: CallerContext, format: str = "csv",
                       start: datetime | None = None, end: datetime | None = None) -> ServiceResult:
        return ServiceResult.not_implemented("Revenue export")
