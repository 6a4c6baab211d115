"""
Billing record lifecycle: creation, payment, refunds, adjustments and the
amount arithmetic around them.

Every public method takes the caller's CallerContext first and returns a
ServiceResult; domain failures are raised as ServiceError subclasses and
converted to envelopes by @service_operation.

Status flow (see models.statuses.BILLING_TRANSITIONS):
    Pending -> Paid | Failed | Pending
    Failed  -> Pending            (retry)
    Paid    -> Refunded           (terminal)
Overdue is never stored; it is read off due_date.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from flask import current_app

from telehealth_billing.extensions import db
from telehealth_billing.models import (
    AdjustmentType,
    BillingAdjustment,
    BillingCharge,
    BillingRecord,
    BillingStatus,
    BillingType,
)
from telehealth_billing.models.statuses import can_transition
from telehealth_billing.utils.helpers import round_currency, to_cents, to_decimal, to_naive_utc, utcnow
from telehealth_billing.utils.validators import clean_str, normalize_currency

from . import calculations
from .errors import ConflictError, GatewayError, NotFoundError, ValidationError
from .exports import export_records
from .events import (
    ADJUSTMENT_APPLIED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    RECORD_CREATED,
    REFUND_ISSUED,
    BillingEventSink,
)
from .gateway import ChargeResult, PaymentGateway, StripeGateway, make_idempotency_key
from .repository import BillingRepository, RecordQuery, SubscriptionRepository
from .results import ServiceResult, service_operation
from .tokens import CallerContext

log = logging.getLogger(__name__)

# Adjustment types that reduce what the customer owes
_CREDIT_TYPES = {AdjustmentType.DISCOUNT, AdjustmentType.CREDIT, AdjustmentType.REFUND}
_FEE_TYPES = {AdjustmentType.LATE_FEE, AdjustmentType.SERVICE_FEE}


@dataclass(frozen=True)
class PaymentResult:
    billing_record_id: str
    status: str
    transaction_id: Optional[str]
    amount: Decimal
    processed_at: datetime
    error_message: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    billing_record_id: str
    refund_id: Optional[str]
    amount: Decimal
    status: str
    reason: Optional[str]
    processed_at: datetime
    # One entry per gateway refund when the amount spans several charges
    refund_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BillingSummary:
    user_id: int
    total_billing_records: int
    total_amount: Decimal
    paid_amount: Decimal
    pending_amount: Decimal
    failed_amount: Decimal
    refunded_amount: Decimal
    start_date: Optional[datetime]
    end_date: Optional[datetime]


def _money(value: Any, field_name: str, *, allow_negative: bool = False) -> Decimal:
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required")
    try:
        amount = to_decimal(value)
    except Exception:
        raise ValidationError(f"{field_name} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a number")
    if not allow_negative and amount < 0:
        raise ValidationError(f"{field_name} must be greater than or equal to zero")
    return amount


def _optional_money(value: Any, field_name: str) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return _money(value, field_name)


def _date(value: Any, field_name: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        return to_naive_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO-8601 date")


def _page_number(value: Any, field_name: str, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a whole number")
    if number < 1:
        raise ValidationError(f"{field_name} must be at least 1")
    return number


def _parse_statuses(values: Sequence[Any] | None) -> List[BillingStatus]:
    # Unknown status strings are ignored rather than rejected
    parsed = (BillingStatus.parse(v) for v in (values or ()))
    return [s for s in parsed if s is not None]


def _parse_types(values: Sequence[Any] | None) -> List[BillingType]:
    parsed = (BillingType.parse(v) for v in (values or ()))
    return [t for t in parsed if t is not None]


class BillingEngine:
    def __init__(self, gateway: PaymentGateway | None = None,
                 records: BillingRepository | None = None,
                 subscriptions: SubscriptionRepository | None = None,
                 events: BillingEventSink | None = None):
        self.gateway = gateway or StripeGateway()
        self.records = records or BillingRepository()
        self.subscriptions = subscriptions or SubscriptionRepository()
        self.events = events or BillingEventSink()

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _config(name: str, default: Any = None) -> Any:
        return current_app.config.get(name, default)

    def require_record(self, record_id: str) -> BillingRecord:
        record = self.records.get(record_id) if record_id else None
        if record is None:
            raise NotFoundError("Billing record not found")
        return record

    @staticmethod
    def _transition(record: BillingRecord, target: BillingStatus) -> None:
        if not can_transition(record.status, target):
            raise ConflictError(
                f"Cannot move billing record from {record.status.value} to {target.value}"
            )
        record.status = target

    @staticmethod
    def _touch(record: BillingRecord, ctx: CallerContext) -> None:
        record.updated_by = ctx.user_id
        record.updated_date = utcnow()

    def build_record(self, ctx: CallerContext, details: Mapping[str, Any],
                     default_type: BillingType = BillingType.ONE_TIME) -> BillingRecord:
        """Validate creation input and return an unsaved Pending record."""
        user_id = details.get("user_id")
        if user_id in (None, ""):
            raise ValidationError("user_id is required")
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            raise ValidationError("user_id must be an integer")

        amount = _money(details.get("amount"), "amount")

        billing_type = default_type
        if details.get("type") is not None:
            billing_type = BillingType.parse(details.get("type"))
            if billing_type is None:
                raise ValidationError(f"Unknown billing type: {details.get('type')}")

        if details.get("tax_amount") not in (None, ""):
            tax = _money(details.get("tax_amount"), "tax_amount")
        elif details.get("jurisdiction"):
            tax = calculations.calculate_tax(
                amount, details.get("jurisdiction"),
                self._config("BILLING_TAX_RATES"), self._config("BILLING_DEFAULT_TAX_RATE", "0.06"),
            )
        else:
            tax = Decimal("0")
        shipping = _optional_money(details.get("shipping_amount"), "shipping_amount")

        currency = normalize_currency(
            details.get("currency"), default=self._config("BILLING_DEFAULT_CURRENCY", "USD")
        )
        if currency is None:
            raise ValidationError("currency must be a three-letter code")

        subscription_id = details.get("subscription_id")
        if subscription_id and self.subscriptions.get(subscription_id) is None:
            raise NotFoundError("Subscription not found")

        now = utcnow()
        billing_date = _date(details.get("billing_date"), "billing_date") or now
        due_date = _date(details.get("due_date"), "due_date")
        if due_date is None:
            due_date = calculations.calculate_due_date(
                billing_date, self._config("BILLING_GRACE_PERIOD_DAYS", 7)
            )

        return BillingRecord(
            user_id=user_id,
            subscription_id=subscription_id or None,
            original_record_id=details.get("original_record_id"),
            amount=amount,
            tax_amount=tax,
            shipping_amount=shipping,
            total_amount=calculations.calculate_total(amount, tax, shipping),
            amount_paid=Decimal("0"),
            currency=currency,
            description=clean_str(details.get("description"), 500),
            status=BillingStatus.PENDING,
            type=billing_type,
            billing_date=billing_date,
            due_date=due_date,
            payment_method=clean_str(details.get("payment_method"), 100),
            invoice_number=clean_str(details.get("invoice_number"), 100),
            is_recurring=bool(details.get("is_recurring", False)),
            next_billing_date=_date(details.get("next_billing_date"), "next_billing_date"),
            idempotency_key=clean_str(details.get("idempotency_key")),
            retry_count=0,
            is_active=True,
            created_by=ctx.user_id,
            updated_by=ctx.user_id,
            created_date=now,
            updated_date=now,
        )

    def _payment_method_for(self, record: BillingRecord) -> Optional[str]:
        if record.payment_method:
            return record.payment_method
        if record.subscription is not None:
            return record.subscription.payment_method_id
        return None

    def charge_record(self, ctx: CallerContext, record: BillingRecord,
                      amount: Decimal | None = None) -> ChargeResult:
        """
        Charge `amount` (default: the outstanding balance) against a Pending
        record and apply the outcome. Does not commit.
        """
        if record.status != BillingStatus.PENDING:
            raise ConflictError(f"Billing record is {record.status.value}; only Pending records can be charged")

        amount = record.outstanding_amount if amount is None else amount
        if amount <= 0:
            # Nothing left to collect; settle without a gateway round-trip
            result = ChargeResult(success=True, transaction_id=record.transaction_id)
        else:
            idem = make_idempotency_key(
                "charge", record.id, record.retry_count, to_cents(record.amount_paid), to_cents(amount)
            )
            result = self.gateway.charge(self._payment_method_for(record), amount, record.currency, idempotency_key=idem)

        self._touch(record, ctx)
        if result.success:
            record.amount_paid = round_currency(Decimal(record.amount_paid or 0) + amount)
            if result.transaction_id:
                record.transaction_id = result.transaction_id
                if amount > 0:
                    record.charges.append(
                        BillingCharge(transaction_id=result.transaction_id, amount=round_currency(amount))
                    )
            record.error_message = None
            if record.amount_paid >= record.total_amount:
                self._transition(record, BillingStatus.PAID)
                record.paid_at = utcnow()
            self.events.emit(
                PAYMENT_SUCCEEDED, actor_id=ctx.user_id, subject_id=record.id,
                amount=amount, transaction_id=record.transaction_id, status=record.status.value,
            )
        else:
            self._transition(record, BillingStatus.FAILED)
            record.error_message = (result.error_message or "Payment failed")[:500]
            self.events.emit(
                PAYMENT_FAILED, actor_id=ctx.user_id, subject_id=record.id,
                amount=amount, error=record.error_message,
            )
            log.warning("payment failed for billing record %s: %s", record.id, record.error_message)
        db.session.flush()
        return result

    # ------------------------------------------------------------------ records

    @service_operation
    def create_billing_record(self, ctx: CallerContext, details: Mapping[str, Any]) -> ServiceResult:
        record = self.records.add(self.build_record(ctx, details))
        self.events.emit(RECORD_CREATED, actor_id=ctx.user_id, subject_id=record.id,
                         amount=record.total_amount, type=record.type.value)
        db.session.commit()
        return ServiceResult.created(record.to_dict(), "Billing record created successfully")

    @service_operation
    def create_upfront_payment(self, ctx: CallerContext, details: Mapping[str, Any]) -> ServiceResult:
        record = self.records.add(self.build_record(ctx, details, default_type=BillingType.UPFRONT))
        self.events.emit(RECORD_CREATED, actor_id=ctx.user_id, subject_id=record.id,
                         amount=record.total_amount, type=record.type.value)
        db.session.commit()
        return ServiceResult.created(record.to_dict(), "Upfront payment created successfully")

    @service_operation
    def get_billing_record(self, ctx: CallerContext, record_id: str) -> ServiceResult:
        return ServiceResult.success(self.require_record(record_id).to_dict())

    @service_operation
    def get_user_billing_history(self, ctx: CallerContext, user_id: int) -> ServiceResult:
        rows = self.records.for_user(user_id)
        return ServiceResult.success([r.to_dict() for r in rows], meta={"total": len(rows)})

    @service_operation
    def get_subscription_billing_history(self, ctx: CallerContext, subscription_id: str) -> ServiceResult:
        if self.subscriptions.get(subscription_id) is None:
            raise NotFoundError("Subscription not found")
        rows = self.records.for_subscription(subscription_id)
        return ServiceResult.success([r.to_dict() for r in rows], meta={"total": len(rows)})

    @service_operation
    def get_all_billing_records(self, ctx: CallerContext, page: int = 1, page_size: int = 20,
                                search_term: str | None = None,
                                status: Sequence[str] | None = None,
                                type: Sequence[str] | None = None,
                                user_id: Sequence[int] | None = None,
                                subscription_id: Sequence[str] | None = None,
                                start_date: datetime | str | None = None,
                                end_date: datetime | str | None = None,
                                sort_by: str = "created_date",
                                sort_order: str = "desc") -> ServiceResult:
        params = RecordQuery(
            page=_page_number(page, "page", 1),
            page_size=_page_number(page_size, "page_size", 20),
            search_term=clean_str(search_term),
            statuses=_parse_statuses(status),
            types=_parse_types(type),
            user_ids=list(user_id or ()),
            subscription_ids=list(subscription_id or ()),
            start_date=_date(start_date, "start_date"),
            end_date=_date(end_date, "end_date"),
            sort_by=sort_by,
            sort_order=sort_order,
        )
        rows, total = self.records.search(params)
        size = params.page_size
        return ServiceResult.success(
            [r.to_dict() for r in rows],
            meta={
                "page": params.page,
                "page_size": size,
                "total": total,
                "total_pages": (total + size - 1) // size,
            },
        )

    @service_operation
    def get_pending_payments(self, ctx: CallerContext) -> ServiceResult:
        rows = self.records.with_status(BillingStatus.PENDING)
        return ServiceResult.success([r.to_dict() for r in rows], meta={"total": len(rows)})

    @service_operation
    def get_overdue_billing_records(self, ctx: CallerContext) -> ServiceResult:
        rows = self.records.overdue()
        return ServiceResult.success([r.to_dict() for r in rows], meta={"total": len(rows)})

    @service_operation
    def update_payment_method(self, ctx: CallerContext, record_id: str, payment_method_id: str) -> ServiceResult:
        record = self.require_record(record_id)
        method = clean_str(payment_method_id, 100)
        if not method:
            raise ValidationError("payment_method_id is required")
        record.payment_method = method
        self._touch(record, ctx)
        db.session.commit()
        return ServiceResult.success(record.to_dict(), "Payment method updated successfully")

    # ------------------------------------------------------------------ payments

    @service_operation
    def process_payment(self, ctx: CallerContext, record_id: str) -> ServiceResult:
        record = self.require_record(record_id)
        result = self.charge_record(ctx, record)
        db.session.commit()
        message = "Payment processed successfully" if result.success else "Payment failed"
        return ServiceResult.success(record.to_dict(), message)

    @service_operation
    def process_partial_payment(self, ctx: CallerContext, record_id: str, amount: Any) -> ServiceResult:
        record = self.require_record(record_id)
        if record.status != BillingStatus.PENDING:
            raise ConflictError(f"Billing record is {record.status.value}; partial payments need a Pending record")
        value = _money(amount, "amount")
        if value <= 0:
            raise ValidationError("amount must be greater than zero")
        if value > record.outstanding_amount:
            raise ValidationError(
                f"amount exceeds the outstanding balance of {record.outstanding_amount}"
            )
        result = self.charge_record(ctx, record, amount=value)
        db.session.commit()
        message = "Partial payment processed successfully" if result.success else "Partial payment failed"
        return ServiceResult.success(record.to_dict(), message)

    def _retry(self, ctx: CallerContext, record_id: str) -> ServiceResult:
        record = self.require_record(record_id)
        if record.status not in (BillingStatus.FAILED, BillingStatus.PENDING):
            raise ConflictError(f"Billing record is {record.status.value}; only Failed or Pending records can be retried")
        record.retry_count = (record.retry_count or 0) + 1
        self._transition(record, BillingStatus.PENDING)
        amount = record.outstanding_amount
        result = self.charge_record(ctx, record)
        db.session.commit()
        payload = PaymentResult(
            billing_record_id=record.id,
            status=record.status.value,
            transaction_id=record.transaction_id,
            amount=amount,
            processed_at=record.updated_date,
            error_message=None if result.success else record.error_message,
        )
        return ServiceResult.success(payload, "Payment retried successfully" if result.success else "Payment retry failed")

    @service_operation
    def retry_payment(self, ctx: CallerContext, record_id: str) -> ServiceResult:
        return self._retry(ctx, record_id)

    @service_operation
    def retry_failed_payment(self, ctx: CallerContext, record_id: str) -> ServiceResult:
        return self._retry(ctx, record_id)

    @staticmethod
    def _refund_plan(record: BillingRecord, value: Decimal) -> List[Tuple[str, Decimal, Optional[BillingCharge]]]:
        """
        Split a refund across the charges that paid for the record, newest
        first, so no single gateway refund exceeds what its charge collected.
        Records without a charge ledger refund against their last transaction.
        """
        charges = [c for c in record.charges if c.refundable_amount > 0]
        if not charges:
            if not record.transaction_id:
                raise ConflictError("Billing record has no gateway transaction to refund")
            return [(record.transaction_id, value, None)]

        refundable = sum((c.refundable_amount for c in charges), Decimal("0"))
        if value > refundable:
            raise ValidationError(f"Refund amount {value} exceeds the refundable amount {refundable}")
        plan = []
        remaining = value
        for charge in reversed(charges):
            if remaining <= 0:
                break
            part = min(remaining, charge.refundable_amount)
            plan.append((charge.transaction_id, part, charge))
            remaining -= part
        return plan

    @service_operation
    def process_refund(self, ctx: CallerContext, record_id: str, amount: Any,
                       reason: str | None = None) -> ServiceResult:
        record = self.require_record(record_id)
        if record.status != BillingStatus.PAID:
            raise ConflictError(f"Billing record is {record.status.value}; only Paid records can be refunded")
        value = _money(amount, "amount")
        if value <= 0:
            raise ValidationError("Refund amount must be greater than zero")
        paid = Decimal(record.amount_paid or 0)
        if value > paid:
            raise ValidationError(f"Refund amount {value} exceeds the paid amount {paid}")

        refunds = []
        failure = None
        for transaction_ref, part, charge in self._refund_plan(record, value):
            outcome = self.gateway.refund(transaction_ref, part)
            if not outcome.success:
                failure = outcome.error_message or "Refund was declined by the payment provider"
                break
            refunds.append((part, outcome.refund_id))
            if charge is not None:
                charge.refunded_amount = round_currency(Decimal(charge.refunded_amount or 0) + part)
        if not refunds:
            raise GatewayError(failure)

        refunded = round_currency(sum((part for part, _ in refunds), Decimal("0")))
        reason = clean_str(reason, 500) or "Refund"
        self._transition(record, BillingStatus.REFUNDED)
        self._touch(record, ctx)
        for part, refund_id in refunds:
            record.adjustments.append(BillingAdjustment(
                type=AdjustmentType.REFUND,
                amount=-part,
                reason=reason,
                applied_by=ctx.user_id,
                reference=refund_id,
            ))
        refund_ids = tuple(refund_id for _, refund_id in refunds if refund_id)
        self.events.emit(REFUND_ISSUED, actor_id=ctx.user_id, subject_id=record.id,
                         amount=refunded, refund_ids=list(refund_ids))
        db.session.commit()

        if failure is not None:
            # Earlier slices already went through at the gateway and are kept
            log.error("refund for billing record %s stopped after %s of %s: %s", record.id, refunded, value, failure)
            raise GatewayError(f"Refund partially processed: {refunded} of {value} refunded; {failure}")

        return ServiceResult.success(
            RefundResult(
                billing_record_id=record.id,
                refund_id=refund_ids[0] if refund_ids else None,
                amount=refunded,
                status=record.status.value,
                reason=reason,
                processed_at=record.updated_date,
                refund_ids=refund_ids,
            ),
            "Refund processed successfully",
        )

    # ------------------------------------------------------------------ adjustments

    @service_operation
    def apply_adjustment(self, ctx: CallerContext, record_id: str, amount: Any, reason: str,
                         adjustment_type: AdjustmentType | str = AdjustmentType.CREDIT) -> ServiceResult:
        record = self.require_record(record_id)
        if isinstance(adjustment_type, str) and not isinstance(adjustment_type, AdjustmentType):
            try:
                adjustment_type = AdjustmentType(adjustment_type)
            except ValueError:
                raise ValidationError(f"Unknown adjustment type: {adjustment_type}")
        reason = clean_str(reason, 500)
        if not reason:
            raise ValidationError("reason is required")
        value = _money(amount, "amount", allow_negative=True)
        if adjustment_type in _CREDIT_TYPES:
            value = -abs(value)
        elif adjustment_type in _FEE_TYPES:
            value = abs(value)

        adjustment = BillingAdjustment(
            type=adjustment_type,
            amount=round_currency(value),
            reason=reason,
            applied_by=ctx.user_id,
            applied_at=utcnow(),
        )
        record.adjustments.append(adjustment)
        self._touch(record, ctx)
        db.session.flush()
        self.events.emit(ADJUSTMENT_APPLIED, actor_id=ctx.user_id, subject_id=record.id,
                         amount=adjustment.amount, type=adjustment_type.value)
        db.session.commit()
        data = adjustment.to_dict()
        data["adjusted_amount"] = record.adjusted_amount
        return ServiceResult.created(data, "Adjustment applied successfully")

    @service_operation
    def get_adjustments(self, ctx: CallerContext, record_id: str) -> ServiceResult:
        record = self.require_record(record_id)
        return ServiceResult.success([a.to_dict() for a in record.adjustments],
                                     meta={"adjusted_amount": record.adjusted_amount})

    # ------------------------------------------------------------------ arithmetic

    @service_operation
    def calculate_total_amount(self, ctx: CallerContext, base: Any, tax: Any = 0, shipping: Any = 0) -> ServiceResult:
        total = calculations.calculate_total(
            _money(base, "base"), _optional_money(tax, "tax"), _optional_money(shipping, "shipping")
        )
        return ServiceResult.success(total)

    @service_operation
    def calculate_tax_amount(self, ctx: CallerContext, base: Any, jurisdiction: str | None = None) -> ServiceResult:
        tax = calculations.calculate_tax(
            _money(base, "base"), jurisdiction,
            self._config("BILLING_TAX_RATES"), self._config("BILLING_DEFAULT_TAX_RATE", "0.06"),
        )
        return ServiceResult.success(tax)

    @service_operation
    def calculate_shipping_amount(self, ctx: CallerContext, address: str | None = None,
                                  express: bool = False) -> ServiceResult:
        # Flat-rate: the delivery address does not affect the price yet
        shipping = calculations.calculate_shipping(
            express,
            self._config("BILLING_BASE_SHIPPING", calculations.BASE_SHIPPING),
            self._config("BILLING_EXPRESS_MULTIPLIER", calculations.EXPRESS_MULTIPLIER),
        )
        return ServiceResult.success(shipping)

    @service_operation
    def calculate_due_date(self, ctx: CallerContext, billing_date: datetime | str,
                           grace_days: int | None = None) -> ServiceResult:
        start = _date(billing_date, "billing_date")
        if start is None:
            raise ValidationError("billing_date is required")
        if grace_days is None:
            grace_days = self._config("BILLING_GRACE_PERIOD_DAYS", 7)
        if int(grace_days) < 0:
            raise ValidationError("grace_days must not be negative")
        return ServiceResult.success(calculations.calculate_due_date(start, int(grace_days)))

    @service_operation
    def calculate_prorated_amount(self, ctx: CallerContext, amount: Any,
                                  effective_date: datetime | str | None = None) -> ServiceResult:
        when = _date(effective_date, "effective_date") or utcnow()
        return ServiceResult.success(calculations.prorated_amount(_money(amount, "amount"), when))

    @service_operation
    def is_payment_overdue(self, ctx: CallerContext, record_id: str) -> ServiceResult:
        return ServiceResult.success(self.require_record(record_id).is_overdue)

    # ------------------------------------------------------------------ reporting

    @service_operation
    def get_billing_summary(self, ctx: CallerContext, user_id: int,
                            start_date: datetime | str | None = None,
                            end_date: datetime | str | None = None) -> ServiceResult:
        start = _date(start_date, "start_date")
        end = _date(end_date, "end_date")
        rows = self.records.for_user(user_id, start, end)

        def _sum(status: BillingStatus | None = None) -> Decimal:
            return sum(
                (Decimal(r.amount) for r in rows if status is None or r.status == status),
                Decimal("0"),
            )

        created = [r.created_date for r in rows]
        summary = BillingSummary(
            user_id=user_id,
            total_billing_records=len(rows),
            total_amount=_sum(),
            paid_amount=_sum(BillingStatus.PAID),
            pending_amount=_sum(BillingStatus.PENDING),
            failed_amount=_sum(BillingStatus.FAILED),
            refunded_amount=_sum(BillingStatus.REFUNDED),
            start_date=start or (min(created) if created else None),
            end_date=end or (max(created) if created else None),
        )
        return ServiceResult.success(summary)

    @service_operation
    def get_payment_history(self, ctx: CallerContext, user_id: int,
                            start_date: datetime | str | None = None,
                            end_date: datetime | str | None = None) -> ServiceResult:
        rows = self.records.for_user(user_id, _date(start_date, "start_date"), _date(end_date, "end_date"))
        history = [
            {
                "id": r.id,
                "user_id": r.user_id,
                "subscription_id": r.subscription_id,
                "amount": r.total_amount,
                "amount_paid": r.amount_paid,
                "currency": r.currency,
                "payment_method": r.payment_method or "Unknown",
                "status": r.effective_status.value,
                "transaction_id": r.transaction_id,
                "error_message": r.error_message,
                "created_date": r.created_date,
                "paid_at": r.paid_at,
            }
            for r in rows
        ]
        return ServiceResult.success(history, meta={"total": len(history)})

    @service_operation
    def export_billing_records(self, ctx: CallerContext, format: str = "csv",
                               user_id: int | None = None,
                               start_date: datetime | str | None = None,
                               end_date: datetime | str | None = None) -> ServiceResult:
        params = RecordQuery(
            page=1,
            page_size=10_000,
            user_ids=[user_id] if user_id is not None else [],
            start_date=_date(start_date, "start_date"),
            end_date=_date(end_date, "end_date"),
        )
        rows, total = self.records.search(params)
        if total > len(rows):
            log.warning("billing export truncated to %d of %d records", len(rows), total)
        return ServiceResult.success(export_records(rows, format), meta={"total": len(rows)})

    # ------------------------------------------------------------------ not built

    @service_operation
    def process_bundle_payment(self, ctx: CallerContext, details: Mapping[str, Any]) -> ServiceResult:
        return ServiceResult.not_implemented("Bundle payment")

    @service_operation
    def generate_invoice_pdf(self, ctx: CallerContext, record_id: str) -> ServiceResult:
        return ServiceResult.not_implemented("Invoice PDF generation")

    @service_operation
    def process_billing_cycle(self, ctx: CallerContext, billing_cycle_id: str) -> ServiceResult:
        return ServiceResult.not_implemented("Billing cycle processing")
