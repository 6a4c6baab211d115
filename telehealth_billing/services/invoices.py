from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from sqlalchemy.exc import IntegrityError

from telehealth_billing.extensions import db
from telehealth_billing.models import BillingRecord, BillingStatus, BillingType
from telehealth_billing.models.statuses import can_transition
from telehealth_billing.utils.helpers import utcnow

from .billing_engine import BillingEngine
from .errors import ConflictError, NotFoundError, ValidationError
from .events import INVOICE_STATUS_CHANGED, RECORD_CREATED
from .results import ServiceResult, service_operation
from .tokens import CallerContext

log = logging.getLogger(__name__)

MAX_NUMBER_ATTEMPTS = 5


@dataclass(frozen=True)
class InvoiceDto:
    id: str
    invoice_number: str
    user_id: int
    amount: Decimal
    currency: str
    status: str
    billing_date: datetime
    due_date: Optional[datetime]
    paid_at: Optional[datetime]
    description: Optional[str]

    @classmethod
    def from_record(cls, record: BillingRecord) -> "InvoiceDto":
        return cls(
            id=record.id,
            invoice_number=record.invoice_number,
            user_id=record.user_id,
            amount=record.total_amount,
            currency=record.currency,
            status=record.effective_status.value,
            billing_date=record.billing_date,
            due_date=record.due_date,
            paid_at=record.paid_at,
            description=record.description,
        )


def new_invoice_number(now: datetime | None = None) -> str:
    """INV-<yyyymmdd>-<8 uppercase hex>."""
    now = now or utcnow()
    return f"INV-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


class InvoiceService:
    def __init__(self, engine: BillingEngine | None = None):
        self.engine = engine or BillingEngine()

    @property
    def records(self):
        return self.engine.records

    def _require_invoice(self, invoice_number: str) -> BillingRecord:
        record = self.records.get_by_invoice_number(invoice_number) if invoice_number else None
        if record is None:
            raise NotFoundError("Invoice not found")
        return record

    def _unused_number(self) -> str:
        for _ in range(MAX_NUMBER_ATTEMPTS):
            candidate = new_invoice_number()
            if not self.records.invoice_number_exists(candidate):
                return candidate
        raise ConflictError("Could not allocate a unique invoice number")

    @service_operation
    def generate_invoice(self, ctx: CallerContext, record_id: str) -> ServiceResult:
        """Assign the record's invoice number once; later calls return the same number."""
        for _ in range(MAX_NUMBER_ATTEMPTS):
            record = self.engine.require_record(record_id)
            if record.invoice_number:
                return ServiceResult.success(InvoiceDto.from_record(record))
            record.invoice_number = self._unused_number()
            record.updated_by = ctx.user_id
            try:
                db.session.commit()
            except IntegrityError:
                # Lost a race on the unique index; draw again
                db.session.rollback()
                log.info("invoice number collision for record %s, retrying", record_id)
                continue
            log.info("invoice %s assigned to billing record %s", record.invoice_number, record.id)
            return ServiceResult.success(InvoiceDto.from_record(record), "Invoice generated successfully")
        raise ConflictError("Could not allocate a unique invoice number")

    @service_operation
    def get_invoice(self, ctx: CallerContext, invoice_number: str) -> ServiceResult:
        return ServiceResult.success(InvoiceDto.from_record(self._require_invoice(invoice_number)))

    @service_operation
    def update_invoice_status(self, ctx: CallerContext, invoice_number: str, new_status: str) -> ServiceResult:
        target = BillingStatus.parse(new_status)
        if target is None:
            raise ValidationError(f"Unrecognized invoice status: {new_status}")
        record = self._require_invoice(invoice_number)
        if target == BillingStatus.OVERDUE:
            raise ConflictError("Overdue is derived from the due date and cannot be set")
        previous = record.status
        if not can_transition(previous, target):
            raise ConflictError(f"Cannot move invoice from {previous.value} to {target.value}")

        record.status = target
        if target == BillingStatus.PAID:
            record.paid_at = utcnow()
            record.amount_paid = record.total_amount
        record.updated_by = ctx.user_id
        record.updated_date = utcnow()
        self.engine.events.emit(INVOICE_STATUS_CHANGED, actor_id=ctx.user_id, subject_id=record.id,
                                invoice_number=invoice_number, previous=previous.value, status=target.value)
        db.session.commit()
        return ServiceResult.success(InvoiceDto.from_record(record), "Invoice status updated successfully")

    @service_operation
    def create_invoice(self, ctx: CallerContext, details: Mapping[str, Any]) -> ServiceResult:
        record = self.engine.build_record(ctx, details, default_type=BillingType.INVOICE)
        if record.invoice_number:
            if self.records.invoice_number_exists(record.invoice_number):
                raise ConflictError(f"Invoice number {record.invoice_number} is already in use")
        else:
            record.invoice_number = self._unused_number()
        self.records.add(record)
        self.engine.events.emit(RECORD_CREATED, actor_id=ctx.user_id, subject_id=record.id,
                                amount=record.total_amount, invoice_number=record.invoice_number)
        db.session.commit()
        return ServiceResult.created(InvoiceDto.from_record(record), "Invoice created successfully")
