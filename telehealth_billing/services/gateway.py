from __future__ import annotations

import abc
import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe
from flask import current_app
from stripe import StripeClient

from telehealth_billing.utils.helpers import to_cents

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class RefundOutcome:
    success: bool
    refund_id: Optional[str] = None
    error_message: Optional[str] = None


class PaymentGateway(abc.ABC):
    """Charges and refunds against an external payment provider."""

    @abc.abstractmethod
    def charge(self, payment_method_ref: str | None, amount: Decimal, currency: str,
               idempotency_key: str | None = None) -> ChargeResult:
        ...

    @abc.abstractmethod
    def refund(self, transaction_ref: str, amount: Decimal) -> RefundOutcome:
        ...


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(str(p) for p in parts)
    return "billing:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


class StripeGateway(PaymentGateway):
    """PaymentIntents for charges, Refunds for refunds. Amounts go over the wire in cents."""

    def __init__(self, api_key: str | None = None):
        self._api_key = api_key

    def _client(self) -> StripeClient:
        key = self._api_key or current_app.config.get("STRIPE_SECRET_KEY")
        if not key:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")
        return StripeClient(key)

    def charge(self, payment_method_ref, amount, currency, idempotency_key=None) -> ChargeResult:
        if not payment_method_ref:
            return ChargeResult(success=False, error_message="No payment method on file")

        params: Dict[str, Any] = {
            "amount": to_cents(amount),
            "currency": currency.lower(),
            "payment_method": payment_method_ref,
            "confirm": True,
            "off_session": True,
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            intent = self._client().payment_intents.create(params=params, options=options)
        except stripe.StripeError as exc:
            log.warning("stripe charge failed: %s", exc)
            return ChargeResult(success=False, error_message=getattr(exc, "user_message", None) or str(exc))

        if getattr(intent, "status", None) != "succeeded":
            return ChargeResult(
                success=False,
                transaction_id=intent.id,
                error_message=f"Payment not completed (status={intent.status})",
            )
        return ChargeResult(success=True, transaction_id=intent.id)

    def refund(self, transaction_ref, amount) -> RefundOutcome:
        params = {"payment_intent": transaction_ref, "amount": to_cents(amount)}
        idem = make_idempotency_key("refund", transaction_ref, to_cents(amount))
        try:
            refund = self._client().refunds.create(params=params, options={"idempotency_key": idem})
        except stripe.StripeError as exc:
            log.warning("stripe refund failed: %s", exc)
            return RefundOutcome(success=False, error_message=getattr(exc, "user_message", None) or str(exc))

        if getattr(refund, "status", None) in ("failed", "canceled"):
            return RefundOutcome(success=False, refund_id=refund.id, error_message=f"Refund {refund.status}")
        return RefundOutcome(success=True, refund_id=refund.id)
