from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from telehealth_billing.services.gateway import StripeGateway, make_idempotency_key


class _FakePaymentIntents:
    def __init__(self, calls, status="succeeded", error=None):
        self.calls = calls
        self.status = status
        self.error = error

    def create(self, params, options=None):
        self.calls.append(("payment_intent", params, options))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(id="pi_123", status=self.status)


class _FakeRefunds:
    def __init__(self, calls, status="succeeded"):
        self.calls = calls
        self.status = status

    def create(self, params, options=None):
        self.calls.append(("refund", params, options))
        return SimpleNamespace(id="re_123", status=self.status)


@pytest.fixture()
def stripe_calls(app, monkeypatch):
    calls = []
    state = {"intent_status": "succeeded", "intent_error": None, "refund_status": "succeeded"}

    class _FakeClient:
        def __init__(self, key):
            assert key == "sk_test_x"

        @property
        def payment_intents(self):
            return _FakePaymentIntents(calls, state["intent_status"], state["intent_error"])

        @property
        def refunds(self):
            return _FakeRefunds(calls, state["refund_status"])

    monkeypatch.setattr("telehealth_billing.services.gateway.StripeClient", _FakeClient)
    app.config["STRIPE_SECRET_KEY"] = "sk_test_x"
    yield calls, state
    app.config["STRIPE_SECRET_KEY"] = None


def test_charge_sends_cents_and_idempotency_key(app, stripe_calls):
    calls, _ = stripe_calls
    with app.app_context():
        result = StripeGateway().charge("pm_card_visa", Decimal("19.99"), "USD", idempotency_key="billing:abc")
    assert result.success is True
    assert result.transaction_id == "pi_123"
    kind, params, options = calls[0]
    assert kind == "payment_intent"
    assert params["amount"] == 1999
    assert params["currency"] == "usd"
    assert params["confirm"] is True
    assert options == {"idempotency_key": "billing:abc"}


def test_charge_stripe_error_is_a_failed_result(app, stripe_calls):
    _, state = stripe_calls
    state["intent_error"] = stripe.CardError("Your card was declined.", param=None, code="card_declined")
    with app.app_context():
        result = StripeGateway().charge("pm_card_visa", Decimal("5"), "usd")
    assert result.success is False
    assert "declined" in result.error_message


def test_charge_requires_action_is_not_success(app, stripe_calls):
    _, state = stripe_calls
    state["intent_status"] = "requires_action"
    with app.app_context():
        result = StripeGateway().charge("pm_card_visa", Decimal("5"), "usd")
    assert result.success is False
    assert "requires_action" in result.error_message


def test_charge_without_payment_method_never_calls_stripe(app, stripe_calls):
    calls, _ = stripe_calls
    with app.app_context():
        result = StripeGateway().charge(None, Decimal("5"), "usd")
    assert result.success is False
    assert calls == []


def test_refund_maps_status(app, stripe_calls):
    calls, state = stripe_calls
    with app.app_context():
        ok = StripeGateway().refund("pi_123", Decimal("2.50"))
        state["refund_status"] = "failed"
        bad = StripeGateway().refund("pi_123", Decimal("2.50"))
    assert ok.success is True and ok.refund_id == "re_123"
    assert bad.success is False
    assert calls[0][1] == {"payment_intent": "pi_123", "amount": 250}
    assert calls[0][2]["idempotency_key"] == make_idempotency_key("refund", "pi_123", 250)


def test_missing_secret_key_raises(app):
    with app.app_context():
        with pytest.raises(RuntimeError):
            StripeGateway().charge("pm_card_visa", Decimal("1"), "usd")
