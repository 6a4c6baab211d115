import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from datetime import timedelta
from decimal import Decimal

import pytest
from telehealth_billing import create_app
from telehealth_billing.extensions import db
from telehealth_billing.models import BillingRecord, BillingStatus, BillingType, Subscription, SubscriptionStatus
from telehealth_billing.services.analytics import AnalyticsService
from telehealth_billing.services.billing_engine import BillingEngine
from telehealth_billing.services.gateway import ChargeResult, PaymentGateway, RefundOutcome
from telehealth_billing.services.invoices import InvoiceService
from telehealth_billing.services.recurring import RecurringBillingService
from telehealth_billing.services.tokens import CallerContext
from telehealth_billing.utils.helpers import utcnow


class FakeGateway(PaymentGateway):
    """Records every call; flip fail_charges / fail_refunds to simulate declines."""

    def __init__(self):
        self.charges = []
        self.refunds = []
        self.fail_charges = False
        self.fail_refunds = False
        self.failing_refund_transactions = set()
        self.on_charge = None

    def charge(self, payment_method_ref, amount, currency, idempotency_key=None):
        self.charges.append({
            "payment_method": payment_method_ref,
            "amount": amount,
            "currency": currency,
            "idempotency_key": idempotency_key,
        })
        if self.on_charge is not None:
            self.on_charge()
        if self.fail_charges:
            return ChargeResult(success=False, error_message="Card declined")
        return ChargeResult(success=True, transaction_id=f"pi_test_{len(self.charges)}")

    def refund(self, transaction_ref, amount):
        self.refunds.append({"transaction": transaction_ref, "amount": amount})
        if self.fail_refunds or transaction_ref in self.failing_refund_transactions:
            return RefundOutcome(success=False, error_message="Refund declined")
        return RefundOutcome(success=True, refund_id=f"re_test_{len(self.refunds)}")


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        SECRET_KEY="test-secret",
        BILLING_GRACE_PERIOD_DAYS=7,
        BILLING_DEFAULT_CADENCE_DAYS=30,
        BILLING_MAX_PAYMENT_RETRIES=3,
        BILLING_ANALYTICS_LOOKBACK_MONTHS=12,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()

@pytest.fixture()
def app_ctx(app):
    with app.app_context():
        yield app

@pytest.fixture()
def caller():
    return CallerContext(user_id=7, role="admin")

@pytest.fixture()
def gateway():
    return FakeGateway()

@pytest.fixture()
def engine(app_ctx, gateway):
    return BillingEngine(gateway=gateway)

@pytest.fixture()
def recurring(engine):
    return RecurringBillingService(engine)

@pytest.fixture()
def invoices(engine):
    return InvoiceService(engine)

@pytest.fixture()
def analytics(app_ctx):
    return AnalyticsService()

@pytest.fixture()
def make_subscription(app_ctx):
    def _make(**overrides):
        now = utcnow()
        fields = dict(
            user_id=100,
            plan_id="plan_basic",
            plan_name="Basic",
            status=SubscriptionStatus.ACTIVE,
            current_price=Decimal("49.99"),
            currency="USD",
            payment_method_id="pm_card_visa",
            start_date=now - timedelta(days=60),
            next_billing_date=now - timedelta(hours=1),
        )
        fields.update(overrides)
        sub = Subscription(**fields)
        db.session.add(sub)
        db.session.commit()
        return sub
    return _make

@pytest.fixture()
def make_record(app_ctx):
    """Insert a record directly, bypassing the engine (for analytics/history fixtures)."""
    def _make(**overrides):
        now = utcnow()
        amount = Decimal(str(overrides.pop("amount", "100.00")))
        fields = dict(
            user_id=100,
            amount=amount,
            tax_amount=Decimal("0"),
            shipping_amount=Decimal("0"),
            total_amount=amount,
            amount_paid=Decimal("0"),
            currency="USD",
            status=BillingStatus.PENDING,
            type=BillingType.ONE_TIME,
            billing_date=now,
            created_date=now,
            updated_date=now,
        )
        fields.update(overrides)
        if fields["status"] in (BillingStatus.PAID, BillingStatus.REFUNDED):
            fields.setdefault("paid_at", fields["created_date"])
            if "amount_paid" not in overrides:
                fields["amount_paid"] = fields["total_amount"]
        record = BillingRecord(**fields)
        db.session.add(record)
        db.session.commit()
        return record
    return _make
