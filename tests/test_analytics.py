from datetime import datetime, timedelta
from decimal import Decimal

from telehealth_billing.models import AdjustmentType, BillingAdjustment, BillingStatus, SubscriptionStatus
from telehealth_billing.extensions import db
from telehealth_billing.services import analytics as an
from telehealth_billing.utils.helpers import utcnow

START = datetime(2026, 1, 1)
END = datetime(2026, 7, 1)


def test_payment_analytics_success_rate_scenario(analytics, caller, make_record):
    when = datetime(2026, 3, 10)
    for amount in ("10", "20", "30"):
        make_record(amount=amount, status=BillingStatus.PAID, created_date=when)
    make_record(amount="15", status=BillingStatus.FAILED, created_date=when)
    make_record(amount="25", status=BillingStatus.FAILED, created_date=when)

    res = analytics.get_payment_analytics(caller, START, END)
    assert res.status_code == 200
    p = res.data
    assert p.successful_transactions == 3
    assert p.failed_transactions == 2
    assert p.total_payments == Decimal("60")
    assert p.success_rate == Decimal("60")
    assert p.failed_amount == Decimal("40")
    assert p.average_payment == Decimal("20")


def test_payment_analytics_breakdowns(analytics, caller, make_record):
    make_record(amount="10", status=BillingStatus.PAID, payment_method="card", created_date=datetime(2026, 2, 3))
    make_record(amount="10", status=BillingStatus.FAILED, payment_method="card", created_date=datetime(2026, 2, 4))
    make_record(amount="10", status=BillingStatus.PAID, payment_method="ach", created_date=datetime(2026, 1, 9))
    make_record(amount="10", status=BillingStatus.PENDING, created_date=datetime(2026, 1, 9))
    refunded = make_record(amount="40", status=BillingStatus.REFUNDED, payment_method="ach",
                           created_date=datetime(2026, 3, 1))
    db.session.add(BillingAdjustment(billing_record_id=refunded.id, type=AdjustmentType.REFUND,
                                     amount=Decimal("-15"), reason="partial"))
    db.session.commit()

    p = analytics.get_payment_analytics(caller, START, END).data
    assert [m.month for m in p.monthly] == ["2026-01", "2026-02", "2026-03"]
    assert p.monthly[1].failed_transactions == 1
    assert [(m.method, m.success_rate) for m in p.by_payment_method] == [
        ("ach", Decimal("50")),
        ("card", Decimal("50")),
        ("Unknown", Decimal("0")),
    ]
    assert p.total_transactions == 5
    assert p.total_amount == Decimal("80")
    assert p.total_payments == Decimal("20")
    assert p.total_refunds == Decimal("15")
    assert p.net_payments == Decimal("45")
    assert p.by_status[0].label == "Paid"


def test_payment_analytics_counts_every_record_as_a_transaction(analytics, caller, make_record):
    when = datetime(2026, 4, 2)
    for _ in range(3):
        make_record(amount="10", status=BillingStatus.PAID, created_date=when)
    for _ in range(2):
        make_record(amount="10", status=BillingStatus.FAILED, created_date=when)
    for _ in range(5):
        make_record(amount="10", status=BillingStatus.PENDING, created_date=when)
    make_record(amount="10", status=BillingStatus.REFUNDED, created_date=when)

    p = analytics.get_payment_analytics(caller, START, END).data
    assert p.total_transactions == 11
    assert p.successful_transactions == 3
    assert p.failed_transactions == 2
    assert p.success_rate == Decimal("27.27")
    assert p.total_payments == Decimal("30")
    assert p.total_amount == Decimal("110")
    # No refund lines on the record, so its whole amount counts as refunded
    assert p.total_refunds == Decimal("10")
    assert p.monthly[0].total_transactions == 11


def test_payment_analytics_per_user(analytics, caller, make_record):
    make_record(amount="10", status=BillingStatus.PAID, user_id=1, created_date=datetime(2026, 2, 1))
    make_record(amount="99", status=BillingStatus.PAID, user_id=2, created_date=datetime(2026, 2, 1))
    p = analytics.get_payment_analytics(caller, START, END, user_id=1).data
    assert p.total_payments == Decimal("10")
    assert p.user_id == 1


def test_revenue_counts_paid_amounts_in_window(analytics, caller, make_record):
    make_record(amount="100", tax_amount=Decimal("8"), total_amount=Decimal("108"),
                status=BillingStatus.PAID, created_date=datetime(2026, 1, 15))
    make_record(amount="50", status=BillingStatus.PAID, created_date=datetime(2026, 3, 15))
    make_record(amount="70", status=BillingStatus.PENDING, created_date=datetime(2026, 3, 16))
    make_record(amount="500", status=BillingStatus.PAID, created_date=datetime(2026, 7, 1))  # end is exclusive

    r = analytics.get_revenue_analytics(caller, START, END).data
    assert r.total_revenue == Decimal("150")
    assert r.paid_transactions == 2
    assert r.average_order_value == Decimal("75")
    # 181 days in Jan..Jun 2026
    assert r.revenue_per_day == Decimal("0.83")
    assert [(m.month, m.amount) for m in r.monthly_revenue] == [("2026-01", Decimal("100")), ("2026-03", Decimal("50"))]


def test_revenue_per_day_for_partial_day_windows(analytics, caller, make_record):
    make_record(amount="100", status=BillingStatus.PAID, created_date=datetime(2026, 5, 1, 6, 0))

    half_day = analytics.get_revenue_analytics(caller, datetime(2026, 5, 1), datetime(2026, 5, 1, 12, 0)).data
    assert half_day.total_revenue == Decimal("100")
    assert half_day.revenue_per_day == Decimal("100")

    # 1.9 days touches two days
    longer = analytics.get_revenue_analytics(caller, datetime(2026, 5, 1), datetime(2026, 5, 2, 21, 36)).data
    assert longer.revenue_per_day == Decimal("50")


def test_churn_for_empty_window_is_zero(analytics, caller):
    c = analytics.get_churn_analytics(caller, START, END).data
    assert c.churn_rate == 0
    assert c.churn_by_plan == []
    assert c.churn_reasons == []


def test_churn_groups_by_plan_month_and_reason(analytics, caller, make_subscription):
    before = datetime(2025, 6, 1)
    for _ in range(3):
        make_subscription(plan_name="Basic", start_date=before)
    make_subscription(plan_name="Basic", start_date=before, status=SubscriptionStatus.CANCELLED,
                      cancelled_date=datetime(2026, 2, 10), cancellation_reason="Too expensive")
    make_subscription(plan_name="Premium", start_date=before, status=SubscriptionStatus.CANCELLED,
                      cancelled_date=datetime(2026, 4, 2))
    make_subscription(plan_name="Premium", start_date=before, status=SubscriptionStatus.CANCELLED,
                      cancelled_date=datetime(2026, 2, 20), cancellation_reason="  ")

    c = analytics.get_churn_analytics(caller, START, END).data
    assert c.active_at_start == 6
    assert c.cancelled_in_period == 3
    assert c.churn_rate == Decimal("50")
    assert [(p.plan, p.churn_rate) for p in c.churn_by_plan] == [("Premium", Decimal("100")), ("Basic", Decimal("25"))]
    assert [(m.month, m.count) for m in c.churn_by_month] == [("2026-02", 2), ("2026-04", 1)]
    assert [(r.label, r.count) for r in c.churn_reasons] == [(an.NO_REASON, 2), ("Too expensive", 1)]


def test_subscription_analytics(analytics, caller, make_subscription):
    before = datetime(2025, 12, 1)
    make_subscription(user_id=1, plan_name="Basic", start_date=before, current_price=Decimal("10"))
    make_subscription(user_id=1, plan_name="Premium", start_date=datetime(2026, 2, 1), current_price=Decimal("30"))
    make_subscription(user_id=2, plan_name="Basic", start_date=datetime(2026, 3, 1), current_price=Decimal("20"))
    make_subscription(user_id=3, plan_name="Basic", start_date=before, status=SubscriptionStatus.TRIAL_ACTIVE)
    make_subscription(user_id=4, plan_name="Premium", start_date=datetime(2026, 8, 1))  # after window

    s = analytics.get_subscription_analytics(caller, START, END).data
    assert s.subscriptions.total_subscriptions == 4
    assert s.subscriptions.active_subscriptions == 3
    assert s.subscriptions.activation_rate == Decimal("75")
    assert s.subscriptions.trial_conversion_rate == Decimal("300")
    assert s.growth.total_at_start == 2
    assert s.growth.new_subscriptions == 2
    assert s.growth.growth_rate == Decimal("100")
    assert [(p.label, p.count) for p in s.plan_distribution] == [("Basic", 3), ("Premium", 1)]
    assert [(r.plan, r.retention_rate) for r in s.retention_by_plan] == [
        ("Premium", Decimal("100")),
        ("Basic", Decimal("66.67")),
    ]
    # (10 + 30 + 20) / 2 distinct active customers
    assert s.customer_lifetime_value == Decimal("30")


def test_billing_analytics(analytics, caller, make_record):
    when = utcnow() - timedelta(days=10)
    make_record(amount="100", status=BillingStatus.PAID, created_date=when)
    make_record(amount="50", status=BillingStatus.PENDING, created_date=when, due_date=utcnow() - timedelta(days=1))
    make_record(amount="25", status=BillingStatus.PENDING, created_date=when, due_date=utcnow() + timedelta(days=5),
                amount_paid=Decimal("5"))

    b = analytics.get_billing_analytics(caller).data
    assert b.total_records == 3
    assert b.total_billed == Decimal("175")
    assert b.total_collected == Decimal("105")
    assert b.outstanding_amount == Decimal("70")
    assert b.overdue_records == 1
    assert b.overdue_amount == Decimal("50")


def test_default_window_is_trailing_year(analytics, app_ctx):
    end = datetime(2026, 10, 17, 12, 0)
    start, got_end = analytics.window(None, end)
    assert start == datetime(2025, 10, 17, 12, 0)
    assert got_end == end


def test_inverted_window_is_validation_error(analytics, caller):
    res = analytics.get_revenue_analytics(caller, END, START)
    assert res.status_code == 400


def test_unbuilt_revenue_operations(analytics, caller):
    assert analytics.get_revenue_summary(caller).status_code == 501
    assert analytics.export_revenue(caller).status_code == 501
