from datetime import timedelta
from decimal import Decimal

from sqlalchemy import update

from telehealth_billing.extensions import db
from telehealth_billing.models import AdjustmentType, BillingEventLog, BillingRecord, BillingStatus
from telehealth_billing.utils.helpers import utcnow


def _create(engine, caller, **details):
    payload = {"user_id": 100, "amount": "100.00", "payment_method": "pm_card_visa"}
    payload.update(details)
    res = engine.create_billing_record(caller, payload)
    assert res.status_code == 201, res.message
    return res.data


def test_create_sets_pending_totals_and_audit_fields(engine, caller):
    data = _create(engine, caller, tax_amount="8.25", shipping_amount="5.99")
    assert data["status"] == "Pending"
    assert data["total_amount"] == Decimal("114.24")
    assert data["paid_at"] is None

    rec = db.session.get(BillingRecord, data["id"])
    assert rec.created_by == 7
    assert rec.is_active is True
    assert rec.due_date == rec.billing_date + timedelta(days=7)


def test_create_computes_tax_from_jurisdiction(engine, caller):
    data = _create(engine, caller, jurisdiction="CA")
    assert data["tax_amount"] == Decimal("8.25")
    assert data["total_amount"] == Decimal("108.25")


def test_create_rejects_negative_amount_and_missing_user(engine, caller):
    res = engine.create_billing_record(caller, {"user_id": 1, "amount": "-1"})
    assert res.status_code == 400
    res = engine.create_billing_record(caller, {"amount": "10"})
    assert res.status_code == 400
    assert "user_id" in res.message
    assert BillingRecord.query.count() == 0


def test_create_with_unknown_subscription_is_not_found(engine, caller):
    res = engine.create_billing_record(caller, {"user_id": 1, "amount": "10", "subscription_id": "nope"})
    assert res.status_code == 404


def test_process_payment_marks_paid(engine, caller, gateway):
    data = _create(engine, caller)
    res = engine.process_payment(caller, data["id"])
    assert res.status_code == 200
    assert res.data["status"] == "Paid"
    assert res.data["paid_at"] is not None
    assert res.data["transaction_id"] == "pi_test_1"
    assert gateway.charges[0]["amount"] == Decimal("100.00")
    assert gateway.charges[0]["idempotency_key"].startswith("billing:")

    again = engine.get_billing_record(caller, data["id"])
    assert again.data["status"] == "Paid"
    assert BillingEventLog.query.filter_by(type="payment.succeeded", subject_id=data["id"]).count() == 1


def test_process_payment_failure_marks_failed_without_error_envelope(engine, caller, gateway):
    gateway.fail_charges = True
    data = _create(engine, caller)
    res = engine.process_payment(caller, data["id"])
    assert res.status_code == 200
    assert res.data["status"] == "Failed"
    assert res.data["error_message"] == "Card declined"
    assert res.data["paid_at"] is None


def test_process_payment_requires_pending(engine, caller):
    data = _create(engine, caller)
    engine.process_payment(caller, data["id"])
    res = engine.process_payment(caller, data["id"])
    assert res.status_code == 409


def test_process_payment_unknown_record(engine, caller):
    assert engine.process_payment(caller, "missing").status_code == 404


def test_refund_full_then_over_refund_rejected(engine, caller, gateway):
    data = _create(engine, caller)
    engine.process_payment(caller, data["id"])

    too_much = engine.process_refund(caller, data["id"], "150")
    assert too_much.status_code == 400
    assert db.session.get(BillingRecord, data["id"]).status == BillingStatus.PAID

    res = engine.process_refund(caller, data["id"], "100", reason="Customer request")
    assert res.status_code == 200
    assert res.data.status == "Refunded"
    assert res.data.refund_id == "re_test_1"
    assert gateway.refunds == [{"transaction": "pi_test_1", "amount": Decimal("100")}]

    rec = db.session.get(BillingRecord, data["id"])
    assert rec.status == BillingStatus.REFUNDED
    assert rec.amount == Decimal("100.00")
    assert rec.paid_at is not None
    [adj] = rec.adjustments
    assert adj.type == AdjustmentType.REFUND
    assert adj.amount == Decimal("-100.00")

    # Refunded is terminal
    assert engine.process_refund(caller, data["id"], "1").status_code == 409


def test_refund_requires_paid_record(engine, caller):
    data = _create(engine, caller)
    assert engine.process_refund(caller, data["id"], "10").status_code == 409


def test_refund_gateway_failure_keeps_record_paid(engine, caller, gateway):
    data = _create(engine, caller)
    engine.process_payment(caller, data["id"])
    gateway.fail_refunds = True
    res = engine.process_refund(caller, data["id"], "50")
    assert res.status_code == 502
    assert db.session.get(BillingRecord, data["id"]).status == BillingStatus.PAID


def test_retry_failed_payment_returns_payment_result(engine, caller, gateway):
    gateway.fail_charges = True
    data = _create(engine, caller)
    engine.process_payment(caller, data["id"])

    gateway.fail_charges = False
    res = engine.retry_failed_payment(caller, data["id"])
    assert res.status_code == 200
    assert res.data.status == "Paid"
    assert res.data.transaction_id == "pi_test_2"
    assert res.data.amount == Decimal("100.00")
    assert db.session.get(BillingRecord, data["id"]).retry_count == 1
    # Each attempt uses a distinct idempotency key
    assert gateway.charges[0]["idempotency_key"] != gateway.charges[1]["idempotency_key"]


def test_retry_of_paid_record_is_conflict(engine, caller, gateway):
    data = _create(engine, caller)
    engine.process_payment(caller, data["id"])
    assert engine.retry_payment(caller, data["id"]).status_code == 409
    assert len(gateway.charges) == 1


def test_partial_payments_accumulate_until_paid(engine, caller, gateway):
    data = _create(engine, caller)
    first = engine.process_partial_payment(caller, data["id"], "40")
    assert first.data["status"] == "Pending"
    assert first.data["amount_paid"] == Decimal("40.00")

    over = engine.process_partial_payment(caller, data["id"], "60.01")
    assert over.status_code == 400

    second = engine.process_partial_payment(caller, data["id"], "60")
    assert second.data["status"] == "Paid"
    assert second.data["amount_paid"] == Decimal("100.00")
    assert second.data["paid_at"] is not None
    assert [c["amount"] for c in gateway.charges] == [Decimal("40"), Decimal("60")]


def test_refund_after_partial_payments_splits_across_charges(engine, caller, gateway):
    data = _create(engine, caller)
    engine.process_partial_payment(caller, data["id"], "60")
    engine.process_partial_payment(caller, data["id"], "40")

    res = engine.process_refund(caller, data["id"], "100")
    assert res.status_code == 200
    assert res.data.amount == Decimal("100.00")
    assert res.data.refund_ids == ("re_test_1", "re_test_2")
    # Newest charge first, never more than a charge collected
    assert gateway.refunds == [
        {"transaction": "pi_test_2", "amount": Decimal("40")},
        {"transaction": "pi_test_1", "amount": Decimal("60")},
    ]

    rec = db.session.get(BillingRecord, data["id"])
    assert rec.status == BillingStatus.REFUNDED
    assert sorted(a.amount for a in rec.adjustments) == [Decimal("-60.00"), Decimal("-40.00")]
    assert [c.refunded_amount for c in rec.charges] == [Decimal("60.00"), Decimal("40.00")]


def test_small_refund_after_partial_payments_hits_latest_charge_only(engine, caller, gateway):
    data = _create(engine, caller)
    engine.process_partial_payment(caller, data["id"], "60")
    engine.process_partial_payment(caller, data["id"], "40")

    res = engine.process_refund(caller, data["id"], "30")
    assert res.status_code == 200
    assert gateway.refunds == [{"transaction": "pi_test_2", "amount": Decimal("30")}]


def test_refund_stopping_midway_keeps_completed_slices(engine, caller, gateway):
    data = _create(engine, caller)
    engine.process_partial_payment(caller, data["id"], "60")
    engine.process_partial_payment(caller, data["id"], "40")
    gateway.failing_refund_transactions.add("pi_test_1")

    res = engine.process_refund(caller, data["id"], "100")
    assert res.status_code == 502
    assert "40.00 of 100" in res.message

    rec = db.session.get(BillingRecord, data["id"])
    assert rec.status == BillingStatus.REFUNDED
    [adj] = rec.adjustments
    assert adj.amount == Decimal("-40.00")
    assert adj.reference == "re_test_1"


def test_partial_payment_rejects_zero(engine, caller):
    data = _create(engine, caller)
    assert engine.process_partial_payment(caller, data["id"], "0").status_code == 400


def test_adjustments_do_not_touch_amount(engine, caller):
    data = _create(engine, caller)
    res = engine.apply_adjustment(caller, data["id"], "15", "Loyalty discount", AdjustmentType.DISCOUNT)
    assert res.status_code == 201
    assert res.data["amount"] == Decimal("-15.00")
    assert res.data["adjusted_amount"] == Decimal("85.00")

    engine.apply_adjustment(caller, data["id"], "5", "Late payment", "LateFee")
    listed = engine.get_adjustments(caller, data["id"])
    assert [a["type"] for a in listed.data] == ["Discount", "LateFee"]
    assert listed.meta["adjusted_amount"] == Decimal("90.00")
    assert db.session.get(BillingRecord, data["id"]).amount == Decimal("100.00")


def test_adjustment_requires_reason_and_known_type(engine, caller):
    data = _create(engine, caller)
    assert engine.apply_adjustment(caller, data["id"], "5", "").status_code == 400
    assert engine.apply_adjustment(caller, data["id"], "5", "x", "Bogus").status_code == 400


def test_is_payment_overdue_only_for_pending(engine, caller, make_record):
    past = utcnow() - timedelta(days=3)
    pending = make_record(due_date=past)
    failed = make_record(due_date=past, status=BillingStatus.FAILED)
    paid = make_record(due_date=past, status=BillingStatus.PAID)
    future = make_record(due_date=utcnow() + timedelta(days=3))

    assert engine.is_payment_overdue(caller, pending.id).data is True
    assert engine.is_payment_overdue(caller, failed.id).data is False
    assert engine.is_payment_overdue(caller, paid.id).data is False
    assert engine.is_payment_overdue(caller, future.id).data is False

    overdue = engine.get_overdue_billing_records(caller)
    assert [r["id"] for r in overdue.data] == [pending.id]
    assert overdue.data[0]["status"] == "Overdue"


def test_get_all_billing_records_filters_and_sorts(engine, caller, make_record):
    now = utcnow()
    old_paid = make_record(status=BillingStatus.PAID, created_date=now - timedelta(days=40))
    paid_a = make_record(status=BillingStatus.PAID, created_date=now - timedelta(days=5))
    paid_b = make_record(status=BillingStatus.PAID, created_date=now - timedelta(days=2))
    make_record(status=BillingStatus.FAILED, created_date=now - timedelta(days=3))

    res = engine.get_all_billing_records(
        caller,
        status=["Paid", "NotAStatus"],
        start_date=now - timedelta(days=10),
        end_date=now,
    )
    assert res.status_code == 200
    assert [r["id"] for r in res.data] == [paid_b.id, paid_a.id]
    assert res.meta["total"] == 2
    assert old_paid.id not in [r["id"] for r in res.data]

    asc = engine.get_all_billing_records(caller, sort_by="created_date", sort_order="asc", page_size=2)
    assert asc.meta == {"page": 1, "page_size": 2, "total": 4, "total_pages": 2}
    assert asc.data[0]["id"] == old_paid.id


def test_bad_paging_arguments_are_validation_errors(engine, caller):
    assert engine.get_all_billing_records(caller, page="abc").status_code == 400
    assert engine.get_all_billing_records(caller, page_size="ten").status_code == 400
    assert engine.get_all_billing_records(caller, page=0).status_code == 400
    ok = engine.get_all_billing_records(caller, page="2", page_size="5")
    assert ok.status_code == 200
    assert ok.meta["page"] == 2
    assert ok.meta["page_size"] == 5


def test_overdue_status_filter_matches_derived_rows(engine, caller, make_record):
    overdue = make_record(due_date=utcnow() - timedelta(days=1))
    make_record(due_date=utcnow() + timedelta(days=1))
    res = engine.get_all_billing_records(caller, status=["Overdue"])
    assert [r["id"] for r in res.data] == [overdue.id]


def test_billing_summary_and_history(engine, caller, make_record):
    make_record(amount="30", status=BillingStatus.PAID)
    make_record(amount="20", status=BillingStatus.PENDING)
    make_record(amount="10", status=BillingStatus.FAILED)
    make_record(amount="99", user_id=555)

    summary = engine.get_billing_summary(caller, 100).data
    assert summary.total_billing_records == 3
    assert summary.total_amount == Decimal("60")
    assert summary.paid_amount == Decimal("30")
    assert summary.pending_amount == Decimal("20")
    assert summary.failed_amount == Decimal("10")

    history = engine.get_payment_history(caller, 100)
    assert history.meta["total"] == 3
    assert {h["payment_method"] for h in history.data} == {"Unknown"}


def test_update_payment_method(engine, caller):
    data = _create(engine, caller)
    res = engine.update_payment_method(caller, data["id"], "pm_new")
    assert res.data["payment_method"] == "pm_new"
    assert engine.update_payment_method(caller, data["id"], " ").status_code == 400


def test_arithmetic_operations_return_envelopes(engine, caller):
    assert engine.calculate_total_amount(caller, "10.00", "0.83", "5.99").data == Decimal("16.82")
    assert engine.calculate_tax_amount(caller, "100", "NY").data == Decimal("8.50")
    assert engine.calculate_shipping_amount(caller, "1 Main St", express=False).data == Decimal("5.99")
    assert engine.calculate_total_amount(caller, "abc").status_code == 400
    assert engine.calculate_due_date(caller, "2026-01-01T00:00:00", -1).status_code == 400


def test_upfront_payment_is_pending_upfront_type(engine, caller):
    res = engine.create_upfront_payment(caller, {"user_id": 3, "amount": "250"})
    assert res.status_code == 201
    assert res.data["type"] == "Upfront"
    assert res.data["status"] == "Pending"


def test_unbuilt_operations_report_not_implemented(engine, caller):
    assert engine.process_bundle_payment(caller, {}).status_code == 501
    assert engine.generate_invoice_pdf(caller, "x").status_code == 501
    assert engine.process_billing_cycle(caller, "x").status_code == 501


def test_concurrent_update_surfaces_as_conflict(engine, caller, gateway):
    data = _create(engine, caller)

    def _concurrent_writer():
        # Another worker bumps the row version while the charge is in flight
        db.session.execute(
            update(BillingRecord)
            .where(BillingRecord.id == data["id"])
            .values(version=BillingRecord.version + 1)
            .execution_options(synchronize_session=False)
        )

    gateway.on_charge = _concurrent_writer
    res = engine.process_payment(caller, data["id"])
    assert res.status_code == 409
    assert db.session.get(BillingRecord, data["id"]).status == BillingStatus.PENDING


def test_unexpected_errors_become_generic_500(engine, caller, gateway, caplog):
    def _boom():
        raise RuntimeError("db exploded: secret detail")

    gateway.on_charge = _boom
    data = _create(engine, caller)
    res = engine.process_payment(caller, data["id"])
    assert res.status_code == 500
    assert "secret detail" not in res.message
    assert "process_payment failed" in caplog.text


def test_envelope_serializes_to_plain_dict(engine, caller):
    res = engine.get_billing_record(caller, "missing")
    assert res.ok is False
    assert res.to_dict() == {"data": None, "message": "Billing record not found", "status_code": 404, "meta": {}}
