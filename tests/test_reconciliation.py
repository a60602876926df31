import uuid

import pytest
import stripe

from app.models.db import Order, Payment
from app.services.payment_sync import sync_checkout_payment
from app.services.reconciliation_engine import ReconciliationUnavailable, reconcile_payments
from conftest import FakeLedgerClient, checkout_session


def test_all_modes_are_merged(db_session, ledger_registry, order_factory):
    paid_live = order_factory()
    unpaid_live = order_factory()
    paid_test = order_factory()
    live = FakeLedgerClient("live", sessions=[
        checkout_session("cs_live_1", paid_live.id),
        checkout_session("cs_live_2", unpaid_live.id, payment_status="unpaid"),
        checkout_session("cs_live_sub", paid_live.id, mode="subscription"),
        checkout_session("cs_live_no_order", None),
    ])
    test = FakeLedgerClient("test", sessions=[checkout_session("cs_test_1", paid_test.id, amount=500)])

    result = reconcile_payments(db_session, ledger_registry({"live": live, "test": test}), mode="all")

    assert result.processed_modes == ["live", "test"]
    assert result.warnings == []
    assert (result.scanned, result.eligible, result.paid_candidates) == (5, 3, 2)
    assert result.synced == 2
    assert result.skipped_not_paid == 1
    assert result.orders_marked_paid == 2

    db_session.expire_all()
    assert db_session.get(Order, paid_live.id).payment_status == "paid"
    assert db_session.get(Order, unpaid_live.id).payment_status == "pending"
    assert db_session.get(Order, paid_test.id).payment_status == "paid"
    amounts = {p.stripe_session_id: p.amount_cents for p in db_session.query(Payment).all()}
    assert amounts == {"cs_live_1": 2990, "cs_test_1": 500}


def test_rerun_updates_instead_of_duplicating(db_session, ledger_registry, order_factory):
    order = order_factory()
    live = FakeLedgerClient("live", sessions=[checkout_session("cs_1", order.id)])
    registry = ledger_registry({"live": live})

    reconcile_payments(db_session, registry, mode="live")
    second = reconcile_payments(db_session, registry, mode="live")

    assert second.synced == 1
    assert second.orders_marked_paid == 1
    assert db_session.query(Payment).count() == 1


def test_dry_run_writes_nothing(db_session, ledger_registry, order_factory):
    order = order_factory()
    live = FakeLedgerClient("live", sessions=[checkout_session("cs_1", order.id)])

    result = reconcile_payments(db_session, ledger_registry({"live": live}), mode="live", dry_run=True)

    assert result.dry_run is True
    assert result.paid_candidates == 1
    assert result.synced == 0
    assert db_session.query(Payment).count() == 0
    db_session.expire_all()
    assert db_session.get(Order, order.id).payment_status == "pending"


def test_one_failing_mode_becomes_a_warning(db_session, ledger_registry, order_factory):
    order = order_factory()
    live = FakeLedgerClient("live", sessions=[checkout_session("cs_1", order.id)])
    test = FakeLedgerClient("test", error=stripe.APIConnectionError("network down"))

    result = reconcile_payments(db_session, ledger_registry({"live": live, "test": test}), mode="all")

    assert result.processed_modes == ["live"]
    assert len(result.warnings) == 1
    assert result.warnings[0].startswith("test: ")
    assert result.synced == 1


def test_missing_key_for_one_mode_is_a_warning(db_session, ledger_registry):
    live = FakeLedgerClient("live", sessions=[])
    result = reconcile_payments(db_session, ledger_registry({"live": live}), mode="all")
    assert result.processed_modes == ["live"]
    assert "Missing required Stripe secret key" in result.warnings[0]


def test_every_mode_failing_raises(db_session, ledger_registry):
    with pytest.raises(ReconciliationUnavailable) as exc_info:
        reconcile_payments(db_session, ledger_registry({}), mode="all")
    assert len(exc_info.value.warnings) == 2


def test_max_sessions_caps_writes_per_mode(db_session, ledger_registry):
    sessions = [checkout_session(f"cs_{i}", str(uuid.uuid4())) for i in range(22)]
    live = FakeLedgerClient("live", sessions=sessions)

    result = reconcile_payments(db_session, ledger_registry({"live": live}), mode="live", max_sessions=5)

    # clamped up to the minimum of 20
    assert result.max_sessions == 20
    assert result.synced == 20
    assert result.skipped == 2
    assert result.paid_candidates == 22


def test_pages_through_the_ledger(db_session, ledger_registry):
    sessions = [checkout_session(f"cs_{i}", None) for i in range(150)]
    live = FakeLedgerClient("live", sessions=sessions)

    result = reconcile_payments(db_session, ledger_registry({"live": live}), mode="live")

    assert result.scanned == 150
    assert [c["starting_after"] for c in live.calls] == [None, "cs_99"]


def test_page_cap_is_tunable_per_call(db_session, ledger_registry):
    sessions = [checkout_session(f"cs_{i}", None) for i in range(250)]
    live = FakeLedgerClient("live", sessions=sessions)

    result = reconcile_payments(db_session, ledger_registry({"live": live}), mode="live", max_pages=2)

    assert result.max_pages == 2
    assert result.scanned == 200
    assert len(live.calls) == 2

    clamped = reconcile_payments(db_session, ledger_registry({"live": live}), mode="live", dry_run=True, max_pages=0)
    assert clamped.max_pages == 1
    assert clamped.scanned == 100


def test_window_excludes_old_sessions(db_session, ledger_registry, order_factory):
    order = order_factory()
    live = FakeLedgerClient("live", sessions=[checkout_session("cs_old", order.id, created=1)])
    result = reconcile_payments(db_session, ledger_registry({"live": live}), mode="live", window_days=30)
    assert result.window_days == 30
    assert result.scanned == 0


def test_paid_never_moves_back(db_session, order_factory, payment_factory):
    order = order_factory(payment_status="paid")
    payment_factory(stripe_session_id="cs_1", status="paid", amount_cents=2990)

    result = sync_checkout_payment(db_session, checkout_session("cs_1", order.id, payment_status="unpaid"))

    assert result.payment_status == "paid"
    db_session.expire_all()
    assert db_session.query(Payment).one().status == "paid"
    assert db_session.get(Order, order.id).payment_status == "paid"


def test_dry_run_counts_every_paid_candidate_beyond_the_cap(db_session, ledger_registry):
    sessions = []
    for i in range(200):
        paid = i < 60
        sessions.append(checkout_session(f"cs_{i}", str(uuid.uuid4()), payment_status="paid" if paid else "unpaid"))
    live = FakeLedgerClient("live", sessions=sessions)

    result = reconcile_payments(db_session, ledger_registry({"live": live}), mode="live", window_days=30, max_sessions=50, dry_run=True)

    assert result.scanned == 200
    assert result.paid_candidates == 60
    assert (result.synced, result.orders_marked_paid, result.skipped) == (0, 0, 0)
