from datetime import datetime, timezone

import stripe

from app.services.revenue import RevenueRecord, aggregate_series, build_revenue_trend, month_keys, parse_currency_filter, parse_months
from app.utils.metrics import mom_percent
from conftest import FakeLedgerClient

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _ts(year, month, day):
    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())


def _invoice(invoice_id, amount, created, *, currency="usd", subscription_id="sub_1", status="paid"):
    return {
        "id": invoice_id,
        "status": status,
        "amount_paid": amount,
        "amount_due": amount,
        "currency": currency,
        "created": created,
        "subscription_id": subscription_id,
    }


def test_month_keys_end_with_current_month():
    assert month_keys(3, NOW) == ["2026-01", "2026-02", "2026-03"]
    assert month_keys(4, datetime(2026, 2, 1, tzinfo=timezone.utc)) == ["2025-11", "2025-12", "2026-01", "2026-02"]


def test_parsers_clamp_and_default():
    assert parse_months(None) == 12
    assert parse_months("abc") == 12
    assert parse_months(99) == 24
    assert parse_months("0") == 1
    assert parse_currency_filter("TL") == "try"
    assert parse_currency_filter("eur") == "all"


def test_local_payments_are_bucketed_by_month(db_session, ledger_registry, payment_factory):
    payment_factory(stripe_subscription_id="sub_1", amount_cents=1000, status="paid", created_at=datetime(2026, 2, 10, tzinfo=timezone.utc))
    payment_factory(stripe_subscription_id="sub_1", amount_cents=1500, status="succeeded", created_at=datetime(2026, 3, 5, tzinfo=timezone.utc))
    # one-time checkout, failed and zero-amount rows are not recurring revenue
    payment_factory(stripe_session_id="cs_1", amount_cents=9000, status="paid", created_at=datetime(2026, 3, 6, tzinfo=timezone.utc))
    payment_factory(stripe_subscription_id="sub_2", amount_cents=700, status="failed", created_at=datetime(2026, 3, 7, tzinfo=timezone.utc))
    payment_factory(stripe_subscription_id="sub_3", amount_cents=0, status="paid", created_at=datetime(2026, 3, 8, tzinfo=timezone.utc))

    trend = build_revenue_trend(db_session, ledger_registry({}), months=3, now=NOW)

    assert [b["revenue_cents"] for b in trend["series"]] == [0, 1000, 1500]
    assert trend["totals"]["total_volume_cents"] == 2500
    assert trend["totals"]["total_transactions"] == 2
    assert trend["totals"]["current_month_amount"] == 15.0
    assert trend["totals"]["mom_percent"] == 50.0
    assert trend["source"] == "database"
    assert len(trend["warnings"]) == 2


def test_ledger_invoices_merge_with_local_winning(db_session, ledger_registry, payment_factory):
    payment_factory(
        stripe_subscription_id="sub_1",
        stripe_invoice_id="in_1",
        amount_cents=1000,
        status="paid",
        created_at=datetime(2026, 3, 2, tzinfo=timezone.utc),
    )
    live = FakeLedgerClient("live", invoices=[
        _invoice("in_1", 1000, _ts(2026, 3, 2)),
        _invoice("in_2", 2000, _ts(2026, 2, 3)),
        _invoice("in_3", 3000, _ts(2026, 3, 4), subscription_id=None),
    ])
    test = FakeLedgerClient("test", invoices=[_invoice("in_t1", 400, _ts(2026, 3, 9))])

    trend = build_revenue_trend(db_session, ledger_registry({"live": live, "test": test}), months=2, mode="all", now=NOW)

    assert [b["revenue_cents"] for b in trend["series"]] == [2000, 1400]
    assert trend["source"] == "database+stripe"
    assert trend["warnings"] == []
    assert trend["totals"]["mom_percent"] == -30.0


def test_currency_filter_and_per_currency_series(db_session, ledger_registry):
    live = FakeLedgerClient("live", invoices=[
        _invoice("in_usd", 1000, _ts(2026, 3, 2)),
        _invoice("in_try", 50000, _ts(2026, 3, 3), currency="TRY"),
    ])

    trend = build_revenue_trend(db_session, ledger_registry({"live": live}), months=1, mode="live", currency="try", now=NOW)

    assert trend["currency"] == "try"
    assert trend["series"][0]["revenue_cents"] == 50000
    assert set(trend["series_by_currency"]) == {"usd", "try"}
    assert trend["totals_by_currency"]["usd"]["total_volume_cents"] == 1000
    assert trend["source"] == "stripe"


def test_ledger_error_becomes_warning(db_session, ledger_registry):
    live = FakeLedgerClient("live", error=stripe.APIConnectionError("timeout"))
    trend = build_revenue_trend(db_session, ledger_registry({"live": live}), months=1, mode="live", now=NOW)
    assert trend["source"] == "empty"
    assert trend["warnings"][0].startswith("live: ")
    assert trend["totals"]["mom_percent"] == 0.0


def test_mom_percent_from_empty_months():
    assert mom_percent(0, 0) == 0
    assert mom_percent(0, 500) == 100


def test_bucketing_uses_utc_calendar_month():
    def record(record_id, created_at):
        return RevenueRecord(
            id=record_id,
            amount_cents=100,
            created_at=created_at,
            currency="usd",
            stripe_subscription_id="sub_1",
            stripe_invoice_id=None,
            source="payments",
        )

    records = [
        record("late-mid-month", datetime(2025, 3, 15, 23, 59, 59, tzinfo=timezone.utc)),
        record("last-second", datetime(2025, 3, 31, 23, 59, 59, tzinfo=timezone.utc)),
        record("first-second", datetime(2025, 4, 1, 0, 0, 0, tzinfo=timezone.utc)),
    ]
    series = aggregate_series(records, ["2025-02", "2025-03", "2025-04"])["series"]

    assert [(b["month_key"], b["transaction_count"]) for b in series] == [("2025-02", 0), ("2025-03", 2), ("2025-04", 1)]
