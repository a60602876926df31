import asyncio
from datetime import timedelta

import pytest

from app.models.db import SchedulerJob
from app.services.dispatch_runner import (
    DuplicateTriggerError,
    TriggerRejected,
    run_scheduler_tick,
    trigger_activation,
    trigger_manual_switch,
)
from app.services.webhook_client import breaker_key
from app.utils.circuit_breaker import CircuitBreaker
from app.utils.time import utc_now
from conftest import FakeSender


def _now():
    return utc_now().replace(microsecond=0)



def _tick(db_session, now, sender, **kwargs):
    return asyncio.run(run_scheduler_tick(db_session, now=now, sender=sender, **kwargs))


def test_tick_dispatches_due_slot(db_session, bound_subscription, fake_sender):
    user, store, subscription, config = bound_subscription
    now = _now()

    summary = _tick(db_session, now, fake_sender)

    assert summary.total == 1
    assert summary.triggered == 1
    assert len(fake_sender.calls) == 1
    call = fake_sender.calls[0]
    assert call["url"] == config.target_url
    assert call["headers"] == {"X-Api-Key": "secret-value"}
    assert call["payload"]["client_id"] == store.id
    assert call["payload"]["trigger_type"] == "scheduled"
    assert call["idempotency_key"].startswith(f"scheduled:{subscription.id}:{store.id}:standard:")

    job = db_session.query(SchedulerJob).filter_by(idempotency_key=call["idempotency_key"]).one()
    assert job.status == "success"
    assert job.response_status == 200


def test_second_tick_waits_for_next_slot(db_session, bound_subscription, fake_sender):
    now = _now()
    _tick(db_session, now, fake_sender)

    again = _tick(db_session, now + timedelta(minutes=5), fake_sender)
    assert again.triggered == 0
    assert again.reason_breakdown == {"not_due_yet": 1}
    assert len(fake_sender.calls) == 1

    later = _tick(db_session, now + timedelta(hours=8, minutes=1), fake_sender)
    assert later.triggered == 1
    assert len(fake_sender.calls) == 2
    assert fake_sender.calls[0]["idempotency_key"] != fake_sender.calls[1]["idempotency_key"]


def test_store_without_webhook_is_skipped_and_recorded(db_session, user_factory, store_factory, subscription_factory, fake_sender):
    user = user_factory()
    store = store_factory(user)
    subscription_factory(user, store)

    summary = _tick(db_session, _now(), fake_sender)

    assert summary.skipped == 1
    assert summary.reason_breakdown == {"no_active_webhook_config": 1}
    assert fake_sender.calls == []
    job = db_session.query(SchedulerJob).one()
    assert job.status == "skipped"
    assert job.error_message == "no_active_webhook_config"


def test_single_enabled_config_is_used_without_binding(db_session, user_factory, store_factory, subscription_factory, webhook_config_factory, fake_sender):
    user = user_factory()
    config = webhook_config_factory()
    store = store_factory(user)
    subscription_factory(user, store)

    summary = _tick(db_session, _now(), fake_sender)
    assert summary.triggered == 1
    assert fake_sender.calls[0]["payload"]["webhook_config_id"] == config.id


def test_subscription_without_store_is_inactive(db_session, user_factory, subscription_factory, fake_sender):
    user = user_factory()
    subscription_factory(user)
    summary = _tick(db_session, _now(), fake_sender)
    assert summary.reason_breakdown == {"subscription_inactive_or_expired": 1}


def test_failed_dispatch_waits_for_retry_ladder(db_session, bound_subscription):
    now = _now()
    failing = FakeSender(ok=False, status=502, body="bad gateway")

    first = _tick(db_session, now, failing)
    assert first.failed == 1
    assert first.reason_breakdown == {"dispatch_failed": 1}
    job = db_session.query(SchedulerJob).one()
    assert job.status == "failed"
    assert job.retry_count == 1

    waiting = _tick(db_session, now + timedelta(seconds=30), failing)
    assert waiting.reason_breakdown == {"retry_backoff": 1}
    assert len(failing.calls) == 1

    # retry_count 1 -> second ladder step (2 minutes)
    recovered = FakeSender()
    retried = _tick(db_session, now + timedelta(minutes=3), recovered)
    assert retried.triggered == 1
    assert recovered.calls[0]["idempotency_key"] == failing.calls[0]["idempotency_key"]
    assert recovered.calls[0]["payload"]["attempt"] == 2
    db_session.expire_all()
    assert db_session.query(SchedulerJob).one().status == "success"


def test_stale_snapshot_cannot_redispatch_failed_slot(db_session, bound_subscription, monkeypatch):
    _, _, subscription, _ = bound_subscription
    now = _now()
    failing = FakeSender(ok=False, status=502, body="bad gateway")
    _tick(db_session, now, failing)

    from app.services import scheduler_jobs
    stale = scheduler_jobs.load_jobs_by_subscription(db_session, [subscription.id])
    assert stale[subscription.id][0]["status"] == "failed"
    monkeypatch.setattr(scheduler_jobs, "load_jobs_by_subscription", lambda session, ids, **kw: {k: [dict(r) for r in v] for k, v in stale.items()})

    recovered = FakeSender()
    first = _tick(db_session, now + timedelta(minutes=30), recovered)
    second = _tick(db_session, now + timedelta(minutes=30, seconds=1), recovered)

    assert first.triggered == 1
    assert second.triggered == 0
    assert second.reason_breakdown == {"duplicate_slot": 1}
    assert len(recovered.calls) == 1
    db_session.expire_all()
    job = db_session.query(SchedulerJob).one()
    assert job.status == "success"


def test_open_circuit_skips_dispatch(db_session, bound_subscription, fake_sender):
    _, _, _, config = bound_subscription
    breaker = CircuitBreaker()
    for _ in range(5):
        breaker.record_failure(breaker_key(config.target_url))

    summary = _tick(db_session, _now(), fake_sender, breaker=breaker)
    assert summary.reason_breakdown == {"circuit_open": 1}
    assert fake_sender.calls == []


def test_manual_switch_is_idempotent_within_a_minute(db_session, bound_subscription, webhook_config_factory, fake_sender):
    user, store, _, _ = bound_subscription
    target = webhook_config_factory(name="Holiday flow")
    now = _now()

    outcome = asyncio.run(trigger_manual_switch(db_session, store.id, target.id, user.id, now=now, sender=fake_sender))
    assert outcome.status == "triggered"
    assert fake_sender.calls[0]["payload"]["trigger_type"] == "manual_switch"
    db_session.refresh(store)
    assert store.active_webhook_config_id == target.id

    with pytest.raises(DuplicateTriggerError) as exc_info:
        asyncio.run(trigger_manual_switch(db_session, store.id, target.id, user.id, now=now + timedelta(seconds=5), sender=fake_sender))
    assert exc_info.value.idempotency_key == outcome.idempotency_key
    assert len(fake_sender.calls) == 1


def test_manual_switch_rejects_disabled_and_generic_configs(db_session, bound_subscription, webhook_config_factory, fake_sender):
    user, store, _, _ = bound_subscription
    disabled = webhook_config_factory(enabled=False)
    generic = webhook_config_factory(scope="generic")

    with pytest.raises(TriggerRejected) as disabled_exc:
        asyncio.run(trigger_manual_switch(db_session, store.id, disabled.id, user.id, sender=fake_sender))
    with pytest.raises(TriggerRejected) as generic_exc:
        asyncio.run(trigger_manual_switch(db_session, store.id, generic.id, user.id, sender=fake_sender))
    assert disabled_exc.value.code == "WEBHOOK_DISABLED"
    assert generic_exc.value.code == "WEBHOOK_SCOPE_INVALID"
    assert fake_sender.calls == []


def test_manual_switch_requires_active_subscription(db_session, user_factory, store_factory, webhook_config_factory, fake_sender):
    user = user_factory()
    store = store_factory(user)
    config = webhook_config_factory()
    with pytest.raises(TriggerRejected) as exc_info:
        asyncio.run(trigger_manual_switch(db_session, store.id, config.id, user.id, sender=fake_sender))
    assert exc_info.value.code == "SUBSCRIPTION_INACTIVE"


def test_activation_fires_once_per_period(db_session, user_factory, store_factory, subscription_factory, webhook_config_factory, fake_sender):
    user = user_factory()
    config = webhook_config_factory(product_id="prod_mugs")
    store = store_factory(user, product_id="prod_mugs")
    subscription = subscription_factory(user, store, current_period_end=utc_now() + timedelta(days=30))

    first = asyncio.run(trigger_activation(db_session, subscription.id, sender=fake_sender))
    second = asyncio.run(trigger_activation(db_session, subscription.id, sender=fake_sender))

    assert first.status == "triggered"
    assert first.webhook_config_id == config.id
    assert second.status == "skipped"
    assert second.reason == "duplicate_activation"
    assert len(fake_sender.calls) == 1
    db_session.refresh(store)
    assert store.active_webhook_config_id == config.id
