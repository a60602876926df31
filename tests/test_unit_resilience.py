from app.config import BACKOFF_POLICY, SCHEDULER_SETTINGS
from app.utils.backoff import compute_backoff_seconds, ladder_step
from app.utils.circuit_breaker import CircuitBreaker
from app.utils.metrics import clamp, mom_percent


def test_backoff_growth_and_cap():
    first = compute_backoff_seconds(1, base=1, factor=2, max_seconds=10, jitter_pct=0.0)
    second = compute_backoff_seconds(2, base=1, factor=2, max_seconds=10, jitter_pct=0.0)
    third = compute_backoff_seconds(3, base=1, factor=2, max_seconds=10, jitter_pct=0.0)
    assert (first, second, third) == (1, 2, 4)
    capped = compute_backoff_seconds(10, base=1, factor=2, max_seconds=5, jitter_pct=0.0)
    assert capped <= 5


def test_backoff_jitter_stays_within_band():
    pct = float(BACKOFF_POLICY["jitter_pct"])
    for _ in range(20):
        value = compute_backoff_seconds(3, base=1, factor=2, max_seconds=60)
        assert 4 * (1 - pct) <= value <= 4 * (1 + pct)


def test_retry_ladder_sticks_to_last_rung():
    ladder = SCHEDULER_SETTINGS["retry_backoff_minutes"]
    assert [ladder_step(ladder, n) for n in range(1, 7)] == [1, 2, 4, 8, 16, 16]
    assert ladder_step([], 3) == 0.0


def test_circuit_opens_and_resets_on_success():
    cb = CircuitBreaker()
    host = "n8n.example.com"
    for _ in range(5):
        cb.record_failure(host)
    allowed, reason = cb.allow_call(host)
    assert allowed is False and reason == "circuit_open"
    assert cb.snapshot()[host]["state"] == "OPEN"

    cb.record_success(host)
    assert cb.allow_call(host) == (True, None)
    assert cb.snapshot()[host]["failures"] == 0


def test_mom_percent_rules():
    assert mom_percent(0, 0) == 0.0
    assert mom_percent(0, 500) == 100.0
    assert mom_percent(1000, 1500) == 50.0
    assert mom_percent(3000, 1000) == -66.67


def test_clamp_bounds():
    assert clamp(0, 1, 24) == 1
    assert clamp(99, 1, 24) == 24
    assert clamp(12, 1, 24) == 12
