"""
Unit tests for the caching, quota and circuit breaker infrastructure
shared by the reference data clients.
"""
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'compatibility-service-python'))

import asyncio
import pytest

from config import QuotaLimits, fda_quota_limits
from errors import (
    CircuitOpenError, FallbackUnavailableError, RemoteServiceError, RemoteTimeoutError,
    is_recoverable,
)
from resilience import CircuitState, FallbackStrategy, ResilienceService
from ttl_cache import TTLCache
from usage_tracker import UsageTracker

from conftest import FakeClock, no_sleep


def run(coro):
    return asyncio.run(coro)


# ─── TTL Cache Tests ──────────────────────────────────────────────────────────

def test_cache_round_trip_within_ttl():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=60, clock=clock)
    value = ["J45.9"]
    cache.set("k", value)
    clock.advance(59)
    assert cache.get("k") is value

def test_cache_miss_after_expiry():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=60, clock=clock)
    cache.set("k", "v")
    clock.advance(60)
    assert cache.get("k") is None

def test_cache_stale_read_survives_expiry():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=60, clock=clock)
    cache.set("k", "v")
    clock.advance(120)
    assert cache.get_stale("k") == "v"

def test_cache_purges_expired_when_full():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=10, max_size=2, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    clock.advance(11)
    cache.set("c", 3)
    assert len(cache) == 1
    assert cache.get("c") == 3

def test_cache_evicts_oldest_write_when_nothing_expired():
    cache = TTLCache(ttl_seconds=3600, max_size=2, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("a", 10)
    cache.set("c", 3)
    assert len(cache) == 2
    assert cache.get("b") is None
    assert cache.get("a") == 10
    assert cache.get("c") == 3

def test_cache_size_stays_bounded_under_unique_keys():
    cache = TTLCache(ttl_seconds=3600, max_size=50, clock=FakeClock())
    for i in range(500):
        cache.set(f"term-{i}", i)
    assert len(cache) == 50
    assert cache.get("term-499") == 499


# ─── Quota Tests ──────────────────────────────────────────────────────────────

def test_fda_tier_follows_api_key():
    assert fda_quota_limits("").tier == "standard"
    assert fda_quota_limits("secret").daily == 120000

def test_minute_limit_blocks_until_window_rolls():
    clock = FakeClock()
    tracker = UsageTracker("svc", QuotaLimits(daily=100, hourly=100, minute=3), clock=clock)
    for _ in range(3):
        assert tracker.can_make_call()
        tracker.record_call("search", True)
    assert tracker.can_make_call() is False
    assert 1 <= tracker.retry_after() <= 60
    clock.advance(61)
    assert tracker.can_make_call() is True

def test_failed_calls_count_against_quota():
    clock = FakeClock()
    tracker = UsageTracker("svc", QuotaLimits(daily=100, hourly=2, minute=10), clock=clock)
    tracker.record_call("search", False, "TIMEOUT")
    tracker.record_call("search", False, "HTTP_500")
    assert tracker.can_make_call() is False
    assert tracker.error_rate() == 100.0

def test_detailed_stats_reports_remaining():
    clock = FakeClock()
    tracker = UsageTracker("svc", QuotaLimits(daily=10, hourly=5, minute=5), clock=clock)
    tracker.record_call("search", True, response_time_ms=12.5)
    stats = tracker.detailed_stats(cache_size=4)
    assert stats["usage"]["minute"] == 1
    assert stats["remaining"]["hourly"] == 4
    assert stats["cache_size"] == 4
    assert stats["recent_activity"][0]["endpoint"] == "search"


# ─── Error Classification Tests ───────────────────────────────────────────────

def test_recoverable_classification():
    assert is_recoverable(RemoteTimeoutError("slow"))
    assert is_recoverable(RemoteServiceError("boom", status_code=503))
    assert is_recoverable(RemoteServiceError("throttled", status_code=429))
    assert is_recoverable(RemoteServiceError("network"))
    assert not is_recoverable(RemoteServiceError("bad request", status_code=400))
    assert not is_recoverable(ValueError("bug"))


# ─── Circuit Breaker Tests ────────────────────────────────────────────────────

def test_breaker_opens_serves_fallback_and_recovers():
    clock = FakeClock()
    service = ResilienceService(failure_threshold=5, reset_timeout=60,
                                half_open_successes=2, clock=clock, sleep=no_sleep)
    calls = {"n": 0}
    healthy = {"up": False}

    async def remote():
        calls["n"] += 1
        if not healthy["up"]:
            raise RemoteTimeoutError("timed out")
        return "live"

    fallback = FallbackStrategy(kind="mock", mock_data="fallback")

    for _ in range(5):
        outcome = run(service.execute_with_circuit_breaker("svc", "op", remote, fallback))
        assert outcome.from_fallback
    assert service.breaker("svc").state == CircuitState.OPEN
    assert calls["n"] == 5

    outcome = run(service.execute_with_circuit_breaker("svc", "op", remote, fallback))
    assert outcome.result == "fallback"
    assert calls["n"] == 5

    clock.advance(60)
    assert service.breaker("svc").state == CircuitState.HALF_OPEN
    healthy["up"] = True
    assert run(service.execute_with_circuit_breaker("svc", "op", remote, fallback)).result == "live"
    assert service.breaker("svc").state == CircuitState.HALF_OPEN
    run(service.execute_with_circuit_breaker("svc", "op", remote, fallback))
    assert service.breaker("svc").state == CircuitState.CLOSED
    assert service.metrics["circuit_breaker_trips"] == 1

def test_half_open_failure_reopens():
    clock = FakeClock()
    service = ResilienceService(failure_threshold=1, reset_timeout=30, clock=clock, sleep=no_sleep)

    async def remote():
        raise RemoteTimeoutError("timed out")

    with pytest.raises(RemoteTimeoutError):
        run(service.execute_with_circuit_breaker("svc", "op", remote))
    clock.advance(30)
    with pytest.raises(RemoteTimeoutError):
        run(service.execute_with_circuit_breaker("svc", "op", remote))
    breaker = service.breaker("svc")
    assert breaker.state == CircuitState.OPEN
    assert breaker.opened_at == clock.now

def test_half_open_limits_concurrent_trial_calls():
    clock = FakeClock()
    service = ResilienceService(failure_threshold=1, reset_timeout=30, half_open_successes=2,
                                clock=clock, sleep=no_sleep)

    async def down():
        raise RemoteTimeoutError("timed out")

    with pytest.raises(RemoteTimeoutError):
        run(service.execute_with_circuit_breaker("svc", "op", down))
    clock.advance(30)
    calls = {"n": 0}

    async def scenario():
        release = asyncio.Event()

        async def slow():
            calls["n"] += 1
            await release.wait()
            return "live"

        fallback = FallbackStrategy(kind="mock", mock_data="fallback")
        tasks = [
            asyncio.create_task(service.execute_with_circuit_breaker("svc", "op", slow, fallback))
            for _ in range(4)
        ]
        await asyncio.sleep(0)
        release.set()
        return await asyncio.gather(*tasks)

    outcomes = run(scenario())
    assert calls["n"] == 2
    assert [o.result for o in outcomes].count("fallback") == 2
    assert service.breaker("svc").state == CircuitState.CLOSED

def test_half_open_trial_slot_freed_by_client_error():
    clock = FakeClock()
    service = ResilienceService(failure_threshold=1, reset_timeout=30, half_open_successes=1,
                                clock=clock, sleep=no_sleep)

    async def down():
        raise RemoteTimeoutError("timed out")

    async def rejected():
        raise RemoteServiceError("bad request", status_code=400)

    async def healthy():
        return "live"

    with pytest.raises(RemoteTimeoutError):
        run(service.execute_with_circuit_breaker("svc", "op", down))
    clock.advance(30)
    with pytest.raises(RemoteServiceError):
        run(service.execute_with_circuit_breaker("svc", "op", rejected))
    assert service.breaker("svc").state == CircuitState.HALF_OPEN
    assert run(service.execute_with_circuit_breaker("svc", "op", healthy)).result == "live"
    assert service.breaker("svc").state == CircuitState.CLOSED

def test_open_breaker_without_fallback_raises():
    clock = FakeClock()
    service = ResilienceService(failure_threshold=1, clock=clock, sleep=no_sleep)

    async def remote():
        raise RemoteTimeoutError("timed out")

    with pytest.raises(RemoteTimeoutError):
        run(service.execute_with_circuit_breaker("svc", "op", remote))
    with pytest.raises(CircuitOpenError):
        run(service.execute_with_circuit_breaker("svc", "op", remote))

def test_client_errors_do_not_trip_breaker():
    service = ResilienceService(failure_threshold=2, clock=FakeClock(), sleep=no_sleep)

    async def remote():
        raise RemoteServiceError("bad request", status_code=400)

    for _ in range(3):
        with pytest.raises(RemoteServiceError):
            run(service.execute_with_circuit_breaker("svc", "op", remote))
    assert service.breaker("svc").state == CircuitState.CLOSED


# ─── Retry Tests ──────────────────────────────────────────────────────────────

def test_retry_recovers_after_transient_failures():
    delays = []

    async def record_sleep(delay):
        delays.append(delay)

    service = ResilienceService(clock=FakeClock(), sleep=record_sleep, jitter=lambda: 0.0)
    attempts = {"n": 0}

    async def flaky():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise RemoteServiceError("unavailable", status_code=503)
        return "ok"

    assert run(service.execute_with_retry(flaky, max_retries=2, base_delay=1.0)) == "ok"
    assert delays == [1.0, 2.0]
    assert service.metrics["recovered_errors"] == 1

def test_retry_fails_fast_on_client_error():
    service = ResilienceService(clock=FakeClock(), sleep=no_sleep)
    attempts = {"n": 0}

    async def rejected():
        attempts["n"] += 1
        raise RemoteServiceError("not found", status_code=404)

    with pytest.raises(RemoteServiceError):
        run(service.execute_with_retry(rejected, max_retries=3))
    assert attempts["n"] == 1

def test_retry_gives_up_after_max_retries():
    service = ResilienceService(clock=FakeClock(), sleep=no_sleep)
    attempts = {"n": 0}

    async def down():
        attempts["n"] += 1
        raise RemoteTimeoutError("timed out")

    with pytest.raises(RemoteTimeoutError):
        run(service.execute_with_retry(down, max_retries=2))
    assert attempts["n"] == 3


# ─── Fallback Strategy Tests ──────────────────────────────────────────────────

def test_cache_fallback_returns_stale_entry():
    clock = FakeClock()
    cache = TTLCache(ttl_seconds=10, clock=clock)
    cache.set("key", ["stale"])
    clock.advance(100)
    service = ResilienceService(clock=clock, sleep=no_sleep)

    async def down():
        raise RemoteTimeoutError("timed out")

    outcome = run(service.execute_with_circuit_breaker(
        "svc", "op", down, FallbackStrategy(kind="cache", cache=cache, cache_key="key"),
    ))
    assert outcome.from_fallback
    assert outcome.strategy == "cache"
    assert outcome.result == ["stale"]

def test_cache_fallback_without_entry_raises():
    service = ResilienceService(clock=FakeClock(), sleep=no_sleep)
    cache = TTLCache(ttl_seconds=10)

    async def down():
        raise RemoteTimeoutError("timed out")

    with pytest.raises(FallbackUnavailableError):
        run(service.execute_with_circuit_breaker(
            "svc", "op", down, FallbackStrategy(kind="cache", cache=cache, cache_key="missing"),
        ))

def test_degraded_service_fallback_asks_for_review():
    service = ResilienceService(clock=FakeClock(), sleep=no_sleep)

    async def down():
        raise RemoteTimeoutError("timed out")

    outcome = run(service.execute_with_circuit_breaker(
        "analysis", "row", down,
        FallbackStrategy(kind="degraded_service", source="analysis engine"),
    ))
    verdict = outcome.result
    assert verdict["risk_level"] == "medium"
    assert verdict["is_compatible"] is True
    assert "Manual review" in verdict["notes"]
    assert service.metrics["fallback_activations"] == 1

def test_service_health_reports_recent_errors():
    clock = FakeClock()
    service = ResilienceService(clock=clock, sleep=no_sleep)

    async def down():
        raise RemoteTimeoutError("timed out")

    with pytest.raises(RemoteTimeoutError):
        run(service.execute_with_circuit_breaker("svc", "op", down))
    health = service.service_health("svc")
    assert health["recent_errors"] == 1
    assert health["healthy"] is True
    assert health["last_error"]["error_type"] == "RemoteTimeoutError"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
