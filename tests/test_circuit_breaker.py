"""Tests for the circuit breaker state machine."""

import asyncio

import pytest

from storyrag.config import CircuitBreakerConfig
from storyrag.errors import CircuitOpenError
from storyrag.retrieval.resilience import CircuitBreaker, CircuitState


def make_breaker(clock, threshold=3, recovery=30.0, enabled=True):
    config = CircuitBreakerConfig(
        enabled=enabled, failure_threshold=threshold, recovery_timeout=recovery
    )
    return CircuitBreaker("test", config, clock=clock)


async def _fail():
    raise RuntimeError("boom")


async def _ok():
    return "ok"


def call(breaker, fn):
    return asyncio.run(breaker.call(fn))


def fail_times(breaker, n):
    for _ in range(n):
        with pytest.raises(RuntimeError):
            call(breaker, _fail)


def test_opens_after_threshold_consecutive_failures(clock):
    breaker = make_breaker(clock)

    fail_times(breaker, 2)
    assert breaker.state == CircuitState.CLOSED

    fail_times(breaker, 1)
    assert breaker.state == CircuitState.OPEN


def test_open_circuit_fails_fast_with_remaining_time(clock):
    breaker = make_breaker(clock)
    fail_times(breaker, 3)
    clock.advance(10)

    calls = []

    async def tracked():
        calls.append(1)
        return "ok"

    with pytest.raises(CircuitOpenError) as excinfo:
        call(breaker, tracked)
    assert excinfo.value.remaining_seconds == pytest.approx(20.0)
    assert calls == []


def test_success_resets_failure_count(clock):
    breaker = make_breaker(clock)
    fail_times(breaker, 2)
    assert call(breaker, _ok) == "ok"
    fail_times(breaker, 2)
    assert breaker.state == CircuitState.CLOSED
    assert breaker.consecutive_failures == 2


def test_half_open_success_closes(clock):
    breaker = make_breaker(clock)
    fail_times(breaker, 3)
    clock.advance(30)

    assert breaker.state == CircuitState.HALF_OPEN
    assert call(breaker, _ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


def test_half_open_failure_reopens_with_fresh_timer(clock):
    breaker = make_breaker(clock)
    fail_times(breaker, 3)
    clock.advance(31)

    fail_times(breaker, 1)
    assert breaker.state == CircuitState.OPEN

    clock.advance(29)
    with pytest.raises(CircuitOpenError):
        call(breaker, _ok)
    clock.advance(1)
    assert breaker.state == CircuitState.HALF_OPEN


def test_half_open_admits_a_single_trial(clock):
    breaker = make_breaker(clock)
    fail_times(breaker, 3)
    clock.advance(30)

    async def scenario():
        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        with pytest.raises(CircuitOpenError):
            await breaker.call(_ok)
        release.set()
        return await trial

    assert asyncio.run(scenario()) == "trial"
    assert breaker.state == CircuitState.CLOSED


def test_cancelled_trial_releases_half_open_slot(clock):
    breaker = make_breaker(clock)
    fail_times(breaker, 3)
    clock.advance(30)

    async def scenario():
        trial = asyncio.create_task(breaker.call(asyncio.sleep, 10))
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial
        return await breaker.call(_ok)

    assert asyncio.run(scenario()) == "ok"


def test_reset_closes_open_circuit(clock):
    breaker = make_breaker(clock)
    fail_times(breaker, 3)
    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    assert call(breaker, _ok) == "ok"


def test_disabled_breaker_never_opens(clock):
    breaker = make_breaker(clock, enabled=False)
    fail_times(breaker, 10)
    assert breaker.state == CircuitState.CLOSED
    assert call(breaker, _ok) == "ok"


def test_snapshot_reports_state(clock):
    breaker = make_breaker(clock)
    fail_times(breaker, 3)
    snap = breaker.snapshot()
    assert snap["state"] == "open"
    assert snap["consecutive_failures"] == 3
    assert snap["remaining_seconds"] == pytest.approx(30.0)
