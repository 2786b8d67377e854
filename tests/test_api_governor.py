"""
Tests for the circuit breaker and the ApiGovernor.
"""
import asyncio

import pytest

from src.core.errors import (
    CircuitOpenError,
    GovernorShutdown,
    GovernorTimeout,
    RateLimited,
    TransientNetworkError,
    VenueError,
)
from src.execution.api_governor import ApiGovernor, GovernorConfig, Priority
from src.risk.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def fast_config(**overrides):
    base = dict(
        backoff_base_sec=0.01,
        backoff_max_sec=0.05,
        transient_retry_delay_sec=0.01,
        circuit_threshold=3,
        circuit_cooldown_sec=60.0,
        default_timeout_sec=2.0,
        tick_sec=0.01,
    )
    base.update(overrides)
    return GovernorConfig(**base)


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        cb = CircuitBreaker(CircuitBreakerConfig(error_threshold=3), clock=FakeMonotonic())
        assert cb.record_limit("x", RateLimited()) is False
        assert cb.record_limit("x", RateLimited()) is False
        assert cb.record_limit("x", RateLimited()) is True
        assert cb.state is CircuitState.OPEN

    def test_success_resets_streak(self):
        cb = CircuitBreaker(CircuitBreakerConfig(error_threshold=3), clock=FakeMonotonic())
        cb.record_limit("x", RateLimited())
        cb.record_limit("x", RateLimited())
        cb.record_success()
        assert cb.error_streak == 0
        cb.record_limit("x", RateLimited())
        assert cb.state is CircuitState.CLOSED

    def test_open_admits_only_critical(self):
        clock = FakeMonotonic()
        cb = CircuitBreaker(CircuitBreakerConfig(error_threshold=1, cooldown_sec=60), clock=clock)
        cb.record_limit("x", RateLimited())
        assert cb.allow(critical=False) is False
        assert cb.allow(critical=True) is True

    def test_half_open_after_cooldown_single_trial(self):
        clock = FakeMonotonic()
        transitions = []
        cb = CircuitBreaker(
            CircuitBreakerConfig(error_threshold=1, cooldown_sec=60),
            on_state_change=lambda old, new: transitions.append((old, new)),
            clock=clock,
        )
        cb.record_limit("x", RateLimited())
        clock.now += 59.9
        assert cb.state is CircuitState.OPEN
        clock.now += 0.2
        assert cb.state is CircuitState.HALF_OPEN
        assert cb.allow(critical=False) is True
        assert cb.allow(critical=False) is False
        cb.record_success()
        assert cb.state is CircuitState.CLOSED
        assert transitions == [
            (CircuitState.CLOSED, CircuitState.OPEN),
            (CircuitState.OPEN, CircuitState.HALF_OPEN),
            (CircuitState.HALF_OPEN, CircuitState.CLOSED),
        ]

    def test_failed_trial_reopens(self):
        clock = FakeMonotonic()
        cb = CircuitBreaker(CircuitBreakerConfig(error_threshold=1, cooldown_sec=10), clock=clock)
        cb.record_limit("x", RateLimited())
        clock.now += 11
        assert cb.state is CircuitState.HALF_OPEN
        assert cb.record_failure("x", TransientNetworkError("reset")) is True
        assert cb.state is CircuitState.OPEN
        assert cb.cooldown_remaining == pytest.approx(10)


class TestGovernorBasics:
    @pytest.mark.asyncio
    async def test_submit_returns_result(self):
        gov = ApiGovernor(fast_config())
        gov.start()
        try:
            async def call():
                return 42

            assert await gov.submit(call) == 42
            assert gov.stats.completed == 1
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_submit_requires_running_governor(self):
        gov = ApiGovernor(fast_config())

        async def call():
            return 1

        with pytest.raises(GovernorShutdown):
            await gov.submit(call)

    @pytest.mark.asyncio
    async def test_critical_is_dispatched_before_background(self):
        gov = ApiGovernor(fast_config(max_workers=1))
        gov.start()
        started = asyncio.Event()
        release = asyncio.Event()
        order = []

        async def blocker():
            started.set()
            await release.wait()
            return "blocker"

        def recorder(name):
            async def call():
                order.append(name)
                return name
            return call

        try:
            first = asyncio.create_task(gov.submit(blocker, Priority.NORMAL))
            await started.wait()
            background = asyncio.create_task(gov.submit(recorder("background"), Priority.BACKGROUND))
            normal = asyncio.create_task(gov.submit(recorder("normal"), Priority.NORMAL))
            critical = asyncio.create_task(gov.submit(recorder("critical"), Priority.CRITICAL))
            await asyncio.sleep(0.05)
            release.set()
            await asyncio.gather(first, background, normal, critical)
            assert order == ["critical", "normal", "background"]
        finally:
            await gov.stop()


class TestGovernorFailures:
    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self):
        gov = ApiGovernor(fast_config())
        gov.start()
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 2:
                raise TransientNetworkError("connection reset")
            return "ok"

        try:
            assert await gov.submit(flaky, max_attempts=3) == "ok"
            assert len(attempts) == 2
            assert gov.stats.retried == 1
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_no_transient_retry_when_disabled(self):
        gov = ApiGovernor(fast_config())
        gov.start()
        attempts = []

        async def flaky():
            attempts.append(1)
            raise TransientNetworkError("timeout")

        try:
            with pytest.raises(TransientNetworkError):
                await gov.submit(flaky, Priority.CRITICAL, retry_transient=False)
            assert len(attempts) == 1
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_venue_error_is_not_retried(self):
        gov = ApiGovernor(fast_config())
        gov.start()
        attempts = []

        async def rejected():
            attempts.append(1)
            raise VenueError("insufficient funds", status=400)

        try:
            with pytest.raises(VenueError):
                await gov.submit(rejected, max_attempts=5)
            assert len(attempts) == 1
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_rate_limit_shrinks_limits_and_opens_circuit(self):
        transitions = []
        gov = ApiGovernor(
            fast_config(circuit_threshold=1, max_per_second=10, max_per_minute=100),
            on_circuit_change=lambda old, new: transitions.append(new),
        )
        gov.start()

        async def limited():
            raise RateLimited("429 Too Many Requests")

        async def ok():
            return "done"

        try:
            with pytest.raises(RateLimited):
                await gov.submit(limited, max_attempts=1)
            assert gov.current_limits == (pytest.approx(8.0), pytest.approx(80.0))
            assert gov.circuit_state is CircuitState.OPEN
            assert transitions == [CircuitState.OPEN]

            with pytest.raises(CircuitOpenError):
                await gov.submit(ok, Priority.NORMAL)
            # critical calls still go through while open
            assert await gov.submit(ok, Priority.CRITICAL) == "done"
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_half_open_trial_closes_circuit(self):
        transitions = []
        gov = ApiGovernor(
            fast_config(circuit_threshold=1, circuit_cooldown_sec=0.05),
            on_circuit_change=lambda old, new: transitions.append(new),
        )
        gov.start()

        async def limited():
            raise RateLimited()

        async def ok():
            return "ok"

        try:
            with pytest.raises(RateLimited):
                await gov.submit(limited, max_attempts=1)
            await asyncio.sleep(0.1)
            assert await gov.submit(ok) == "ok"
            assert transitions == [CircuitState.OPEN, CircuitState.HALF_OPEN, CircuitState.CLOSED]
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_timeout_releases_admission_slot(self):
        gov = ApiGovernor(fast_config(max_per_second=1, max_per_minute=10))
        gov.start()

        async def slow():
            await asyncio.sleep(5)

        async def quick():
            return "quick"

        try:
            with pytest.raises(GovernorTimeout):
                await gov.submit(slow, timeout=0.05)
            # without the released slot this would wait for the 1 s window
            assert await gov.submit(quick, timeout=0.5) == "quick"
            assert gov.stats.timed_out == 1
        finally:
            await gov.stop()

    @pytest.mark.asyncio
    async def test_stop_fails_queued_non_critical(self):
        gov = ApiGovernor(fast_config(max_workers=1))
        gov.start()
        started = asyncio.Event()

        async def blocker():
            started.set()
            await asyncio.sleep(5)

        async def never():
            return "never"

        first = asyncio.create_task(gov.submit(blocker, timeout=10))
        await started.wait()
        queued = asyncio.create_task(gov.submit(never, Priority.BACKGROUND, timeout=10))
        await asyncio.sleep(0.02)
        await gov.stop(grace=0.05)

        with pytest.raises(GovernorShutdown):
            await queued
        with pytest.raises(GovernorShutdown):
            await first
        assert gov.get_status()["running"] is False
