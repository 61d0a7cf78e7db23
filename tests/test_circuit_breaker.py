"""Tests for postqueue.resilience.circuit_breaker."""

import asyncio
from datetime import timedelta

import pytest

from postqueue.config import ResilienceConfig
from postqueue.exceptions import CircuitOpenError
from postqueue.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState


async def succeed():
    return "ok"


async def fail():
    raise RuntimeError("503 Service Unavailable")


async def trip(breaker, times):
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.execute(fail)


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(name="x-api", failure_threshold=3, reset_timeout=60, clock=clock)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_closed_passes_through(self, breaker):
        assert await breaker.execute(succeed) == "ok"
        assert breaker.state is CircuitState.CLOSED
        assert breaker.get_state() == "CLOSED"

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker):
        await trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED
        await trip(breaker, 1)
        assert breaker.state is CircuitState.OPEN
        assert breaker.failure_count == 3

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        await trip(breaker, 2)
        await breaker.execute(succeed)
        assert breaker.failure_count == 0
        await trip(breaker, 2)
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_fails_fast_without_calling(self, breaker):
        await trip(breaker, 3)
        calls = []

        async def operation():
            calls.append(1)
            return "ok"

        with pytest.raises(CircuitOpenError, match="Circuit breaker is OPEN") as exc_info:
            await breaker.execute(operation)
        assert calls == []
        assert exc_info.value.breaker_name == "x-api"

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, breaker, clock):
        await trip(breaker, 3)
        clock.advance(seconds=59)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)

        clock.advance(seconds=1)
        assert await breaker.execute(succeed) == "ok"
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_trial_failure_reopens(self, breaker, clock):
        await trip(breaker, 3)
        clock.advance(timedelta(minutes=2))
        await trip(breaker, 1)
        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(succeed)

    @pytest.mark.asyncio
    async def test_half_open_allows_single_trial(self, clock):
        """A second caller arriving mid-trial fails fast instead of calling."""
        breaker = CircuitBreaker(name="x-api", failure_threshold=1, reset_timeout=60, clock=clock)
        await trip(breaker, 1)
        clock.advance(seconds=61)

        release = asyncio.Event()
        calls = []

        async def slow_trial():
            calls.append(1)
            await release.wait()
            return "ok"

        first = asyncio.create_task(breaker.execute(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state is CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.execute(slow_trial)

        release.set()
        assert await first == "ok"
        assert calls == [1]
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_trial_frees_the_next_trial(self, clock):
        breaker = CircuitBreaker(name="x-api", failure_threshold=1, reset_timeout=60, clock=clock)
        await trip(breaker, 1)
        clock.advance(seconds=61)
        await trip(breaker, 1)

        clock.advance(seconds=61)
        assert await breaker.execute(succeed) == "ok"
        assert breaker.state is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset(self, breaker):
        await trip(breaker, 3)
        breaker.reset()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert await breaker.execute(succeed) == "ok"

    def test_from_settings(self, clock):
        breaker = CircuitBreaker.from_settings(
            "db", ResilienceConfig(failure_threshold=2, reset_timeout_seconds=5), clock=clock
        )
        assert breaker.name == "db"
        assert breaker.failure_threshold == 2
        assert breaker.reset_timeout == timedelta(seconds=5)


class TestCircuitBreakerRegistry:
    def test_get_or_create_returns_same_instance(self):
        registry = CircuitBreakerRegistry()
        first = registry.get_or_create("x-api")
        assert registry.get_or_create("x-api") is first
        assert len(registry) == 1

    def test_from_settings_uses_configured_capacity(self):
        registry = CircuitBreakerRegistry.from_settings(ResilienceConfig(max_registered_breakers=1))
        registry.get_or_create("a")
        registry.get_or_create("b")
        assert registry.max_breakers == 1
        assert set(registry.states()) == {"b"}

    def test_evicts_oldest_when_full(self):
        registry = CircuitBreakerRegistry(max_breakers=2)
        registry.register(CircuitBreaker(name="a"))
        registry.register(CircuitBreaker(name="b"))
        registry.register(CircuitBreaker(name="c"))
        assert registry.get("a") is None
        assert set(registry.states()) == {"b", "c"}

    def test_reregistering_refreshes_position(self):
        registry = CircuitBreakerRegistry(max_breakers=2)
        a = registry.register(CircuitBreaker(name="a"))
        registry.register(CircuitBreaker(name="b"))
        registry.register(a)
        registry.register(CircuitBreaker(name="c"))
        assert registry.get("a") is a
        assert registry.get("b") is None

    @pytest.mark.asyncio
    async def test_reset_all(self, clock):
        registry = CircuitBreakerRegistry()
        breaker = registry.get_or_create("x-api", ResilienceConfig(failure_threshold=1), clock=clock)
        await trip(breaker, 1)
        assert registry.states() == {"x-api": "OPEN"}

        assert registry.reset_all() == 1
        assert registry.states() == {"x-api": "CLOSED"}
