"""
Circuit breaker guarding a single downstream dependency.

States::

    CLOSED --(failure_count >= threshold)--> OPEN
    OPEN --(reset_timeout elapsed since last failure)--> HALF_OPEN
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)--> OPEN

Breakers are per-process and in-memory: they are advisory fast-fail guards,
reset on restart.  :class:`CircuitBreakerRegistry` is a bounded collection
an operator can use to force every breaker back to CLOSED.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from postqueue.config import ResilienceConfig
from postqueue.exceptions import CircuitOpenError
from postqueue.utils import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Fail-fast guard around an async operation.

    Args:
        name: Identifier used in logs and errors.
        failure_threshold: Consecutive failures that open the circuit.
        reset_timeout: Seconds after the last failure before a trial call.
        clock: Time source (defaults to wall clock).
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = timedelta(seconds=reset_timeout)
        self.clock = clock or SystemClock()

        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self._trial_in_flight = False

    @classmethod
    def from_settings(
        cls, name: str, config: ResilienceConfig, clock: Optional[Clock] = None
    ) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=config.failure_threshold,
            reset_timeout=config.reset_timeout_seconds,
            clock=clock,
        )

    @property
    def state(self) -> CircuitState:
        return self._state

    def get_state(self) -> str:
        return self._state.value

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* through the breaker.

        Raises:
            CircuitOpenError: When the circuit is OPEN and the reset timeout
                has not yet elapsed, or a HALF_OPEN trial is already in
                flight; *operation* is not called.
        """
        if self._state is CircuitState.OPEN:
            if not self._reset_timeout_elapsed():
                raise CircuitOpenError(self.name)
            self._transition(CircuitState.HALF_OPEN)

        is_trial = self._state is CircuitState.HALF_OPEN
        if is_trial:
            # Only one trial call at a time while HALF_OPEN
            if self._trial_in_flight:
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        finally:
            if is_trial:
                self._trial_in_flight = False

        self._on_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED (operator recovery)."""
        self.failure_count = 0
        self.last_failure_time = None
        self._trial_in_flight = False
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _reset_timeout_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self.clock.now() - self.last_failure_time >= self.reset_timeout

    def _on_success(self) -> None:
        self.failure_count = 0
        if self._state is not CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self.clock.now()

        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif self.failure_count >= self.failure_threshold and self._state is CircuitState.CLOSED:
            self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "[BREAKER] %s: %s -> %s (failures=%d)",
            self.name,
            self._state.value,
            new_state.value,
            self.failure_count,
        )
        self._state = new_state


class CircuitBreakerRegistry:
    """Bounded, named collection of breakers for operator-triggered resets.

    When full, registering a new breaker evicts the oldest one.
    """

    def __init__(self, max_breakers: int = 100) -> None:
        self.max_breakers = max_breakers
        self._breakers: "OrderedDict[str, CircuitBreaker]" = OrderedDict()

    def register(self, breaker: CircuitBreaker) -> CircuitBreaker:
        if breaker.name in self._breakers:
            self._breakers.move_to_end(breaker.name)
        elif len(self._breakers) >= self.max_breakers:
            evicted, _ = self._breakers.popitem(last=False)
            logger.debug("[BREAKER] Registry full, evicted %s", evicted)
        self._breakers[breaker.name] = breaker
        return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def get_or_create(
        self,
        name: str,
        config: Optional[ResilienceConfig] = None,
        clock: Optional[Clock] = None,
    ) -> CircuitBreaker:
        existing = self._breakers.get(name)
        if existing is not None:
            return existing
        return self.register(
            CircuitBreaker.from_settings(name, config or ResilienceConfig(), clock=clock)
        )

    @classmethod
    def from_settings(cls, config: ResilienceConfig) -> "CircuitBreakerRegistry":
        return cls(max_breakers=config.max_registered_breakers)

    def reset_all(self) -> int:
        """Reset every registered breaker; returns how many were reset."""
        for breaker in self._breakers.values():
            breaker.reset()
        logger.info("[BREAKER] Reset %d circuit breaker(s)", len(self._breakers))
        return len(self._breakers)

    def states(self) -> dict:
        return {name: breaker.get_state() for name, breaker in self._breakers.items()}

    def __len__(self) -> int:
        return len(self._breakers)


__all__ = [
    "CircuitState",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]
