"""
Sliding-window rate limiter for client-facing actions.

Each (client, action) pair tracks the number of attempts since the first
attempt of the current window.  Once ``max_attempts`` is reached, the next
check blocks the client until ``now + block_duration``; the block holds
regardless of the window expiring underneath it.

The store is an in-memory, LRU-capped map.  Stale entries are evicted lazily
on access and by :meth:`SlidingWindowRateLimiter.cleanup_expired`, which the
limiter also runs on its own whenever ``sweep_interval`` has passed.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional, Tuple

from postqueue.config import DEFAULT_RATE_LIMIT_RULES, RateLimitRule
from postqueue.exceptions import RateLimitExceededError
from postqueue.utils import Clock, SystemClock

logger = logging.getLogger(__name__)


def client_identifier(ip: Optional[str], user_agent: Optional[str]) -> str:
    """Fingerprint a caller as ``"<ip>-<user agent hash>"``.

    The hash is the classic 32-bit ``h = h * 31 + ord(c)`` string hash, so
    identifiers stay short and stable across processes.
    """
    ua_hash = 0
    for char in user_agent or "":
        ua_hash = (ua_hash * 31 + ord(char)) & 0xFFFFFFFF
    if ua_hash >= 0x80000000:
        ua_hash -= 0x100000000
    return f"{ip or 'unknown'}-{ua_hash}"


@dataclass
class RateLimitState:
    attempts: int
    first_attempt: datetime
    blocked_until: Optional[datetime] = None


@dataclass
class RateLimitCheck:
    """Result of :meth:`SlidingWindowRateLimiter.is_rate_limited`."""

    is_limited: bool
    remaining_attempts: int
    reset_at: Optional[datetime] = None


@dataclass
class RateLimitStatus:
    """Read-only view returned by :meth:`SlidingWindowRateLimiter.get_status`."""

    attempts: int
    remaining_attempts: int
    is_blocked: bool
    reset_at: Optional[datetime] = None


class SlidingWindowRateLimiter:
    """Per-client, per-action attempt limiter.

    Args:
        rules: Thresholds per action name.  Unknown actions fall back to
            the ``"general"`` rule.
        clock: Time source.
        max_entries: Cap on tracked (client, action) pairs; the least
            recently touched pair is evicted first.
        sweep_interval: Seconds between automatic :meth:`cleanup_expired`
            runs; ``None`` disables the automatic sweep.
    """

    def __init__(
        self,
        rules: Optional[Mapping[str, RateLimitRule]] = None,
        clock: Optional[Clock] = None,
        max_entries: int = 10_000,
        sweep_interval: Optional[float] = 300.0,
    ) -> None:
        self.rules: Dict[str, RateLimitRule] = dict(rules or DEFAULT_RATE_LIMIT_RULES)
        if "general" not in self.rules:
            self.rules["general"] = DEFAULT_RATE_LIMIT_RULES["general"]
        self.clock = clock or SystemClock()
        self.max_entries = max_entries
        self.sweep_interval = timedelta(seconds=sweep_interval) if sweep_interval else None

        self._store: "OrderedDict[Tuple[str, str], RateLimitState]" = OrderedDict()
        self._last_sweep = self.clock.now()

    def rule_for(self, action: str) -> RateLimitRule:
        return self.rules.get(action, self.rules["general"])

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_rate_limited(self, client_id: str, action: str = "general") -> RateLimitCheck:
        """Check (and possibly start blocking) *client_id* for *action*."""
        self._maybe_sweep()
        rule = self.rule_for(action)
        now = self.clock.now()
        key = (client_id, action)

        state = self._store.get(key)
        if state is None:
            return RateLimitCheck(is_limited=False, remaining_attempts=rule.max_attempts)

        if state.blocked_until is not None and now < state.blocked_until:
            return RateLimitCheck(is_limited=True, remaining_attempts=0, reset_at=state.blocked_until)

        if self._window_expired(state, rule, now):
            del self._store[key]
            return RateLimitCheck(is_limited=False, remaining_attempts=rule.max_attempts)

        if state.attempts >= rule.max_attempts:
            state.blocked_until = now + timedelta(seconds=rule.block_duration_seconds)
            self._store.move_to_end(key)
            logger.warning(
                "[RATE LIMIT] Blocking %s for action '%s' until %s (%d attempts)",
                client_id,
                action,
                state.blocked_until.isoformat(),
                state.attempts,
            )
            return RateLimitCheck(is_limited=True, remaining_attempts=0, reset_at=state.blocked_until)

        return RateLimitCheck(
            is_limited=False,
            remaining_attempts=rule.max_attempts - state.attempts,
        )

    def check(self, client_id: str, action: str = "general") -> RateLimitCheck:
        """Like :meth:`is_rate_limited` but raises when limited.

        Raises:
            RateLimitExceededError: If the client is currently limited.
        """
        result = self.is_rate_limited(client_id, action)
        if result.is_limited:
            raise RateLimitExceededError(client_id, action, result.reset_at)
        return result

    def record_attempt(self, client_id: str, action: str = "general") -> None:
        rule = self.rule_for(action)
        now = self.clock.now()
        key = (client_id, action)

        state = self._store.get(key)
        blocked = state is not None and state.blocked_until is not None and now < state.blocked_until
        if state is None or (not blocked and self._window_expired(state, rule, now)):
            self._store[key] = RateLimitState(attempts=1, first_attempt=now)
            self._store.move_to_end(key)
            self._enforce_cap()
            return

        state.attempts += 1
        self._store.move_to_end(key)

    def clear(self, client_id: str, action: Optional[str] = None) -> None:
        """Forget a client's history for *action*, or for every action."""
        if action is not None:
            self._store.pop((client_id, action), None)
            return
        for key in [k for k in self._store if k[0] == client_id]:
            del self._store[key]

    def get_status(self, client_id: str, action: str = "general") -> RateLimitStatus:
        """Read-only status; never mutates the store."""
        rule = self.rule_for(action)
        now = self.clock.now()
        state = self._store.get((client_id, action))

        if state is None:
            return RateLimitStatus(attempts=0, remaining_attempts=rule.max_attempts, is_blocked=False)

        is_blocked = state.blocked_until is not None and now < state.blocked_until
        if not is_blocked and self._window_expired(state, rule, now):
            return RateLimitStatus(attempts=0, remaining_attempts=rule.max_attempts, is_blocked=False)

        return RateLimitStatus(
            attempts=state.attempts,
            remaining_attempts=max(0, rule.max_attempts - state.attempts),
            is_blocked=is_blocked,
            reset_at=state.blocked_until,
        )

    def cleanup_expired(self) -> int:
        """Drop entries whose window and block have both lapsed.

        Returns:
            Number of entries removed.
        """
        now = self.clock.now()
        expired = []
        for key, state in self._store.items():
            rule = self.rule_for(key[1])
            if state.blocked_until is not None and now < state.blocked_until:
                continue
            if self._window_expired(state, rule, now):
                expired.append(key)
        for key in expired:
            del self._store[key]
        self._last_sweep = now
        if expired:
            logger.debug("[RATE LIMIT] Swept %d expired entries", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._store)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _window_expired(state: RateLimitState, rule: RateLimitRule, now: datetime) -> bool:
        return now - state.first_attempt > timedelta(seconds=rule.window_seconds)

    def _maybe_sweep(self) -> None:
        if self.sweep_interval is None:
            return
        if self.clock.now() - self._last_sweep >= self.sweep_interval:
            self.cleanup_expired()

    def _enforce_cap(self) -> None:
        while len(self._store) > self.max_entries:
            evicted, _ = self._store.popitem(last=False)
            logger.debug("[RATE LIMIT] Store full, evicted %s", evicted)


__all__ = [
    "client_identifier",
    "RateLimitState",
    "RateLimitCheck",
    "RateLimitStatus",
    "SlidingWindowRateLimiter",
]
