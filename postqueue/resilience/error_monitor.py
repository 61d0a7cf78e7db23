"""Counts classified errors per ``service-type`` and logs threshold alerts."""

import logging
from collections import Counter
from typing import Dict, Mapping, Optional

from postqueue.resilience.errors import ApiError, ErrorSeverity

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLDS: Dict[ErrorSeverity, int] = {
    ErrorSeverity.CRITICAL: 1,
    ErrorSeverity.HIGH: 5,
    ErrorSeverity.MEDIUM: 10,
    ErrorSeverity.LOW: 50,
}


class ErrorMonitor:
    """In-memory error counter.

    Every :meth:`record_error` call at or past the severity's threshold
    emits an ``[ALERT]`` log line.  Construct one per process and pass it
    where it is needed (e.g. as ``on_error`` for
    :func:`~postqueue.resilience.retry.execute_with_retry`).
    """

    def __init__(self, thresholds: Optional[Mapping[ErrorSeverity, int]] = None) -> None:
        self.thresholds = dict(DEFAULT_ALERT_THRESHOLDS)
        if thresholds:
            self.thresholds.update(thresholds)
        self._counts: Counter = Counter()
        self.alerts_sent = 0

    @staticmethod
    def key_for(error: ApiError) -> str:
        return f"{error.service}-{error.type.value}"

    def record_error(self, error: ApiError) -> int:
        """Count *error*; returns the new count for its key."""
        key = self.key_for(error)
        self._counts[key] += 1
        count = self._counts[key]

        threshold = self.thresholds.get(error.severity, 0)
        if count >= threshold:
            self._send_alert(error, count)
        return count

    def get_error_stats(self) -> Dict[str, int]:
        return dict(self._counts)

    def reset_counts(self) -> None:
        self._counts.clear()

    def _send_alert(self, error: ApiError, count: int) -> None:
        self.alerts_sent += 1
        logger.error(
            "[ALERT] API Error Alert: %s - %s (%d occurrences, severity=%s, user=%s)",
            error.service,
            error.type.value,
            count,
            error.severity.value,
            error.user_id,
        )


__all__ = ["DEFAULT_ALERT_THRESHOLDS", "ErrorMonitor"]
