"""Structured event log for the delivery pipeline.

``EventLogger`` writes every :class:`~postqueue.logging.models.LogEntry` as
a JSON line to local files (via ``aiofiles``), keeps an in-memory ring
buffer for fast ``get_recent()`` queries, and forwards entries to any
registered custom handlers.

Construct one per process and pass it to the services that emit events;
there is no global instance.
"""

import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

import aiofiles

from postqueue.logging.models import LogComponent, LogEntry, LogLevel
from postqueue.utils import Clock, SystemClock

logger = logging.getLogger(__name__)


class EventLogger:
    """Pipeline event log.

    Parameters:
        log_dir: Directory for log files (created if missing).
        clock: Time source for entry timestamps.
        max_recent: Size of the in-memory ring buffer.
        write_files: When ``False``, only the buffer and handlers receive
            entries (useful for dry runs).
    """

    def __init__(
        self,
        log_dir: str = "logs",
        clock: Optional[Clock] = None,
        max_recent: int = 1000,
        write_files: bool = True,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.write_files = write_files
        if write_files:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock or SystemClock()

        # Log file paths
        self._main_log = self.log_dir / "events.log"
        self._error_log = self.log_dir / "errors.log"

        # In-memory ring buffer for quick access
        self._recent_logs: Deque[LogEntry] = deque(maxlen=max_recent)

        # Custom handlers registered via add_handler()
        self._handlers: List[Callable[[LogEntry], None]] = []

    def add_handler(self, handler: Callable[[LogEntry], None]) -> None:
        """Register a custom synchronous log handler."""
        self._handlers.append(handler)

    # ------------------------------------------------------------------
    # Core log method
    # ------------------------------------------------------------------

    async def log(
        self,
        level: LogLevel,
        component: LogComponent,
        message: str,
        job_id: Optional[str] = None,
        user_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        duration_ms: Optional[int] = None,
    ) -> LogEntry:
        """Record a structured event and return the entry."""
        entry = LogEntry(
            timestamp=self.clock.now(),
            level=level,
            component=component,
            message=message,
            job_id=job_id,
            user_id=user_id,
            data=data or {},
            duration_ms=duration_ms,
        )

        if error is not None:
            entry.error_type = type(error).__name__
            entry.error_message = str(error)

        self._recent_logs.append(entry)

        if self.write_files:
            await self._write_to_file(entry)

        for handler in self._handlers:
            try:
                handler(entry)
            except Exception:
                # A broken handler must not break the pipeline
                logger.exception("[LOGGING] Event handler %r failed", handler)

        return entry

    # ------------------------------------------------------------------
    # Convenience methods
    # ------------------------------------------------------------------

    async def debug(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.DEBUG, component, message, **kwargs)

    async def info(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.INFO, component, message, **kwargs)

    async def warning(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.WARNING, component, message, **kwargs)

    async def error(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.ERROR, component, message, **kwargs)

    async def critical(self, component: LogComponent, message: str, **kwargs: Any) -> LogEntry:
        return await self.log(LogLevel.CRITICAL, component, message, **kwargs)

    # ------------------------------------------------------------------
    # Query methods
    # ------------------------------------------------------------------

    def get_recent(
        self,
        limit: int = 20,
        level: Optional[LogLevel] = None,
        component: Optional[LogComponent] = None,
        job_id: Optional[str] = None,
    ) -> List[LogEntry]:
        """Return recent entries from the in-memory ring buffer.

        Filters are applied in-memory (fast, no I/O).
        """
        logs = list(self._recent_logs)

        if level is not None:
            logs = [entry for entry in logs if entry.level == level]
        if component is not None:
            logs = [entry for entry in logs if entry.component == component]
        if job_id is not None:
            logs = [entry for entry in logs if entry.job_id == job_id]

        return logs[-limit:]

    # ------------------------------------------------------------------
    # Private output methods
    # ------------------------------------------------------------------

    async def _write_to_file(self, entry: LogEntry) -> None:
        """Append the entry to the JSON log files.

        - ``events.log`` -- all entries
        - ``errors.log`` -- ERROR and CRITICAL only
        """
        json_line = entry.to_json() + "\n"

        async with aiofiles.open(self._main_log, "a", encoding="utf-8") as f:
            await f.write(json_line)

        if entry.level.value >= LogLevel.ERROR.value:
            async with aiofiles.open(self._error_log, "a", encoding="utf-8") as f:
                await f.write(json_line)


__all__ = ["EventLogger"]
