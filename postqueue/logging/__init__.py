"""Structured event logging for the delivery pipeline."""
from postqueue.logging.models import LogLevel, LogComponent, LogEntry
from postqueue.logging.event_logger import EventLogger

__all__ = [
    "LogLevel", "LogComponent", "LogEntry",
    "EventLogger",
]
