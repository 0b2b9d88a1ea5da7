# Core module - shared utilities for the vault components:
# - Structured security event logging

from .event_log import (
    EventLogger,
    EventSeverity,
    EventType,
    get_event_logger,
    log_security_event,
)

__all__ = [
    "EventLogger",
    "EventType",
    "EventSeverity",
    "get_event_logger",
    "log_security_event",
]
