# Guild Vault - Security Event Log
#
# Structured (JSON) logging of vault security events: account lifecycle,
# credential access, permission changes, denials and TOTP enrollment.
# Complements the durable AccessAuditLog table with a forensic stream
# that operators can ship to their log pipeline.
#
# Never pass secrets, key material or OTP codes in ``details``.

import logging
import os
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog

EVENT_LOGGER_NAME = "guild_vault.events"


class EventType(str, Enum):
    """Types of vault security events."""
    ACCOUNT_CREATED = "account.created"
    ACCOUNT_UPDATED = "account.updated"
    ACCOUNT_DELETED = "account.deleted"

    CREDENTIALS_ACCESSED = "credentials.accessed"
    ACCESS_DENIED = "access.denied"

    PERMISSION_ADDED = "permission.added"
    PERMISSION_REMOVED = "permission.removed"

    TOTP_GENERATED = "totp.generated"
    TOTP_ENROLLMENT_STARTED = "totp.enrollment.started"
    TOTP_ENROLLED = "totp.enrolled"
    TOTP_ENROLLMENT_FAILED = "totp.enrollment.failed"

    ACCESS_LOGS_PRUNED = "access_logs.pruned"

    VAULT_ERROR = "vault.error"
    CONFIG_ERROR = "config.error"


class EventSeverity(str, Enum):
    """
    Severity levels for vault events.

    - INFO: normal activity (logged only)
    - INVESTIGATE: unusual but expected (denied access, failed enrollment)
    - ALERT: integrity problem (tampered blob, misconfiguration)
    - CRITICAL: vault cannot operate
    """
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class EventLogger:
    """
    Append-only structured logger for vault security events.

    Features:
    - JSON lines via structlog
    - Automatic timestamp and event ID
    - One file per day under ``log_dir``
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize the event logger.

        Args:
            log_dir: Directory for event logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self.log_file = self._setup_file_handler()
        self.logger = structlog.get_logger(EVENT_LOGGER_NAME)

    def _setup_file_handler(self) -> Path:
        """Attach a daily file handler to the event logger (once per file)."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"events_{today}.log"

        std_logger = logging.getLogger(EVENT_LOGGER_NAME)
        std_logger.setLevel(logging.INFO)
        for handler in std_logger.handlers:
            if getattr(handler, "baseFilename", None) == os.path.abspath(log_file):
                return log_file

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        std_logger.addHandler(file_handler)
        return log_file

    def close(self) -> None:
        """Detach and close the file handler owned by this logger."""
        std_logger = logging.getLogger(EVENT_LOGGER_NAME)
        target = os.path.abspath(self.log_file)
        for handler in list(std_logger.handlers):
            if getattr(handler, "baseFilename", None) == target:
                std_logger.removeHandler(handler)
                handler.close()

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_context: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log a security event (append-only).

        Args:
            event_type: Type of event
            severity: Severity level
            message: Human-readable description
            details: Additional details (ids and names only)
            user_context: Acting identity (user id, username)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())
        self.logger.info(
            "security_event",
            event_id=event_id,
            event_type=event_type.value,
            severity=severity.value,
            message=message,
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details or {},
            user_context=user_context or self._get_default_user_context(),
        )
        return event_id

    def log_vault_event(
        self,
        event_type: EventType,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_context: Optional[Dict[str, Any]] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> str:
        """Log a vault event; message is prefixed with ``Vault:``."""
        return self.log_event(
            event_type=event_type,
            severity=severity,
            message=f"Vault: {message}",
            details=details,
            user_context=user_context,
        )

    def _get_default_user_context(self) -> Dict[str, Any]:
        """Process context used when no acting identity is known."""
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


# Global logger instance
_event_logger: Optional[EventLogger] = None


def get_event_logger(log_dir: Optional[Path] = None) -> EventLogger:
    """Get global event logger (singleton pattern).

    ``log_dir`` only applies to the first call, which creates the logger.
    """
    global _event_logger
    if _event_logger is None:
        _event_logger = EventLogger(log_dir)
    return _event_logger


def log_security_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs
) -> str:
    """
    Convenience function for logging security events.

    Usage:
        log_security_event(
            EventType.ACCESS_DENIED,
            EventSeverity.INVESTIGATE,
            "Denied credential access",
            details={"account_id": "acc_...", "reason": "not whitelisted"}
        )
    """
    return get_event_logger().log_event(event_type, severity, message, **kwargs)
