# Guild Vault - Access Audit Log
#
# Append-only record of who touched which shared account and how
# (view / edit / create / delete / totp). Entries are never modified;
# the only removal path is age-based pruning.
#
# The account name is copied into each entry when it is written so the
# trail stays readable after an account is deleted.

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional
from uuid import uuid4

from ..core.event_log import EventLogger, EventSeverity, EventType, get_event_logger
from ..exceptions import ValidationError
from .models import AccessAction, AccessLogEntry, coerce_enum

logger = logging.getLogger(__name__)

UNKNOWN_ACCOUNT_NAME = "Unknown"
DEFAULT_LIMIT = 100
DEFAULT_RETENTION_DAYS = 30


class AccessAuditLog:
    """SQLite-backed credential access trail.

    Args:
        db_path: Database file (default: data/access_logs.db)
        resolve_account_name: Callable mapping an account id to its
            current name, or None when the account no longer exists.
        event_logger: Destination for security events (default: the
            global event logger).
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        resolve_account_name: Optional[Callable[[str], Optional[str]]] = None,
        event_logger: Optional[EventLogger] = None,
    ):
        self.db_path = Path(db_path) if db_path else Path("data/access_logs.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._resolve_account_name = resolve_account_name
        self._event_logger = event_logger
        self._lock = threading.Lock()
        self._init_database()

    def _init_database(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS access_logs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    account_id TEXT NOT NULL,
                    account_name TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    username TEXT NOT NULL,
                    action TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_access_logs_account
                ON access_logs(account_id, timestamp)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_access_logs_user
                ON access_logs(user_id, timestamp)
            """)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @property
    def events(self) -> EventLogger:
        return self._event_logger or get_event_logger()

    def _account_name(self, account_id: str) -> str:
        if self._resolve_account_name is None:
            return UNKNOWN_ACCOUNT_NAME
        return self._resolve_account_name(account_id) or UNKNOWN_ACCOUNT_NAME

    def log_access(
        self,
        account_id: str,
        user_id: str,
        username: str,
        action,
        account_name: Optional[str] = None,
    ) -> AccessLogEntry:
        """Append one access entry.

        ``account_name`` overrides the resolver, e.g. when logging a
        delete after the account is already gone.

        Raises:
            ValidationError: Unknown action.
        """
        access_action = coerce_enum(AccessAction, action, "access action")
        if not account_id:
            raise ValidationError("Access log entries need an account id")

        entry = AccessLogEntry(
            id=str(uuid4()),
            account_id=account_id,
            account_name=account_name or self._account_name(account_id),
            user_id=str(user_id),
            username=username or "",
            action=access_action,
            timestamp=datetime.now(timezone.utc).isoformat(timespec="microseconds"),
        )

        with self._lock:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO access_logs
                    (id, account_id, account_name, user_id, username, action, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    entry.id, entry.account_id, entry.account_name,
                    entry.user_id, entry.username, entry.action.value, entry.timestamp,
                ))

        self.events.log_vault_event(
            EventType.CREDENTIALS_ACCESSED,
            f"{entry.action.value} on {entry.account_name}",
            details={
                "account_id": entry.account_id,
                "account_name": entry.account_name,
                "action": entry.action.value,
                "log_id": entry.id,
            },
            user_context={"user_id": entry.user_id, "username": entry.username},
        )
        return entry

    def get_access_logs(
        self,
        account_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> List[AccessLogEntry]:
        """Entries matching the filters, newest first, at most ``limit``."""
        if limit is None or int(limit) <= 0:
            return []

        query = "SELECT * FROM access_logs WHERE 1=1"
        params: list = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(str(user_id))
        query += " ORDER BY timestamp DESC, seq DESC LIMIT ?"
        params.append(int(limit))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def clear_old_access_logs(self, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete entries older than ``older_than_days``; returns the count."""
        if older_than_days < 0:
            raise ValidationError("older_than_days must not be negative")
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)

        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM access_logs WHERE timestamp < ?",
                    (cutoff.isoformat(timespec="microseconds"),),
                )
                removed = cursor.rowcount

        if removed:
            logger.info("Pruned %d access log entries older than %d days", removed, older_than_days)
            self.events.log_vault_event(
                EventType.ACCESS_LOGS_PRUNED,
                f"pruned {removed} access log entries",
                details={"removed": removed, "older_than_days": older_than_days},
                severity=EventSeverity.INFO,
            )
        return removed

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> AccessLogEntry:
        return AccessLogEntry(
            id=row["id"],
            account_id=row["account_id"],
            account_name=row["account_name"],
            user_id=row["user_id"],
            username=row["username"],
            action=AccessAction(row["action"]),
            timestamp=row["timestamp"],
        )
