# Guild Vault - Credential Store
#
# Durable CRUD over shared game accounts. Each account has:
#   - Unique id (acc_<uuid>) that never changes
#   - Name (unique, case-insensitive), login, server realm
#   - Owner id (external identity, implicitly authorized)
#   - Encrypted password, kafra password and TOTP secret (each optional)
#   - TOTP parameters (algorithm, digits, period)
#   - Ordered allow/deny permission list
#
# Security:
#   - Secrets are encrypted by CipherEngine before they reach SQLite
#   - Summaries expose only has_password / has_kafra_password / has_totp_secret
#   - get_decrypted_credentials() does NOT check permissions; callers must
#     run a PermissionEngine check first
#
# Design:
#   - SQLite + WAL + context manager connections
#   - One threading.Lock per store serializes every write; each
#     read-modify-write runs in a single transaction (no torn writes)
#   - Permissions table cascades on account delete

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from ..exceptions import NotFoundError, ValidationError
from .encryption import CipherEngine
from .models import (
    DEFAULT_SERVER,
    Account,
    AccountSummary,
    DecryptedCredentials,
    Permission,
    PermissionAction,
    PermissionType,
    Server,
    TOTPParameters,
    coerce_enum,
)
from .totp import decode_secret, normalize_secret, validate_totp_parameters

logger = logging.getLogger(__name__)

SECRET_FIELDS = ("password", "kafra_password", "totp_secret")
PLAIN_FIELDS = ("name", "login", "server", "totp_algorithm", "totp_digits", "totp_period")
ACCOUNT_FIELDS = frozenset(SECRET_FIELDS + PLAIN_FIELDS)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def generate_account_id() -> str:
    return f"acc_{uuid4().hex}"


def generate_permission_id() -> str:
    return f"perm_{uuid4().hex}"


class CredentialStore:
    """SQLite-backed store for shared accounts and their permission lists.

    Thread-safe. Every write takes the store lock.

    Usage::

        store = CredentialStore(cipher, db_path="data/vault.db")
        summary = store.create_account({"name": "Main", "login": "guild01",
                                        "password": "hunter2"}, owner_id="42")
        creds = store.get_decrypted_credentials(summary.id)
    """

    def __init__(self, cipher: CipherEngine, db_path: Optional[str] = None):
        self.cipher = cipher
        self.db_path = Path(db_path) if db_path else Path("data/vault.db")
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_database()

    def _init_database(self):
        """Create tables if they don't exist."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    name_key TEXT NOT NULL UNIQUE,
                    login TEXT NOT NULL,
                    server TEXT NOT NULL,
                    owner_id TEXT,
                    password TEXT,
                    kafra_password TEXT,
                    totp_secret TEXT,
                    totp_algorithm TEXT NOT NULL DEFAULT 'SHA1',
                    totp_digits INTEGER NOT NULL DEFAULT 6,
                    totp_period INTEGER NOT NULL DEFAULT 30,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS permissions (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    account_id TEXT NOT NULL
                        REFERENCES accounts(id) ON DELETE CASCADE,
                    type TEXT NOT NULL,
                    value TEXT NOT NULL,
                    action TEXT NOT NULL,
                    added_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_permissions_account
                ON permissions(account_id)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_accounts_owner
                ON accounts(owner_id)
            """)

    @contextmanager
    def _connect(self):
        """Open a WAL-mode SQLite connection; auto-closes on exit."""
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ── Field validation ─────────────────────────────────────────────

    @staticmethod
    def _check_fields(fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - ACCOUNT_FIELDS
        if unknown:
            raise ValidationError(f"Unknown account field(s): {', '.join(sorted(unknown))}")

    @staticmethod
    def _required_text(value: Any, field_name: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Account {field_name} is required")
        return value.strip()

    @staticmethod
    def _server(value: Any) -> Server:
        if isinstance(value, str):
            value = value.strip().upper()
        return coerce_enum(Server, value, "server")

    def _seal(self, field_name: str, value: Any) -> Optional[str]:
        """Encrypt a secret field; None or empty string clears it."""
        if value is None or value == "":
            return None
        if not isinstance(value, str):
            raise ValidationError(f"Account {field_name} must be a string")
        if field_name == "totp_secret":
            decode_secret(value)
            value = normalize_secret(value)
        return self.cipher.encrypt(value)

    def _open(self, blob: Optional[str]) -> Optional[str]:
        return self.cipher.decrypt(blob) if blob else None

    # ── CRUD Operations ──────────────────────────────────────────────

    def create_account(self, fields: Mapping[str, Any], owner_id: Optional[str]) -> AccountSummary:
        """Create an account owned by ``owner_id``.

        Args:
            fields: name, login (required); server, password,
                kafra_password, totp_secret, totp_algorithm,
                totp_digits, totp_period (optional).
            owner_id: Identity of the creator.

        Returns:
            Summary of the created account (no secret values).

        Raises:
            ValidationError: Missing name/login, unknown server or
                field, bad TOTP secret/parameters, duplicate name.
            ConfigurationError: Encryption is not configured.
        """
        self._check_fields(fields)
        name = self._required_text(fields.get("name"), "name")
        login = self._required_text(fields.get("login"), "login")
        server = self._server(fields.get("server") or DEFAULT_SERVER)
        algorithm, digits, period = validate_totp_parameters(
            fields.get("totp_algorithm"),
            fields.get("totp_digits", 6),
            fields.get("totp_period", 30),
        )
        sealed = {f: self._seal(f, fields.get(f)) for f in SECRET_FIELDS}

        now = _now()
        account = Account(
            id=generate_account_id(),
            name=name,
            login=login,
            server=server,
            owner_id=owner_id,
            totp_algorithm=algorithm,
            totp_digits=digits,
            totp_period=period,
            created_at=now,
            updated_at=now,
            **sealed,
        )

        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute("""
                        INSERT INTO accounts
                        (id, name, name_key, login, server, owner_id,
                         password, kafra_password, totp_secret,
                         totp_algorithm, totp_digits, totp_period,
                         created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        account.id, account.name, account.name.lower(),
                        account.login, account.server.value, account.owner_id,
                        account.password, account.kafra_password, account.totp_secret,
                        account.totp_algorithm, account.totp_digits, account.totp_period,
                        account.created_at, account.updated_at,
                    ))
                except sqlite3.IntegrityError as exc:
                    if "name_key" in str(exc):
                        raise ValidationError("An account with this name already exists") from exc
                    raise

        logger.info(
            "Account created: %s (%s) owner=%s",
            account.name, account.id, owner_id,
        )
        return account.to_summary()

    def get_account(self, account_id: str) -> Optional[AccountSummary]:
        """Get an account summary by id."""
        with self._lock:
            with self._connect() as conn:
                account = self._load_account(conn, account_id)
        return account.to_summary() if account else None

    def get_all_accounts(self) -> List[AccountSummary]:
        """All account summaries, ordered by name."""
        return [a.to_summary() for a in self.load_all_accounts()]

    def load_account(self, account_id: str) -> Optional[Account]:
        """Full stored record (secrets still encrypted)."""
        with self._lock:
            with self._connect() as conn:
                return self._load_account(conn, account_id)

    def load_all_accounts(self) -> List[Account]:
        """Every stored record (secrets still encrypted), ordered by name."""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM accounts ORDER BY name_key ASC"
                ).fetchall()
                perms = conn.execute(
                    "SELECT * FROM permissions ORDER BY seq ASC"
                ).fetchall()

        by_account: Dict[str, List[Permission]] = {}
        for row in perms:
            by_account.setdefault(row["account_id"], []).append(self._row_to_permission(row))
        return [self._row_to_account(r, by_account.get(r["id"], [])) for r in rows]

    def update_account(self, account_id: str, fields: Mapping[str, Any]) -> AccountSummary:
        """Update the supplied fields of an account.

        Secret fields are re-encrypted; ``None`` or ``""`` clears a
        secret. The id, owner and permissions are not touched here.

        Raises:
            NotFoundError: Unknown account id.
            ValidationError: Invalid or unknown fields, duplicate name.
        """
        self._check_fields(fields)

        updates: Dict[str, Any] = {}
        if "name" in fields:
            updates["name"] = self._required_text(fields["name"], "name")
            updates["name_key"] = updates["name"].lower()
        if "login" in fields:
            updates["login"] = self._required_text(fields["login"], "login")
        if "server" in fields:
            updates["server"] = self._server(fields["server"]).value
        for secret_field in SECRET_FIELDS:
            if secret_field in fields:
                updates[secret_field] = self._seal(secret_field, fields[secret_field])

        with self._lock:
            with self._connect() as conn:
                current = self._load_account(conn, account_id)
                if current is None:
                    raise NotFoundError(f"Account not found: {account_id}")

                if {"totp_algorithm", "totp_digits", "totp_period"} & set(fields):
                    algorithm, digits, period = validate_totp_parameters(
                        fields.get("totp_algorithm", current.totp_algorithm),
                        fields.get("totp_digits", current.totp_digits),
                        fields.get("totp_period", current.totp_period),
                    )
                    updates.update(
                        totp_algorithm=algorithm, totp_digits=digits, totp_period=period,
                    )

                updates["updated_at"] = _now()
                assignments = ", ".join(f"{column} = ?" for column in updates)
                try:
                    conn.execute(
                        f"UPDATE accounts SET {assignments} WHERE id = ?",
                        (*updates.values(), account_id),
                    )
                except sqlite3.IntegrityError as exc:
                    if "name_key" in str(exc):
                        raise ValidationError("An account with this name already exists") from exc
                    raise
                account = self._load_account(conn, account_id)

        logger.info("Account updated: %s fields=%s", account_id, sorted(fields))
        return account.to_summary()

    def delete_account(self, account_id: str) -> bool:
        """Remove an account and (by cascade) its permissions."""
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM accounts WHERE id = ?", (account_id,),
                )
                deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Account deleted: %s", account_id)
        return deleted

    # ── Secret access ────────────────────────────────────────────────

    def get_decrypted_credentials(self, account_id: str) -> Optional[DecryptedCredentials]:
        """Decrypt every secret of an account.

        Internal accessor: the caller must have checked permissions.

        Raises:
            DecryptionError: A stored blob fails authentication.
            ConfigurationError: Encryption is not configured.
        """
        account = self.load_account(account_id)
        if account is None:
            return None
        try:
            return DecryptedCredentials(
                id=account.id,
                name=account.name,
                login=account.login,
                server=account.server,
                password=self._open(account.password),
                kafra_password=self._open(account.kafra_password),
                totp_secret=self._open(account.totp_secret),
            )
        except Exception:
            logger.error("Error decrypting credentials for account %s", account_id)
            raise

    def get_totp_parameters(self, account_id: str) -> Optional[TOTPParameters]:
        """Decrypted TOTP secret plus parameters, or None when not configured."""
        account = self.load_account(account_id)
        if account is None or not account.totp_secret:
            return None
        return TOTPParameters(
            secret=self.cipher.decrypt(account.totp_secret),
            algorithm=account.totp_algorithm,
            digits=account.totp_digits,
            period=account.totp_period,
        )

    # ── Ownership ────────────────────────────────────────────────────

    def is_account_owner(self, account_id: str, user_id: str) -> bool:
        owner = self.get_account_owner(account_id)
        return owner is not None and owner == user_id

    def get_account_owner(self, account_id: str) -> Optional[str]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT owner_id FROM accounts WHERE id = ?", (account_id,),
                ).fetchone()
        return row["owner_id"] if row else None

    # ── Permission records ───────────────────────────────────────────

    def add_permission_record(self, account_id: str, permission: Permission) -> Permission:
        """Append a permission to an account's list.

        Raises:
            NotFoundError: Unknown account id.
        """
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE accounts SET updated_at = ? WHERE id = ?",
                    (_now(), account_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError(f"Account not found: {account_id}")
                conn.execute("""
                    INSERT INTO permissions (id, account_id, type, value, action, added_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    permission.id, account_id, permission.type.value,
                    permission.value, permission.action.value, permission.added_at,
                ))
        return permission

    def remove_permission_record(self, account_id: str, permission_id: str) -> bool:
        """Remove one permission; False if the account has no such entry.

        Raises:
            NotFoundError: Unknown account id.
        """
        with self._lock:
            with self._connect() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM accounts WHERE id = ?", (account_id,),
                ).fetchone()
                if exists is None:
                    raise NotFoundError(f"Account not found: {account_id}")
                cursor = conn.execute(
                    "DELETE FROM permissions WHERE id = ? AND account_id = ?",
                    (permission_id, account_id),
                )
                removed = cursor.rowcount > 0
                if removed:
                    conn.execute(
                        "UPDATE accounts SET updated_at = ? WHERE id = ?",
                        (_now(), account_id),
                    )
        return removed

    # ── Internal ─────────────────────────────────────────────────────

    def _load_account(self, conn: sqlite3.Connection, account_id: str) -> Optional[Account]:
        row = conn.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,),
        ).fetchone()
        if row is None:
            return None
        perms = conn.execute(
            "SELECT * FROM permissions WHERE account_id = ? ORDER BY seq ASC",
            (account_id,),
        ).fetchall()
        return self._row_to_account(row, [self._row_to_permission(p) for p in perms])

    @staticmethod
    def _row_to_permission(row: sqlite3.Row) -> Permission:
        return Permission(
            id=row["id"],
            type=PermissionType(row["type"]),
            value=row["value"],
            action=PermissionAction(row["action"]),
            added_at=row["added_at"],
        )

    @staticmethod
    def _row_to_account(row: sqlite3.Row, permissions: List[Permission]) -> Account:
        return Account(
            id=row["id"],
            name=row["name"],
            login=row["login"],
            server=Server(row["server"]),
            owner_id=row["owner_id"],
            password=row["password"],
            kafra_password=row["kafra_password"],
            totp_secret=row["totp_secret"],
            totp_algorithm=row["totp_algorithm"],
            totp_digits=row["totp_digits"],
            totp_period=row["totp_period"],
            permissions=permissions,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
