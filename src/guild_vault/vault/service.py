# Guild Vault - Shared Account Vault
#
# Wires the cipher, store, permission engine, TOTP engine, QR extractor
# and access log into one object that chat/HTTP layers talk to.
#
# Guarded flows (view_credentials, request_totp, management operations,
# TOTP enrollment) check permissions, record an access log entry and
# emit a security event. Pass-through methods with the component names
# (get_decrypted_credentials, generate_totp, ...) do not check anything;
# transports must call check_permission first.

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..config import VaultConfig, load_config
from ..core.event_log import EventLogger, EventSeverity, EventType, get_event_logger
from ..exceptions import (
    AccessDeniedError,
    DecodeError,
    DecryptionError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from .access_log import AccessAuditLog
from .credential_store import CredentialStore
from .encryption import CipherEngine
from .models import (
    REASON_BLOCKED,
    REASON_NOT_WHITELISTED,
    AccessAction,
    AccessLogEntry,
    AccountSummary,
    DecryptedCredentials,
    Identity,
    Permission,
    PermissionAction,
    PermissionDecision,
)
from .permissions import PermissionEngine
from .qr_reader import OTPAuthPayload, QRResult, QRSecretExtractor
from .sessions import EnrollmentSession, ExpiringSessionMap
from .totp import TOTPCode, TOTPEngine

logger = logging.getLogger(__name__)

IdentityLike = Union[Identity, str]

DENIAL_MESSAGES = {
    REASON_BLOCKED: "You have been blocked from accessing this account.",
    REASON_NOT_WHITELISTED: "You are not on the whitelist for this account.",
}
GENERIC_DENIAL_MESSAGE = "You do not have permission to access this account."
MANAGE_DENIAL_MESSAGE = "Only the account owner or an administrator can do that."


def _as_identity(identity: IdentityLike) -> Identity:
    if isinstance(identity, Identity):
        return identity
    return Identity(user_id=str(identity))


@dataclass
class CredentialView:
    """Result of a granted credential read."""
    credentials: DecryptedCredentials
    totp: Optional[TOTPCode]
    decision: PermissionDecision

    def to_dict(self) -> Dict[str, Any]:
        data = self.credentials.to_dict()
        data["totp"] = self.totp.to_dict() if self.totp else None
        data["access_reason"] = self.decision.reason
        return data


class SharedAccountVault:
    """Facade over the shared-account vault components.

    Usage::

        vault = SharedAccountVault(load_config())
        alice = Identity.of("1001", "alice", role_ids=["officers"])
        summary = vault.create_account({"name": "Main", "login": "guild01"}, alice)
        view = vault.view_credentials(summary.id, alice)
    """

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        *,
        cipher: Optional[CipherEngine] = None,
        store: Optional[CredentialStore] = None,
        access_log: Optional[AccessAuditLog] = None,
        qr_extractor: Optional[QRSecretExtractor] = None,
        event_logger: Optional[EventLogger] = None,
        clock: Callable[[], float] = time.time,
        session_clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or load_config()
        self.cipher = cipher or CipherEngine.from_config(self.config)
        self.store = store or CredentialStore(self.cipher, db_path=str(self.config.vault_db_path))
        self.permissions = PermissionEngine(self.store)
        self.totp = TOTPEngine(self.store, clock=clock)
        self.events = event_logger or get_event_logger(self.config.log_dir)
        self.access_log = access_log or AccessAuditLog(
            db_path=str(self.config.access_log_db_path),
            resolve_account_name=self._account_name,
            event_logger=self.events,
        )
        self.qr = qr_extractor or QRSecretExtractor(timeout=self.config.qr_timeout)
        self.enrollments: ExpiringSessionMap[EnrollmentSession] = ExpiringSessionMap(
            self.config.enrollment_ttl, clock=session_clock,
        )
        self._clock = clock

        if not self.cipher.available:
            self.events.log_vault_event(
                EventType.CONFIG_ERROR,
                "encryption unavailable, secret operations will fail",
                severity=EventSeverity.CRITICAL,
            )

    def _account_name(self, account_id: str) -> Optional[str]:
        summary = self.store.get_account(account_id)
        return summary.name if summary else None

    def _require_account(self, account_id: str) -> AccountSummary:
        summary = self.store.get_account(account_id)
        if summary is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return summary

    def _require_manage(self, account_id: str, identity: Identity, operation: str) -> None:
        if self.permissions.can_manage(account_id, identity):
            return
        self.events.log_vault_event(
            EventType.ACCESS_DENIED,
            f"{operation} refused for non-owner",
            details={"account_id": account_id, "operation": operation},
            user_context=identity.to_context(),
            severity=EventSeverity.INVESTIGATE,
        )
        raise AccessDeniedError(MANAGE_DENIAL_MESSAGE)

    def _require_access(self, account_id: str, identity: Identity) -> PermissionDecision:
        decision = self.permissions.check_permission(account_id, identity)
        if decision.allowed:
            return decision
        self.events.log_vault_event(
            EventType.ACCESS_DENIED,
            "credential access denied",
            details={"account_id": account_id, **decision.to_dict()},
            user_context=identity.to_context(),
            severity=EventSeverity.INVESTIGATE,
        )
        raise AccessDeniedError(self.denial_message(decision), decision=decision)

    def _log(self, account_id: str, identity: Identity, action: AccessAction,
             account_name: Optional[str] = None) -> AccessLogEntry:
        return self.access_log.log_access(
            account_id, identity.user_id, identity.username, action,
            account_name=account_name,
        )

    # ── Account lifecycle ────────────────────────────────────────────

    def create_account(self, fields: Mapping[str, Any], identity: IdentityLike) -> AccountSummary:
        """Create an account owned by ``identity`` and log ``create``."""
        identity = _as_identity(identity)
        summary = self.store.create_account(fields, owner_id=identity.user_id)
        self._log(summary.id, identity, AccessAction.CREATE)
        self.events.log_vault_event(
            EventType.ACCOUNT_CREATED,
            f"account {summary.name} created",
            details={"account_id": summary.id, "server": summary.server.value},
            user_context=identity.to_context(),
        )
        return summary

    def get_account(self, account_id: str) -> Optional[AccountSummary]:
        return self.store.get_account(account_id)

    def get_all_accounts(self) -> List[AccountSummary]:
        return self.store.get_all_accounts()

    def update_account(
        self, account_id: str, fields: Mapping[str, Any], identity: IdentityLike,
    ) -> AccountSummary:
        """Owner/admin only. Logs ``edit`` with the changed field names."""
        identity = _as_identity(identity)
        self._require_manage(account_id, identity, "update")
        summary = self.store.update_account(account_id, fields)
        self._log(account_id, identity, AccessAction.EDIT)
        self.events.log_vault_event(
            EventType.ACCOUNT_UPDATED,
            f"account {summary.name} updated",
            details={"account_id": account_id, "fields": sorted(fields)},
            user_context=identity.to_context(),
        )
        return summary

    def delete_account(self, account_id: str, identity: IdentityLike) -> bool:
        """Owner/admin only. Permissions go with the account; log entries stay."""
        identity = _as_identity(identity)
        summary = self._require_account(account_id)
        self._require_manage(account_id, identity, "delete")
        deleted = self.store.delete_account(account_id)
        if deleted:
            self.enrollments.pop(identity.user_id, account_id)
            self._log(account_id, identity, AccessAction.DELETE, account_name=summary.name)
            self.events.log_vault_event(
                EventType.ACCOUNT_DELETED,
                f"account {summary.name} deleted",
                details={"account_id": account_id},
                user_context=identity.to_context(),
                severity=EventSeverity.INVESTIGATE,
            )
        return deleted

    # ── Credential access ────────────────────────────────────────────

    def get_decrypted_credentials(self, account_id: str) -> Optional[DecryptedCredentials]:
        """Unchecked read; call check_permission first."""
        return self.store.get_decrypted_credentials(account_id)

    def generate_totp(self, account_id: str, at: Optional[float] = None) -> Optional[TOTPCode]:
        """Unchecked current code; None when the account has no secret."""
        return self.totp.generate_totp(account_id, at=at)

    def view_credentials(
        self, account_id: str, identity: IdentityLike, include_totp: bool = True,
    ) -> CredentialView:
        """Permission check, decrypt, log ``view``.

        Raises:
            NotFoundError: Unknown account.
            AccessDeniedError: Check failed (carries the decision).
            DecryptionError: Stored secret failed authentication.
        """
        identity = _as_identity(identity)
        decision = self._require_access(account_id, identity)
        try:
            credentials = self.store.get_decrypted_credentials(account_id)
            totp = self.totp.generate_totp(account_id) if include_totp else None
        except DecryptionError:
            self.events.log_vault_event(
                EventType.VAULT_ERROR,
                "stored secret failed authentication",
                details={"account_id": account_id},
                user_context=identity.to_context(),
                severity=EventSeverity.ALERT,
            )
            raise
        if credentials is None:
            raise NotFoundError(f"Account not found: {account_id}")
        self._log(account_id, identity, AccessAction.VIEW)
        return CredentialView(credentials=credentials, totp=totp, decision=decision)

    def request_totp(self, account_id: str, identity: IdentityLike) -> Optional[TOTPCode]:
        """Permission check, current code, log ``totp``."""
        identity = _as_identity(identity)
        self._require_access(account_id, identity)
        code = self.totp.generate_totp(account_id)
        if code is not None:
            self._log(account_id, identity, AccessAction.TOTP)
            self.events.log_vault_event(
                EventType.TOTP_GENERATED,
                "totp code issued",
                details={"account_id": account_id, "remaining_seconds": code.remaining_seconds},
                user_context=identity.to_context(),
            )
        return code

    # ── Permissions ──────────────────────────────────────────────────

    def check_permission(self, account_id: str, identity: IdentityLike) -> PermissionDecision:
        return self.permissions.check_permission(account_id, _as_identity(identity))

    def get_accessible_accounts(self, identity: IdentityLike) -> List[AccountSummary]:
        return self.permissions.get_accessible_accounts(_as_identity(identity))

    def can_manage(self, account_id: str, identity: IdentityLike) -> bool:
        return self.permissions.can_manage(account_id, _as_identity(identity))

    def add_permission(
        self,
        account_id: str,
        identity: IdentityLike,
        permission_type,
        value: str,
        action=PermissionAction.ALLOW,
    ) -> Permission:
        """Owner/admin only. Logs ``edit``."""
        identity = _as_identity(identity)
        self._require_manage(account_id, identity, "add_permission")
        permission = self.permissions.add_permission(account_id, permission_type, value, action)
        self._log(account_id, identity, AccessAction.EDIT)
        self.events.log_vault_event(
            EventType.PERMISSION_ADDED,
            f"{permission.action.value} {permission.type.value} added",
            details={"account_id": account_id, **permission.to_dict()},
            user_context=identity.to_context(),
        )
        return permission

    def remove_permission(self, account_id: str, identity: IdentityLike, permission_id: str) -> bool:
        """Owner/admin only. Logs ``edit`` when something was removed."""
        identity = _as_identity(identity)
        self._require_manage(account_id, identity, "remove_permission")
        removed = self.permissions.remove_permission(account_id, permission_id)
        if removed:
            self._log(account_id, identity, AccessAction.EDIT)
            self.events.log_vault_event(
                EventType.PERMISSION_REMOVED,
                "permission removed",
                details={"account_id": account_id, "permission_id": permission_id},
                user_context=identity.to_context(),
            )
        return removed

    def is_account_owner(self, account_id: str, user_id: str) -> bool:
        return self.store.is_account_owner(account_id, user_id)

    def get_account_owner(self, account_id: str) -> Optional[str]:
        return self.store.get_account_owner(account_id)

    def denial_message(self, decision: PermissionDecision) -> str:
        """User-facing text for a denial; generic when reasons are hidden."""
        if decision.allowed:
            return ""
        if not self.config.reveal_denial_reason:
            return GENERIC_DENIAL_MESSAGE
        return DENIAL_MESSAGES.get(decision.reason, GENERIC_DENIAL_MESSAGE)

    # ── Access log ───────────────────────────────────────────────────

    def log_access(self, account_id: str, user_id: str, username: str, action) -> AccessLogEntry:
        return self.access_log.log_access(account_id, user_id, username, action)

    def get_access_logs(
        self,
        account_id: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AccessLogEntry]:
        return self.access_log.get_access_logs(account_id=account_id, user_id=user_id, limit=limit)

    def clear_old_access_logs(self, older_than_days: Optional[int] = None) -> int:
        if older_than_days is None:
            older_than_days = self.config.access_log_retention_days
        return self.access_log.clear_old_access_logs(older_than_days)

    # ── QR enrollment ────────────────────────────────────────────────

    def process_qr_code(self, image_url: str, timeout: Optional[float] = None) -> QRResult:
        return self.qr.process_qr_code(image_url, timeout)

    def begin_totp_enrollment(self, account_id: str, identity: IdentityLike) -> EnrollmentSession:
        """Open an enrollment window for ``identity`` on an account (owner/admin)."""
        identity = _as_identity(identity)
        summary = self._require_account(account_id)
        self._require_manage(account_id, identity, "totp_enrollment")
        session = EnrollmentSession(
            account_id=account_id,
            account_name=summary.name,
            user_id=identity.user_id,
            started_at=self._clock(),
        )
        self.enrollments.put(identity.user_id, account_id, session)
        self.events.log_vault_event(
            EventType.TOTP_ENROLLMENT_STARTED,
            f"totp enrollment opened for {summary.name}",
            details={"account_id": account_id, "ttl_seconds": self.enrollments.ttl},
            user_context=identity.to_context(),
        )
        return session

    def cancel_totp_enrollment(self, account_id: str, identity: IdentityLike) -> bool:
        identity = _as_identity(identity)
        return self.enrollments.pop(identity.user_id, account_id) is not None

    def _pending_enrollment(self, account_id: str, identity: Identity) -> EnrollmentSession:
        session = self.enrollments.get(identity.user_id, account_id)
        if session is None:
            raise ValidationError("No TOTP enrollment in progress for this account, or it expired")
        return session

    def _enrollment_failed(self, account_id: str, identity: Identity, result: QRResult) -> None:
        self.events.log_vault_event(
            EventType.TOTP_ENROLLMENT_FAILED,
            "qr code could not be used",
            details={"account_id": account_id, "error_type": result.error_type},
            user_context=identity.to_context(),
            severity=EventSeverity.INVESTIGATE,
        )
        if result.error_type == NetworkError.__name__:
            raise NetworkError(result.error)
        raise DecodeError(result.error or "QR code could not be decoded")

    def _finish_enrollment(self, account_id: str, identity: Identity, payload: OTPAuthPayload) -> AccountSummary:
        if payload.type != "totp":
            raise DecodeError("Only time-based (totp) codes are supported")
        # Re-check: ownership may have changed while the image was fetched
        self._require_manage(account_id, identity, "totp_enrollment")
        summary = self.store.update_account(account_id, {
            "totp_secret": payload.secret,
            "totp_algorithm": payload.algorithm,
            "totp_digits": payload.digits,
            "totp_period": payload.period,
        })
        self.enrollments.pop(identity.user_id, account_id)
        self._log(account_id, identity, AccessAction.TOTP)
        self.events.log_vault_event(
            EventType.TOTP_ENROLLED,
            f"totp secret enrolled for {summary.name}",
            details={
                "account_id": account_id,
                "algorithm": payload.algorithm,
                "digits": payload.digits,
                "period": payload.period,
                "issuer": payload.issuer,
            },
            user_context=identity.to_context(),
        )
        return summary

    def complete_totp_enrollment(
        self,
        account_id: str,
        identity: IdentityLike,
        image_url: Optional[str] = None,
        image_bytes: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> AccountSummary:
        """Decode the submitted QR code and store its secret.

        The enrollment stays open after a failed attempt until it expires.
        ``timeout`` bounds the image download.

        Raises:
            ValidationError: No open enrollment (or it expired).
            NetworkError / DecodeError: The QR code could not be used.
            AccessDeniedError: Identity no longer manages the account.
        """
        identity = _as_identity(identity)
        self._pending_enrollment(account_id, identity)
        if image_bytes is not None:
            result = self.qr.process_qr_image(image_bytes)
        elif image_url:
            result = self.qr.process_qr_code(image_url, timeout)
        else:
            raise ValidationError("Provide a QR code image URL or image bytes")
        if not result.success:
            self._enrollment_failed(account_id, identity, result)
        return self._finish_enrollment(account_id, identity, result.data)

    async def acomplete_totp_enrollment(
        self, account_id: str, identity: IdentityLike, image_url: str,
        timeout: Optional[float] = None,
    ) -> AccountSummary:
        """Async variant: the fetch runs on the event loop, the store write in a thread."""
        identity = _as_identity(identity)
        self._pending_enrollment(account_id, identity)
        result = await self.qr.aprocess_qr_code(image_url, timeout)
        if not result.success:
            self._enrollment_failed(account_id, identity, result)
        return await asyncio.to_thread(self._finish_enrollment, account_id, identity, result.data)
