"""
Shared-account vault.

Components (leaves first): CipherEngine -> CredentialStore ->
PermissionEngine -> TOTPEngine -> AccessAuditLog. QRSecretExtractor is
independent; SharedAccountVault wires everything together.
"""

from .access_log import AccessAuditLog
from .credential_store import CredentialStore
from .encryption import CipherEngine
from .models import (
    AccessAction,
    AccessLogEntry,
    Account,
    AccountSummary,
    DecryptedCredentials,
    Identity,
    Permission,
    PermissionAction,
    PermissionDecision,
    PermissionType,
    Server,
    TOTPParameters,
)
from .permissions import PermissionEngine
from .qr_reader import OTPAuthPayload, QRResult, QRSecretExtractor, build_otpauth_uri
from .service import CredentialView, SharedAccountVault
from .sessions import EnrollmentSession, ExpiringSessionMap
from .totp import TOTPCode, TOTPEngine

__all__ = [
    "AccessAuditLog",
    "CredentialStore",
    "CipherEngine",
    "PermissionEngine",
    "TOTPEngine",
    "TOTPCode",
    "QRSecretExtractor",
    "QRResult",
    "OTPAuthPayload",
    "build_otpauth_uri",
    "SharedAccountVault",
    "CredentialView",
    "ExpiringSessionMap",
    "EnrollmentSession",
    "AccessAction",
    "AccessLogEntry",
    "Account",
    "AccountSummary",
    "DecryptedCredentials",
    "Identity",
    "Permission",
    "PermissionAction",
    "PermissionDecision",
    "PermissionType",
    "Server",
    "TOTPParameters",
]
