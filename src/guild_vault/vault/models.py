# Guild Vault - Data Model
#
# Shared game accounts, their allow/deny permission lists, access log
# entries and the identity/decision types the permission engine works on.
#
# Security:
#   - Account holds the *encrypted* secret blobs; it never leaves the store.
#   - AccountSummary exposes only has_* booleans for the secrets.
#   - DecryptedCredentials and TOTPParameters keep secrets out of repr().

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from ..exceptions import ValidationError

# ── Enums ────────────────────────────────────────────────────────────


class Server(str, Enum):
    """Game realm an account lives on."""
    FREYA = "FREYA"
    NIDHOGG = "NIDHOGG"
    YGGDRASIL = "YGGDRASIL"


class PermissionType(str, Enum):
    """What a permission entry matches against."""
    USER_ID = "userId"        # exact match on identity.user_id
    USERNAME = "username"     # case-insensitive match on identity.username
    ROLE_ID = "roleId"        # membership in identity.role_ids


class PermissionAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class AccessAction(str, Enum):
    """Actions recorded in the access audit log."""
    VIEW = "view"
    EDIT = "edit"
    CREATE = "create"
    DELETE = "delete"
    TOTP = "totp"


DEFAULT_SERVER = Server.FREYA

TOTP_ALGORITHMS = ("SHA1", "SHA256", "SHA512")
DEFAULT_TOTP_ALGORITHM = "SHA1"
DEFAULT_TOTP_DIGITS = 6
DEFAULT_TOTP_PERIOD = 30

# Decision reasons
REASON_OWNER = "owner"
REASON_BLOCKED = "explicitly blocked"
REASON_ALLOWED = "explicitly allowed"
REASON_NOT_WHITELISTED = "not whitelisted"

E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    """Convert ``value`` to ``enum_cls`` or raise ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} {value!r}. Use: {allowed}"
        ) from None


# ── Data Model ───────────────────────────────────────────────────────


@dataclass
class Permission:
    """One allow/deny entry on an account's permission list."""
    id: str
    type: PermissionType
    value: str
    action: PermissionAction = PermissionAction.ALLOW
    added_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "value": self.value,
            "action": self.action.value,
            "added_at": self.added_at,
        }


@dataclass
class TOTPParameters:
    """Enrollment parameters for RFC 6238 code generation."""
    secret: str = field(repr=False)
    algorithm: str = DEFAULT_TOTP_ALGORITHM
    digits: int = DEFAULT_TOTP_DIGITS
    period: int = DEFAULT_TOTP_PERIOD


@dataclass
class AccountSummary:
    """Account view safe to hand to any caller: no secret values."""
    id: str
    name: str
    login: str
    server: Server
    owner_id: Optional[str]
    permissions: List[Permission]
    has_password: bool
    has_kafra_password: bool
    has_totp_secret: bool
    totp_algorithm: str = DEFAULT_TOTP_ALGORITHM
    totp_digits: int = DEFAULT_TOTP_DIGITS
    totp_period: int = DEFAULT_TOTP_PERIOD
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "login": self.login,
            "server": self.server.value,
            "owner_id": self.owner_id,
            "permissions": [p.to_dict() for p in self.permissions],
            "has_password": self.has_password,
            "has_kafra_password": self.has_kafra_password,
            "has_totp_secret": self.has_totp_secret,
            "totp_algorithm": self.totp_algorithm,
            "totp_digits": self.totp_digits,
            "totp_period": self.totp_period,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Account:
    """Stored account record. Secret fields hold encrypted blobs or None."""
    id: str
    name: str
    login: str
    server: Server = DEFAULT_SERVER
    owner_id: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    kafra_password: Optional[str] = field(default=None, repr=False)
    totp_secret: Optional[str] = field(default=None, repr=False)
    totp_algorithm: str = DEFAULT_TOTP_ALGORITHM
    totp_digits: int = DEFAULT_TOTP_DIGITS
    totp_period: int = DEFAULT_TOTP_PERIOD
    permissions: List[Permission] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def to_summary(self) -> AccountSummary:
        return AccountSummary(
            id=self.id,
            name=self.name,
            login=self.login,
            server=self.server,
            owner_id=self.owner_id,
            permissions=list(self.permissions),
            has_password=bool(self.password),
            has_kafra_password=bool(self.kafra_password),
            has_totp_secret=bool(self.totp_secret),
            totp_algorithm=self.totp_algorithm,
            totp_digits=self.totp_digits,
            totp_period=self.totp_period,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_record(self) -> Dict[str, Any]:
        """Persistence shape; the three secrets stay opaque blobs."""
        return {
            "id": self.id,
            "name": self.name,
            "login": self.login,
            "server": self.server.value,
            "ownerId": self.owner_id,
            "password": self.password,
            "kafraPassword": self.kafra_password,
            "totpSecret": self.totp_secret,
            "permissions": [p.to_dict() for p in self.permissions],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class DecryptedCredentials:
    """Plaintext credentials. Only produced after a permission check."""
    id: str
    name: str
    login: str
    server: Server
    password: Optional[str] = field(default=None, repr=False)
    kafra_password: Optional[str] = field(default=None, repr=False)
    totp_secret: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "login": self.login,
            "password": self.password,
            "kafra_password": self.kafra_password,
            "totp_secret": self.totp_secret,
            "server": self.server.value,
        }


@dataclass(frozen=True)
class Identity:
    """Caller identity as resolved by the transport layer."""
    user_id: str
    username: str = ""
    role_ids: Tuple[str, ...] = ()
    is_admin: bool = False

    def __post_init__(self):
        object.__setattr__(self, "role_ids", tuple(self.role_ids or ()))

    @classmethod
    def of(
        cls,
        user_id: str,
        username: str = "",
        role_ids: Optional[Iterable[str]] = None,
        is_admin: bool = False,
    ) -> "Identity":
        return cls(user_id, username or "", tuple(role_ids or ()), is_admin)

    def to_context(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "username": self.username}


@dataclass(frozen=True)
class PermissionDecision:
    """Outcome of a permission check."""
    allowed: bool
    reason: str
    matched: Tuple[Permission, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "matched": [p.id for p in self.matched],
        }


@dataclass
class AccessLogEntry:
    """One credential-access event. Never mutated once written."""
    id: str
    account_id: str
    account_name: str
    user_id: str
    username: str
    action: AccessAction
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "account_name": self.account_name,
            "user_id": self.user_id,
            "username": self.username,
            "action": self.action.value,
            "timestamp": self.timestamp,
        }
