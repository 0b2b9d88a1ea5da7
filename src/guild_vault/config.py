# Guild Vault - Configuration
#
# Reads the process-wide master key and runtime settings from the
# environment (a local .env file is loaded first when present).
#
#   GUILD_VAULT_MASTER_KEY   hex or base64, >= 32 bytes (fallback: ENCRYPTION_KEY)
#   GUILD_VAULT_DATA_DIR     SQLite directory (default: data)
#   GUILD_VAULT_LOG_DIR      structured security event directory (default: audit_logs)
#   GUILD_VAULT_QR_TIMEOUT   seconds allowed for a QR image fetch + decode (default: 15)
#   GUILD_VAULT_ENROLLMENT_TTL              seconds an enrollment stays open (default: 120)
#   GUILD_VAULT_ACCESS_LOG_RETENTION_DAYS   default pruning age (default: 30)
#   GUILD_VAULT_REVEAL_DENIAL_REASON        "true"/"false" (default: true)
#
# Security: never log key material. Only log whether a key is configured.

import base64
import binascii
import logging
import os
import secrets
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MASTER_KEY_ENV = "GUILD_VAULT_MASTER_KEY"
LEGACY_MASTER_KEY_ENV = "ENCRYPTION_KEY"
MIN_KEY_LENGTH = 32

_HEX_DIGITS = frozenset(string.hexdigits)
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_master_key(raw: Optional[str]) -> Optional[bytes]:
    """Decode a hex or base64 master key.

    Returns None when no key is configured (empty or missing value).

    Raises:
        ConfigurationError: If the value is neither hex nor base64, or
            decodes to fewer than 32 bytes. The message never echoes
            the value.
    """
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None

    if len(raw) % 2 == 0 and all(c in _HEX_DIGITS for c in raw):
        key = bytes.fromhex(raw)
    else:
        try:
            key = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError):
            raise ConfigurationError(
                "Master key must be hex or base64 encoded"
            ) from None

    if len(key) < MIN_KEY_LENGTH:
        raise ConfigurationError(
            f"Master key must decode to at least {MIN_KEY_LENGTH} bytes, "
            f"got {len(key)}"
        )
    return key


def generate_master_key() -> str:
    """Generate a random 32-byte master key, hex encoded."""
    return secrets.token_bytes(MIN_KEY_LENGTH).hex()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _env_number(name: str, default, cast=float):
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        number = cast(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None
    if number <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value!r}")
    return number


@dataclass
class VaultConfig:
    """Validated runtime settings for the shared-account vault."""

    master_key: Optional[bytes] = field(default=None, repr=False)
    master_key_error: Optional[str] = None
    data_dir: Path = Path("data")
    log_dir: Path = Path("audit_logs")
    qr_timeout: float = 15.0
    enrollment_ttl: float = 120.0
    access_log_retention_days: int = 30
    reveal_denial_reason: bool = True

    @property
    def vault_db_path(self) -> Path:
        return self.data_dir / "vault.db"

    @property
    def access_log_db_path(self) -> Path:
        return self.data_dir / "access_logs.db"

    @property
    def has_master_key(self) -> bool:
        return self.master_key is not None


def load_config(env_file: Optional[str] = None) -> VaultConfig:
    """Build a VaultConfig from the environment.

    A missing or malformed master key does not raise here: the config is
    returned with ``master_key=None`` and ``master_key_error`` set, and the
    cipher engine built from it refuses every call. Other malformed
    settings raise ConfigurationError.
    """
    load_dotenv(env_file)

    raw_key = os.getenv(MASTER_KEY_ENV) or os.getenv(LEGACY_MASTER_KEY_ENV)
    master_key: Optional[bytes] = None
    key_error: Optional[str] = None
    try:
        master_key = parse_master_key(raw_key)
        if master_key is None:
            key_error = f"{MASTER_KEY_ENV} is not set"
    except ConfigurationError as exc:
        key_error = str(exc)

    if key_error:
        logger.warning("Vault encryption disabled: %s", key_error)
    else:
        logger.debug("Vault master key loaded (%d bytes)", len(master_key))

    return VaultConfig(
        master_key=master_key,
        master_key_error=key_error,
        data_dir=Path(os.getenv("GUILD_VAULT_DATA_DIR", "data")),
        log_dir=Path(os.getenv("GUILD_VAULT_LOG_DIR", "audit_logs")),
        qr_timeout=_env_number("GUILD_VAULT_QR_TIMEOUT", 15.0),
        enrollment_ttl=_env_number("GUILD_VAULT_ENROLLMENT_TTL", 120.0),
        access_log_retention_days=_env_number(
            "GUILD_VAULT_ACCESS_LOG_RETENTION_DAYS", 30, cast=int
        ),
        reveal_denial_reason=_env_bool("GUILD_VAULT_REVEAL_DENIAL_REASON", True),
    )
