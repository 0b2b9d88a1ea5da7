# Guild Vault - Main Package
#
# Shared-credential vault for guild game accounts: encrypted storage,
# allow/deny permissions, TOTP codes, QR enrollment and an access trail.

__version__ = "0.1.0"
__author__ = "Guild Vault Team"
__description__ = "Shared game account credential vault"

from .config import VaultConfig, load_config
from .core import EventSeverity, EventType, get_event_logger
from .exceptions import (
    AccessDeniedError,
    ConfigurationError,
    DecodeError,
    DecryptionError,
    NetworkError,
    NotFoundError,
    ValidationError,
    VaultError,
)

__all__ = [
    "__version__",
    "VaultConfig",
    "load_config",
    "EventType",
    "EventSeverity",
    "get_event_logger",
    "VaultError",
    "ConfigurationError",
    "NotFoundError",
    "DecryptionError",
    "ValidationError",
    "NetworkError",
    "DecodeError",
    "AccessDeniedError",
]
