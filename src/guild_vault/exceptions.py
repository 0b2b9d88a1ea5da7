"""
Guild Vault Exception Classes
"""


class VaultError(Exception):
    """Base exception for shared-account vault operations"""
    pass


class ConfigurationError(VaultError):
    """Raised when the master key is missing or malformed"""
    pass


class NotFoundError(VaultError):
    """Raised when an account or permission id does not exist"""
    pass


class DecryptionError(VaultError):
    """Raised when a stored blob fails authentication or is malformed"""
    pass


class ValidationError(VaultError):
    """Raised when a field, permission type or action is invalid"""
    pass


class NetworkError(VaultError):
    """Raised when a QR code image cannot be fetched"""
    pass


class DecodeError(VaultError):
    """Raised when an image holds no usable QR payload"""
    pass


class AccessDeniedError(VaultError):
    """Raised by guarded vault flows when the permission check fails"""

    def __init__(self, message: str, decision=None):
        super().__init__(message)
        self.decision = decision
