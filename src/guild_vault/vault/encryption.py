# Guild Vault - Cipher Engine
#
# Secret field encryption (AES-256-GCM) under a process-wide master key.
# Blob format stored in the database (all parts standard base64):
#
#     <nonce 12B>:<GCM tag 16B>:<ciphertext>
#
# Security:
#   - Fresh random nonce per encryption
#   - Authentication failure or any malformed blob -> DecryptionError,
#     never partial plaintext
#   - Without a usable master key every call -> ConfigurationError
#   - Key bytes are never logged or included in messages

import base64
import binascii
import logging
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..exceptions import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)


class CipherEngine:
    """
    Encrypts and decrypts short secret strings for the credential store.

    Flow:
    1. Master key configured once at startup (32+ bytes)
    2. Keys longer than 32 bytes are reduced with HKDF-SHA256
    3. Each secret encrypted with AES-256-GCM and its own nonce
    4. Nonce, tag and ciphertext are bundled in one text blob
    """

    KEY_LENGTH = 32  # 256 bits for AES-256
    NONCE_LENGTH = 12  # 96-bit nonce for GCM (recommended)
    TAG_LENGTH = 16
    SEPARATOR = ":"
    HKDF_INFO = b"guild-vault-cipher"

    def __init__(self, master_key: Optional[bytes], unavailable_reason: Optional[str] = None):
        """
        Args:
            master_key: Raw master key bytes, or None to build a disabled engine
            unavailable_reason: Why the key is missing (shown in ConfigurationError)
        """
        self._aesgcm: Optional[AESGCM] = None
        self._unavailable_reason = unavailable_reason or "Vault master key is not configured"

        if master_key is None:
            logger.warning("Cipher engine disabled: %s", self._unavailable_reason)
            return
        if len(master_key) < self.KEY_LENGTH:
            self._unavailable_reason = (
                f"Vault master key must be at least {self.KEY_LENGTH} bytes"
            )
            logger.warning("Cipher engine disabled: %s", self._unavailable_reason)
            return

        self._aesgcm = AESGCM(self._derive_key(master_key))

    @classmethod
    def from_config(cls, config) -> "CipherEngine":
        """Build the engine from a VaultConfig."""
        return cls(config.master_key, unavailable_reason=config.master_key_error)

    def __repr__(self) -> str:
        return f"<CipherEngine available={self.available}>"

    @property
    def available(self) -> bool:
        return self._aesgcm is not None

    @classmethod
    def _derive_key(cls, master_key: bytes) -> bytes:
        if len(master_key) == cls.KEY_LENGTH:
            return master_key
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=cls.KEY_LENGTH,
            salt=None,
            info=cls.HKDF_INFO,
        )
        return hkdf.derive(master_key)

    def _require_cipher(self) -> AESGCM:
        if self._aesgcm is None:
            raise ConfigurationError(self._unavailable_reason)
        return self._aesgcm

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret string.

        Returns:
            Text blob ``nonce:tag:ciphertext`` (base64 parts)

        Raises:
            ConfigurationError: If no master key is configured
        """
        aesgcm = self._require_cipher()
        nonce = os.urandom(self.NONCE_LENGTH)
        sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-self.TAG_LENGTH], sealed[-self.TAG_LENGTH:]
        return self.SEPARATOR.join(
            self.encode_for_storage(part) for part in (nonce, tag, ciphertext)
        )

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a blob produced by :meth:`encrypt`.

        Raises:
            ConfigurationError: If no master key is configured
            DecryptionError: Wrong key, tampering or malformed blob
        """
        aesgcm = self._require_cipher()
        nonce, tag, ciphertext = self._split_blob(blob)
        try:
            plaintext = aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise DecryptionError(
                "Secret failed authentication (wrong key or tampered data)"
            ) from None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted secret is not valid UTF-8") from None

    def _split_blob(self, blob: str) -> Tuple[bytes, bytes, bytes]:
        if not isinstance(blob, str):
            raise DecryptionError("Malformed ciphertext blob")
        parts = blob.split(self.SEPARATOR)
        if len(parts) != 3:
            raise DecryptionError("Malformed ciphertext blob")
        nonce, tag, ciphertext = (self.decode_from_storage(p) for p in parts)
        if len(nonce) != self.NONCE_LENGTH or len(tag) != self.TAG_LENGTH:
            raise DecryptionError("Malformed ciphertext blob")
        return nonce, tag, ciphertext

    @staticmethod
    def encode_for_storage(data: bytes) -> str:
        """Encode binary data for database storage (base64)."""
        return base64.b64encode(data).decode("ascii")

    @staticmethod
    def decode_from_storage(data: str) -> bytes:
        """
        Strictly decode a base64 part.

        Non-canonical encodings are rejected so that any change to the
        stored text changes the decoded bytes.
        """
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionError("Malformed ciphertext blob") from None
        if base64.b64encode(raw).decode("ascii") != data:
            raise DecryptionError("Malformed ciphertext blob")
        return raw
