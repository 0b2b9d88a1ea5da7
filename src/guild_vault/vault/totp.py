"""TOTP code generation (RFC 6238 on top of RFC 4226 HOTP).

Generation only. There is no verification step and therefore no
clock-drift window: the vault hands out the current code for a shared
account, it never checks codes typed by a user.
"""

import base64
import binascii
import hashlib
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import pyotp

from ..exceptions import ValidationError
from .models import (
    DEFAULT_TOTP_ALGORITHM,
    DEFAULT_TOTP_DIGITS,
    DEFAULT_TOTP_PERIOD,
    TOTP_ALGORITHMS,
    TOTPParameters,
)

logger = logging.getLogger(__name__)

MIN_DIGITS = 6
MAX_DIGITS = 8

_DIGESTS = {
    "SHA1": hashlib.sha1,
    "SHA256": hashlib.sha256,
    "SHA512": hashlib.sha512,
}
_WHITESPACE = re.compile(r"\s+")
_BASE32 = re.compile(r"^[A-Z2-7]+$")


def normalize_secret(secret: str) -> str:
    """Strip whitespace, uppercase, drop ``=`` padding."""
    return _WHITESPACE.sub("", secret).upper().rstrip("=")


def decode_secret(secret: str) -> bytes:
    """Decode a base32 secret, tolerating spaces, lowercase and missing padding.

    Raises:
        ValidationError: If the secret is empty or not base32.
    """
    normalized = normalize_secret(secret or "")
    if not normalized or not _BASE32.match(normalized):
        raise ValidationError("TOTP secret must be a base32 string")
    padded = normalized + "=" * (-len(normalized) % 8)
    try:
        return base64.b32decode(padded)
    except binascii.Error:
        raise ValidationError("TOTP secret has an invalid base32 length") from None


def validate_totp_parameters(
    algorithm: Any = DEFAULT_TOTP_ALGORITHM,
    digits: Any = DEFAULT_TOTP_DIGITS,
    period: Any = DEFAULT_TOTP_PERIOD,
) -> Tuple[str, int, int]:
    """Normalize algorithm/digits/period or raise ValidationError."""
    algo = str(algorithm or DEFAULT_TOTP_ALGORITHM).upper().replace("-", "")
    if algo not in TOTP_ALGORITHMS:
        raise ValidationError(
            f"Unsupported TOTP algorithm {algorithm!r}. Use: {', '.join(TOTP_ALGORITHMS)}"
        )
    try:
        digits = int(digits)
        period = int(period)
    except (TypeError, ValueError):
        raise ValidationError("TOTP digits and period must be integers") from None
    if not MIN_DIGITS <= digits <= MAX_DIGITS:
        raise ValidationError(f"TOTP digits must be between {MIN_DIGITS} and {MAX_DIGITS}")
    if period <= 0:
        raise ValidationError("TOTP period must be positive")
    return algo, digits, period


@dataclass(frozen=True)
class TOTPCode:
    """A generated one-time code and its validity window."""
    code: str
    remaining_seconds: int
    algorithm: str
    digits: int
    period: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "remaining_seconds": self.remaining_seconds,
            "algorithm": self.algorithm,
            "digits": self.digits,
            "period": self.period,
        }


def generate_code(params: TOTPParameters, at: float) -> TOTPCode:
    """Compute the code for ``params`` at Unix time ``at``.

    counter = floor(at / period); HMAC-<algorithm>(secret, counter) with
    dynamic truncation to ``digits`` decimal digits.
    """
    algorithm, digits, period = validate_totp_parameters(
        params.algorithm, params.digits, params.period
    )
    secret = normalize_secret(params.secret)
    decode_secret(secret)

    now = math.floor(at)
    otp = pyotp.OTP(secret, digits=digits, digest=_DIGESTS[algorithm])
    code = otp.generate_otp(now // period)
    return TOTPCode(
        code=code,
        remaining_seconds=period - (now % period),
        algorithm=algorithm,
        digits=digits,
        period=period,
    )


class TOTPEngine:
    """Generates current TOTP codes for stored accounts.

    Reads the secret through the credential store; callers are expected
    to have passed a permission check for the account first.
    """

    def __init__(self, store, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def generate_totp(self, account_id: str, at: Optional[float] = None) -> Optional[TOTPCode]:
        """Current code for an account.

        Returns None when the account has no TOTP secret (or does not
        exist): an account without 2FA is a normal state.
        """
        params = self.store.get_totp_parameters(account_id)
        if params is None:
            return None
        return generate_code(params, self._clock() if at is None else at)

    def generate_code(self, params: TOTPParameters, at: Optional[float] = None) -> TOTPCode:
        """Code for raw parameters (enrollment previews, tests)."""
        return generate_code(params, self._clock() if at is None else at)
