# Guild Vault - QR Secret Extractor
#
# Turns a QR code image (URL or raw bytes) into an authenticator secret.
#
# Pipeline:
#   1. Fetch image bytes over HTTP(S) (httpx, redirects followed, size capped)
#   2. Decode to a grayscale pixel buffer (Pillow -> numpy)
#   3. Locate + decode the QR symbol (OpenCV QRCodeDetector)
#   4. Interpret the payload: otpauth:// URI, or a bare base32 secret
#
# Boundary rules:
#   - process_* never raise; every failure becomes a QRResult
#   - image bytes are dropped as soon as they are decoded
#   - the extracted secret is never logged

import asyncio
import io
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit

import cv2
import httpx
import numpy as np
from PIL import Image, UnidentifiedImageError

from ..exceptions import DecodeError, NetworkError, ValidationError
from .models import (
    DEFAULT_TOTP_ALGORITHM,
    DEFAULT_TOTP_DIGITS,
    DEFAULT_TOTP_PERIOD,
    TOTPParameters,
)
from .totp import decode_secret, normalize_secret, validate_totp_parameters

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 15.0
MAX_IMAGE_BYTES = 10 * 1024 * 1024
USER_AGENT = "GuildVault/1.0"
OTP_TYPES = ("totp", "hotp")
QUIET_ZONE_PX = 32

_BARE_BASE32 = re.compile(r"^[A-Z2-7]+=*$", re.IGNORECASE)


@dataclass
class OTPAuthPayload:
    """Authenticator enrollment data read from a QR code."""
    secret: str
    type: str = "totp"
    label: Optional[str] = None
    issuer: Optional[str] = None
    algorithm: str = DEFAULT_TOTP_ALGORITHM
    digits: int = DEFAULT_TOTP_DIGITS
    period: int = DEFAULT_TOTP_PERIOD
    source: str = "otpauth"  # "otpauth" URI or bare "base32"

    def __repr__(self) -> str:
        return (
            f"OTPAuthPayload(type={self.type!r}, label={self.label!r}, "
            f"issuer={self.issuer!r}, algorithm={self.algorithm!r}, "
            f"digits={self.digits}, period={self.period}, source={self.source!r})"
        )

    def to_parameters(self) -> TOTPParameters:
        return TOTPParameters(
            secret=self.secret,
            algorithm=self.algorithm,
            digits=self.digits,
            period=self.period,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "label": self.label,
            "issuer": self.issuer,
            "secret": self.secret,
            "algorithm": self.algorithm,
            "digits": self.digits,
            "period": self.period,
            "source": self.source,
        }


@dataclass
class QRResult:
    """Outcome of a QR extraction. Exactly one of data / error is set."""
    success: bool
    data: Optional[OTPAuthPayload] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def ok(cls, data: OTPAuthPayload) -> "QRResult":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, exc: Exception) -> "QRResult":
        if isinstance(exc, (NetworkError, DecodeError)):
            error_type = type(exc).__name__
        else:
            error_type = "UnexpectedError"
        return cls(success=False, error=str(exc) or error_type, error_type=error_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data.to_dict() if self.data else None,
            "error": self.error,
            "error_type": self.error_type,
        }


# ── Payload parsing ──────────────────────────────────────────────────


def _first(query: Dict[str, list], key: str) -> Optional[str]:
    values = query.get(key)
    return values[0] if values else None


def parse_otpauth_uri(uri: str) -> OTPAuthPayload:
    """Parse ``otpauth://TYPE/LABEL?secret=...&issuer=...``.

    Raises:
        DecodeError: Wrong scheme/type, missing or invalid secret,
            unsupported algorithm/digits/period.
    """
    parts = urlsplit(uri.strip())
    if parts.scheme.lower() != "otpauth":
        raise DecodeError("QR payload is not an otpauth URI")
    otp_type = parts.netloc.lower()
    if otp_type not in OTP_TYPES:
        raise DecodeError(f"Unsupported otpauth type {parts.netloc!r}")

    label = unquote(parts.path.lstrip("/")) or None
    query = parse_qs(parts.query, keep_blank_values=True)

    secret = _first(query, "secret")
    if not secret:
        raise DecodeError("otpauth URI has no secret")
    try:
        decode_secret(secret)
        algorithm, digits, period = validate_totp_parameters(
            _first(query, "algorithm") or DEFAULT_TOTP_ALGORITHM,
            _first(query, "digits") or DEFAULT_TOTP_DIGITS,
            _first(query, "period") or DEFAULT_TOTP_PERIOD,
        )
    except ValidationError as exc:
        raise DecodeError(f"Invalid otpauth parameters: {exc}") from None

    issuer = _first(query, "issuer")
    if not issuer and label and ":" in label:
        issuer = label.split(":", 1)[0].strip() or None

    return OTPAuthPayload(
        secret=normalize_secret(secret),
        type=otp_type,
        label=label,
        issuer=issuer,
        algorithm=algorithm,
        digits=digits,
        period=period,
        source="otpauth",
    )


def parse_qr_payload(payload: str) -> OTPAuthPayload:
    """Interpret decoded QR text as an otpauth URI or a bare base32 secret."""
    text = (payload or "").strip()
    if text.lower().startswith("otpauth://"):
        return parse_otpauth_uri(text)
    compact = re.sub(r"\s+", "", text)
    if compact and _BARE_BASE32.match(compact):
        try:
            decode_secret(compact)
        except ValidationError as exc:
            raise DecodeError(str(exc)) from None
        return OTPAuthPayload(secret=normalize_secret(compact), source="base32")
    raise DecodeError("QR payload is neither an otpauth URI nor a base32 secret")


def build_otpauth_uri(
    params: TOTPParameters,
    label: str,
    issuer: Optional[str] = None,
) -> str:
    """Enrollment URI for authenticator apps."""
    algorithm, digits, period = validate_totp_parameters(
        params.algorithm, params.digits, params.period,
    )
    secret = normalize_secret(params.secret)
    decode_secret(secret)

    query = [("secret", secret)]
    if issuer:
        query.append(("issuer", issuer))
    query += [("algorithm", algorithm), ("digits", digits), ("period", period)]
    return (
        f"otpauth://totp/{quote(label, safe=':@')}?"
        f"{urlencode(query, quote_via=quote)}"
    )


# ── Image decoding ───────────────────────────────────────────────────


def read_qr_code(image_bytes: bytes) -> str:
    """Decode the first QR symbol found in an image.

    Raises:
        DecodeError: Not an image, or no readable QR code.
    """
    if not image_bytes:
        raise DecodeError("Image is empty")
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            pixels = np.asarray(image.convert("L"), dtype=np.uint8)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as exc:
        raise DecodeError(f"Could not read image: {exc}") from None

    detector = cv2.QRCodeDetector()
    # Retry with a white quiet zone for tightly cropped codes
    for candidate in (pixels, np.pad(pixels, QUIET_ZONE_PX, constant_values=255)):
        try:
            data, _points, _ = detector.detectAndDecode(candidate)
        except cv2.error as exc:
            raise DecodeError(f"QR detection failed: {exc}") from None
        if data:
            return data
    raise DecodeError("No QR code found in image")


# ── Extractor ────────────────────────────────────────────────────────


class QRSecretExtractor:
    """
    Fetch and decode authenticator QR codes.

    Usage::

        extractor = QRSecretExtractor(timeout=15)
        result = extractor.process_qr_code("https://cdn.example/qr.png")
        if result.success:
            params = result.data.to_parameters()
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        transport: Optional[httpx.BaseTransport] = None,
        max_image_bytes: int = MAX_IMAGE_BYTES,
    ):
        self.timeout = timeout
        self.max_image_bytes = max_image_bytes
        self._transport = transport

    # -- HTTP ---------------------------------------------------------

    @staticmethod
    def _check_url(image_url: str) -> None:
        scheme = urlsplit(image_url or "").scheme.lower()
        if scheme not in ("http", "https"):
            raise NetworkError("Image URL must use http or https")

    def _check_response(self, resp: httpx.Response) -> None:
        if resp.status_code >= 400 or resp.status_code < 200:
            raise NetworkError(f"Image download failed with HTTP {resp.status_code}")
        length = resp.headers.get("Content-Length")
        if length and length.isdigit() and int(length) > self.max_image_bytes:
            raise NetworkError("Image exceeds the maximum allowed size")

    def _append_chunk(self, buffer: bytearray, chunk: bytes, deadline: float) -> None:
        buffer.extend(chunk)
        if len(buffer) > self.max_image_bytes:
            raise NetworkError("Image exceeds the maximum allowed size")
        # httpx timeouts bound each read, not the whole transfer
        if time.monotonic() > deadline:
            raise NetworkError("Timed out downloading QR code image")

    def _client_kwargs(self, timeout: float) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "timeout": timeout,
            "follow_redirects": True,
            "headers": {"User-Agent": USER_AGENT, "Accept": "image/*"},
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return kwargs

    def download_image(self, image_url: str, timeout: Optional[float] = None) -> bytes:
        """GET the image bytes, all within ``timeout`` seconds.

        Raises:
            NetworkError: Bad URL, non-2xx status, oversized body,
                transport failure or timeout.
        """
        self._check_url(image_url)
        limit = timeout or self.timeout
        deadline = time.monotonic() + limit
        buffer = bytearray()
        try:
            with httpx.Client(**self._client_kwargs(limit)) as client:
                with client.stream("GET", image_url) as resp:
                    self._check_response(resp)
                    for chunk in resp.iter_bytes():
                        self._append_chunk(buffer, chunk, deadline)
        except httpx.TimeoutException:
            raise NetworkError("Timed out downloading QR code image") from None
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise NetworkError(f"Could not download QR code image: {exc}") from None
        return bytes(buffer)

    async def adownload_image(self, image_url: str, timeout: Optional[float] = None) -> bytes:
        """Async variant of :meth:`download_image`."""
        self._check_url(image_url)
        limit = timeout or self.timeout
        deadline = time.monotonic() + limit
        buffer = bytearray()
        try:
            async with httpx.AsyncClient(**self._client_kwargs(limit)) as client:
                async with client.stream("GET", image_url) as resp:
                    self._check_response(resp)
                    async for chunk in resp.aiter_bytes():
                        self._append_chunk(buffer, chunk, deadline)
        except httpx.TimeoutException:
            raise NetworkError("Timed out downloading QR code image") from None
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise NetworkError(f"Could not download QR code image: {exc}") from None
        return bytes(buffer)

    # -- Public surface -----------------------------------------------

    @staticmethod
    def _decode(image_bytes: bytes) -> OTPAuthPayload:
        return parse_qr_payload(read_qr_code(image_bytes))

    @staticmethod
    def _describe(image_url: str) -> Tuple[str, str]:
        parts = urlsplit(image_url or "")
        return parts.scheme, parts.netloc

    def process_qr_code(self, image_url: str, timeout: Optional[float] = None) -> QRResult:
        """Download an image and extract the authenticator secret.

        ``timeout`` bounds the whole download (default: the extractor's).
        """
        try:
            image_bytes = self.download_image(image_url, timeout)
            payload = self._decode(image_bytes)
            del image_bytes
        except Exception as exc:
            logger.warning(
                "QR extraction failed (%s://%s): %s",
                *self._describe(image_url), type(exc).__name__,
            )
            return QRResult.failure(exc)
        logger.info("QR code decoded (%s, %s)", payload.source, payload.type)
        return QRResult.ok(payload)

    def process_qr_image(self, image_bytes: bytes) -> QRResult:
        """Extract the secret from image bytes already in hand."""
        try:
            payload = self._decode(image_bytes)
        except Exception as exc:
            logger.warning("QR extraction failed: %s", type(exc).__name__)
            return QRResult.failure(exc)
        return QRResult.ok(payload)

    async def aprocess_qr_code(self, image_url: str, timeout: Optional[float] = None) -> QRResult:
        """Async pipeline: fetch with AsyncClient, decode in a worker thread.

        The whole pipeline runs under one deadline; on expiry the result
        is a NetworkError failure.
        """
        deadline = timeout or self.timeout

        async def _run() -> OTPAuthPayload:
            image_bytes = await self.adownload_image(image_url, deadline)
            return await asyncio.to_thread(self._decode, image_bytes)

        try:
            payload = await asyncio.wait_for(_run(), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("QR extraction timed out after %.1fs", deadline)
            return QRResult.failure(NetworkError("Timed out processing QR code image"))
        except Exception as exc:
            logger.warning(
                "QR extraction failed (%s://%s): %s",
                *self._describe(image_url), type(exc).__name__,
            )
            return QRResult.failure(exc)
        return QRResult.ok(payload)
