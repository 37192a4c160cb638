"""
sap_gw.webhook.signature - HMAC signatures for inbound webhooks
================================================================

Supported algorithms: sha1, sha256, sha512.
Supported formats: ``hex``, ``base64``, ``prefixed_hex`` (``sha256=<hex>``)
and ``prefixed_base64`` (``sha256=<base64>``).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
import base64
import hashlib
import hmac
import logging


logger = logging.getLogger("sap_gw.webhook")

MIN_SECRET_LENGTH = 32


class SignatureAlgorithm(str, Enum):
    HMAC_SHA1 = "sha1"
    HMAC_SHA256 = "sha256"
    HMAC_SHA512 = "sha512"


class SignatureFormat(str, Enum):
    HEX = "hex"
    BASE64 = "base64"
    PREFIXED_HEX = "prefixed_hex"
    PREFIXED_BASE64 = "prefixed_base64"


@dataclass(frozen=True)
class SignatureCheckResult:
    is_valid: bool
    error: Optional[str] = None


class WebhookSignatureValidator:
    """
    Verifies HMAC signatures of webhook payloads.

    Parameters
    ----------
    secret : str
        Shared secret; must not be empty
    algorithm : SignatureAlgorithm or str
        Digest algorithm (default: sha256)
    signature_format : SignatureFormat or str
        Encoding of the signature header (default: hex)

    Examples
    --------
    >>> validator = WebhookSignatureValidator(secret)
    >>> validator.validate(body, request.headers["X-Signature"]).is_valid
    True
    """

    def __init__(
        self,
        secret: str,
        algorithm: Union[SignatureAlgorithm, str] = SignatureAlgorithm.HMAC_SHA256,
        signature_format: Union[SignatureFormat, str] = SignatureFormat.HEX,
    ) -> None:
        if not secret:
            raise ValueError("Webhook secret cannot be empty")
        if len(secret) < MIN_SECRET_LENGTH:
            logger.warning(
                "Webhook secret is shorter than %d characters (%d), consider a longer secret",
                MIN_SECRET_LENGTH, len(secret),
            )
        self._secret = secret.encode("utf-8")
        self.algorithm = SignatureAlgorithm(algorithm)
        self.signature_format = SignatureFormat(signature_format)

    def generate_signature(self, payload: Union[str, bytes]) -> str:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        digest = hmac.new(self._secret, payload, getattr(hashlib, self.algorithm.value))

        fmt = self.signature_format
        if fmt in (SignatureFormat.HEX, SignatureFormat.PREFIXED_HEX):
            encoded = digest.hexdigest()
        else:
            encoded = base64.b64encode(digest.digest()).decode("ascii")

        if fmt in (SignatureFormat.PREFIXED_HEX, SignatureFormat.PREFIXED_BASE64):
            return f"{self.algorithm.value}={encoded}"
        return encoded

    def validate(self, payload: Union[str, bytes], received_signature: Optional[str]) -> SignatureCheckResult:
        """Compare ``received_signature`` with the expected one in constant time."""
        if not received_signature:
            return SignatureCheckResult(is_valid=False, error="Signature is missing")

        expected = self.generate_signature(payload)
        if not hmac.compare_digest(received_signature.strip().encode("utf-8"), expected.encode("utf-8")):
            logger.warning(
                "Webhook signature validation failed (algorithm=%s, format=%s)",
                self.algorithm.value, self.signature_format.value,
            )
            return SignatureCheckResult(is_valid=False, error="Signature mismatch")

        logger.debug("Webhook signature validated (%s)", self.algorithm.value)
        return SignatureCheckResult(is_valid=True)
