"""
sap_gw.webhook - Inbound webhook protection
============================================

- ReplayProtectionManager: nonce store with timestamp window and TTL sweep
- WebhookSignatureValidator: HMAC payload signatures

"""

from sap_gw.webhook.replay import (
    ReplayCheckResult,
    ReplayConfig,
    ReplayProtectionManager,
    ReplayStats,
    parse_timestamp,
)
from sap_gw.webhook.signature import (
    SignatureAlgorithm,
    SignatureCheckResult,
    SignatureFormat,
    WebhookSignatureValidator,
)

__all__ = [
    "ReplayCheckResult",
    "ReplayConfig",
    "ReplayProtectionManager",
    "ReplayStats",
    "parse_timestamp",
    "SignatureAlgorithm",
    "SignatureCheckResult",
    "SignatureFormat",
    "WebhookSignatureValidator",
]
