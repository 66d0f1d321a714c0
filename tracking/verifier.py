"""
Webhook signature verification with constant-time HMAC-SHA256.

Contract:
- The digest is computed over the raw request body, never re-serialized JSON
- Comparison uses hmac.compare_digest()
- Missing/malformed headers and unset secrets verify as invalid (fail-closed)
- verify() never raises
"""

from typing import Dict, Iterable, Optional
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
_PREFIX = "sha256="


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of ``body`` under ``secret``"""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature_header: Optional[str], secret: str) -> bool:
    """
    Check a ``sha256=<hex>`` (or bare hex) signature header against ``body``.

    Returns:
        True only when the header carries exactly the expected digest
    """
    if not secret or not signature_header:
        return False
    if not isinstance(body, (bytes, bytearray)):
        return False

    provided = signature_header.strip()
    if provided.lower().startswith(_PREFIX):
        provided = provided[len(_PREFIX):]

    try:
        provided_digest = bytes.fromhex(provided)
    except ValueError:
        return False

    expected_digest = hmac.new(secret.encode("utf-8"), bytes(body), hashlib.sha256).digest()
    return hmac.compare_digest(expected_digest, provided_digest)


class SignatureVerifier:
    """
    Per-channel signature policy.

    Each channel uses its own secret when one is configured, the shared
    secret otherwise. Channels listed as unsigned skip verification.
    """

    def __init__(
        self,
        shared_secret: str,
        channel_secrets: Optional[Dict[str, str]] = None,
        unsigned_channels: Iterable[str] = ("user",)
    ):
        self.shared_secret = shared_secret
        self.channel_secrets = dict(channel_secrets or {})
        self.unsigned_channels = frozenset(unsigned_channels)

    def requires_signature(self, channel: str) -> bool:
        return channel not in self.unsigned_channels

    def secret_for(self, channel: str) -> str:
        return self.channel_secrets.get(channel) or self.shared_secret

    def verify(self, channel: str, body: bytes, signature_header: Optional[str]) -> bool:
        """Validate ``body`` for ``channel``; exempt channels always pass"""
        if not self.requires_signature(channel):
            return True

        secret = self.secret_for(channel)
        if not secret:
            logger.warning(f"No webhook secret configured for channel '{channel}', rejecting")
            return False

        return verify_signature(body, signature_header, secret)
