"""Webhook signature verification.

The gateway signs the raw request body with HMAC-SHA512 and sends the
base64-encoded digest in a header, optionally prefixed with ``sha512=``.
"""

import base64
import hashlib
import hmac
from typing import Optional

from paycore.utils.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_PREFIX = "sha512="


def compute_signature(key: str, payload: bytes) -> str:
    digest = hmac.new(key.encode("utf-8"), payload, hashlib.sha512).digest()
    return base64.b64encode(digest).decode("ascii")


class WebhookSignatureVerifier:
    """Checks webhook signatures against a configured key.

    Without a key every signature is rejected unless ``insecure`` is set,
    in which case validation is skipped entirely. ``insecure`` is for local
    development only.
    """

    def __init__(self, key: Optional[str], *, insecure: bool = False) -> None:
        self._key = key or None
        self._insecure = insecure
        if self._key is None:
            if insecure:
                logger.warning(
                    "Webhook signature key not configured; validation disabled"
                )
            else:
                logger.error(
                    "Webhook signature key not configured; all webhooks will be rejected"
                )

    def verify(self, payload: bytes, signature: Optional[str]) -> bool:
        if self._key is None:
            return self._insecure
        if not signature:
            return False
        provided = signature.strip()
        if provided.lower().startswith(SIGNATURE_PREFIX):
            provided = provided[len(SIGNATURE_PREFIX):]
        expected = compute_signature(self._key, payload)
        return hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8"))
