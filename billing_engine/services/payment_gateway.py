"""Provider webhook signature verification."""

import hashlib
import hmac
import logging

from billing_engine.config import settings

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


class WebhookSignatureVerifier:
    """HMAC-SHA256 over the raw request body, hex encoded."""

    def __init__(self, secret: str | None = None) -> None:
        self._secret = settings.webhook_secret if secret is None else secret

    def is_configured(self) -> bool:
        return bool(self._secret)

    def sign(self, payload: bytes) -> str:
        return hmac.new(
            self._secret.encode("utf-8"),
            payload,
            hashlib.sha256,
        ).hexdigest()

    def validate(self, payload: bytes, signature: str | None) -> bool:
        """Validate a signature header. Always true when no secret is configured."""
        if not self.is_configured():
            return True
        if not signature:
            return False
        candidate = signature.strip()
        if candidate.startswith("sha256="):
            candidate = candidate[len("sha256="):]
        return hmac.compare_digest(self.sign(payload), candidate)


webhook_verifier = WebhookSignatureVerifier()
