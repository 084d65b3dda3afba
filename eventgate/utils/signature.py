"""
Webhook Signature Verification

Meta signs WhatsApp Cloud API webhook deliveries with the app secret:
X-Hub-Signature-256 carries "sha256=" followed by the hex HMAC-SHA256 of the
raw request body.
"""

import hmac
import hashlib
from loguru import logger

SIGNATURE_PREFIX = "sha256="


class WebhookSignatureValidator:
    """
    Validates X-Hub-Signature-256 headers against the raw request body.

    Reference: https://developers.facebook.com/docs/graph-api/webhooks/getting-started
    """

    def __init__(self, app_secret: str):
        self.app_secret = app_secret

    def compute_signature(self, body: bytes) -> str:
        """Return the header value Meta would send for this body."""
        mac = hmac.new(
            self.app_secret.encode("utf-8"),
            body,
            hashlib.sha256
        )
        return SIGNATURE_PREFIX + mac.hexdigest()

    def validate(self, body: bytes, signature: str) -> bool:
        """
        Validate a webhook signature.

        Args:
            body: Raw request body, exactly as received
            signature: X-Hub-Signature-256 header value

        Returns:
            True if signature is valid, False otherwise
        """
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            logger.debug("Signature header missing the sha256= prefix")
            return False

        # Constant-time comparison to prevent timing attacks
        return hmac.compare_digest(self.compute_signature(body), signature)


def validate_webhook_signature(body: bytes, signature: str, app_secret: str) -> bool:
    """Convenience wrapper around WebhookSignatureValidator."""
    return WebhookSignatureValidator(app_secret).validate(body, signature)
