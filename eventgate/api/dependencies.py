"""
FastAPI Dependencies

Reusable dependencies for request validation and authentication.
"""

import hmac
from fastapi import Request, HTTPException, status, Header
from typing import Optional
from loguru import logger

from eventgate.bootstrap import Pipeline
from eventgate.config import settings
from eventgate.utils.metrics import metrics
from eventgate.utils.signature import validate_webhook_signature


def get_pipeline(request: Request) -> Pipeline:
    """Wired pipeline stored on app.state by the lifespan handler."""
    pipeline: Optional[Pipeline] = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialized"
        )
    return pipeline


async def validate_whatsapp_signature(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None)
) -> bytes:
    """
    Dependency to validate the WhatsApp webhook signature.

    Verifies X-Hub-Signature-256 against the raw body with the app secret.

    Returns:
        The raw request body

    Raises:
        HTTPException: 401 if signature is invalid or missing, 413 if the
            body is too large

    Note:
        Can be disabled via WHATSAPP_VALIDATE_SIGNATURE=false for testing
    """
    body = await request.body()

    if len(body) > settings.webhook_max_payload_bytes:
        logger.warning(f"🚫 Webhook payload too large ({len(body)} bytes)")
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="Payload exceeds maximum allowed size"
        )

    # Skip validation if disabled (for testing)
    if not settings.whatsapp_validate_signature:
        logger.warning("⚠️ WhatsApp signature validation is DISABLED")
        return body

    if not settings.whatsapp_app_secret:
        logger.error("❌ WHATSAPP_APP_SECRET not configured but signature validation is enabled")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook authentication not configured"
        )

    if not x_hub_signature_256:
        metrics.signature_failures.inc()
        logger.warning("🚫 Missing X-Hub-Signature-256 header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing signature header"
        )

    if not validate_webhook_signature(body, x_hub_signature_256, settings.whatsapp_app_secret):
        metrics.signature_failures.inc()
        logger.warning(
            "🚫 Invalid WhatsApp signature",
            extra={"signature": x_hub_signature_256[:20] + "..."}  # Truncate for logging
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    logger.debug("✅ WhatsApp signature validated successfully")
    return body


async def require_admin_token(
    authorization: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None)
) -> None:
    """
    Dependency guarding operator endpoints.

    Accepts `Authorization: Bearer <token>` or `X-Admin-Token: <token>`.
    """
    if not settings.admin_api_token:
        logger.error("❌ ADMIN_API_TOKEN not configured, operator endpoints are disabled")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Operator endpoints not configured"
        )

    token = x_admin_token
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization[7:].strip()

    if not token or not hmac.compare_digest(token, settings.admin_api_token):
        logger.warning("🚫 Rejected operator request with missing or invalid token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )
