"""
Webhook Endpoints

WhatsApp Cloud API and payment gateway webhooks. Every delivery is fanned
out into inbound events and handed to the ingestion front door; the route
only acknowledges once each event is either scheduled or known duplicate.
"""
import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from loguru import logger
from pydantic import ValidationError

from eventgate.api.dependencies import get_pipeline, validate_whatsapp_signature
from eventgate.api.models.whatsapp import WhatsAppWebhookPayload
from eventgate.bootstrap import Pipeline
from eventgate.config import settings
from eventgate.ingestion import KNOWN_GATEWAYS, detect_gateway, payment_event
from eventgate.models.events import IngestResult, IngestStatus

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.get("/whatsapp")
async def whatsapp_verify(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge")
):
    """
    Meta webhook verification handshake.

    Meta calls this once when the webhook is registered and expects the
    challenge echoed back as plain text.
    """
    if hub_mode != "subscribe" or not hub_challenge:
        logger.warning(f"🚫 Webhook verification with unexpected mode '{hub_mode}'")
        return JSONResponse(
            status_code=400,
            content={"status": "error", "error": "Invalid verification request"}
        )

    if not settings.whatsapp_verify_token or hub_verify_token != settings.whatsapp_verify_token:
        logger.warning("🚫 Webhook verification token mismatch")
        return JSONResponse(
            status_code=403,
            content={"status": "forbidden", "error": "Verification token mismatch"}
        )

    logger.info("✅ WhatsApp webhook verified")
    return PlainTextResponse(content=hub_challenge)


@router.post("/whatsapp")
async def whatsapp_webhook(
    body: bytes = Depends(validate_whatsapp_signature),
    pipeline: Pipeline = Depends(get_pipeline)
):
    """
    WhatsApp Cloud API webhook endpoint.

    Flow:
    1. Validate X-Hub-Signature-256 (dependency)
    2. Parse the delivery and fan out messages, statuses and errors
    3. Claim each event once and schedule its processing job
    4. Return 200 with accepted/duplicate counts

    If any event could not be scheduled the response is 500 so Meta
    redelivers; events already accepted come back as duplicates.
    """
    try:
        payload = WhatsAppWebhookPayload.model_validate_json(body)
    except ValidationError as e:
        logger.warning(f"Malformed WhatsApp webhook: {e.error_count()} validation errors")
        return JSONResponse(
            status_code=400,
            content={"status": "error", "error": "Malformed webhook payload"}
        )

    events = payload.to_events()
    results = await pipeline.ingestion.ingest_many(events)
    counts = _count(results)

    logger.info(
        f"WhatsApp webhook: {len(events)} events",
        extra={"object": payload.object, **counts}
    )

    if counts["failed"]:
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error": "Some events could not be scheduled", **counts}
        )

    return {"status": "ok", **counts}


@router.post("/payments/{gateway}")
async def payment_webhook(
    gateway: str,
    request: Request,
    pipeline: Pipeline = Depends(get_pipeline)
):
    """
    Payment gateway webhook endpoint.

    `gateway` is stripe, razorpay, pix or any other gateway name (events
    from unknown gateways are deduplicated by payload hash). Use "auto" to
    detect the gateway from headers and payload shape.

    Gateway signature verification is expected upstream of this service.
    """
    body = await request.body()
    if len(body) > settings.webhook_max_payload_bytes:
        logger.warning(f"🚫 Payment webhook payload too large ({len(body)} bytes)")
        return JSONResponse(
            status_code=413,
            content={"status": "error", "error": "Payload exceeds maximum allowed size"}
        )

    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        return JSONResponse(
            status_code=400,
            content={"status": "error", "error": "Payment webhook body must be a JSON object"}
        )

    gateway = gateway.lower()
    if gateway == "auto":
        detected = detect_gateway(dict(request.headers), data)
        if detected is None:
            return JSONResponse(
                status_code=400,
                content={"status": "error", "error": "Could not detect payment gateway"}
            )
        gateway = detected
    elif gateway not in KNOWN_GATEWAYS:
        logger.info(f"Payment webhook from unrecognized gateway '{gateway}', deduplicating by payload hash")

    result = await pipeline.ingestion.ingest(payment_event(gateway, data))

    if not result.is_success:
        logger.error(
            f"Payment event {result.key} not scheduled: {result.error}",
            extra={"gateway": gateway}
        )
        return JSONResponse(
            status_code=500,
            content={"status": "error", "event_id": result.key, "error": result.error}
        )

    return {
        "status": result.status,
        "gateway": gateway,
        "event_id": result.key,
        "job_id": result.job_id
    }


def _count(results: list[IngestResult]) -> dict[str, int]:
    counts = {status.value: 0 for status in IngestStatus}
    for result in results:
        counts[result.status] += 1
    return counts
