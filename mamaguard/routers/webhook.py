"""
WhatsApp Webhook — the only inbound HTTP surface of the pipeline.

Endpoints:
  GET  /api/webhook    Meta verification handshake (hub.challenge echo)
  POST /api/webhook    Incoming messages and status callbacks

The POST handler only validates, de-duplicates and enqueues; it returns
before any provider is called.  Meta retries anything that is not a
fast 2xx, so a full queue answers 503 on purpose.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

from mamaguard import settings
from mamaguard.gateway.errors import QueueFullError, ValidationError
from mamaguard.gateway.ingest.whatsapp_ingest import WhatsAppIngest

logger = logging.getLogger("gateway.api")

router = APIRouter(prefix="/api", tags=["webhook"])

_ingest = WhatsAppIngest()


@router.get("/webhook")
async def verify_webhook(request: Request):
    """Subscription handshake: echo hub.challenge when the token matches."""
    params = request.query_params
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token")
    challenge = params.get("hub.challenge", "")

    expected = settings.WHATSAPP_VERIFY_TOKEN
    if mode == "subscribe" and expected and token == expected:
        logger.info("Webhook verified")
        return PlainTextResponse(challenge, status_code=200)

    logger.warning("Webhook verification rejected (mode=%s)", mode)
    return PlainTextResponse("Forbidden", status_code=403)


@router.post("/webhook")
async def receive_webhook(request: Request):
    """Accept a WhatsApp event envelope and hand its messages to the work queue."""
    from mamaguard.gateway.setup import get_deduplicator, get_queue_manager

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    try:
        events = await _ingest.to_events(body)
    except ValidationError as exc:
        logger.warning("Rejected webhook body: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))

    if not events:
        return {"status": "ignored"}

    queue_manager = get_queue_manager()
    deduplicator = get_deduplicator()
    if queue_manager is None or deduplicator is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    accepted = 0
    duplicates = 0
    for event in events:
        if not await deduplicator.claim(event.provider_message_id):
            duplicates += 1
            continue
        try:
            queue_manager.enqueue(event)
        except QueueFullError as exc:
            deduplicator.release(event.provider_message_id)
            logger.warning("Webhook backpressure on %s: %s", event.provider_message_id, exc)
            raise HTTPException(status_code=503, detail="Pipeline busy, retry later")
        accepted += 1
        logger.info(
            "Accepted %s %s from %s",
            event.content_type.value, event.provider_message_id, event.sender_name or "unknown",
        )

    return {"status": "accepted", "accepted": accepted, "duplicates": duplicates}
