"""
Webhook Router
Handles incoming payment provider webhooks
"""

import json
from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from pydantic import ValidationError as PayloadValidationError

from app.container import ServiceContainer
from app.exceptions import AuthenticationError
from app.models.webhook_schemas import PaymentWebhookEvent, WebhookAck
from app.routers.dependencies import get_container

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/daimo", tags=["webhook"])


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(None),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    container: ServiceContainer = Depends(get_container)
):
    """
    Receive a payment event

    This endpoint:
    1. Verifies the bearer token (401 on mismatch, nothing else happens)
    2. Parses the event (malformed payloads are logged and acknowledged)
    3. Hands the event to the WebhookIngestor in the background
    4. Returns {"received": true} immediately

    Returns:
        WebhookAck
    """
    try:
        container.ingestor.verify(authorization)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=e.message)

    raw = await request.body()
    try:
        body = json.loads(raw)
        if idempotency_key:
            body["idempotencyKey"] = idempotency_key
        event = PaymentWebhookEvent.model_validate(body)
    except (ValueError, TypeError, PayloadValidationError) as e:
        logger.warning("webhook_payload_invalid", error=str(e), body=raw[:500].decode(errors="replace"))
        return WebhookAck()

    logger.info(
        "webhook_received",
        event_type=event.type,
        payment_id=event.payment_id,
        idempotency_key=event.idempotency_key
    )

    background_tasks.add_task(container.ingestor.process, event)
    return WebhookAck()
