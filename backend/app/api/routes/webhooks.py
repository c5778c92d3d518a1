"""
Cardcom Webhook Handler

Receives LowProfile notifications. The raw payload is stored before
anything else; the provider only sees an error when that store fails, so it
retries exactly the notifications we never recorded. Processing failures are
kept on the stored event for the recovery tools.
"""

import logging
from typing import Any
from urllib.parse import parse_qsl

from fastapi import APIRouter, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError

from app.api.dependencies import IngestorDep
from app.domain.subscription import WebhookSource
from app.infrastructure.services.webhook_ingestor import WebhookIngestor


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")


async def read_payload(request: Request) -> dict[str, Any]:
    """Cardcom posts JSON; older terminals send form-encoded bodies."""
    body = await request.body()
    if not body:
        return {}
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(body.decode("utf-8", errors="replace")))
    try:
        payload = await request.json()
    except ValueError:
        return {"_raw_body": body.decode("utf-8", errors="replace")}
    return payload if isinstance(payload, dict) else {"_raw_body": payload}


@router.post("/cardcom")
async def cardcom_webhook(request: Request, ingestor: IngestorDep):
    """
    Handle a Cardcom LowProfile notification.

    Returns 200 ``{}`` once the payload is stored, whatever the processing
    outcome.
    """
    payload = await read_payload(request)

    try:
        event_id = await ingestor.store(payload, WebhookSource.CARDCOM)
    except SQLAlchemyError as e:
        logger.error(f"[WEBHOOK] Failed to store Cardcom notification: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Notification could not be stored",
        )

    try:
        result = await ingestor.process_event(event_id)
    except Exception as e:
        logger.error(f"[WEBHOOK] Processing of event {event_id} failed: {e}")
        await flag_event(ingestor, event_id, e)
        return {}

    if not result.processed:
        logger.warning(
            f"[WEBHOOK] Event {event_id} left unprocessed: {result.failure_reason}"
        )
    return {}


async def flag_event(ingestor: WebhookIngestor, event_id: str, error: Exception) -> None:
    """Keep the failure on the stored event so recovery picks it up."""
    try:
        await ingestor.record_error(event_id, f"{type(error).__name__}: {error}")
    except SQLAlchemyError as e:
        logger.error(f"[WEBHOOK] Could not flag event {event_id}: {e}")
