"""
Gateway webhook endpoint.

Only signature verification can fail the request (401). Once verified, the
event is recorded and the gateway always gets 200: processing errors are
retried by the webhook retry worker, not by gateway redelivery.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from textgate.exceptions import WebhookVerificationError
from textgate.schemas.webhooks import WebhookAck
from textgate.services.messaging import MessagingService, get_messaging_service
from textgate.utils.webhook_signatures import SIGNATURE_HEADER, TIMESTAMP_HEADER

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/gateway", response_model=WebhookAck)
async def gateway_webhook(
    request: Request,
    service: MessagingService = Depends(get_messaging_service),
):
    raw_body = await request.body()
    try:
        result = await service.ingest_webhook(
            raw_body,
            request.headers.get(SIGNATURE_HEADER),
            request.headers.get(TIMESTAMP_HEADER),
        )
    except WebhookVerificationError:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    return WebhookAck(status=result.status, event_id=result.event_id)
