"""
Send and status endpoints.

POST /api/v1/messages       - gate → dispatch
    200 dispatched, 422 denied by compliance (decision in detail),
    409 already dispatching, 400 gateway rejected, 502 gateway unavailable
GET  /api/v1/messages/{id}  - current lifecycle state
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException

from textgate.exceptions import DispatchFailed, DispatchInProgress, DispatchRejected
from textgate.models.message import Message
from textgate.schemas.messages import (
    DecisionResponse,
    MessageResponse,
    SendMessageRequest,
    SendMessageResponse,
)
from textgate.services.compliance_gate import SendCandidate
from textgate.services.messaging import MessagingService, get_messaging_service
from textgate.utils.phone import mask_phone

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/messages", tags=["messages"])


def _serialize_message(message: Message) -> MessageResponse:
    return MessageResponse(
        id=str(message.id),
        external_id=message.external_id,
        direction=message.direction,
        sender=message.sender,
        recipient_masked=mask_phone(message.recipient),
        campaign_id=message.campaign_id,
        state=message.state,
        segment_count=message.segment_count,
        encoding=message.encoding,
        cost_usd=message.cost_usd,
        attempt_count=message.attempt_count or 0,
        error_code=message.error_code,
        error_message=message.error_message,
        is_system_reply=bool(message.is_system_reply),
        created_at=message.created_at,
        dispatched_at=message.dispatched_at,
        sent_at=message.sent_at,
        delivered_at=message.delivered_at,
        failed_at=message.failed_at,
    )


@router.post("", response_model=SendMessageResponse)
async def send_message(
    payload: SendMessageRequest,
    service: MessagingService = Depends(get_messaging_service),
):
    candidate = SendCandidate(**payload.model_dump())
    try:
        outcome = await service.send(candidate)
    except DispatchInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except DispatchRejected as e:
        raise HTTPException(
            status_code=400,
            detail={"error_code": e.error_code, "error_message": e.error_message},
        )
    except DispatchFailed as e:
        raise HTTPException(status_code=502, detail={"last_error": e.last_error})

    if not outcome.allowed:
        raise HTTPException(status_code=422, detail=outcome.decision.to_dict())

    return SendMessageResponse(
        status=outcome.message.state,
        message=_serialize_message(outcome.message),
        decision=DecisionResponse(**outcome.decision.to_dict()),
    )


@router.get("/{message_id}", response_model=MessageResponse)
async def get_message(
    message_id: uuid.UUID,
    service: MessagingService = Depends(get_messaging_service),
):
    message = await service.get_message(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return _serialize_message(message)
