"""
Gateway webhook payload - one delivery or inbound event.

{
  "event_id": "evt_...",            provider-assigned, unique per event
  "event_type": "sent" | "delivered" | "delivery_failed" | "received",
  "resource_id": "msg_...",          gateway message id (Message.external_id)
  "occurred_at": "2026-01-01T12:00:00Z",
  "from": "+1...", "to": "+1...", "text": "...", "media_urls": [...],
  "error_code": "...", "error_message": "...", "cost_usd": 0.004, "segment_count": 1
}
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class GatewayWebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_id: str = Field(min_length=1)
    event_type: str
    resource_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    text: Optional[str] = None
    media_urls: list[str] = Field(default_factory=list)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    cost_usd: Optional[float] = None
    segment_count: Optional[int] = None


class WebhookAck(BaseModel):
    """Response to the gateway. Always 200 once the signature is verified."""
    status: str
    event_id: Optional[str] = None
