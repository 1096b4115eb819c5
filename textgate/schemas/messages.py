"""
Request/response schemas for the send and message-status endpoints.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class SendMessageRequest(BaseModel):
    sender: str = Field(min_length=1, max_length=32)
    recipient: str = Field(min_length=1, max_length=32)
    body: str = Field(default="", max_length=1600)
    media_urls: list[str] = Field(default_factory=list)
    campaign_id: str = Field(min_length=1)
    at: Optional[datetime] = None


class CheckSummary(BaseModel):
    name: str
    passed: bool
    reason: Optional[str] = None
    detail: Optional[str] = None
    violations: list[str] = Field(default_factory=list)
    retry_after: Optional[float] = None


class DecisionResponse(BaseModel):
    allowed: bool
    reasons: list[str]
    checks: list[CheckSummary]


class MessageResponse(BaseModel):
    id: str
    external_id: Optional[str] = None
    direction: str
    sender: str
    recipient_masked: str
    campaign_id: Optional[str] = None
    state: str
    segment_count: int
    encoding: str
    cost_usd: Optional[float] = None
    attempt_count: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    is_system_reply: bool = False
    created_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class SendMessageResponse(BaseModel):
    status: str
    message: MessageResponse
    decision: DecisionResponse
