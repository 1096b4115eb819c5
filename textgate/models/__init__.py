"""
Database models - import all models here so Alembic can discover them.
"""
from textgate.models.message import Message
from textgate.models.opt_out import OptOutRecord
from textgate.models.webhook_event import WebhookEvent
from textgate.models.transition_anomaly import TransitionAnomaly

__all__ = [
    "Message",
    "OptOutRecord",
    "WebhookEvent",
    "TransitionAnomaly",
]
