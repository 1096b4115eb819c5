"""
Engine exceptions.

Compliance denials are returned as decisions, not raised, except by the
messaging façade for callers that prefer exceptions. State-transition
anomalies are recorded, never raised.
"""
from typing import Optional


class ComplianceDenied(Exception):
    """A send request failed one or more compliance checks."""

    def __init__(self, decision) -> None:
        self.decision = decision
        super().__init__("Compliance denied: " + ", ".join(decision.reasons))


class GatewayTransientError(Exception):
    """Timeout, connection error or 5xx from the upstream gateway. Retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class GatewayRejectedError(Exception):
    """4xx from the upstream gateway. Not retryable."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error_code: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        self.error_message = message
        super().__init__(message)


class DispatchFailed(Exception):
    """Transient gateway failures exhausted the retry budget."""

    def __init__(self, message_id, last_error: str) -> None:
        self.message_id = message_id
        self.last_error = last_error
        super().__init__(f"Dispatch failed for {message_id}: {last_error}")


class DispatchRejected(Exception):
    """The gateway rejected the message outright."""

    def __init__(
        self,
        message_id,
        error_code: Optional[str],
        error_message: str,
    ) -> None:
        self.message_id = message_id
        self.error_code = error_code
        self.error_message = error_message
        super().__init__(f"Dispatch rejected for {message_id}: {error_code} {error_message}")


class DispatchInProgress(Exception):
    """Another attempt for the same message is already outstanding."""

    def __init__(self, message_id) -> None:
        self.message_id = message_id
        super().__init__(f"Dispatch already in progress for {message_id}")


class WebhookVerificationError(Exception):
    """Signature missing, invalid or outside the replay window."""
    pass


class WebhookProcessingError(Exception):
    """A verified webhook event could not be applied. Retried later."""
    pass


class MessageNotFound(WebhookProcessingError):
    """No message matches the event's resource id (yet)."""

    def __init__(self, external_id: str) -> None:
        self.external_id = external_id
        super().__init__(f"No message with external id {external_id}")
