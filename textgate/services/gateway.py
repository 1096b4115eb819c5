"""
Upstream carrier gateway client (Telnyx v2-compatible messages API) over httpx.

POST {base}/messages → {"data": {"id": ...}}

Errors are classified for the dispatcher:
- timeout, connection error, 5xx → GatewayTransientError (retryable)
- 4xx → GatewayRejectedError with the gateway's error code and detail
"""
import logging
from typing import Any, Optional

import httpx

from textgate.exceptions import GatewayTransientError, GatewayRejectedError
from textgate.utils.phone import mask_phone

logger = logging.getLogger(__name__)


class GatewayClient:

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.telnyx.com/v2",
        messaging_profile_id: str = "",
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._messaging_profile_id = messaging_profile_id
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
        )
        self._owns_client = http_client is None

    @classmethod
    def from_settings(cls) -> "GatewayClient":
        from textgate.config import get_settings
        settings = get_settings()
        return cls(
            api_key=settings.gateway_api_key,
            base_url=settings.gateway_base_url,
            messaging_profile_id=settings.gateway_messaging_profile_id,
            timeout=settings.gateway_timeout_seconds,
        )

    async def close(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def send_message(
        self,
        from_: str,
        to: str,
        text: str,
        media_urls: Optional[list[str]] = None,
    ) -> str:
        """
        Submit one message. Returns the gateway message id.
        Exactly one HTTP request per call; retries belong to the dispatcher.
        """
        payload: dict[str, Any] = {"from": from_, "to": to, "text": text}
        if media_urls:
            payload["media_urls"] = list(media_urls)
        if self._messaging_profile_id:
            payload["messaging_profile_id"] = self._messaging_profile_id

        try:
            response = await self._client.post("/messages", json=payload)
        except httpx.TimeoutException as e:
            raise GatewayTransientError(f"Gateway timeout: {e.__class__.__name__}")
        except httpx.TransportError as e:
            raise GatewayTransientError(f"Gateway connection error: {e.__class__.__name__}: {e}")

        if response.status_code >= 500:
            raise GatewayTransientError(
                f"Gateway {response.status_code}: {_error_detail(response)[1]}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            code, detail = _error_detail(response)
            raise GatewayRejectedError(detail, response.status_code, code)

        try:
            data = response.json().get("data") or {}
        except ValueError:
            data = {}
        external_id = data.get("id")
        if not external_id:
            # Accepted but unidentifiable: treat as transient so the attempt is retried
            raise GatewayTransientError(
                f"Gateway {response.status_code} response without message id",
                status_code=response.status_code,
            )

        logger.info(
            "Gateway accepted message to %s: %s", mask_phone(to), external_id,
            extra={"external_id": external_id},
        )
        return external_id


def _error_detail(response: httpx.Response) -> tuple[Optional[str], str]:
    """Extract (error_code, detail) from a Telnyx-style {"errors": [...]} body."""
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:500] or response.reason_phrase

    errors = body.get("errors") if isinstance(body, dict) else None
    if errors and isinstance(errors, list) and isinstance(errors[0], dict):
        first = errors[0]
        code = first.get("code")
        detail = first.get("detail") or first.get("title") or response.reason_phrase
        return (str(code) if code is not None else None), detail
    return None, response.reason_phrase
