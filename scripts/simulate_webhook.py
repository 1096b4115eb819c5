"""
Drive a local textgate instance: send a message, then play gateway webhooks at it.

Usage:
    python scripts/simulate_webhook.py send --campaign CMP_DEMO
    python scripts/simulate_webhook.py delivered --resource-id gw-msg-123
    python scripts/simulate_webhook.py received --body STOP --phone "+12125559876"

Webhooks are signed with WEBHOOK_SIGNING_SECRET from the environment.
"""
import argparse
import asyncio
import json
import logging
import os
import time
import uuid

import httpx

from textgate.utils.webhook_signatures import SIGNATURE_HEADER, TIMESTAMP_HEADER, compute_signature

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


async def simulate_send(sender: str, recipient: str, body: str, campaign_id: str):
    """POST a message through the compliance gate."""
    payload = {
        "sender": sender,
        "recipient": recipient,
        "body": body,
        "campaign_id": campaign_id,
    }
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/messages", json=payload)
        logger.info("Send response: %s %s", resp.status_code, resp.text)
        return resp


async def simulate_event(event_type: str, secret: str, **fields):
    """POST one signed gateway webhook event."""
    payload = {"event_id": f"evt_{uuid.uuid4().hex[:16]}", "event_type": event_type}
    payload.update({k: v for k, v in fields.items() if v is not None})
    body = json.dumps(payload).encode("utf-8")
    timestamp = str(int(time.time()))
    headers = {
        "Content-Type": "application/json",
        SIGNATURE_HEADER: compute_signature(secret, timestamp, body),
        TIMESTAMP_HEADER: timestamp,
    }
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/webhooks/gateway", content=body, headers=headers)
        logger.info("%s webhook response: %s %s", event_type, resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate sends and gateway webhooks")
    parser.add_argument("action", choices=["send", "sent", "delivered", "delivery_failed", "received"])
    parser.add_argument("--phone", default="+12125559876", help="subscriber number")
    parser.add_argument("--number", default="+12125550100", help="our sending number")
    parser.add_argument("--campaign", default="CMP_DEMO")
    parser.add_argument("--body", default="Your appointment is confirmed for tomorrow at 10am.")
    parser.add_argument("--resource-id", default=None, help="gateway message id")
    parser.add_argument("--error-code", default=None)
    args = parser.parse_args()

    if args.action == "send":
        await simulate_send(args.number, args.phone, args.body, args.campaign)
        return

    secret = os.environ.get("WEBHOOK_SIGNING_SECRET", "")
    if not secret:
        logger.warning("WEBHOOK_SIGNING_SECRET not set - the webhook will be rejected unless unsigned webhooks are allowed")

    if args.action == "received":
        await simulate_event(
            "received", secret,
            resource_id=args.resource_id or f"gw_in_{uuid.uuid4().hex[:12]}",
            text=args.body, to=args.number, **{"from": args.phone},
        )
    else:
        if not args.resource_id:
            parser.error(f"{args.action} needs --resource-id")
        await simulate_event(
            args.action, secret, resource_id=args.resource_id, error_code=args.error_code,
        )


if __name__ == "__main__":
    asyncio.run(main())
