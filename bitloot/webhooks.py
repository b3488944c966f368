"""
Outbound event notifications for order lifecycle changes.

Subscribers (the delivery email sender, the storefront) receive a JSON body
signed with HMAC-SHA256 over the raw bytes in the X-BitLoot-Signature header.
Payloads carry delivery links only, never key plaintext.
"""
import asyncio
import hashlib
import hmac
import json
import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx

from . import config

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-BitLoot-Signature"
EVENT_HEADER = "X-BitLoot-Event"


def sign_payload(body: bytes, secret: Optional[str] = None) -> str:
    secret = secret or config.WEBHOOK_SIGNING_SECRET
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def build_event(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "event": event_type,
        "data": data,
        "timestamp": config.utcnow().isoformat(),
    }


async def send_webhook(
    event_type: str,
    data: Dict[str, Any],
    urls: Optional[List[str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, bool]:
    """
    Deliver one event to every subscriber concurrently.

    Args:
        event_type: Event name (e.g., "order.fulfilled", "order.status_changed")
        data: Event data payload
        urls: Subscriber URLs (default WEBHOOK_URLS)
        transport: Optional httpx transport, used by tests

    Returns:
        Mapping of URL to whether the subscriber accepted the event
    """
    urls = config.WEBHOOK_URLS if urls is None else urls
    if not urls:
        return {}

    event = build_event(event_type, data)
    body = json.dumps(event, default=str).encode()
    headers = {
        "Content-Type": "application/json",
        EVENT_HEADER: event_type,
        SIGNATURE_HEADER: sign_payload(body),
    }

    async with httpx.AsyncClient(timeout=config.WEBHOOK_TIMEOUT, transport=transport) as client:
        results = await asyncio.gather(*(deliver(client, url, body, headers) for url in urls))
    return dict(zip(urls, results))


async def deliver(client: httpx.AsyncClient, url: str, body: bytes, headers: Dict[str, str]) -> bool:
    """Post a signed event body to one subscriber. Failures are logged, not raised."""
    try:
        response = await client.post(url, content=body, headers=headers)
    except httpx.HTTPError as e:
        logger.warning(f"Webhook {headers[EVENT_HEADER]} to {url} failed: {e}")
        return False

    if response.status_code >= 400:
        logger.warning(f"Webhook {headers[EVENT_HEADER]} to {url} rejected: HTTP {response.status_code}")
        return False
    return True


def _dispatch(event_type: str, data: Dict[str, Any]) -> None:
    if not config.WEBHOOK_URLS:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        # Threadpool endpoints have no loop: deliver inline
        asyncio.run(send_webhook(event_type, data))
        return
    loop.create_task(send_webhook(event_type, data))


def notify_order_fulfilled(order_id: str, email: str, links: Dict[str, str]) -> None:
    """
    Notify that an order was fulfilled.

    Args:
        order_id: Order ID
        email: Buyer email (for the delivery email sender)
        links: Mapping of item ID to signed download URL
    """
    _dispatch("order.fulfilled", {"order_id": order_id, "email": email, "links": links})


def notify_order_status_changed(order_id: str, old_status: str, new_status: str) -> None:
    _dispatch("order.status_changed", {
        "order_id": order_id,
        "old_status": old_status,
        "new_status": new_status,
    })
