"""Tests for signed outbound event notifications."""
import asyncio
import json

import httpx

from bitloot import config, webhooks


def test_send_webhook_signs_body():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(204)

    results = asyncio.run(webhooks.send_webhook(
        "order.fulfilled",
        {"order_id": "o1", "links": {"i1": "https://x/dl/t"}},
        urls=["https://hooks.test/a"],
        transport=httpx.MockTransport(handler),
    ))

    assert results == {"https://hooks.test/a": True}
    request = received[0]
    assert request.headers[webhooks.EVENT_HEADER] == "order.fulfilled"
    assert request.headers[webhooks.SIGNATURE_HEADER] == webhooks.sign_payload(request.content)
    event = json.loads(request.content)
    assert event["event"] == "order.fulfilled"
    assert event["data"]["order_id"] == "o1"
    assert event["id"]


def test_failed_subscriber_does_not_block_others():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.test":
            raise httpx.ConnectError("refused", request=request)
        if request.url.host == "angry.test":
            return httpx.Response(500)
        return httpx.Response(200)

    results = asyncio.run(webhooks.send_webhook(
        "order.status_changed",
        {"order_id": "o1"},
        urls=["https://down.test/h", "https://angry.test/h", "https://ok.test/h"],
        transport=httpx.MockTransport(handler),
    ))

    assert results == {"https://down.test/h": False, "https://angry.test/h": False, "https://ok.test/h": True}


def test_no_subscribers_sends_nothing(monkeypatch):
    monkeypatch.setattr(config, "WEBHOOK_URLS", [])

    assert asyncio.run(webhooks.send_webhook("order.fulfilled", {})) == {}
    webhooks.notify_order_fulfilled("o1", "a@x.com", {})


def test_dispatch_without_event_loop_delivers_inline(monkeypatch):
    sent = []

    async def record(event_type, data):
        sent.append((event_type, data))

    monkeypatch.setattr(config, "WEBHOOK_URLS", ["https://hooks.test/a"])
    monkeypatch.setattr(webhooks, "send_webhook", record)

    webhooks.notify_order_status_changed("o1", "paid", "finished")

    assert sent == [("order.status_changed", {"order_id": "o1", "old_status": "paid", "new_status": "finished"})]
