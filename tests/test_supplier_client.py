"""Tests for the supplier API client and key source, against a mocked transport."""
import asyncio
import json

import httpx
import pytest

from bitloot.clients.supplier_client import SupplierClient, SupplierKeySource
from bitloot.exceptions import UpstreamError

from .factories import make_order


class FakeSupplier:
    """In-memory supplier API: reservations become ready after `ready_after` polls."""

    def __init__(self, ready_after=0, keys=None):
        self.ready_after = ready_after
        self.keys = keys or ["SUP-KEY-1"]
        self.created = []
        self.polls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer test-key"
        if request.method == "POST" and request.url.path.endswith("/orders"):
            body = json.loads(request.content)
            self.created.append(body)
            return httpx.Response(201, json={"id": f"res-{len(self.created)}", "status": "waiting"})
        if request.method == "GET" and "/orders/" in request.url.path:
            self.polls += 1
            if self.polls <= self.ready_after:
                return httpx.Response(200, json={"id": "res-1", "status": "waiting"})
            return httpx.Response(200, json={"id": "res-1", "status": "ready", "keys": self.keys})
        if request.url.path.endswith("/health"):
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)

    def client(self):
        return SupplierClient(
            base_url="https://supplier.test/api/v1",
            api_key="test-key",
            transport=httpx.MockTransport(self.handler),
        )


def test_create_order_posts_offer():
    supplier = FakeSupplier()

    reservation = asyncio.run(supplier.client().create_order("game-1", 2))

    assert reservation["id"] == "res-1"
    assert supplier.created == [{"offerId": "game-1", "quantity": 2}]


def test_create_order_rejects_bad_quantity():
    with pytest.raises(ValueError):
        asyncio.run(FakeSupplier().client().create_order("game-1", 0))


def test_http_errors_become_upstream_errors():
    client = SupplierClient(
        base_url="https://supplier.test",
        api_key="k",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "boom"})),
    )

    with pytest.raises(UpstreamError):
        asyncio.run(client.create_order("game-1", 1))
    with pytest.raises(UpstreamError):
        asyncio.run(client.get_order_status("res-1"))


def test_malformed_response_is_upstream_error():
    client = SupplierClient(
        base_url="https://supplier.test",
        api_key="k",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"not json")),
    )

    with pytest.raises(UpstreamError):
        asyncio.run(client.create_order("game-1", 1))


def test_health_check():
    assert asyncio.run(FakeSupplier().client().health_check()) is True

    down = SupplierClient(
        base_url="https://supplier.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    assert asyncio.run(down.health_check()) is False


def test_key_source_persists_reservation_before_polling(db):
    supplier = FakeSupplier(ready_after=1)
    source = SupplierKeySource(supplier.client())
    order = make_order(db)
    item = order.items[0]

    with pytest.raises(UpstreamError):
        asyncio.run(source.acquire(db, item))

    db.refresh(item)
    assert item.supplier_reservation_id == "res-1"

    keys = asyncio.run(source.acquire(db, item))

    assert keys == ["SUP-KEY-1"]
    assert len(supplier.created) == 1


def test_key_source_requires_enough_keys(db):
    supplier = FakeSupplier(keys=["ONLY-ONE"])
    source = SupplierKeySource(supplier.client())
    order = make_order(db, items=[("game-1", 2, "supplier")])

    with pytest.raises(UpstreamError):
        asyncio.run(source.acquire(db, order.items[0]))
