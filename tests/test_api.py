"""End-to-end API tests: checkout, payment, fulfillment, delivery and promos."""
import asyncio
from decimal import Decimal

from bitloot import config, main, models
from bitloot.fulfillment import FulfillmentService
from bitloot.main import get_fulfillment_service, app

from .factories import FakeKeySource, bearer, make_order, session_header, store_key

WEBHOOK_HEADERS = {"x-payment-webhook-secret": config.PAYMENT_WEBHOOK_SECRET}
ADMIN = bearer("admin-1", "ops@bitloot.test", role="admin")


def checkout(client, email="guest@x.com", headers=None, **extra):
    payload = {
        "email": email,
        "items": [{"productId": "game-1", "quantity": 1, "unitPrice": "10"}],
        **extra,
    }
    response = client.post("/orders", json=payload, headers=headers or {})
    assert response.status_code == 201, response.text
    return response.json()


def pay(client, db, order_id, status="paid"):
    response = client.post(
        "/payments/webhook",
        json={"orderId": order_id, "status": status},
        headers=WEBHOOK_HEADERS,
    )
    assert response.status_code == 200, response.text
    # The fulfillment job ran in its own session
    db.expire_all()
    return response.json()


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "healthy"}


def test_guest_checkout_payment_and_reveal(client, db, supplier):
    order = checkout(client)
    order_id = order["id"]
    item_id = order["items"][0]["id"]
    assert order["sessionToken"]
    assert order["status"] == "created"
    assert Decimal(order["total"]) == Decimal("10")

    assert pay(client, db, order_id)["accepted"] is True
    assert len(supplier.calls) == 1

    response = client.post(
        f"/fulfillment/{order_id}/reveal/{item_id}",
        headers={"x-order-session-token": order["sessionToken"]},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["plainKey"] == "KEY-game-1-0-1"
    assert body["downloadCount"] == 1
    assert body["accessInfo"]["method"] == "session_token"

    guest = {"x-order-session-token": order["sessionToken"]}
    fetched = client.get(f"/orders/{order_id}", headers=guest)
    assert fetched.json()["status"] == "fulfilled"
    assert fetched.json()["items"][0]["signedUrl"]
    assert client.get(f"/orders/{order_id}").status_code == 401
    assert client.get(f"/orders/{order_id}", headers=bearer("stranger", "s@x.com")).status_code == 403

    timeline = client.get(f"/orders/{order_id}/timeline", headers=guest)
    assert [event["eventType"] for event in timeline.json()] == ["created", "status_changed", "fulfilled"]


def test_repeated_payment_webhook_is_ignored(client, db, supplier):
    order = checkout(client)
    pay(client, db, order["id"])

    again = pay(client, db, order["id"])

    assert again["accepted"] is False
    assert again["status"] == "fulfilled"
    assert len(supplier.calls) == 1


def test_gateway_cannot_mark_order_fulfilled(client, db, supplier):
    order = make_order(db, status=models.OrderStatus.PAID)

    body = pay(client, db, order.id, status="fulfilled")

    assert body == {"orderId": order.id, "status": "paid", "accepted": False}
    db.refresh(order)
    assert order.status == "paid"
    assert db.query(models.OrderKey).count() == 0
    assert supplier.calls == []


def test_blocking_endpoints_run_in_threadpool():
    for endpoint in (
        main.download_key, main.fulfillment_status, main.download_link, main.link_expiry,
        main.reveal_key, main.admin_reveal_key, main.recover_order,
    ):
        assert not asyncio.iscoroutinefunction(endpoint), endpoint.__name__
    assert asyncio.iscoroutinefunction(main.fulfill_order)


def test_webhook_requires_secret(client):
    response = client.post("/payments/webhook", json={"orderId": "x", "status": "paid"})
    assert response.status_code == 401


def test_reveal_requires_identity(client, db):
    order = make_order(db, status=models.OrderStatus.FULFILLED)

    response = client.post(f"/fulfillment/{order.id}/reveal/{order.items[0].id}")

    assert response.status_code == 401


def test_reveal_denied_is_audited(client, db):
    order = make_order(db, status=models.OrderStatus.FULFILLED, email="owner@x.com", user_id="owner")
    store_key(db, order.items[0])

    response = client.post(
        f"/fulfillment/{order.id}/reveal/{order.items[0].id}",
        headers=bearer("intruder", "intruder@x.com"),
    )

    assert response.status_code == 403
    assert response.json()["detail"] == "Forbidden"
    audit = db.query(models.KeyAuditLog).filter(models.KeyAuditLog.order_id == order.id).one()
    assert audit.outcome == "denied"


def test_reveal_by_email_match(client, db):
    order = make_order(db, status=models.OrderStatus.FULFILLED, email="a@x.com", user_id=None)
    store_key(db, order.items[0], "EMAIL-KEY")

    response = client.post(
        f"/fulfillment/{order.id}/reveal/{order.items[0].id}",
        headers=bearer("u1", "a@x.com"),
    )

    assert response.status_code == 200
    assert response.json()["plainKey"] == "EMAIL-KEY"
    assert response.json()["accessInfo"]["method"] == "email_match"


def test_session_token_for_other_order_is_forbidden(client, db):
    order_a = make_order(db, status=models.OrderStatus.FULFILLED, email="a@x.com")
    order_b = make_order(db, status=models.OrderStatus.FULFILLED, email="a@x.com")
    store_key(db, order_b.items[0])

    response = client.post(
        f"/fulfillment/{order_b.id}/reveal/{order_b.items[0].id}",
        headers=session_header(order_a.id, "a@x.com"),
    )

    assert response.status_code == 403


def test_reveal_unknown_order(client):
    response = client.post("/fulfillment/missing/reveal/item", headers=bearer())
    assert response.status_code == 404


def test_admin_reveal_requires_admin(client, db):
    order = make_order(db, status=models.OrderStatus.FULFILLED)
    store_key(db, order.items[0], "ADMIN-VIEW")
    path = f"/fulfillment/{order.id}/reveal-key/{order.items[0].id}"

    assert client.post(path).status_code == 401
    assert client.post(path, headers=bearer("u1", "a@x.com")).status_code == 403

    response = client.post(path, headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["plainKey"] == "ADMIN-VIEW"
    assert response.json()["accessInfo"]["method"] == "admin"


def test_status_and_download_link(client, db):
    order = make_order(db, status=models.OrderStatus.PAID, user_id="u1")
    headers = bearer("u1", "someone@x.com")

    status = client.get(f"/fulfillment/{order.id}/status", headers=headers)
    assert status.status_code == 200
    assert status.json()["itemsFulfilled"] == 0

    assert client.get(f"/fulfillment/{order.id}/download-link", headers=headers).status_code == 400

    store_key(db, order.items[0], "LINKED")
    link = client.get(f"/fulfillment/{order.id}/download-link", headers=headers)
    assert link.status_code == 200
    signed_url = link.json()["signedUrl"]

    token = signed_url.rsplit("/", 1)[-1]
    document = client.get(f"/fulfillment/download/{token}")
    assert document.status_code == 200
    assert "LINKED" not in document.text
    assert document.json()["algorithm"] == "aes-256-gcm"

    expiry = client.get(f"/fulfillment/{order.id}/link-expiry", headers=headers)
    assert expiry.json()["isExpired"] is False


def test_status_requires_jwt_and_ownership(client, db):
    order = make_order(db, user_id="owner")

    assert client.get(f"/fulfillment/{order.id}/status").status_code == 401
    assert client.get(f"/fulfillment/{order.id}/status", headers=bearer("other", "o@x.com")).status_code == 403
    assert client.get("/fulfillment/missing/status", headers=bearer()).status_code == 404


def test_invalid_download_token(client):
    assert client.get("/fulfillment/download/not-a-token").status_code == 403


def test_recover_endpoint(client, db):
    order = make_order(db, status=models.OrderStatus.PAID, user_id="u1")
    store_key(db, order.items[0])

    response = client.post(f"/fulfillment/{order.id}/recover", headers=bearer("u1", "x@x.com"))

    assert response.status_code == 200
    assert response.json()["recovered"] is True
    assert response.json()["items"][0]["signedUrl"]


def test_admin_fulfill_surfaces_upstream_failure(client, db, cipher, signer):
    failing = FakeKeySource(fail=True)
    app.dependency_overrides[get_fulfillment_service] = lambda: FulfillmentService(
        db, sources={"supplier": failing}, cipher=cipher, signer=signer
    )
    order = make_order(db)

    response = client.post(f"/fulfillment/{order.id}/fulfill", headers=ADMIN)

    assert response.status_code == 502
    assert "Supplier unavailable" in response.json()["detail"]


def test_admin_fulfill(client, db):
    order = make_order(db)

    response = client.post(f"/fulfillment/{order.id}/fulfill", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["allFulfilled"] is True


def test_unexpected_errors_become_generic_400(client, db, monkeypatch):
    order = make_order(db, user_id="u1")

    def explode(self, order_id):
        raise RuntimeError("database exploded at 10.0.0.5")

    monkeypatch.setattr(FulfillmentService, "check_status", explode)
    response = client.get(f"/fulfillment/{order.id}/status", headers=bearer("u1", "a@x.com"))

    assert response.status_code == 400
    assert response.json()["detail"] == "Request could not be processed"


def test_fulfillment_health(client):
    body = client.get("/fulfillment/health/check").json()
    assert body["status"] == "healthy"
    assert body["dependencies"] == {"database": True, "supplier": True}


def test_promo_validate_always_200(client):
    response = client.post("/promos/validate", json={"code": "NOPE", "orderTotal": "0"})

    assert response.status_code == 200
    assert response.json()["valid"] is False
    assert response.json()["errorCode"] == "INVALID_ORDER_TOTAL"


def test_admin_promo_crud(client):
    assert client.get("/admin/promos").status_code == 401
    assert client.get("/admin/promos", headers=bearer()).status_code == 403

    created = client.post(
        "/admin/promos",
        json={"code": "save10", "discountType": "percent", "discountValue": "10"},
        headers=ADMIN,
    )
    assert created.status_code == 201, created.text
    promo = created.json()
    assert promo["code"] == "SAVE10"

    duplicate = client.post(
        "/admin/promos",
        json={"code": "SAVE10", "discountType": "fixed", "discountValue": "1"},
        headers=ADMIN,
    )
    assert duplicate.status_code == 409

    patched = client.patch(f"/admin/promos/{promo['id']}", json={"isActive": False}, headers=ADMIN)
    assert patched.json()["isActive"] is False

    listing = client.get("/admin/promos", headers=ADMIN).json()
    assert listing["total"] == 1

    assert client.delete(f"/admin/promos/{promo['id']}", headers=ADMIN).status_code == 204
    assert client.get(f"/admin/promos/{promo['id']}", headers=ADMIN).status_code == 404


def test_checkout_with_promo_records_one_redemption(client, db, supplier):
    promo = client.post(
        "/admin/promos",
        json={"code": "SAVE10", "discountType": "percent", "discountValue": "10", "maxUsesTotal": 10},
        headers=ADMIN,
    ).json()

    validation = client.post("/promos/validate", json={"code": "save10", "orderTotal": "50.00"}).json()
    assert validation["valid"] is True
    assert validation["discountAmount"] == "5.00000000"

    order = checkout(client, promoCode="save10")
    assert Decimal(order["discountAmount"]) == Decimal("1")
    assert Decimal(order["total"]) == Decimal("9")

    # Keep the order paid but unfulfilled so both notifications are applied
    supplier.fail = True
    pay(client, db, order["id"], status="confirming")
    pay(client, db, order["id"], status="paid")

    redemptions = client.get(f"/admin/promos/{promo['id']}/redemptions", headers=ADMIN).json()
    assert redemptions["total"] == 1
    assert Decimal(redemptions["data"][0]["finalTotal"]) == Decimal("9")
    assert client.get(f"/admin/promos/{promo['id']}", headers=ADMIN).json()["usageCount"] == 1


def test_checkout_with_invalid_promo(client):
    response = client.post(
        "/orders",
        json={"email": "a@x.com", "items": [{"productId": "p", "unitPrice": "5"}], "promoCode": "NOPE"},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["errorCode"] == "PROMO_NOT_FOUND"


def test_add_inventory_keys(client):
    response = client.post("/admin/inventory/game-9/keys", json={"keys": ["A", "B", " "]}, headers=ADMIN)

    assert response.status_code == 201
    assert response.json() == {"productId": "game-9", "added": 2, "available": 2}
