"""
Test data builders and fakes.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

from jose import jwt

from bitloot import config, models
from bitloot.auth import SessionTokenService
from bitloot.encryption import KeyCipher
from bitloot.exceptions import UpstreamError


class FakeKeySource:
    """Key source that hands out predictable keys and counts acquisitions."""

    def __init__(self, source_type="supplier", fail=False, delay=False, healthy=True):
        self.source_type = source_type
        self.fail = fail
        self.delay = delay
        self.healthy = healthy
        self.calls = []

    async def acquire(self, db, item):
        self.calls.append(item.id)
        if self.delay:
            await asyncio.sleep(0.01)
        if self.fail:
            raise UpstreamError(f"Supplier unavailable for {item.product_id}")
        return [f"KEY-{item.product_id}-{n}-{len(self.calls)}" for n in range(item.quantity)]

    async def health_check(self):
        return self.healthy


def make_token(user_id="u1", email="a@x.com", role="user", expires_minutes=30):
    claims = {
        "sub": user_id,
        "email": email,
        "role": role,
        "exp": config.utcnow() + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def bearer(user_id="u1", email="a@x.com", role="user"):
    return {"Authorization": f"Bearer {make_token(user_id, email, role)}"}


def session_header(order_id, email):
    return {"x-order-session-token": SessionTokenService().issue(order_id, email)}


def make_order(db, status=models.OrderStatus.PAID, email="a@x.com", user_id=None, items=None):
    """Insert an order directly. items is a list of (product_id, quantity, source_type)."""
    order = models.Order(
        email=email,
        user_id=user_id,
        status=status,
        subtotal=Decimal("20"),
        discount_amount=Decimal("0"),
        total=Decimal("20"),
    )
    for position, (product_id, quantity, source_type) in enumerate(items or [("game-1", 1, "supplier")]):
        order.items.append(models.OrderItem(
            position=position,
            product_id=product_id,
            quantity=quantity,
            unit_price=Decimal("10"),
            source_type=source_type,
        ))
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def store_key(db, item, plaintext="KEY-STORED", cipher=None):
    secret = (cipher or KeyCipher()).encrypt(plaintext)
    key = models.OrderKey(
        order_item_id=item.id,
        ciphertext=secret.ciphertext,
        nonce=secret.nonce,
        algorithm=secret.algorithm,
    )
    db.add(key)
    db.commit()
    return key
