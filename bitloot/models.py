"""
SQLAlchemy ORM models for the BitLoot service.

Defines the database schema for orders, delivered keys, the internal key
stock, promo codes and their redemptions.
"""
import uuid
from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, ForeignKey, Text, Boolean,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from .config import utcnow
from .database import Base


def new_id() -> str:
    return str(uuid.uuid4())


class OrderStatus:
    """Order status values reported by checkout and the payment gateway."""
    CREATED = "created"
    WAITING = "waiting"
    CONFIRMING = "confirming"
    CONFIRMED = "confirmed"
    SENDING = "sending"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    UNDERPAID = "underpaid"
    FAILED = "failed"
    FINISHED = "finished"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"

    ALL = (
        CREATED, WAITING, CONFIRMING, CONFIRMED, SENDING, PAID, PARTIALLY_PAID,
        UNDERPAID, FAILED, FINISHED, FULFILLED, CANCELLED,
    )

    # Payment has been observed; the order may be fulfilled
    PAYMENT_OBSERVED = (PAID, CONFIRMING, CONFIRMED, SENDING, PARTIALLY_PAID, FINISHED)


class Order(Base):
    """
    Order model representing a checkout in the store.

    Attributes:
        id (str): Primary key (uuid)
        email (str): Buyer email, stored lowercase
        user_id (str): Owning user, NULL for guest orders
        status (str): One of OrderStatus.ALL
        subtotal (Decimal): Sum of item prices before discount
        discount_amount (Decimal): Promo discount applied at checkout
        total (Decimal): Amount charged
        promo_code_id (str): Promo applied at checkout (optional)
        items (list): OrderItem rows owned by this order
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(320), nullable=False, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    status = Column(String(32), nullable=False, default=OrderStatus.CREATED)
    subtotal = Column(Numeric(20, 8), nullable=False, default=0)
    discount_amount = Column(Numeric(20, 8), nullable=False, default=0)
    total = Column(Numeric(20, 8), nullable=False, default=0)
    promo_code_id = Column(String(36), ForeignKey("promo_codes.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )


class OrderItem(Base):
    """
    A purchased line of an order. Holds delivery metadata once fulfilled.

    The encrypted key material lives in OrderKey; signed_url is the current
    short-lived link to the encrypted blob.
    """
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(20, 8), nullable=False, default=0)
    source_type = Column(String(16), nullable=False, default="supplier")
    supplier_reservation_id = Column(String(128), nullable=True)
    acquisition_started_at = Column(DateTime, nullable=True)
    signed_url = Column(Text, nullable=True)
    signed_url_expires_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    order = relationship("Order", back_populates="items")
    key = relationship("OrderKey", uselist=False, back_populates="item", cascade="all, delete-orphan")


class OrderKey(Base):
    """
    Encrypted key material for one order item (AES-256-GCM).

    At most one row per item; the unique constraint is the write-if-absent
    guard for concurrent fulfillment runs.
    """
    __tablename__ = "order_keys"

    id = Column(String(36), primary_key=True, default=new_id)
    order_item_id = Column(String(36), ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, unique=True)
    ciphertext = Column(Text, nullable=False)
    nonce = Column(String(64), nullable=False)
    algorithm = Column(String(32), nullable=False, default="aes-256-gcm")
    content_type = Column(String(64), nullable=False, default="text/plain")
    download_count = Column(Integer, nullable=False, default=0)
    viewed_at = Column(DateTime, nullable=True)
    last_access_ip = Column(String(64), nullable=True)
    last_access_user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    item = relationship("OrderItem", back_populates="key")


class KeyAuditLog(Base):
    """Append-only record of every key reveal attempt."""
    __tablename__ = "key_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(36), nullable=False, index=True)
    item_id = Column(String(36), nullable=True)
    method = Column(String(32), nullable=False)
    outcome = Column(String(16), nullable=False)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class InventoryKey(Base):
    """A key held in the internal stock pool, encrypted at rest."""
    __tablename__ = "inventory_keys"
    __table_args__ = (
        Index("ix_inventory_keys_product_status", "product_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    product_id = Column(String(64), nullable=False)
    ciphertext = Column(Text, nullable=False)
    nonce = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default="available")
    order_item_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    sold_at = Column(DateTime, nullable=True)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): created, status_changed, fulfilled, fulfillment_failed
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (str): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class PromoCode(Base):
    """
    Promo code usable at checkout.

    code is unique and stored uppercase. Soft-deleted codes keep their row
    (deleted_at set) so redemption history stays intact.
    """
    __tablename__ = "promo_codes"

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String(50), nullable=False, unique=True)
    description = Column(String(255), nullable=True)
    discount_type = Column(String(16), nullable=False)
    discount_value = Column(Numeric(20, 8), nullable=False)
    min_order_value = Column(Numeric(20, 8), nullable=True)
    max_uses_total = Column(Integer, nullable=True)
    max_uses_per_user = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    scope_type = Column(String(16), nullable=False, default="global")
    scope_value = Column(String(500), nullable=True)
    starts_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    stackable = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    redemptions = relationship("PromoRedemption", cascade="all, delete-orphan", passive_deletes=True)


class PromoRedemption(Base):
    """One promo applied to one paid order. Never updated or deleted."""
    __tablename__ = "promo_redemptions"
    __table_args__ = (
        UniqueConstraint("promo_code_id", "order_id", name="uq_promo_redemption_order"),
        Index("ix_promo_redemptions_user", "user_id", "promo_code_id"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    promo_code_id = Column(String(36), ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=True)
    email = Column(String(320), nullable=False)
    discount_applied = Column(Numeric(20, 8), nullable=False)
    original_total = Column(Numeric(20, 8), nullable=False)
    final_total = Column(Numeric(20, 8), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
