"""
Pydantic schemas for request/response validation in the BitLoot service.

These schemas define the structure of data for API requests and responses.
JSON uses camelCase keys; snake_case is accepted on input as well.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base schema serializing field names as camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ==================== ORDERS ====================

class OrderItemCreate(CamelModel):
    """Schema for an order line item at checkout."""
    product_id: str = Field(..., min_length=1, description="Catalog product ID")
    quantity: int = Field(1, gt=0, description="Number of keys ordered")
    unit_price: Decimal = Field(..., ge=0, description="Price per unit")
    source_type: Optional[str] = Field(None, description="supplier or inventory")


class OrderCreate(CamelModel):
    """Schema for creating a new order (checkout)."""
    email: EmailStr
    items: List[OrderItemCreate] = Field(default_factory=list)
    promo_code: Optional[str] = None
    category_ids: List[str] = Field(default_factory=list)


class OrderItem(CamelModel):
    id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    source_type: str
    signed_url: Optional[str] = None
    signed_url_expires_at: Optional[datetime] = None


class Order(CamelModel):
    """
    Schema for order responses.

    Attributes:
        id (str): Order's unique identifier
        email (str): Buyer email
        user_id (str): Owning user (None for guests)
        status (str): Order status
        subtotal, discount_amount, total (Decimal): Money amounts
        items (List[OrderItem]): Order line items
        created_at (datetime): When the order was created
    """
    id: str
    email: str
    user_id: Optional[str] = None
    status: str
    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal
    promo_code_id: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    created_at: datetime


class OrderCreated(Order):
    """Checkout response: the order plus the guest session token."""
    session_token: str


class OrderEvent(CamelModel):
    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime


class PaymentNotification(CamelModel):
    """Status update reported by the payment gateway."""
    order_id: str
    status: str


# ==================== FULFILLMENT ====================

class FulfillmentStatus(CamelModel):
    order_id: str
    status: str
    items_fulfilled: int
    items_total: int
    all_fulfilled: bool
    updated_at: datetime


class ItemFulfillmentResult(CamelModel):
    item_id: str
    product_id: str
    signed_url: Optional[str] = None
    status: str
    error: Optional[str] = None


class FulfillmentResult(CamelModel):
    order_id: str
    status: str
    items: List[ItemFulfillmentResult]
    already_fulfilled: bool = False
    all_fulfilled: bool
    fulfilled_at: Optional[datetime] = None


class DeliveryLink(CamelModel):
    order_id: str
    signed_url: str
    expires_at: datetime
    item_count: int
    message: str


class LinkExpiryStatus(CamelModel):
    order_id: str
    is_expired: bool
    expires_at: datetime
    remaining_seconds: int
    message: str


class AccessInfo(CamelModel):
    ip_address: str = "0.0.0.0"
    user_agent: str = "unknown"
    method: Optional[str] = None


class RevealedKey(CamelModel):
    """
    Plaintext key returned by a reveal. Built per request and never persisted.
    """
    order_id: str
    item_id: str
    plain_key: str
    content_type: str
    revealed_at: datetime
    expires_at: datetime
    download_count: int
    access_info: AccessInfo


class EncryptedKeyDocument(CamelModel):
    """What a signed download link resolves to: the encrypted blob, never plaintext."""
    order_id: str
    item_id: str
    encrypted_key: str
    nonce: str
    algorithm: str
    content_type: str


class RecoveredItem(CamelModel):
    item_id: str
    signed_url: Optional[str] = None


class RecoveryResult(CamelModel):
    order_id: str
    recovered: bool
    items: List[RecoveredItem]


class HealthCheckResult(CamelModel):
    service: str
    status: str
    dependencies: Dict[str, bool]
    timestamp: datetime
    error: Optional[str] = None


class InventoryKeysCreate(CamelModel):
    """Admin payload to add stock keys for a product."""
    keys: List[str] = Field(..., min_length=1)


class InventoryStock(CamelModel):
    product_id: str
    added: int
    available: int


# ==================== PROMOS ====================

class ValidatePromoRequest(CamelModel):
    code: str = Field(..., min_length=1, max_length=50)
    order_total: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    product_ids: Optional[List[str]] = None
    category_ids: Optional[List[str]] = None
    applied_promo_code_ids: Optional[List[str]] = None


class ValidatePromoResponse(CamelModel):
    valid: bool
    message: str
    error_code: Optional[str] = None
    promo_code_id: Optional[str] = None
    discount_amount: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[str] = None
    stackable: Optional[bool] = None


class PromoCodeBase(CamelModel):
    description: Optional[str] = Field(None, max_length=255)
    min_order_value: Optional[Decimal] = Field(None, ge=0)
    max_uses_total: Optional[int] = Field(None, ge=1)
    max_uses_per_user: Optional[int] = Field(None, ge=1)
    scope_value: Optional[str] = Field(None, max_length=500)
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class PromoCodeCreate(PromoCodeBase):
    code: str = Field(..., min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_-]+$")
    discount_type: str = Field(..., pattern=r"^(percent|fixed)$")
    discount_value: Decimal = Field(..., ge=0)
    scope_type: str = Field("global", pattern=r"^(global|category|product)$")
    stackable: bool = False
    is_active: bool = True


class PromoCodeUpdate(PromoCodeBase):
    """All fields optional; only provided fields are applied."""
    discount_type: Optional[str] = Field(None, pattern=r"^(percent|fixed)$")
    discount_value: Optional[Decimal] = Field(None, ge=0)
    scope_type: Optional[str] = Field(None, pattern=r"^(global|category|product)$")
    stackable: Optional[bool] = None
    is_active: Optional[bool] = None


class PromoCode(CamelModel):
    id: str
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Decimal
    min_order_value: Optional[Decimal] = None
    max_uses_total: Optional[int] = None
    max_uses_per_user: Optional[int] = None
    usage_count: int
    scope_type: str
    scope_value: Optional[str] = None
    starts_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    stackable: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


class PromoRedemption(CamelModel):
    id: str
    promo_code_id: str
    order_id: str
    user_id: Optional[str] = None
    email: str
    discount_applied: Decimal
    original_total: Decimal
    final_total: Decimal
    created_at: datetime


class PaginatedPromoCodes(CamelModel):
    data: List[PromoCode]
    total: int
    page: int
    limit: int
    total_pages: int


class PaginatedRedemptions(CamelModel):
    data: List[PromoRedemption]
    total: int
    page: int
    limit: int
    total_pages: int
