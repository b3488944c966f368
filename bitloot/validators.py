"""
Business rule validation for orders and promo codes.

Provides additional business logic validation beyond schema validation.
"""
from typing import List, Optional, Tuple
from decimal import Decimal, InvalidOperation
from . import schemas
from .models import OrderStatus


# Gateway-reported transitions. "fulfilled" is reached only through fulfillment.
VALID_TRANSITIONS = {
    OrderStatus.CREATED: [
        OrderStatus.WAITING, OrderStatus.CONFIRMING, OrderStatus.CONFIRMED, OrderStatus.SENDING,
        OrderStatus.PAID, OrderStatus.PARTIALLY_PAID, OrderStatus.UNDERPAID, OrderStatus.FINISHED,
        OrderStatus.FAILED, OrderStatus.CANCELLED,
    ],
    OrderStatus.WAITING: [
        OrderStatus.CONFIRMING, OrderStatus.CONFIRMED, OrderStatus.SENDING, OrderStatus.PAID,
        OrderStatus.PARTIALLY_PAID, OrderStatus.UNDERPAID, OrderStatus.FINISHED,
        OrderStatus.FAILED, OrderStatus.CANCELLED,
    ],
    OrderStatus.CONFIRMING: [
        OrderStatus.CONFIRMED, OrderStatus.SENDING, OrderStatus.PAID, OrderStatus.PARTIALLY_PAID,
        OrderStatus.UNDERPAID, OrderStatus.FINISHED, OrderStatus.FAILED,
    ],
    OrderStatus.CONFIRMED: [
        OrderStatus.SENDING, OrderStatus.PAID, OrderStatus.FINISHED, OrderStatus.FAILED,
    ],
    OrderStatus.SENDING: [OrderStatus.PAID, OrderStatus.FINISHED, OrderStatus.FAILED],
    OrderStatus.PARTIALLY_PAID: [
        OrderStatus.CONFIRMING, OrderStatus.CONFIRMED, OrderStatus.PAID, OrderStatus.FINISHED,
        OrderStatus.UNDERPAID, OrderStatus.FAILED,
    ],
    OrderStatus.UNDERPAID: [
        OrderStatus.CONFIRMING, OrderStatus.PARTIALLY_PAID, OrderStatus.PAID, OrderStatus.FINISHED,
        OrderStatus.FAILED, OrderStatus.CANCELLED,
    ],
    OrderStatus.PAID: [OrderStatus.FINISHED],
    OrderStatus.FINISHED: [],
    OrderStatus.FULFILLED: [],  # Terminal state
    OrderStatus.FAILED: [],
    OrderStatus.CANCELLED: [],
}


def validate_order_items(items: List[schemas.OrderItemCreate]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > 100:
        return False, "Order cannot contain more than 100 items"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.product_id}: quantity must be positive"

        if item.quantity > 100:
            return False, f"Item {item.product_id}: quantity exceeds maximum (100)"

        if item.unit_price < 0:
            return False, f"Item {item.product_id}: price cannot be negative"

        if item.source_type is not None and item.source_type not in ("supplier", "inventory"):
            return False, f"Item {item.product_id}: unknown source type '{item.source_type}'"

    return True, ""


def validate_order_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Args:
        old_status: Current order status
        new_status: New order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status not in VALID_TRANSITIONS:
        return False, f"Unknown status: {old_status}"

    if new_status not in VALID_TRANSITIONS:
        return False, f"Unknown status: {new_status}"

    if old_status == new_status:
        return True, ""  # No change is valid

    if new_status not in VALID_TRANSITIONS[old_status]:
        return False, f"Invalid status transition: {old_status} -> {new_status}"

    return True, ""


def parse_amount(value) -> Optional[Decimal]:
    """Parse a money amount; None for anything that is not a finite number."""
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite():
        return None
    return amount


def validate_discount_value(discount_type: str, discount_value: Decimal) -> Tuple[bool, str]:
    """Percent discounts must lie in [0, 100]; fixed discounts must not be negative."""
    if discount_value < 0:
        return False, "Discount value cannot be negative"
    if discount_type == "percent" and discount_value > 100:
        return False, "Percent discount must be between 0 and 100"
    return True, ""


def validate_promo_window(starts_at, expires_at) -> Tuple[bool, str]:
    if starts_at is not None and expires_at is not None and expires_at <= starts_at:
        return False, "expiresAt must be after startsAt"
    return True, ""
