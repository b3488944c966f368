"""
Database operations for orders and their timeline.

This module contains the order persistence used by checkout, the payment
webhook and the fulfillment pipeline.
"""
from decimal import Decimal
from typing import List, Optional
from sqlalchemy.orm import Session
import logging
from . import config, models, schemas

# Set up logging
logger = logging.getLogger(__name__)


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_item(db: Session, order_id: str, item_id: str) -> Optional[models.OrderItem]:
    """Retrieve an item, only if it belongs to the given order."""
    return db.query(models.OrderItem).filter(
        models.OrderItem.id == item_id,
        models.OrderItem.order_id == order_id,
    ).first()


def get_order_events(db: Session, order_id: str) -> List[models.OrderEvent]:
    return db.query(models.OrderEvent).filter(
        models.OrderEvent.order_id == order_id
    ).order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc()).all()


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: str = None,
    new_value: str = None,
    user_id: str = None
):
    """
    Helper function to log an order event to the timeline.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "fulfilled")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id
    )
    db.add(event)
    db.commit()


def create_order(
    db: Session,
    order: schemas.OrderCreate,
    user_id: Optional[str] = None,
    promo_code_id: Optional[str] = None,
    discount_amount: Decimal = Decimal("0"),
) -> models.Order:
    """
    Create a new order in the database.

    NOTE: This function assumes validation has already been performed.
    Use validators.validate_order_items() before calling this function.

    Args:
        db: Database session
        order: Order data to create
        user_id: Authenticated buyer, None for guest checkout
        promo_code_id: Promo validated for this order (optional)
        discount_amount: Clamped discount computed by the promo engine

    Returns:
        Created Order object
    """
    subtotal = sum((item.unit_price * item.quantity for item in order.items), Decimal("0"))
    db_order = models.Order(
        email=order.email.lower(),
        user_id=user_id,
        status=models.OrderStatus.CREATED,
        subtotal=subtotal,
        discount_amount=discount_amount,
        total=max(subtotal - discount_amount, Decimal("0")),
        promo_code_id=promo_code_id,
    )
    for position, item in enumerate(order.items):
        db_order.items.append(models.OrderItem(
            position=position,
            product_id=item.product_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
            source_type=item.source_type or config.DEFAULT_SOURCE_TYPE,
        ))
    db.add(db_order)
    db.commit()
    db.refresh(db_order)
    return db_order


def update_order_status(db: Session, order: models.Order, new_status: str, user_id: str = None) -> bool:
    """
    Move an order to a new status unless it is already fulfilled.

    The update is conditional in SQL so it never overwrites a concurrent
    transition to the terminal state.

    Returns:
        True if the status changed
    """
    old_status = order.status
    if old_status == new_status:
        return False

    updated = db.query(models.Order).filter(
        models.Order.id == order.id,
        models.Order.status == old_status,
    ).update({"status": new_status, "updated_at": config.utcnow()}, synchronize_session=False)
    db.commit()
    db.refresh(order)

    if not updated:
        logger.warning(f"Order {order.id} changed concurrently; status is now '{order.status}'")
        return False

    log_order_event(
        db=db,
        order_id=order.id,
        event_type="status_changed",
        description=f"Status changed from '{old_status}' to '{new_status}'",
        old_value=old_status,
        new_value=new_status,
        user_id=user_id
    )
    return True


def mark_fulfilled(db: Session, order: models.Order) -> bool:
    """
    Move an order to the terminal fulfilled status.

    Returns:
        True if this call performed the transition, False if it was already fulfilled
    """
    old_status = order.status
    updated = db.query(models.Order).filter(
        models.Order.id == order.id,
        models.Order.status != models.OrderStatus.FULFILLED,
    ).update({"status": models.OrderStatus.FULFILLED, "updated_at": config.utcnow()}, synchronize_session=False)
    db.commit()
    db.refresh(order)

    if updated:
        log_order_event(
            db=db,
            order_id=order.id,
            event_type="fulfilled",
            description=f"Order fulfilled ({len(order.items)} items delivered)",
            old_value=old_status,
            new_value=models.OrderStatus.FULFILLED,
        )
    return bool(updated)
