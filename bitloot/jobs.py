"""
Background fulfillment job, scheduled by the payment webhook.

Runs outside the request with its own database session and retries with
exponential backoff while items remain unfulfilled. A job that gives up
leaves the order in its paid status so it can be retried or recovered.
"""
import asyncio
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import config, database, schemas
from .exceptions import NotFoundError, StateError
from .fulfillment import FulfillmentService

logger = logging.getLogger(__name__)


def build_service(db: Session) -> FulfillmentService:
    return FulfillmentService(db)


async def run_fulfillment_job(
    order_id: str,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> Optional[schemas.FulfillmentResult]:
    """
    Fulfill an order, retrying failed items.

    Args:
        order_id: Order to fulfill
        max_attempts: Attempts before giving up (default FULFILLMENT_MAX_ATTEMPTS)
        base_delay: First backoff delay in seconds, doubled per attempt

    Returns:
        The last fulfillment result, or None if the order cannot be fulfilled
    """
    max_attempts = max_attempts or config.FULFILLMENT_MAX_ATTEMPTS
    base_delay = config.FULFILLMENT_RETRY_BASE_SECONDS if base_delay is None else base_delay

    db = database.SessionLocal()
    try:
        service = build_service(db)
        result = None
        for attempt in range(1, max_attempts + 1):
            try:
                result = await service.fulfill_order(order_id)
            except (NotFoundError, StateError) as e:
                logger.error(f"Fulfillment job for order {order_id} stopped: {e.message}")
                return None

            if result.all_fulfilled:
                logger.info(f"Fulfillment job for order {order_id} completed on attempt {attempt}")
                return result

            if attempt < max_attempts:
                delay = base_delay * (2 ** (attempt - 1))
                logger.warning(
                    f"Fulfillment job for order {order_id}: attempt {attempt}/{max_attempts} incomplete; "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        logger.error(f"Fulfillment job for order {order_id} gave up after {max_attempts} attempts")
        return result
    finally:
        db.close()
