"""
Fulfillment: drives a paid order to fulfilled.

Each item is fulfilled independently so a partial run can be resumed.
Concurrent runs for the same order are safe: an item is only acquired
under a lease taken with a conditional UPDATE, an item that already holds
key material is never acquired again, and the key row is written at most
once per item.
"""
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy import exists, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config, crud, models, schemas, webhooks
from .clients.supplier_client import SupplierKeySource
from .encryption import KeyCipher
from .exceptions import NotFoundError, StateError, UpstreamError
from .inventory import InventoryKeySource
from .storage import KeyStorage, LinkSigner

logger = logging.getLogger(__name__)

ITEM_FULFILLED = "fulfilled"
ITEM_IN_PROGRESS = "in_progress"
ITEM_FAILED = "failed"


class FulfillmentService:
    """
    Args:
        db: Database session
        sources: Key sources by source_type ("supplier", "inventory")
        cipher: Encrypts acquired keys before storage
        signer: Issues signed download links
        clock: Returns the current naive UTC time
    """

    def __init__(
        self,
        db: Session,
        sources: Optional[Dict[str, object]] = None,
        cipher: Optional[KeyCipher] = None,
        signer: Optional[LinkSigner] = None,
        clock=config.utcnow,
        lease_seconds: Optional[int] = None,
    ):
        self.db = db
        self.cipher = cipher or KeyCipher()
        if sources is None:
            sources = {
                SupplierKeySource.source_type: SupplierKeySource(),
                InventoryKeySource.source_type: InventoryKeySource(self.cipher),
            }
        self.sources = sources
        self.signer = signer or LinkSigner(clock=clock)
        self.storage = KeyStorage(db)
        self.clock = clock
        self.lease = timedelta(seconds=lease_seconds or config.FULFILLMENT_LEASE_SECONDS)

    def _get_order(self, order_id: str) -> models.Order:
        order = crud.get_order(self.db, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def fulfill_order(self, order_id: str, raise_on_failure: bool = False) -> schemas.FulfillmentResult:
        """
        Acquire, encrypt and store keys for every unfulfilled item.

        Args:
            order_id: Order to fulfill
            raise_on_failure: Raise UpstreamError when an item could not be fulfilled,
                after every other item has been processed

        Returns:
            Per-item results; the order is marked fulfilled only when every
            item has stored key material

        Raises:
            NotFoundError: if the order does not exist
            StateError: if the order has no items or is not paid
        """
        order = self._get_order(order_id)
        if not order.items:
            raise StateError("Order has no items")

        if order.status == models.OrderStatus.FULFILLED:
            logger.info(f"Order {order.id} already fulfilled; nothing to do")
            return schemas.FulfillmentResult(
                order_id=order.id,
                status=order.status,
                items=[self._item_result(item, ITEM_FULFILLED) for item in order.items],
                already_fulfilled=True,
                all_fulfilled=True,
                fulfilled_at=order.updated_at,
            )

        if order.status not in models.OrderStatus.PAYMENT_OBSERVED:
            raise StateError("Order is not paid")

        logger.info(f"Fulfilling order {order.id} ({len(order.items)} items)")
        results = []
        for item in list(order.items):
            results.append(await self._fulfill_item(order, item))

        all_fulfilled = self._all_have_keys(order)
        fulfilled_at = None
        if all_fulfilled:
            self._complete(order)
            fulfilled_at = order.updated_at
        else:
            pending = [r for r in results if r.status != ITEM_FULFILLED]
            logger.warning(f"Order {order.id} partially fulfilled; {len(pending)} items pending")
            if raise_on_failure:
                errors = [r.error for r in pending if r.error]
                if errors:
                    raise UpstreamError(f"Fulfillment incomplete: {'; '.join(errors)}")

        return schemas.FulfillmentResult(
            order_id=order.id,
            status=order.status,
            items=results,
            all_fulfilled=all_fulfilled,
            fulfilled_at=fulfilled_at,
        )

    async def _fulfill_item(self, order: models.Order, item: models.OrderItem) -> schemas.ItemFulfillmentResult:
        if self.storage.get_key(item.id) is not None:
            if not item.signed_url:
                self.signer.assign(self.db, item)
            return self._item_result(item, ITEM_FULFILLED)

        if not self._claim(item):
            logger.info(f"Item {item.id} is being fulfilled by another run; skipping")
            return self._item_result(item, ITEM_IN_PROGRESS)

        source = self.sources.get(item.source_type)
        try:
            if source is None:
                raise StateError(f"No key source configured for '{item.source_type}'")

            keys = await source.acquire(self.db, item)
            secret = self.cipher.encrypt("\n".join(keys))
            _, created = self.storage.store_if_absent(item, secret)
            if not created:
                logger.warning(f"Item {item.id} already had key material; acquired key was not stored")
            self.signer.assign(self.db, item)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Fulfillment failed for order {order.id} item {item.id}: {e}")
            self._release(item)
            crud.log_order_event(
                db=self.db,
                order_id=order.id,
                event_type="fulfillment_failed",
                description=f"Item {item.id} ({item.product_id}) could not be fulfilled: {e}",
            )
            return self._item_result(item, ITEM_FAILED, error=str(e))

        self._release(item)
        logger.info(f"Item {item.id} fulfilled from {item.source_type}")
        return self._item_result(item, ITEM_FULFILLED)

    def _claim(self, item: models.OrderItem) -> bool:
        """Take the acquisition lease for an item. False if another run holds it."""
        now = self.clock()
        has_key = exists().where(models.OrderKey.order_item_id == item.id)
        claimed = self.db.query(models.OrderItem).filter(
            models.OrderItem.id == item.id,
            or_(
                models.OrderItem.acquisition_started_at.is_(None),
                models.OrderItem.acquisition_started_at < now - self.lease,
            ),
            ~has_key,
        ).update({"acquisition_started_at": now}, synchronize_session=False)
        self.db.commit()
        self.db.refresh(item)
        return bool(claimed)

    def _release(self, item: models.OrderItem):
        self.db.query(models.OrderItem).filter(models.OrderItem.id == item.id).update(
            {"acquisition_started_at": None}, synchronize_session=False
        )
        self.db.commit()
        self.db.refresh(item)

    def _all_have_keys(self, order: models.Order) -> bool:
        return all(self.storage.get_key(item.id) is not None for item in order.items)

    def _complete(self, order: models.Order):
        if crud.mark_fulfilled(self.db, order):
            links = {item.id: item.signed_url for item in order.items if item.signed_url}
            webhooks.notify_order_fulfilled(order.id, order.email, links)
            logger.info(f"Order {order.id} fulfilled")

    def _item_result(self, item: models.OrderItem, status: str, error: str = None) -> schemas.ItemFulfillmentResult:
        return schemas.ItemFulfillmentResult(
            item_id=item.id,
            product_id=item.product_id,
            signed_url=item.signed_url,
            status=status,
            error=error,
        )

    def check_status(self, order_id: str) -> schemas.FulfillmentStatus:
        order = self._get_order(order_id)
        items_total = len(order.items)
        items_fulfilled = sum(1 for item in order.items if self.storage.get_key(item.id) is not None)
        return schemas.FulfillmentStatus(
            order_id=order.id,
            status=order.status,
            items_fulfilled=items_fulfilled,
            items_total=items_total,
            all_fulfilled=items_total > 0 and items_fulfilled == items_total,
            updated_at=order.updated_at,
        )

    def recover_order_keys(self, order_id: str) -> schemas.RecoveryResult:
        """
        Re-issue missing signed links from stored key material.

        Never acquires keys. Items that already have a link are left as they
        are, so repeated calls change nothing once every item is linked.

        Raises:
            NotFoundError: if the order does not exist
            StateError: if the order is not paid or holds no key material
        """
        order = self._get_order(order_id)
        if order.status != models.OrderStatus.FULFILLED and order.status not in models.OrderStatus.PAYMENT_OBSERVED:
            raise StateError("Order is not paid")

        items = list(order.items)
        with_keys = {item.id for item in items if self.storage.get_key(item.id) is not None}
        if not with_keys:
            raise StateError("No stored keys to recover for this order")

        recovered_items: List[schemas.RecoveredItem] = []
        reissued = 0
        for item in items:
            if item.id in with_keys and not item.signed_url:
                self.signer.assign(self.db, item)
                reissued += 1
            recovered_items.append(schemas.RecoveredItem(
                item_id=item.id,
                signed_url=item.signed_url if item.id in with_keys else None,
            ))

        recovered = len(with_keys) == len(items)
        if recovered and order.status != models.OrderStatus.FULFILLED:
            self._complete(order)

        logger.info(f"Recovery for order {order.id}: {reissued} links re-issued, recovered={recovered}")
        return schemas.RecoveryResult(order_id=order.id, recovered=recovered, items=recovered_items)

    async def health_check(self) -> schemas.HealthCheckResult:
        dependencies = {"database": False, "supplier": False}
        error = None
        try:
            self.db.execute(text("SELECT 1"))
            dependencies["database"] = True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            error = "database unavailable"

        supplier = self.sources.get(SupplierKeySource.source_type)
        if supplier is not None:
            dependencies["supplier"] = await supplier.health_check()
            if not dependencies["supplier"] and error is None:
                error = "supplier unavailable"

        if not dependencies["database"]:
            status = "unhealthy"
        elif all(dependencies.values()):
            status = "healthy"
        else:
            status = "degraded"

        return schemas.HealthCheckResult(
            service="fulfillment",
            status=status,
            dependencies=dependencies,
            timestamp=self.clock(),
            error=error,
        )
