"""
Internal key stock.

Admins upload keys per product; fulfillment claims them one row at a time
with a conditional UPDATE so two runs can never sell the same key.
"""
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from . import config, models
from .encryption import KeyCipher
from .exceptions import UpstreamError

logger = logging.getLogger(__name__)

STATUS_AVAILABLE = "available"
STATUS_SOLD = "sold"


def add_stock(db: Session, product_id: str, keys: List[str], cipher: Optional[KeyCipher] = None) -> int:
    """
    Encrypt and add keys to a product's stock.

    Returns:
        Number of keys added
    """
    cipher = cipher or KeyCipher()
    added = 0
    for plain in keys:
        plain = plain.strip()
        if not plain:
            continue
        secret = cipher.encrypt(plain)
        db.add(models.InventoryKey(
            product_id=product_id,
            ciphertext=secret.ciphertext,
            nonce=secret.nonce,
            status=STATUS_AVAILABLE,
        ))
        added += 1
    db.commit()
    logger.info(f"Added {added} stock keys for product {product_id}")
    return added


def count_available(db: Session, product_id: str) -> int:
    return db.query(models.InventoryKey).filter(
        models.InventoryKey.product_id == product_id,
        models.InventoryKey.status == STATUS_AVAILABLE,
    ).count()


class InventoryKeySource:
    """
    Acquires keys for an item from the internal stock pool.

    Keys already assigned to the item (from an earlier, interrupted run)
    are reused before any new key is claimed.
    """
    source_type = "inventory"

    def __init__(self, cipher: Optional[KeyCipher] = None):
        self.cipher = cipher or KeyCipher()

    def _assigned(self, db: Session, item: models.OrderItem) -> List[models.InventoryKey]:
        return db.query(models.InventoryKey).filter(
            models.InventoryKey.order_item_id == item.id
        ).order_by(models.InventoryKey.created_at.asc()).all()

    def _claim_one(self, db: Session, item: models.OrderItem) -> bool:
        candidate = db.query(models.InventoryKey.id).filter(
            models.InventoryKey.product_id == item.product_id,
            models.InventoryKey.status == STATUS_AVAILABLE,
        ).order_by(models.InventoryKey.created_at.asc()).first()
        if candidate is None:
            return False

        claimed = db.query(models.InventoryKey).filter(
            models.InventoryKey.id == candidate.id,
            models.InventoryKey.status == STATUS_AVAILABLE,
        ).update(
            {"status": STATUS_SOLD, "order_item_id": item.id, "sold_at": config.utcnow()},
            synchronize_session=False,
        )
        db.commit()
        return bool(claimed)

    async def acquire(self, db: Session, item: models.OrderItem) -> List[str]:
        assigned = self._assigned(db, item)
        attempts = 0
        while len(assigned) < item.quantity:
            # A lost race just means another candidate is tried
            if not self._claim_one(db, item):
                if count_available(db, item.product_id) == 0:
                    raise UpstreamError(
                        f"Insufficient stock for product {item.product_id}: "
                        f"{len(assigned)} of {item.quantity} keys reserved"
                    )
                attempts += 1
                if attempts > 10 * item.quantity:
                    raise UpstreamError(f"Could not reserve stock for product {item.product_id}")
            assigned = self._assigned(db, item)

        return [self.cipher.decrypt(row.ciphertext, row.nonce) for row in assigned[:item.quantity]]

    async def health_check(self) -> bool:
        return True
