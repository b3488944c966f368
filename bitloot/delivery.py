"""
Key delivery: signed download links and audited key reveals.

Plaintext keys only ever exist inside a reveal response. Links resolve to
the encrypted blob, and every reveal attempt that reaches an item leaves a
row in key_audit_logs whether or not it succeeds.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from . import config, crud, models, schemas
from .encryption import KeyCipher
from .exceptions import DecryptionError, ForbiddenError, NotFoundError, StateError
from .storage import KeyStorage, LinkSigner

logger = logging.getLogger(__name__)

OUTCOME_REVEALED = "revealed"
OUTCOME_FAILED = "failed"
OUTCOME_DENIED = "denied"


class KeyDeliveryService:
    def __init__(
        self,
        db: Session,
        cipher: Optional[KeyCipher] = None,
        signer: Optional[LinkSigner] = None,
        clock=config.utcnow,
    ):
        self.db = db
        self.cipher = cipher or KeyCipher()
        self.signer = signer or LinkSigner(clock=clock)
        self.storage = KeyStorage(db)
        self.clock = clock

    def _get_order(self, order_id: str) -> models.Order:
        order = crud.get_order(self.db, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    def generate_delivery_link(self, order_id: str) -> schemas.DeliveryLink:
        """
        Issue fresh signed links for every item holding key material.

        The order must be fulfilled, or paid with material stored for every
        item (a run that failed after storing keys but before marking the
        order fulfilled).

        Returns:
            The primary (first) item's link and the number of items covered

        Raises:
            NotFoundError: if the order does not exist
            StateError: if the order is not deliverable yet
        """
        order = self._get_order(order_id)
        items = list(order.items)
        with_keys = [item for item in items if self.storage.get_key(item.id) is not None]

        if order.status != models.OrderStatus.FULFILLED:
            recoverable = (
                order.status in models.OrderStatus.PAYMENT_OBSERVED
                and items
                and len(with_keys) == len(items)
            )
            if not recoverable:
                raise StateError(f"Order is not fulfilled (status: {order.status})")

        if not with_keys:
            raise StateError("No keys available for delivery")

        links = []
        for item in with_keys:
            url, expires_at = self.signer.sign(order.id, item.id)
            item.signed_url = url
            item.signed_url_expires_at = expires_at
            links.append((url, expires_at))
        self.db.commit()

        logger.info(f"Delivery links issued for order {order.id} ({len(links)} items)")
        primary_url, primary_expires_at = links[0]
        return schemas.DeliveryLink(
            order_id=order.id,
            signed_url=primary_url,
            expires_at=primary_expires_at,
            item_count=len(links),
            message=f"Download link generated for {len(links)} item(s)",
        )

    def check_link_expiry(self, order_id: str) -> schemas.LinkExpiryStatus:
        order = self._get_order(order_id)
        linked = [item for item in order.items if item.signed_url and item.signed_url_expires_at]
        if not linked:
            raise StateError("No delivery link has been generated for this order")

        expires_at = linked[0].signed_url_expires_at
        remaining = int((expires_at - self.clock()).total_seconds())
        is_expired = remaining <= 0
        return schemas.LinkExpiryStatus(
            order_id=order.id,
            is_expired=is_expired,
            expires_at=expires_at,
            remaining_seconds=max(remaining, 0),
            message="Download link has expired" if is_expired else f"Download link expires in {remaining} seconds",
        )

    def reveal_key(
        self,
        order_id: str,
        item_id: str,
        access_info: schemas.AccessInfo,
        method: str,
    ) -> schemas.RevealedKey:
        """
        Decrypt an item's key for the caller.

        Args:
            order_id: Order the item belongs to
            item_id: Item to reveal
            access_info: Requester IP address and user agent
            method: How access was granted (session_token, admin, ...)

        Returns:
            The plaintext key with the updated download count

        Raises:
            NotFoundError: if the order or item does not exist
            StateError: if the item has no key yet or the key cannot be decrypted
        """
        order = self._get_order(order_id)
        item = crud.get_order_item(self.db, order.id, item_id)
        if item is None:
            raise NotFoundError("Order item not found")

        outcome = OUTCOME_FAILED
        detail = None
        try:
            if order.status != models.OrderStatus.FULFILLED and order.status not in models.OrderStatus.PAYMENT_OBSERVED:
                detail = f"order status {order.status}"
                raise StateError("Order is not paid")

            key = self.storage.get_key(item.id)
            if key is None:
                detail = "no key material stored"
                raise StateError("Item has not been fulfilled yet")

            try:
                plain_key = self.cipher.decrypt(key.ciphertext, key.nonce)
            except DecryptionError as e:
                detail = f"decryption failed: {e}"
                raise StateError("Key could not be decrypted")

            now = self.clock()
            self.db.query(models.OrderKey).filter(models.OrderKey.id == key.id).update(
                {
                    "download_count": models.OrderKey.download_count + 1,
                    "last_access_ip": access_info.ip_address,
                    "last_access_user_agent": access_info.user_agent[:512],
                },
                synchronize_session=False,
            )
            self.db.query(models.OrderKey).filter(
                models.OrderKey.id == key.id,
                models.OrderKey.viewed_at.is_(None),
            ).update({"viewed_at": now}, synchronize_session=False)
            self.db.commit()
            self.db.refresh(key)

            outcome = OUTCOME_REVEALED
            logger.info(f"Key revealed for order {order.id} item {item.id} via {method} (count {key.download_count})")
            return schemas.RevealedKey(
                order_id=order.id,
                item_id=item.id,
                plain_key=plain_key,
                content_type=key.content_type,
                revealed_at=now,
                expires_at=now + timedelta(seconds=config.REVEAL_TTL_SECONDS),
                download_count=key.download_count,
                access_info=schemas.AccessInfo(
                    ip_address=access_info.ip_address,
                    user_agent=access_info.user_agent,
                    method=method,
                ),
            )
        except Exception:
            self.db.rollback()
            raise
        finally:
            try:
                self._audit(order.id, item.id, method, outcome, access_info, detail)
            except Exception:
                self.db.rollback()
                logger.exception(f"Could not write reveal audit for order {order.id} item {item.id}")

    def record_denied(self, order_id: str, item_id: Optional[str], access_info: schemas.AccessInfo, detail: str = None):
        """Audit a reveal attempt refused by the ownership check."""
        self._audit(order_id, item_id, OUTCOME_DENIED, OUTCOME_DENIED, access_info, detail)

    def _audit(self, order_id, item_id, method, outcome, access_info: schemas.AccessInfo, detail=None):
        self.db.add(models.KeyAuditLog(
            order_id=order_id,
            item_id=item_id,
            method=method,
            outcome=outcome,
            ip_address=access_info.ip_address,
            user_agent=access_info.user_agent[:512],
            detail=detail,
        ))
        self.db.commit()
        if outcome != OUTCOME_REVEALED:
            logger.warning(f"Key reveal {outcome} for order {order_id} item {item_id} via {method}: {detail}")

    def resolve_download(self, token: str) -> schemas.EncryptedKeyDocument:
        """
        Resolve a signed download link to the item's encrypted key document.

        Raises:
            ForbiddenError: if the link is invalid or expired
            NotFoundError: if the item or its key no longer exists
        """
        claims = self.signer.verify(token)
        if claims is None:
            raise ForbiddenError("Download link is invalid or expired")

        order_id, item_id = claims
        item = crud.get_order_item(self.db, order_id, item_id)
        if item is None:
            raise NotFoundError("Order item not found")
        key = self.storage.get_key(item.id)
        if key is None:
            raise NotFoundError("Key not found")

        return schemas.EncryptedKeyDocument(
            order_id=order_id,
            item_id=item.id,
            encrypted_key=key.ciphertext,
            nonce=key.nonce,
            algorithm=key.algorithm,
            content_type=key.content_type,
        )
