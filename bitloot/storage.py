"""
Encrypted key storage and signed download links.

KeyStorage writes an item's ciphertext at most once. LinkSigner issues
short-lived download URLs whose token is a signed JWT naming the order item.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config, models
from .encryption import EncryptedSecret

logger = logging.getLogger(__name__)

LINK_TOKEN_TYPE = "key_download"


class KeyStorage:
    def __init__(self, db: Session):
        self.db = db

    def get_key(self, item_id: str) -> Optional[models.OrderKey]:
        return self.db.query(models.OrderKey).filter(models.OrderKey.order_item_id == item_id).first()

    def store_if_absent(
        self,
        item: models.OrderItem,
        secret: EncryptedSecret,
        content_type: str = "text/plain",
    ) -> Tuple[models.OrderKey, bool]:
        """
        Persist ciphertext for an item unless it already has some.

        Returns:
            Tuple of (key row, created). created is False when another writer
            stored material first; the existing row is returned unchanged.
        """
        existing = self.get_key(item.id)
        if existing is not None:
            return existing, False

        key = models.OrderKey(
            order_item_id=item.id,
            ciphertext=secret.ciphertext,
            nonce=secret.nonce,
            algorithm=secret.algorithm,
            content_type=content_type,
        )
        self.db.add(key)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(f"Key for item {item.id} was stored concurrently; keeping existing material")
            existing = self.get_key(item.id)
            if existing is None:
                raise
            return existing, False

        self.db.refresh(key)
        logger.info(f"Encrypted key stored for item {item.id}")
        return key, True


class LinkSigner:
    def __init__(
        self,
        secret: Optional[str] = None,
        base_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        clock=config.utcnow,
    ):
        self.secret = secret or config.LINK_SIGNING_SECRET
        self.base_url = (base_url or config.PUBLIC_BASE_URL).rstrip("/")
        self.ttl_seconds = ttl_seconds or config.DELIVERY_LINK_TTL_SECONDS
        self.clock = clock

    def sign(self, order_id: str, item_id: str) -> Tuple[str, datetime]:
        """
        Returns:
            Tuple of (signed URL, expiry)
        """
        expires_at = self.clock() + timedelta(seconds=self.ttl_seconds)
        token = jwt.encode(
            {"orderId": order_id, "itemId": item_id, "typ": LINK_TOKEN_TYPE, "exp": expires_at},
            self.secret,
            algorithm=config.JWT_ALGORITHM,
        )
        return f"{self.base_url}/fulfillment/download/{token}", expires_at

    def verify(self, token: str) -> Optional[Tuple[str, str]]:
        """
        Returns:
            Tuple of (order_id, item_id), or None if the token is invalid or expired
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[config.JWT_ALGORITHM])
        except JWTError as e:
            logger.info(f"Download token rejected: {e}")
            return None
        if payload.get("typ") != LINK_TOKEN_TYPE:
            return None
        order_id, item_id = payload.get("orderId"), payload.get("itemId")
        if not order_id or not item_id:
            return None
        return order_id, item_id

    def assign(self, db: Session, item: models.OrderItem) -> str:
        """Issue a fresh link for an item and persist it."""
        url, expires_at = self.sign(item.order_id, item.id)
        item.signed_url = url
        item.signed_url_expires_at = expires_at
        db.commit()
        return url
