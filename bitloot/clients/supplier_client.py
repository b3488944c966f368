"""
HTTP client for the key supplier API.

Purchases license keys for order items: a reservation is created for an
offer, then polled until the supplier reports the keys as ready.
"""
import logging
from typing import List, Optional

import httpx
from sqlalchemy.orm import Session

from .. import config, models
from ..exceptions import UpstreamError

logger = logging.getLogger(__name__)


class SupplierClient:
    """Thin async wrapper over the supplier REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.SUPPLIER_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.SUPPLIER_API_KEY
        self.timeout = timeout or config.SUPPLIER_TIMEOUT
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
            transport=self.transport,
        )

    async def create_order(self, offer_id: str, quantity: int) -> dict:
        """
        Reserve keys for an offer.

        Args:
            offer_id: Supplier offer (our product ID)
            quantity: Number of keys, 1-100

        Returns:
            Reservation data, e.g. {"id": "res-1", "status": "waiting"}

        Raises:
            UpstreamError: If the request fails or the response is malformed
        """
        if not offer_id:
            raise ValueError("Invalid offer_id: must be a non-empty string")
        if quantity < 1 or quantity > 100:
            raise ValueError("Invalid quantity: must be between 1 and 100")

        try:
            async with self._client() as client:
                response = await client.post("/orders", json={"offerId": offer_id, "quantity": quantity})
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Supplier order creation failed for offer '{offer_id}': {e}")
            raise UpstreamError(f"Supplier order creation failed: {e}")

        if not isinstance(data, dict) or not data.get("id"):
            raise UpstreamError("Invalid response from supplier API")

        logger.info(f"Supplier reservation created: {data['id']} (status: {data.get('status')})")
        return data

    async def get_order_status(self, reservation_id: str) -> dict:
        """
        Fetch a reservation. Ready reservations carry "keys" (or a single "key").

        Raises:
            UpstreamError: If the request fails or the response is malformed
        """
        try:
            async with self._client() as client:
                response = await client.get(f"/orders/{reservation_id}")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Supplier status fetch failed for reservation '{reservation_id}': {e}")
            raise UpstreamError(f"Supplier status fetch failed: {e}")

        if not isinstance(data, dict):
            raise UpstreamError("Invalid response from supplier API")
        return data

    async def health_check(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get("/health")
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Supplier health check failed: {e}")
            return False


class SupplierKeySource:
    """
    Acquires keys for an item from the supplier.

    The reservation ID is saved on the item before polling, so a retry
    polls the same reservation instead of buying new keys.
    """
    source_type = "supplier"

    def __init__(self, client: Optional[SupplierClient] = None):
        self.client = client or SupplierClient()

    async def acquire(self, db: Session, item: models.OrderItem) -> List[str]:
        if not item.supplier_reservation_id:
            reservation = await self.client.create_order(item.product_id, item.quantity)
            item.supplier_reservation_id = reservation["id"]
            db.commit()

        status = await self.client.get_order_status(item.supplier_reservation_id)
        if status.get("status") != "ready":
            raise UpstreamError(
                f"Supplier reservation {item.supplier_reservation_id} not ready (status: {status.get('status')})"
            )

        keys = status.get("keys") or ([status["key"]] if status.get("key") else [])
        keys = [k for k in keys if isinstance(k, str) and k]
        if len(keys) < item.quantity:
            raise UpstreamError(
                f"Supplier reservation {item.supplier_reservation_id} returned {len(keys)} of {item.quantity} keys"
            )
        return keys[:item.quantity]

    async def health_check(self) -> bool:
        return await self.client.health_check()
