"""Inventory store adapter for the headless CMS (Airtable-style REST records)."""

from datetime import datetime, timezone
from typing import Protocol

import httpx

from storepay.common.config import Settings
from storepay.common.errors import InventoryStoreError
from storepay.common.logging import logger

STOCK_FIELD = "Stock"
LAST_UPDATED_FIELD = "Last Updated"
LAST_ORDER_QUANTITY_FIELD = "Last Order Quantity"


class InventoryStore(Protocol):
    async def get_stock(self, product_id: str) -> int | None:
        """Current stock, or None when the product does not exist."""

    async def set_stock(self, product_id: str, new_stock: int, last_order_quantity: int) -> None:
        """Write the new stock level together with its audit fields."""


class CmsInventoryStore:
    """Reads and writes `Stock` on `{base}/{table}/{productId}` records."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self.base_url = f"{settings.inventory_api_url.rstrip('/')}/{settings.inventory_table}"
        self.http = http or httpx.AsyncClient(
            timeout=settings.inventory_timeout_seconds,
            headers={"Authorization": f"Bearer {settings.inventory_api_key}"},
        )

    async def close(self) -> None:
        await self.http.aclose()

    async def get_stock(self, product_id: str) -> int | None:
        try:
            resp = await self.http.get(f"{self.base_url}/{product_id}")
        except httpx.HTTPError as exc:
            raise InventoryStoreError(f"inventory read failed for {product_id}: {exc}") from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise InventoryStoreError(f"inventory read for {product_id} returned HTTP {resp.status_code}")
        try:
            fields = resp.json().get("fields", {})
            return int(fields.get(STOCK_FIELD) or 0)
        except (ValueError, TypeError, AttributeError) as exc:
            raise InventoryStoreError(f"inventory record {product_id} unreadable: {exc}") from exc

    async def set_stock(self, product_id: str, new_stock: int, last_order_quantity: int) -> None:
        body = {
            "fields": {
                STOCK_FIELD: new_stock,
                LAST_UPDATED_FIELD: datetime.now(timezone.utc).isoformat(),
                LAST_ORDER_QUANTITY_FIELD: last_order_quantity,
            }
        }
        try:
            resp = await self.http.patch(f"{self.base_url}/{product_id}", json=body)
        except httpx.HTTPError as exc:
            raise InventoryStoreError(f"inventory write failed for {product_id}: {exc}") from exc
        if resp.status_code >= 400:
            raise InventoryStoreError(f"inventory write for {product_id} returned HTTP {resp.status_code}")
        logger.info("inventory_stock_set product_id=%s stock=%s", product_id, new_stock)
