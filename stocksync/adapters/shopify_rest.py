from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import parse_qs, urlparse

from stocksync.adapters.base import CatalogAdapter, CatalogPage, InventoryUpdateRequest, RemoteVariant, VariantUpdateRequest
from stocksync.clients.http import RateLimitedRetryClient, decode_json
from stocksync.errors import TerminalRemoteError
from stocksync.pricing.discounts import to_decimal

PRODUCT_FIELDS = "id,title,variants"

logger = logging.getLogger(__name__)


def _numeric_id(value: str | int) -> str:
    return str(value).rsplit("/", 1)[-1]


def next_page_info(link_header: str | None) -> str | None:
    """The ``page_info`` token of the rel="next" link, if any."""
    if not link_header:
        return None
    for part in link_header.split(","):
        if 'rel="next"' not in part:
            continue
        url = part.split(";", 1)[0].strip().strip("<>")
        tokens = parse_qs(urlparse(url).query).get("page_info")
        if tokens:
            return tokens[0]
    return None


class ShopifyRestAdapter(CatalogAdapter):
    """Admin REST transport: products.json pagination and per-variant writes."""

    name = "rest"

    def __init__(self, client: RateLimitedRetryClient, base_url: str, access_token: str, location_id: str | None = None) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-Shopify-Access-Token": access_token, "Accept": "application/json"}
        self.location_id = _numeric_id(location_id) if location_id else None
        self._default_location: str | None = None
        self._location_resolved = False
        self._location_lock = asyncio.Lock()

    async def fetch_page(self, cursor: str | None, page_size: int) -> CatalogPage:
        params: dict[str, Any] = {"limit": page_size, "fields": PRODUCT_FIELDS}
        if cursor:
            params["page_info"] = cursor
        url = f"{self.base_url}/products.json"
        response = await self.client.request("GET", url, params=params, headers=self.headers)
        payload = decode_json(response, f"GET {url}")
        products = payload.get("products") if isinstance(payload, dict) else None
        if not isinstance(products, list):
            raise TerminalRemoteError("products.json response has no products array", status_code=response.status_code)

        variants: list[RemoteVariant] = []
        skipped = 0
        for product in products:
            for raw in product.get("variants") or []:
                variant = self._to_variant(product, raw)
                if variant is None:
                    skipped += 1
                    logger.warning("Skipping Shopify variant without id or inventory item: %r", raw)
                    continue
                variants.append(variant)
        return CatalogPage(variants=variants, next_cursor=next_page_info(response.headers.get("link")), skipped=skipped)

    def _to_variant(self, product: dict[str, Any], raw: Any) -> RemoteVariant | None:
        if not isinstance(raw, dict) or not raw.get("id") or not raw.get("inventory_item_id"):
            return None
        quantity = raw.get("inventory_quantity")
        title = str(product.get("title") or "")
        variant_title = str(raw.get("title") or "")
        return RemoteVariant(
            variant_id=str(raw["id"]),
            product_id=str(product["id"]) if product.get("id") else None,
            sku=str(raw.get("sku") or ""),
            current_price=to_decimal(raw.get("price")),
            current_compare_at_price=to_decimal(raw.get("compare_at_price")),
            inventory_item_id=str(raw["inventory_item_id"]),
            is_inventory_tracked=raw.get("inventory_management") == "shopify",
            current_available_qty=int(quantity) if quantity is not None else None,
            location_id=None,
            display_name=f"{title} - {variant_title}" if variant_title and variant_title != "Default Title" else title,
            product_title=title,
        )

    async def update_price(self, request: VariantUpdateRequest) -> None:
        variant_id = _numeric_id(request.variant_id)
        body = {
            "variant": {
                "id": int(variant_id) if variant_id.isdigit() else variant_id,
                "price": str(request.price),
                "compare_at_price": str(request.compare_at_price) if request.compare_at_price is not None else None,
            }
        }
        url = f"{self.base_url}/variants/{variant_id}.json"
        response = await self.client.request("PUT", url, json=body, headers=self.headers)
        self._raise_for_errors(decode_json(response, f"PUT {url}"), request.variant_id)

    async def set_inventory(self, request: InventoryUpdateRequest) -> None:
        body = {
            "location_id": int(_numeric_id(request.location_id)),
            "inventory_item_id": int(_numeric_id(request.inventory_item_id)),
            "available": request.quantity,
        }
        url = f"{self.base_url}/inventory_levels/set.json"
        response = await self.client.request("POST", url, json=body, headers=self.headers)
        self._raise_for_errors(decode_json(response, f"POST {url}"), request.inventory_item_id)

    @staticmethod
    def _raise_for_errors(payload: Any, target: str) -> None:
        if isinstance(payload, dict) and payload.get("errors"):
            raise TerminalRemoteError(f"update rejected: {payload['errors']}", target=target)

    async def default_location_id(self) -> str | None:
        if self.location_id:
            return self.location_id
        async with self._location_lock:
            if not self._location_resolved:
                url = f"{self.base_url}/locations.json"
                response = await self.client.request("GET", url, headers=self.headers)
                self._location_resolved = True
                payload = decode_json(response, f"GET {url}")
                rows = payload.get("locations") if isinstance(payload, dict) else None
                locations = [loc for loc in rows or [] if isinstance(loc, dict) and loc.get("active", True)]
                if locations:
                    self._default_location = str(locations[0]["id"])
                    logger.info("Using active Shopify location %s (%s)", locations[0]["id"], locations[0].get("name"))
                else:
                    logger.warning("Shopify reported no active locations")
            return self._default_location
