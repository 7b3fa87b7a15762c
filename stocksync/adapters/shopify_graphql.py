from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from stocksync.adapters.base import CatalogAdapter, CatalogPage, InventoryUpdateRequest, RemoteVariant, VariantUpdateRequest
from stocksync.clients.http import RateLimitedRetryClient
from stocksync.errors import TerminalRemoteError, ThrottledError
from stocksync.pricing.discounts import to_decimal

VARIANTS_QUERY = """
query GetVariants($first: Int!, $after: String) {
  productVariants(first: $first, after: $after) {
    pageInfo { hasNextPage endCursor }
    edges {
      cursor
      node {
        id
        sku
        price
        compareAtPrice
        displayName
        product { id title }
        inventoryItem {
          id
          tracked
          inventoryLevels(first: 10) {
            edges {
              node {
                location { id }
                quantities(names: ["available"]) { name quantity }
              }
            }
          }
        }
      }
    }
  }
}
"""

VARIANTS_BULK_UPDATE = """
mutation UpdateVariantPrice($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id price compareAtPrice }
    userErrors { field message }
  }
}
"""

INVENTORY_SET_QUANTITIES = """
mutation SetAvailable($input: InventorySetQuantitiesInput!) {
  inventorySetQuantities(input: $input) {
    inventoryAdjustmentGroup { id }
    userErrors { field code message }
  }
}
"""

ACTIVE_LOCATION_QUERY = """
query ActiveLocation {
  locations(first: 1, query: "status:active") {
    edges { node { id name } }
  }
}
"""

logger = logging.getLogger(__name__)


def to_gid(entity: str, value: str | int) -> str:
    if isinstance(value, str) and value.startswith("gid://"):
        return value
    return f"gid://shopify/{entity}/{value}"


def _same_location(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return left.rsplit("/", 1)[-1] == right.rsplit("/", 1)[-1]


def _format_errors(errors: list[dict[str, Any]]) -> str:
    parts = []
    for error in errors:
        field = error.get("field")
        label = ".".join(str(part) for part in field) if isinstance(field, list) else field
        parts.append(f"({label}) {error.get('message')}" if label else str(error.get("message")))
    return "; ".join(parts)


def check_graphql_response(response: httpx.Response) -> None:
    """Raise for top-level GraphQL errors carried by an HTTP 200 response."""
    try:
        payload = response.json()
    except ValueError as exc:
        raise TerminalRemoteError("GraphQL response is not JSON", status_code=response.status_code) from exc
    errors = payload.get("errors") if isinstance(payload, dict) else None
    if not errors:
        return
    if isinstance(errors, list) and any((error.get("extensions") or {}).get("code") == "THROTTLED" for error in errors if isinstance(error, dict)):
        raise ThrottledError("GraphQL request throttled", status_code=response.status_code)
    if isinstance(errors, list):
        raise TerminalRemoteError(f"GraphQL errors: {_format_errors(errors)}", status_code=response.status_code)
    raise TerminalRemoteError(f"GraphQL errors: {errors}", status_code=response.status_code)


class ShopifyGraphQLAdapter(CatalogAdapter):
    name = "graphql"

    def __init__(self, client: RateLimitedRetryClient, base_url: str, access_token: str, location_id: str | None = None) -> None:
        self.client = client
        self.endpoint = f"{base_url.rstrip('/')}/graphql.json"
        self.headers = {"X-Shopify-Access-Token": access_token, "Content-Type": "application/json"}
        self.location_id = to_gid("Location", location_id) if location_id else None
        self._default_location: str | None = None
        self._location_resolved = False
        self._location_lock = asyncio.Lock()

    async def _execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        payload = await self.client.post_json(
            self.endpoint,
            {"query": query, "variables": variables or {}},
            check=check_graphql_response,
            headers=self.headers,
        )
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise TerminalRemoteError("GraphQL response has no data", target=self.endpoint)
        return data

    async def fetch_page(self, cursor: str | None, page_size: int) -> CatalogPage:
        data = await self._execute(VARIANTS_QUERY, {"first": page_size, "after": cursor})
        connection = data.get("productVariants")
        if not isinstance(connection, dict):
            raise TerminalRemoteError("GraphQL response has no productVariants connection", target=self.endpoint)

        variants: list[RemoteVariant] = []
        skipped = 0
        edges = connection.get("edges") or []
        for edge in edges:
            variant = self._to_variant((edge or {}).get("node"))
            if variant is None:
                skipped += 1
                logger.warning("Skipping Shopify variant without id or inventory item: %r", edge)
                continue
            variants.append(variant)

        page_info = connection.get("pageInfo") or {}
        next_cursor = None
        if page_info.get("hasNextPage") and edges:
            next_cursor = page_info.get("endCursor") or edges[-1].get("cursor")
        return CatalogPage(variants=variants, next_cursor=next_cursor, skipped=skipped)

    def _to_variant(self, node: Any) -> RemoteVariant | None:
        if not isinstance(node, dict):
            return None
        inventory_item = node.get("inventoryItem") or {}
        if not node.get("id") or not inventory_item.get("id"):
            return None

        level = self._pick_level(inventory_item)
        available = None
        level_location = None
        if level is not None:
            level_location = (level.get("location") or {}).get("id")
            for quantity in level.get("quantities") or []:
                if quantity.get("name") == "available" and quantity.get("quantity") is not None:
                    available = int(quantity["quantity"])
                    break

        product = node.get("product") or {}
        return RemoteVariant(
            variant_id=node["id"],
            product_id=product.get("id"),
            sku=str(node.get("sku") or ""),
            current_price=to_decimal(node.get("price")),
            current_compare_at_price=to_decimal(node.get("compareAtPrice")),
            inventory_item_id=inventory_item["id"],
            is_inventory_tracked=bool(inventory_item.get("tracked")),
            current_available_qty=available,
            location_id=level_location,
            display_name=str(node.get("displayName") or ""),
            product_title=str(product.get("title") or ""),
        )

    def _pick_level(self, inventory_item: dict[str, Any]) -> dict[str, Any] | None:
        levels = [edge.get("node") for edge in (inventory_item.get("inventoryLevels") or {}).get("edges") or [] if edge and edge.get("node")]
        if not levels:
            return None
        if self.location_id:
            for level in levels:
                if _same_location((level.get("location") or {}).get("id"), self.location_id):
                    return level
            return None
        return levels[0]

    async def update_price(self, request: VariantUpdateRequest) -> None:
        if not request.product_id:
            raise TerminalRemoteError(f"variant {request.variant_id} has no product id; cannot update price")
        variables = {
            "productId": request.product_id,
            "variants": [
                {
                    "id": request.variant_id,
                    "price": str(request.price),
                    "compareAtPrice": str(request.compare_at_price) if request.compare_at_price is not None else None,
                }
            ],
        }
        data = await self._execute(VARIANTS_BULK_UPDATE, variables)
        result = data.get("productVariantsBulkUpdate") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise TerminalRemoteError(f"price update rejected: {_format_errors(user_errors)}", target=request.variant_id)
        if not result.get("productVariants"):
            raise TerminalRemoteError("price update returned no variant", target=request.variant_id)

    async def set_inventory(self, request: InventoryUpdateRequest) -> None:
        variables = {
            "input": {
                "name": "available",
                "reason": "correction",
                "ignoreCompareQuantity": True,
                "quantities": [
                    {
                        "inventoryItemId": request.inventory_item_id,
                        "locationId": to_gid("Location", request.location_id),
                        "quantity": request.quantity,
                    }
                ],
            }
        }
        data = await self._execute(INVENTORY_SET_QUANTITIES, variables)
        result = data.get("inventorySetQuantities") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise TerminalRemoteError(f"inventory update rejected: {_format_errors(user_errors)}", target=request.inventory_item_id)

    async def default_location_id(self) -> str | None:
        if self.location_id:
            return self.location_id
        async with self._location_lock:
            if not self._location_resolved:
                data = await self._execute(ACTIVE_LOCATION_QUERY)
                self._location_resolved = True
                edges = (data.get("locations") or {}).get("edges") or []
                if edges:
                    node = edges[0].get("node") or {}
                    self._default_location = node.get("id")
                    logger.info("Using active Shopify location %s (%s)", node.get("id"), node.get("name"))
                else:
                    logger.warning("Shopify reported no active locations")
            return self._default_location
