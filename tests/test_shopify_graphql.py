import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from stocksync.adapters.base import InventoryUpdateRequest, VariantUpdateRequest
from stocksync.adapters.shopify_graphql import ShopifyGraphQLAdapter, to_gid
from stocksync.clients.http import RateLimitedRetryClient, RetryPolicy
from stocksync.errors import TerminalRemoteError, ThrottledError

BASE_URL = "https://demo-store.myshopify.com/admin/api/2025-04"


def _node(sku="00123", variant_id=1, price="10.00", compare_at=None, tracked=True, available=5, location=1):
    levels = []
    if available is not None:
        levels.append(
            {
                "node": {
                    "location": {"id": f"gid://shopify/Location/{location}"},
                    "quantities": [{"name": "available", "quantity": available}],
                }
            }
        )
    return {
        "cursor": f"cursor-{variant_id}",
        "node": {
            "id": f"gid://shopify/ProductVariant/{variant_id}",
            "sku": sku,
            "price": price,
            "compareAtPrice": compare_at,
            "displayName": f"Widget {sku}",
            "product": {"id": "gid://shopify/Product/9", "title": "Widget"},
            "inventoryItem": {
                "id": f"gid://shopify/InventoryItem/{variant_id}",
                "tracked": tracked,
                "inventoryLevels": {"edges": levels},
            },
        },
    }


def _run(handler, coro_factory, location_id=None, sleep=None):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = RateLimitedRetryClient(
                http,
                policy=RetryPolicy(max_retries=2, base_delay_seconds=0, jitter_seconds=0),
                sleep=sleep or asyncio.sleep,
            )
            adapter = ShopifyGraphQLAdapter(client, BASE_URL, "shpat_test", location_id=location_id)
            return await coro_factory(adapter)

    return asyncio.run(run())


def test_to_gid_leaves_gids_alone():
    assert to_gid("Location", 42) == "gid://shopify/Location/42"
    assert to_gid("Location", "gid://shopify/Location/42") == "gid://shopify/Location/42"


def test_fetch_page_maps_variants_and_cursor():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["token"] = request.headers["X-Shopify-Access-Token"]
        seen["variables"] = json.loads(request.content)["variables"]
        return httpx.Response(
            200,
            json={
                "data": {
                    "productVariants": {
                        "pageInfo": {"hasNextPage": True, "endCursor": "cursor-2"},
                        "edges": [_node(), _node(sku="456", variant_id=2, compare_at="12.00", available=None), {"node": {"sku": "x"}}],
                    }
                }
            },
        )

    page = _run(handler, lambda adapter: adapter.fetch_page("cursor-0", 50))

    assert seen["url"] == f"{BASE_URL}/graphql.json"
    assert seen["token"] == "shpat_test"
    assert seen["variables"] == {"first": 50, "after": "cursor-0"}
    assert page.next_cursor == "cursor-2"
    assert page.skipped == 1
    first, second = page.variants
    assert first.sku == "00123"
    assert first.current_price == Decimal("10.00")
    assert first.current_available_qty == 5
    assert first.location_id == "gid://shopify/Location/1"
    assert second.current_compare_at_price == Decimal("12.00")
    assert second.current_available_qty is None


def test_fetch_page_prefers_configured_location():
    node = _node()
    node["node"]["inventoryItem"]["inventoryLevels"]["edges"].append(
        {"node": {"location": {"id": "gid://shopify/Location/7"}, "quantities": [{"name": "available", "quantity": 40}]}}
    )

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"productVariants": {"pageInfo": {"hasNextPage": False}, "edges": [node]}}})

    page = _run(handler, lambda adapter: adapter.fetch_page(None, 10), location_id="7")

    assert page.next_cursor is None
    assert page.variants[0].current_available_qty == 40
    assert page.variants[0].location_id == "gid://shopify/Location/7"


def test_throttled_response_is_retried(sleeps):
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(200, json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]})
        return httpx.Response(200, json={"data": {"productVariants": {"pageInfo": {"hasNextPage": False}, "edges": []}}})

    page = _run(handler, lambda adapter: adapter.fetch_page(None, 10), sleep=sleeps)
    assert page.variants == []
    assert calls["count"] == 2


def test_persistent_throttling_raises_throttled_error(sleeps):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]})

    with pytest.raises(ThrottledError):
        _run(handler, lambda adapter: adapter.fetch_page(None, 10), sleep=sleeps)


def test_update_price_sends_bulk_mutation():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"data": {"productVariantsBulkUpdate": {"productVariants": [{"id": "gid://shopify/ProductVariant/1"}], "userErrors": []}}},
        )

    request = VariantUpdateRequest(
        variant_id="gid://shopify/ProductVariant/1",
        product_id="gid://shopify/Product/9",
        price=Decimal("8.50"),
        compare_at_price=Decimal("10.00"),
    )
    _run(handler, lambda adapter: adapter.update_price(request))

    assert "productVariantsBulkUpdate" in seen["body"]["query"]
    assert seen["body"]["variables"] == {
        "productId": "gid://shopify/Product/9",
        "variants": [{"id": "gid://shopify/ProductVariant/1", "price": "8.50", "compareAtPrice": "10.00"}],
    }


def test_update_price_clears_compare_at_with_null():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"productVariantsBulkUpdate": {"productVariants": [{"id": "v"}], "userErrors": []}}})

    request = VariantUpdateRequest(variant_id="v", product_id="p", price=Decimal("10.00"), compare_at_price=None)
    _run(handler, lambda adapter: adapter.update_price(request))

    assert seen["body"]["variables"]["variants"][0]["compareAtPrice"] is None


def test_user_errors_are_terminal():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(
            200,
            json={"data": {"productVariantsBulkUpdate": {"productVariants": None, "userErrors": [{"field": ["variants", "0", "price"], "message": "is invalid"}]}}},
        )

    request = VariantUpdateRequest(variant_id="v", product_id="p", price=Decimal("-1.00"), compare_at_price=None)
    with pytest.raises(TerminalRemoteError, match="is invalid"):
        _run(handler, lambda adapter: adapter.update_price(request))
    assert calls["count"] == 1


def test_set_inventory_writes_absolute_available_quantity():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"inventorySetQuantities": {"inventoryAdjustmentGroup": {"id": "g"}, "userErrors": []}}})

    request = InventoryUpdateRequest(
        inventory_item_id="gid://shopify/InventoryItem/1",
        location_id="55",
        quantity=12,
        previous_quantity=5,
    )
    _run(handler, lambda adapter: adapter.set_inventory(request))

    payload = seen["body"]["variables"]["input"]
    assert payload["name"] == "available"
    assert payload["ignoreCompareQuantity"] is True
    assert payload["quantities"] == [
        {"inventoryItemId": "gid://shopify/InventoryItem/1", "locationId": "gid://shopify/Location/55", "quantity": 12}
    ]


def test_default_location_is_fetched_once():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json={"data": {"locations": {"edges": [{"node": {"id": "gid://shopify/Location/3", "name": "Main"}}]}}})

    async def resolve_twice(adapter):
        return await asyncio.gather(adapter.default_location_id(), adapter.default_location_id())

    assert _run(handler, resolve_twice) == ["gid://shopify/Location/3", "gid://shopify/Location/3"]
    assert calls["count"] == 1


def test_configured_location_skips_lookup():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert _run(handler, lambda adapter: adapter.default_location_id(), location_id="8") == "gid://shopify/Location/8"
