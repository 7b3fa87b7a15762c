from decimal import Decimal

import pytest

from stocksync.adapters.base import RemoteVariant
from stocksync.config import get_settings


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ManualClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def make_variant():
    def _make(sku: str = "123", **overrides) -> RemoteVariant:
        payload = {
            "variant_id": f"gid://shopify/ProductVariant/{sku}",
            "product_id": "gid://shopify/Product/1",
            "sku": sku,
            "current_price": Decimal("10.00"),
            "current_compare_at_price": None,
            "inventory_item_id": f"gid://shopify/InventoryItem/{sku}",
            "is_inventory_tracked": True,
            "current_available_qty": 5,
            "location_id": "gid://shopify/Location/1",
            "display_name": f"Product {sku} - Default",
            "product_title": f"Product {sku}",
        }
        payload.update(overrides)
        return RemoteVariant(**payload)

    return _make


@pytest.fixture()
def sync_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    values = {
        "SHOPIFY_SHOP_NAME": "demo-store",
        "SHOPIFY_ACCESS_TOKEN": "shpat_test",
        "DATA_API_URL": "http://erp.local/odata/Productos",
        "INVENTORY_API_URL": "http://erp.local/odata/Inventario",
        "DISCOUNT_CSV_PATH": str(tmp_path / "discounts.csv"),
        "LOG_FILE_PATH": "",
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield values
    get_settings.cache_clear()
