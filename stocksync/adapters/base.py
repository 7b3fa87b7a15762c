from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True)
class LocalProductRecord:
    sku: str
    base_price: Decimal | None
    name: str | None = None
    raw_price: object = None


@dataclass(frozen=True)
class LocalInventoryRecord:
    sku: str
    initial_qty: object
    received_qty: object
    shipped_qty: object
    recorded_at: datetime | None
    raw_recorded_at: object = None


@dataclass(frozen=True)
class RemoteVariant:
    variant_id: str
    product_id: str | None
    sku: str
    current_price: Decimal | None
    current_compare_at_price: Decimal | None
    inventory_item_id: str
    is_inventory_tracked: bool
    current_available_qty: int | None
    location_id: str | None
    display_name: str
    product_title: str

    def describe(self) -> str:
        return f"{self.variant_id} ({self.display_name or self.product_title or 'unnamed'})"


@dataclass(frozen=True)
class DiscountEntry:
    sku: str
    percent_off: Decimal


@dataclass(frozen=True)
class VariantUpdateRequest:
    variant_id: str
    product_id: str | None
    price: Decimal
    compare_at_price: Decimal | None


@dataclass(frozen=True)
class InventoryUpdateRequest:
    inventory_item_id: str
    location_id: str
    quantity: int
    previous_quantity: int | None


@dataclass
class CatalogPage:
    variants: list[RemoteVariant]
    next_cursor: str | None
    skipped: int = 0

    @property
    def has_next_page(self) -> bool:
        return self.next_cursor is not None


class CatalogAdapter(ABC):
    """Protocol translation for one remote transport (GraphQL or REST)."""

    name: str

    @abstractmethod
    async def fetch_page(self, cursor: str | None, page_size: int) -> CatalogPage:
        raise NotImplementedError

    @abstractmethod
    async def update_price(self, request: VariantUpdateRequest) -> None:
        raise NotImplementedError

    @abstractmethod
    async def set_inventory(self, request: InventoryUpdateRequest) -> None:
        raise NotImplementedError

    @abstractmethod
    async def default_location_id(self) -> str | None:
        raise NotImplementedError


class LocalSource(ABC):
    @abstractmethod
    async def fetch_products(self) -> list[LocalProductRecord]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_inventory(self) -> list[LocalInventoryRecord]:
        raise NotImplementedError
