from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from stocksync.adapters.base import LocalInventoryRecord, LocalProductRecord, LocalSource
from stocksync.clients.http import RateLimitedRetryClient
from stocksync.errors import InvalidDataError
from stocksync.pricing.discounts import to_decimal
from stocksync.pricing.inventory import parse_timestamp

ENVELOPE_KEYS = ("value", "d")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalFieldMap:
    sku: str = "CodigoProducto"
    price: str = "Venta1"
    name: str = "Descripcion"
    initial_qty: str = "CantidadInicial"
    received_qty: str = "CantidadEntradas"
    shipped_qty: str = "CantidadSalidas"
    recorded_at: str = "Fecha"

    @classmethod
    def from_settings(cls, settings) -> LocalFieldMap:
        return cls(
            sku=settings.local_sku_field,
            price=settings.local_price_field,
            name=settings.local_name_field,
            initial_qty=settings.local_initial_qty_field,
            received_qty=settings.local_received_qty_field,
            shipped_qty=settings.local_shipped_qty_field,
            recorded_at=settings.local_date_field,
        )


def unwrap_collection(payload: Any, source: str) -> list[dict[str, Any]]:
    """Rows from a bare JSON array or an OData ``{"value": [...]}`` envelope."""
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, dict):
        for key in ENVELOPE_KEYS:
            if key in payload:
                rows = payload[key]
                break
        else:
            raise InvalidDataError(
                f"{source}: expected a JSON array or an envelope with one of {list(ENVELOPE_KEYS)}, "
                f"got an object with keys {sorted(payload)[:10]}"
            )
        if isinstance(rows, dict) and isinstance(rows.get("results"), list):
            rows = rows["results"]
    else:
        raise InvalidDataError(f"{source}: expected a JSON array, got {type(payload).__name__}")

    if not isinstance(rows, list):
        raise InvalidDataError(f"{source}: envelope does not contain an array (got {type(rows).__name__})")
    return rows


def _field(row: dict[str, Any], name: str) -> Any:
    if name in row:
        return row[name]
    lowered = name.lower()
    for key, value in row.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


class LocalApiSource(LocalSource):
    """Product and inventory ledger rows from the local OData JSON API."""

    def __init__(
        self,
        client: RateLimitedRetryClient,
        products_url: str,
        inventory_url: str,
        fields: LocalFieldMap | None = None,
    ) -> None:
        self.client = client
        self.products_url = products_url
        self.inventory_url = inventory_url
        self.fields = fields or LocalFieldMap()

    async def fetch_products(self) -> list[LocalProductRecord]:
        logger.info("Fetching local products from %s", self.products_url)
        payload = await self.client.get_json(self.products_url, headers={"Accept": "application/json"})
        rows = unwrap_collection(payload, "local products")
        records = [record for record in (self._to_product(row) for row in rows) if record is not None]
        logger.info("Fetched %s local product records (%s rows received)", len(records), len(rows))
        return records

    async def fetch_inventory(self) -> list[LocalInventoryRecord]:
        logger.info("Fetching local inventory from %s", self.inventory_url)
        payload = await self.client.get_json(self.inventory_url, headers={"Accept": "application/json"})
        rows = unwrap_collection(payload, "local inventory")
        records = [record for record in (self._to_inventory(row) for row in rows) if record is not None]
        logger.info("Fetched %s local inventory records (%s rows received)", len(records), len(rows))
        return records

    def _to_product(self, row: Any) -> LocalProductRecord | None:
        if not isinstance(row, dict):
            logger.warning("Local product row is not an object: %r; skipping", row)
            return None
        sku = _field(row, self.fields.sku)
        if sku is None or str(sku).strip() == "":
            logger.warning("Local product row missing %s: %r; skipping", self.fields.sku, row)
            return None
        raw_price = _field(row, self.fields.price)
        name = _field(row, self.fields.name)
        return LocalProductRecord(
            sku=str(sku).strip(),
            base_price=to_decimal(raw_price),
            name=str(name).strip() if name is not None else None,
            raw_price=raw_price,
        )

    def _to_inventory(self, row: Any) -> LocalInventoryRecord | None:
        if not isinstance(row, dict):
            logger.warning("Local inventory row is not an object: %r; skipping", row)
            return None
        sku = _field(row, self.fields.sku)
        if sku is None or str(sku).strip() == "":
            logger.warning("Local inventory row missing %s: %r; skipping", self.fields.sku, row)
            return None
        raw_date = _field(row, self.fields.recorded_at)
        return LocalInventoryRecord(
            sku=str(sku).strip(),
            initial_qty=_field(row, self.fields.initial_qty),
            received_qty=_field(row, self.fields.received_qty),
            shipped_qty=_field(row, self.fields.shipped_qty),
            recorded_at=parse_timestamp(raw_date),
            raw_recorded_at=raw_date,
        )
