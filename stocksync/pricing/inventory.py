from __future__ import annotations

import logging
import math
import re
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from stocksync.adapters.base import LocalInventoryRecord
from stocksync.errors import InvalidDataError

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ODATA_DATE = re.compile(r"^/Date\((-?\d+)(?:[+-]\d{4})?\)/$")

logger = logging.getLogger(__name__)


def parse_timestamp(value: object) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        odata = ODATA_DATE.match(text)
        if odata:
            return EPOCH + timedelta(milliseconds=int(odata.group(1)))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _quantity(record: LocalInventoryRecord, field: str) -> Decimal:
    value = getattr(record, field)
    if value is None or (isinstance(value, str) and not value.strip()):
        return Decimal(0)
    if isinstance(value, bool):
        raise InvalidDataError(f"SKU {record.sku}: {field} is not numeric ({value!r})")
    try:
        quantity = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise InvalidDataError(f"SKU {record.sku}: {field} is not numeric ({value!r})") from exc
    if not quantity.is_finite():
        raise InvalidDataError(f"SKU {record.sku}: {field} is not finite ({value!r})")
    return quantity


def latest_record(records: Sequence[LocalInventoryRecord]) -> LocalInventoryRecord:
    if not records:
        raise InvalidDataError("no inventory records supplied")

    def _sort_key(record: LocalInventoryRecord) -> datetime:
        if record.recorded_at is None:
            logger.warning(
                "SKU %s: inventory record has missing or invalid date %r; treating it as the epoch",
                record.sku,
                record.raw_recorded_at,
            )
            return EPOCH
        return record.recorded_at

    return max(records, key=_sort_key)


def compute_available(records: Sequence[LocalInventoryRecord]) -> int:
    """On-hand quantity from the most recent ledger row for one SKU.

    available = max(0, initial + received - shipped), floored.
    """
    record = latest_record(records)
    initial = _quantity(record, "initial_qty")
    received = _quantity(record, "received_qty")
    shipped = _quantity(record, "shipped_qty")
    return max(0, math.floor(initial + received - shipped))
