from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from stocksync.adapters.base import DiscountEntry
from stocksync.matching.index import SkuIndex
from stocksync.matching.normalization import DEFAULT_PAD_WIDTH

CENT = Decimal("0.01")
HUNDRED = Decimal(100)

SKU_HEADERS = {"sku", "codigo", "codigoproducto", "code", "product_code"}
PERCENT_HEADERS = {"discount", "descuento", "percent", "percent_off", "pct", "discount_pct"}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscountedPrice:
    final_price: Decimal
    compare_at_price: Decimal | None
    applied: bool


def to_decimal(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        result = Decimal(str(value))
        return result if result.is_finite() else None

    text = str(value).strip().replace("$", "").replace(",", "").replace("%", "")
    if not text:
        return None
    try:
        result = Decimal(text)
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def is_valid_percent(percent_off: Decimal | None) -> bool:
    return percent_off is not None and Decimal(0) < percent_off <= HUNDRED


def apply_discount(base_price: Decimal | int | float | str, percent_off: object) -> DiscountedPrice:
    """Discounted price and the pre-discount compare-at price.

    Percentages outside (0, 100] mean "no discount": the base price is returned
    unchanged with no compare-at price.
    """
    base = to_decimal(base_price)
    if base is None:
        raise ValueError(f"base price is not numeric: {base_price!r}")

    pct = to_decimal(percent_off)
    if not is_valid_percent(pct):
        logger.warning("Discount %r is outside (0, 100]; using base price %s", percent_off, round2(base))
        return DiscountedPrice(final_price=round2(base), compare_at_price=None, applied=False)

    final = round2(base * (HUNDRED - pct) / HUNDRED)
    return DiscountedPrice(final_price=final, compare_at_price=round2(base), applied=True)


def _match_header(fieldnames: list[str], aliases: set[str]) -> str | None:
    for name in fieldnames:
        if name and name.strip().lower() in aliases:
            return name
    return None


def parse_discount_csv(text: str, source: str = "<discounts>") -> list[DiscountEntry]:
    """Rows of (sku, percent) from CSV text.

    Column order comes from the header row, matched case-insensitively. A file
    whose first row is not a recognised header is read as headerless
    sku,discount pairs. Malformed rows are skipped with a warning.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    rows = list(csv.reader(io.StringIO(text)))
    rows = [row for row in rows if any(cell.strip() for cell in row)]
    if not rows:
        return []

    header = [cell.strip() for cell in rows[0]]
    sku_col = _match_header(header, SKU_HEADERS)
    pct_col = _match_header(header, PERCENT_HEADERS)
    if sku_col is not None and pct_col is not None:
        sku_idx = header.index(sku_col)
        pct_idx = header.index(pct_col)
        body = rows[1:]
        first_line = 2
    else:
        if sku_col is not None or pct_col is not None:
            logger.warning("%s: header %s lacks a SKU or discount column; reading as sku,discount", source, header)
            body = rows[1:]
            first_line = 2
        else:
            body = rows
            first_line = 1
        sku_idx, pct_idx = 0, 1

    entries: list[DiscountEntry] = []
    for line_no, row in enumerate(body, start=first_line):
        if len(row) <= max(sku_idx, pct_idx):
            logger.warning("%s line %s: expected at least %s columns, got %r; skipping", source, line_no, max(sku_idx, pct_idx) + 1, row)
            continue
        raw_sku = row[sku_idx].strip()
        raw_pct = row[pct_idx].strip()
        pct = to_decimal(raw_pct)
        if not raw_sku or pct is None:
            logger.warning("%s line %s: malformed row %r; skipping", source, line_no, row)
            continue
        if not is_valid_percent(pct):
            logger.warning("%s line %s: discount %s for SKU %s is outside (0, 100]; skipping", source, line_no, raw_pct, raw_sku)
            continue
        entries.append(DiscountEntry(sku=raw_sku, percent_off=pct))
    return entries


def build_discount_index(entries: list[DiscountEntry], pad_width: int = DEFAULT_PAD_WIDTH) -> SkuIndex[DiscountEntry]:
    index: SkuIndex[DiscountEntry] = SkuIndex(
        label="discount",
        pad_width=pad_width,
        describe=lambda entry: f"{entry.sku}={entry.percent_off}%",
    )
    for entry in entries:
        index.add(entry.sku, entry)
    return index
