import re
from dataclasses import dataclass
from decimal import Decimal

DEFAULT_PAD_WIDTH = 5

_NON_DIGITS = re.compile(r"[^0-9]")


@dataclass(frozen=True)
class NormalizedSku:
    canonical: str | None
    candidates: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return self.canonical is not None


INVALID_SKU = NormalizedSku(canonical=None, candidates=())


def normalize_sku(raw: object, pad_width: int = DEFAULT_PAD_WIDTH) -> NormalizedSku:
    """Canonical digit-only key for a SKU plus the keys to try when matching.

    Leading zeros are dropped from the canonical key, so "00123", "123" and
    "SKU-123" share the key "123". Short keys also carry their zero-padded form
    because the two systems disagree on padding.
    """
    if raw is None or isinstance(raw, bool):
        return INVALID_SKU
    if isinstance(raw, float):
        if raw != raw or raw in (float("inf"), float("-inf")):
            return INVALID_SKU
        text = str(int(raw)) if raw.is_integer() else str(raw)
    elif isinstance(raw, Decimal):
        if not raw.is_finite():
            return INVALID_SKU
        text = str(int(raw)) if raw == raw.to_integral_value() else str(raw)
    else:
        text = str(raw)

    canonical = _NON_DIGITS.sub("", text.strip()).lstrip("0")
    if not canonical:
        return INVALID_SKU

    candidates = [canonical]
    if len(canonical) < pad_width:
        candidates.append(canonical.zfill(pad_width))
    return NormalizedSku(canonical=canonical, candidates=tuple(candidates))


def canonical_sku(raw: object, pad_width: int = DEFAULT_PAD_WIDTH) -> str | None:
    return normalize_sku(raw, pad_width).canonical
