from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from stocksync.matching.normalization import DEFAULT_PAD_WIDTH, normalize_sku

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass
class IndexMatch(Generic[T]):
    canonical: str
    record: T
    matched_key: str


@dataclass
class SkuIndex(Generic[T]):
    """Records keyed by normalized SKU, registered under every candidate key."""

    label: str
    pad_width: int = DEFAULT_PAD_WIDTH
    describe: Callable[[T], str] = repr
    rejected: int = 0
    duplicates: int = 0
    _by_canonical: dict[str, T] = field(default_factory=dict)
    _by_key: dict[str, str] = field(default_factory=dict)

    def add(self, raw_sku: object, record: T) -> str | None:
        normalized = normalize_sku(raw_sku, self.pad_width)
        if normalized.canonical is None:
            self.rejected += 1
            logger.warning("%s record has unusable SKU %r; skipping (%s)", self.label, raw_sku, self.describe(record))
            return None

        canonical = normalized.canonical
        previous = self._by_canonical.get(canonical)
        if previous is not None:
            self.duplicates += 1
            logger.warning(
                "Duplicate %s SKU %s: discarding %s, keeping %s",
                self.label,
                canonical,
                self.describe(previous),
                self.describe(record),
            )

        self._by_canonical[canonical] = record
        for key in normalized.candidates:
            self._by_key[key] = canonical
        return canonical

    def lookup(self, raw_sku: object) -> IndexMatch[T] | None:
        normalized = normalize_sku(raw_sku, self.pad_width)
        for key in normalized.candidates:
            canonical = self._by_key.get(key)
            if canonical is not None:
                return IndexMatch(canonical=canonical, record=self._by_canonical[canonical], matched_key=key)
        return None

    def get(self, raw_sku: object) -> T | None:
        match = self.lookup(raw_sku)
        return match.record if match else None

    def items(self) -> Iterator[tuple[str, T]]:
        return iter(list(self._by_canonical.items()))

    def keys(self) -> list[str]:
        return list(self._by_canonical)

    def __contains__(self, raw_sku: object) -> bool:
        return self.lookup(raw_sku) is not None

    def __len__(self) -> int:
        return len(self._by_canonical)
