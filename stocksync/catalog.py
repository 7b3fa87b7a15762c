from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from stocksync.adapters.base import CatalogAdapter, RemoteVariant
from stocksync.errors import TransientRemoteError
from stocksync.matching.index import SkuIndex
from stocksync.matching.normalization import DEFAULT_PAD_WIDTH

logger = logging.getLogger(__name__)


class VariantCatalog:
    """Full pass over the remote catalog, indexed by normalized SKU."""

    def __init__(
        self,
        adapter: CatalogAdapter,
        page_size: int = 100,
        max_pages: int = 500,
        page_delay_seconds: float = 0.25,
        throttle_cooldown_seconds: float = 5.0,
        page_retry_limit: int = 3,
        pad_width: int = DEFAULT_PAD_WIDTH,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.adapter = adapter
        self.page_size = max(1, min(page_size, 250))
        self.max_pages = max(1, max_pages)
        self.page_delay_seconds = max(0.0, page_delay_seconds)
        self.throttle_cooldown_seconds = max(0.0, throttle_cooldown_seconds)
        self.page_retry_limit = max(0, page_retry_limit)
        self.pad_width = pad_width
        self._sleep = sleep
        self.pages_fetched = 0
        self.truncated = False

    async def fetch_all(self) -> SkuIndex[RemoteVariant]:
        index: SkuIndex[RemoteVariant] = SkuIndex(label="Shopify", pad_width=self.pad_width, describe=RemoteVariant.describe)
        cursor: str | None = None
        fetched = 0
        skipped = 0
        self.pages_fetched = 0
        self.truncated = False

        logger.info("Fetching Shopify variants via %s (page size %s)", self.adapter.name, self.page_size)
        while True:
            if self.pages_fetched >= self.max_pages:
                self.truncated = True
                logger.warning(
                    "Reached the page limit (%s) while fetching Shopify variants; continuing with %s variants",
                    self.max_pages,
                    fetched,
                )
                break

            page = await self._fetch_page_with_cooldown(cursor)
            self.pages_fetched += 1
            fetched += len(page.variants)
            skipped += page.skipped
            for variant in page.variants:
                index.add(variant.sku, variant)

            logger.info(
                "Fetched %s variants on page %s (total %s, more pages: %s)",
                len(page.variants),
                self.pages_fetched,
                fetched,
                page.has_next_page,
            )
            if not page.has_next_page:
                break
            cursor = page.next_cursor
            if self.page_delay_seconds > 0:
                await self._sleep(self.page_delay_seconds)

        logger.info(
            "Indexed %s Shopify SKUs from %s variants over %s pages (%s malformed, %s unusable SKUs, %s duplicates)",
            len(index),
            fetched,
            self.pages_fetched,
            skipped,
            index.rejected,
            index.duplicates,
        )
        return index

    async def _fetch_page_with_cooldown(self, cursor: str | None):
        cooldowns = 0
        while True:
            try:
                return await self.adapter.fetch_page(cursor, self.page_size)
            except TransientRemoteError as exc:
                if cooldowns >= self.page_retry_limit:
                    logger.error("Page %s still failing after %s cool-downs: %s", self.pages_fetched + 1, cooldowns, exc)
                    raise
                cooldowns += 1
                logger.warning(
                    "Transient error on page %s (%s); cooling down %.1fs before retrying the same page (%s/%s)",
                    self.pages_fetched + 1,
                    exc,
                    self.throttle_cooldown_seconds,
                    cooldowns,
                    self.page_retry_limit,
                )
                if self.throttle_cooldown_seconds > 0:
                    await self._sleep(self.throttle_cooldown_seconds)
