from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from stocksync.adapters.base import DiscountEntry
from stocksync.clients.http import RateLimitedRetryClient
from stocksync.pricing.discounts import parse_discount_csv

logger = logging.getLogger(__name__)


def is_url(location: str) -> bool:
    return location.lower().startswith(("http://", "https://"))


class DiscountFileSource:
    """Discount table from a local CSV path or an http(s) URL."""

    def __init__(self, location: str | None, client: RateLimitedRetryClient | None = None) -> None:
        self.location = location
        self.client = client

    async def load(self) -> list[DiscountEntry]:
        if not self.location:
            logger.info("No discount source configured; prices are used as-is")
            return []

        if is_url(self.location):
            if self.client is None:
                raise ValueError("a client is required to download discounts from a URL")
            logger.info("Downloading discounts from %s", self.location)
            response = await self.client.request("GET", self.location)
            text = response.text
        else:
            path = Path(self.location)
            if not path.exists():
                logger.warning("Discount file %s not found; proceeding without discounts", path)
                return []
            text = await asyncio.to_thread(path.read_text, encoding="utf-8-sig")

        entries = parse_discount_csv(text, source=self.location)
        logger.info("Loaded %s discount rows from %s", len(entries), self.location)
        return entries
