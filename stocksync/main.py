from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass

import httpx
from pydantic import ValidationError
from rapidfuzz import fuzz, process

from stocksync.adapters.base import CatalogAdapter
from stocksync.adapters.discount_file import DiscountFileSource
from stocksync.adapters.local_api import LocalApiSource, LocalFieldMap
from stocksync.adapters.shopify_graphql import ShopifyGraphQLAdapter
from stocksync.adapters.shopify_rest import ShopifyRestAdapter
from stocksync.catalog import VariantCatalog
from stocksync.clients.http import RateLimitedRetryClient, RetryPolicy
from stocksync.clients.ratelimit import TokenBucket
from stocksync.config import SyncMode, SyncScope, SyncSettings, Transport, get_settings
from stocksync.errors import FatalFetchError, SyncError
from stocksync.log import configure_logging, shutdown_logging
from stocksync.matching.normalization import normalize_sku
from stocksync.pipeline import ReconciliationEngine, RunSummary
from stocksync.pricing.discounts import build_discount_index
from stocksync.report import render_summary

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

logger = logging.getLogger(__name__)


@dataclass
class Clients:
    shopify: RateLimitedRetryClient
    local: RateLimitedRetryClient


@dataclass
class SyncResult:
    summary: RunSummary
    interrupted: bool


def build_clients(
    settings: SyncSettings,
    shopify_http: httpx.AsyncClient,
    local_http: httpx.AsyncClient,
    stop_event: asyncio.Event | None = None,
) -> Clients:
    policy = RetryPolicy(
        max_retries=settings.max_retries,
        base_delay_seconds=settings.retry_base_delay_seconds,
        jitter_seconds=settings.retry_jitter_seconds,
    )
    # one bucket per shop; every Shopify call of the run shares it
    limiter = TokenBucket(rate=settings.shopify_rate_limit)
    return Clients(
        shopify=RateLimitedRetryClient(shopify_http, limiter=limiter, policy=policy, name="shopify", stop_event=stop_event),
        local=RateLimitedRetryClient(local_http, policy=policy, name="local", stop_event=stop_event),
    )


def build_adapter(settings: SyncSettings, client: RateLimitedRetryClient) -> CatalogAdapter:
    if settings.shopify_transport is Transport.REST:
        return ShopifyRestAdapter(client, settings.admin_base_url, settings.shopify_access_token, settings.location_id)
    return ShopifyGraphQLAdapter(client, settings.admin_base_url, settings.shopify_access_token, settings.location_id)


def build_catalog(settings: SyncSettings, adapter: CatalogAdapter) -> VariantCatalog:
    return VariantCatalog(
        adapter,
        page_size=settings.shopify_page_size,
        max_pages=settings.shopify_max_pages,
        page_delay_seconds=settings.page_delay_seconds,
        throttle_cooldown_seconds=settings.throttle_cooldown_seconds,
        page_retry_limit=settings.page_retry_limit,
        pad_width=settings.sku_pad_width,
    )


def build_engine(settings: SyncSettings, clients: Clients, stop_event: asyncio.Event | None = None) -> ReconciliationEngine:
    local_source = LocalApiSource(
        clients.local,
        settings.data_api_url,
        settings.inventory_api_url,
        LocalFieldMap.from_settings(settings),
    )
    catalog = build_catalog(settings, build_adapter(settings, clients.shopify))
    return ReconciliationEngine(
        local_source,
        catalog,
        discounts=DiscountFileSource(settings.discount_csv_path, clients.local),
        mode=settings.sync_mode,
        scope=settings.sync_type,
        pad_width=settings.sku_pad_width,
        stop_event=stop_event,
        shutdown_grace_seconds=settings.shutdown_grace_seconds,
    )


async def run_sync(settings: SyncSettings, stop_event: asyncio.Event | None = None) -> RunSummary:
    async with httpx.AsyncClient(timeout=settings.api_timeout) as shopify_http, httpx.AsyncClient(
        timeout=settings.local_api_timeout, follow_redirects=True
    ) as local_http:
        engine = build_engine(settings, build_clients(settings, shopify_http, local_http, stop_event), stop_event)
        return await engine.reconcile()


async def run_until_stopped(settings: SyncSettings) -> SyncResult:
    """Run one sync; SIGINT/SIGTERM stop new writes and bound in-flight items by the grace period."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _request_stop(signame: str) -> None:
        if stop_event.is_set():
            return
        logger.warning(
            "Received %s; no new writes will be sent, waiting up to %.0fs for in-flight items",
            signame,
            settings.shutdown_grace_seconds,
        )
        stop_event.set()

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s is not supported on this platform", sig.name)
            continue
        installed.append(sig)

    try:
        summary = await run_sync(settings, stop_event)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
    return SyncResult(summary=summary, interrupted=stop_event.is_set())


async def diagnose(settings: SyncSettings, skus: list[str], suggestions: int = 3) -> list[str]:
    """Where each SKU is found, and near Shopify SKUs for the ones that are missing."""
    async with httpx.AsyncClient(timeout=settings.api_timeout) as shopify_http, httpx.AsyncClient(
        timeout=settings.local_api_timeout, follow_redirects=True
    ) as local_http:
        clients = build_clients(settings, shopify_http, local_http)
        engine = build_engine(settings, clients)
        products, remote = await asyncio.gather(engine.local_source.fetch_products(), engine.catalog.fetch_all())
        discounts = build_discount_index(await engine.load_discounts(), settings.sku_pad_width)

    local_index = engine.index_products(products)
    remote_keys = remote.keys()
    lines = []
    for raw in skus:
        normalized = normalize_sku(raw, settings.sku_pad_width)
        lines.append(f"SKU {raw!r}")
        if not normalized.is_valid:
            lines.append("  unusable: no digits after normalization")
            continue
        lines.append(f"  canonical: {normalized.canonical} (candidates: {', '.join(normalized.candidates)})")

        local = local_index.lookup(raw)
        lines.append(f"  local:     {local.record.name!r} price {local.record.raw_price!r}" if local else "  local:     not found")
        match = remote.lookup(raw)
        lines.append(f"  shopify:   {match.record.describe()} price {match.record.current_price}" if match else "  shopify:   not found")
        entry = discounts.get(raw)
        lines.append(f"  discount:  {entry.percent_off}%" if entry else "  discount:  none")

        if match is None and remote_keys:
            near = process.extract(normalized.canonical, remote_keys, scorer=fuzz.ratio, limit=suggestions)
            if near:
                lines.append("  similar Shopify SKUs: " + ", ".join(f"{key} ({score:.0f})" for key, score, _ in near))
    return lines


def load_settings(args: argparse.Namespace) -> SyncSettings:
    settings = SyncSettings(_env_file=args.env_file) if getattr(args, "env_file", None) else get_settings()
    overrides = {}
    if getattr(args, "mode", None):
        overrides["sync_mode"] = SyncMode(args.mode)
    if getattr(args, "type", None):
        overrides["sync_type"] = SyncScope(args.type)
    if getattr(args, "transport", None):
        overrides["shopify_transport"] = Transport(args.transport)
    return settings.model_copy(update=overrides) if overrides else settings


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--env-file", default=None, help="Read settings from this file instead of .env")

    parser = argparse.ArgumentParser(description="Shopify price and inventory sync")
    subcommands = parser.add_subparsers(dest="command")

    sync = subcommands.add_parser("sync", parents=[common], help="Run one reconciliation pass")
    sync.add_argument("--mode", choices=[mode.value for mode in SyncMode])
    sync.add_argument("--type", choices=[scope.value for scope in SyncScope])
    sync.add_argument("--transport", choices=[transport.value for transport in Transport])

    check = subcommands.add_parser("diagnose", parents=[common], help="Show where SKUs are found and suggest near matches")
    check.add_argument("skus", nargs="+")
    check.add_argument("--suggestions", type=int, default=3)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    command = args.command or "sync"

    try:
        settings = load_settings(args)
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        return EXIT_FAILURE

    configure_logging(settings.log_level, settings.log_file_path, settings.log_max_size)
    try:
        if command == "diagnose":
            for line in asyncio.run(diagnose(settings, args.skus, max(1, args.suggestions))):
                print(line)
            return EXIT_OK

        result = asyncio.run(run_until_stopped(settings))
        for line in render_summary(result.summary):
            print(line)
        if result.interrupted:
            logger.warning("Sync interrupted by signal")
            return EXIT_INTERRUPTED
        return EXIT_OK
    except FatalFetchError as exc:
        logger.error("Sync aborted: %s", exc)
        return EXIT_FAILURE
    except SyncError as exc:
        logger.error("Sync failed: %s", exc)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED
    finally:
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
