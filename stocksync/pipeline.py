from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from stocksync.adapters.base import (
    DiscountEntry,
    InventoryUpdateRequest,
    LocalInventoryRecord,
    LocalProductRecord,
    LocalSource,
    RemoteVariant,
    VariantUpdateRequest,
)
from stocksync.adapters.discount_file import DiscountFileSource
from stocksync.catalog import VariantCatalog
from stocksync.config import SyncMode, SyncScope
from stocksync.errors import FatalFetchError, InvalidDataError, RemoteError, StopRequested, SyncError, TerminalRemoteError
from stocksync.log import SUCCESS
from stocksync.matching.index import SkuIndex
from stocksync.matching.normalization import DEFAULT_PAD_WIDTH, canonical_sku
from stocksync.pricing.discounts import DiscountedPrice, apply_discount, build_discount_index, round2
from stocksync.pricing.inventory import compute_available

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    UPDATED = "updated"
    NO_CHANGE = "no_change"
    NOT_FOUND_LOCAL = "not_found_local"
    NOT_FOUND_REMOTE = "not_found_remote"
    INVALID_DATA = "invalid_data"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class UpdateOutcome:
    sku: str
    status: OutcomeStatus
    price_changed: bool = False
    inventory_changed: bool = False
    error_code: str | None = None
    error_detail: str | None = None
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status is not OutcomeStatus.ERROR


@dataclass
class ItemPlan:
    sku: str
    variant: RemoteVariant
    target_price: DiscountedPrice | None = None
    price_request: VariantUpdateRequest | None = None
    inventory_target: int | None = None
    notes: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return self.price_request is not None or self.inventory_target is not None


@dataclass
class RunSummary:
    mode: SyncMode
    scope: SyncScope
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_seconds: float = 0.0
    total_items: int = 0
    price_updates: int = 0
    inventory_updates: int = 0
    both_updates: int = 0
    skipped_no_change: int = 0
    not_found_local: int = 0
    not_found_remote: int = 0
    invalid_data_local: int = 0
    errors: int = 0
    cancelled: int = 0
    unusable_local_skus: int = 0
    unusable_remote_skus: int = 0
    catalog_truncated: bool = False
    interrupted: bool = False
    failures: list[UpdateOutcome] = field(default_factory=list)
    invalid: list[UpdateOutcome] = field(default_factory=list)

    @property
    def updated(self) -> int:
        return self.price_updates + self.inventory_updates + self.both_updates

    @property
    def has_errors(self) -> bool:
        return self.errors > 0

    def record(self, outcome: UpdateOutcome) -> None:
        self.total_items += 1
        if outcome.status is OutcomeStatus.UPDATED:
            if outcome.price_changed and outcome.inventory_changed:
                self.both_updates += 1
            elif outcome.price_changed:
                self.price_updates += 1
            elif outcome.inventory_changed:
                self.inventory_updates += 1
        elif outcome.status is OutcomeStatus.NO_CHANGE:
            self.skipped_no_change += 1
        elif outcome.status is OutcomeStatus.NOT_FOUND_LOCAL:
            self.not_found_local += 1
        elif outcome.status is OutcomeStatus.NOT_FOUND_REMOTE:
            self.not_found_remote += 1
        elif outcome.status is OutcomeStatus.INVALID_DATA:
            self.invalid_data_local += 1
            self.invalid.append(outcome)
        elif outcome.status is OutcomeStatus.CANCELLED:
            self.cancelled += 1
        else:
            self.errors += 1
            self.failures.append(outcome)


def _normalized_compare_at(value: Decimal | None) -> Decimal | None:
    if value is None or value <= 0:
        return None
    return round2(value)


def price_differs(target: DiscountedPrice, variant: RemoteVariant) -> bool:
    """Decimal comparison of price and compare-at price, so "10.0" equals "10.00"."""
    if variant.current_price is None or round2(variant.current_price) != target.final_price:
        return True
    return _normalized_compare_at(variant.current_compare_at_price) != _normalized_compare_at(target.compare_at_price)


class ReconciliationEngine:
    """Join local data against the Shopify catalog and push the differences.

    One call to ``reconcile`` is one run: fetch everything, index by normalized
    SKU, walk the join in the configured direction and update only the fields
    whose target differs from what Shopify holds.
    """

    def __init__(
        self,
        local_source: LocalSource,
        catalog: VariantCatalog,
        discounts: DiscountFileSource | None = None,
        mode: SyncMode = SyncMode.REMOTE_FIRST,
        scope: SyncScope = SyncScope.BOTH,
        pad_width: int = DEFAULT_PAD_WIDTH,
        stop_event: asyncio.Event | None = None,
        shutdown_grace_seconds: float = 30.0,
        progress_every: int = 100,
    ) -> None:
        self.local_source = local_source
        self.catalog = catalog
        self.adapter = catalog.adapter
        self.discounts = discounts
        self.mode = mode
        self.scope = scope
        self.pad_width = pad_width
        self.stop_event = stop_event or asyncio.Event()
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.progress_every = progress_every
        self._completed = 0
        self._outcomes: dict[str, UpdateOutcome] = {}

    async def reconcile(self) -> RunSummary:
        """One full run. Always returns a summary, also when a shutdown is requested midway."""
        started = time.monotonic()
        summary = RunSummary(mode=self.mode, scope=self.scope)
        logger.info("Starting sync (mode=%s, scope=%s, transport=%s)", self.mode.value, self.scope.value, self.adapter.name)

        try:
            products, inventory, remote, discount_entries = await self._fetch()
        except StopRequested as exc:
            logger.warning("Shutdown requested while fetching; no items were processed (%s)", exc)
            summary.interrupted = True
            summary.duration_seconds = time.monotonic() - started
            return summary

        local_index = self.index_products(products)
        inventory_by_sku = self._group_inventory(inventory)
        discount_index = build_discount_index(discount_entries, self.pad_width)
        summary.unusable_local_skus = local_index.rejected
        summary.unusable_remote_skus = remote.rejected
        summary.catalog_truncated = self.catalog.truncated
        logger.info(
            "Prepared indexes: %s Shopify SKUs, %s local SKUs, %s inventory SKUs, %s discounts",
            len(remote),
            len(local_index),
            len(inventory_by_sku),
            len(discount_index),
        )

        pairs = self._join(local_index, remote)
        logger.info("Processing %s items (%s)", len(pairs), self.mode.value)
        self._completed = 0
        self._outcomes = {}
        tasks = [
            asyncio.ensure_future(self._process(sku, product, variant, inventory_by_sku, discount_index, len(pairs)))
            for sku, product, variant in pairs
        ]
        watcher = asyncio.ensure_future(self._cancel_after_grace(tasks))
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            watcher.cancel()

        for (sku, _, _), result in zip(pairs, results):
            if isinstance(result, asyncio.CancelledError):
                result = self._cancelled_outcome(sku)
            elif isinstance(result, BaseException):
                logger.error("Unexpected failure while processing SKU %s: %r", sku, result)
                result = UpdateOutcome(sku=sku, status=OutcomeStatus.ERROR, error_detail=f"{type(result).__name__}: {result}")
            summary.record(result)

        summary.interrupted = self.stop_event.is_set()
        summary.duration_seconds = time.monotonic() - started
        return summary

    async def _cancel_after_grace(self, tasks: list[asyncio.Future[UpdateOutcome]]) -> None:
        await self.stop_event.wait()
        pending = [task for task in tasks if not task.done()]
        if not pending:
            return
        logger.warning("Shutdown requested; waiting up to %.0fs for %s in-flight items", self.shutdown_grace_seconds, len(pending))
        _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace_seconds)
        if still_running:
            logger.error("Grace period of %.0fs expired; cancelling %s items", self.shutdown_grace_seconds, len(still_running))
            for task in still_running:
                task.cancel()

    def _cancelled_outcome(self, sku: str) -> UpdateOutcome:
        partial = self._outcomes.get(sku)
        message = "cancelled after the shutdown grace period"
        if partial is not None and partial.price_changed:
            message += "; price was already written"
        logger.warning("SKU %s: %s", sku, message)
        return UpdateOutcome(sku=sku, status=OutcomeStatus.CANCELLED, message=message)

    async def _fetch(self) -> tuple[list[LocalProductRecord], list[LocalInventoryRecord], SkuIndex[RemoteVariant], list[DiscountEntry]]:
        jobs = {
            "local products": asyncio.ensure_future(self.local_source.fetch_products()),
            "Shopify catalog": asyncio.ensure_future(self.catalog.fetch_all()),
        }
        if self.scope.includes_inventory:
            jobs["local inventory"] = asyncio.ensure_future(self.local_source.fetch_inventory())
        discount_job = asyncio.ensure_future(self.load_discounts())

        try:
            await asyncio.gather(*jobs.values())
        except StopRequested:
            for job in (*jobs.values(), discount_job):
                job.cancel()
            await asyncio.gather(*jobs.values(), discount_job, return_exceptions=True)
            raise
        except Exception as exc:
            failed = next(
                (name for name, job in jobs.items() if job.done() and not job.cancelled() and job.exception() is exc),
                "fetch",
            )
            for job in (*jobs.values(), discount_job):
                job.cancel()
            await asyncio.gather(*jobs.values(), discount_job, return_exceptions=True)
            logger.error("Fatal error while fetching %s; aborting sync: %s", failed, exc)
            raise FatalFetchError(failed, str(exc)) from exc
        except asyncio.CancelledError:
            for job in (*jobs.values(), discount_job):
                job.cancel()
            raise

        inventory = jobs["local inventory"].result() if "local inventory" in jobs else []
        return jobs["local products"].result(), inventory, jobs["Shopify catalog"].result(), await discount_job

    async def load_discounts(self) -> list[DiscountEntry]:
        if self.discounts is None or not self.scope.includes_price:
            return []
        try:
            return await self.discounts.load()
        except StopRequested:
            raise
        except (OSError, ValueError, SyncError) as exc:
            logger.warning("Could not load discounts from %s; continuing without them: %s", self.discounts.location, exc)
            return []

    def index_products(self, products: list[LocalProductRecord]) -> SkuIndex[LocalProductRecord]:
        index: SkuIndex[LocalProductRecord] = SkuIndex(
            label="local product",
            pad_width=self.pad_width,
            describe=lambda record: f"{record.sku} ({record.name or 'unnamed'}, price {record.raw_price!r})",
        )
        for product in products:
            index.add(product.sku, product)
        return index

    def _group_inventory(self, records: list[LocalInventoryRecord]) -> dict[str, list[LocalInventoryRecord]]:
        grouped: dict[str, list[LocalInventoryRecord]] = defaultdict(list)
        for record in records:
            canonical = canonical_sku(record.sku, self.pad_width)
            if canonical is None:
                logger.warning("Local inventory record has unusable SKU %r; skipping", record.sku)
                continue
            grouped[canonical].append(record)
        return dict(grouped)

    def _join(
        self,
        local_index: SkuIndex[LocalProductRecord],
        remote: SkuIndex[RemoteVariant],
    ) -> list[tuple[str, LocalProductRecord | None, RemoteVariant | None]]:
        if self.mode is SyncMode.REMOTE_FIRST:
            return [(sku, local_index.get(sku), variant) for sku, variant in remote.items()]
        return [(sku, product, remote.get(sku)) for sku, product in local_index.items()]

    def plan_item(
        self,
        sku: str,
        product: LocalProductRecord,
        variant: RemoteVariant,
        inventory_records: list[LocalInventoryRecord] | None,
        discount: DiscountEntry | None,
    ) -> ItemPlan:
        """Targets for one joined pair; raises InvalidDataError when a target cannot be computed."""
        plan = ItemPlan(sku=sku, variant=variant)

        if self.scope.includes_price:
            if product.base_price is None:
                raise InvalidDataError(f"missing or non-numeric local price {product.raw_price!r}")
            if product.base_price < 0:
                raise InvalidDataError(f"negative local price {product.base_price}")
            if discount is not None:
                target = apply_discount(product.base_price, discount.percent_off)
            else:
                target = DiscountedPrice(final_price=round2(product.base_price), compare_at_price=None, applied=False)
            plan.target_price = target
            if price_differs(target, variant):
                plan.price_request = VariantUpdateRequest(
                    variant_id=variant.variant_id,
                    product_id=variant.product_id,
                    price=target.final_price,
                    compare_at_price=target.compare_at_price,
                )

        if self.scope.includes_inventory:
            if not inventory_records:
                raise InvalidDataError("no local inventory records")
            available = compute_available(inventory_records)
            if not variant.is_inventory_tracked:
                logger.warning("SKU %s (%s): inventory is not tracked in Shopify; skipping inventory", sku, variant.display_name)
                plan.notes.append("inventory not tracked")
            elif variant.current_available_qty is None:
                logger.warning("SKU %s (%s): current Shopify quantity is unknown; skipping inventory", sku, variant.display_name)
                plan.notes.append("current inventory unknown")
            elif variant.current_available_qty != available:
                plan.inventory_target = available

        return plan

    async def _process(
        self,
        sku: str,
        product: LocalProductRecord | None,
        variant: RemoteVariant | None,
        inventory_by_sku: dict[str, list[LocalInventoryRecord]],
        discount_index: SkuIndex[DiscountEntry],
        total: int,
    ) -> UpdateOutcome:
        try:
            if variant is None:
                logger.warning("SKU %s found locally but not in Shopify; skipping", sku)
                return UpdateOutcome(sku=sku, status=OutcomeStatus.NOT_FOUND_REMOTE)
            if product is None:
                logger.warning("SKU %s (%s) found in Shopify but not in local data; skipping", sku, variant.display_name)
                return UpdateOutcome(sku=sku, status=OutcomeStatus.NOT_FOUND_LOCAL)

            try:
                plan = self.plan_item(sku, product, variant, inventory_by_sku.get(sku), discount_index.get(sku))
            except InvalidDataError as exc:
                logger.warning("SKU %s: %s; skipping", sku, exc)
                return UpdateOutcome(sku=sku, status=OutcomeStatus.INVALID_DATA, error_code=exc.code, error_detail=str(exc))

            if not plan.has_changes:
                logger.debug("SKU %s: already up to date", sku)
                return UpdateOutcome(sku=sku, status=OutcomeStatus.NO_CHANGE, message="; ".join(plan.notes))
            if self.stop_event.is_set():
                return UpdateOutcome(sku=sku, status=OutcomeStatus.CANCELLED, message="shutdown requested before update")
            return await self._apply(plan)
        finally:
            self._completed += 1
            if self.progress_every and self._completed % self.progress_every == 0:
                logger.info("Processed %s / %s items", self._completed, total)

    async def _apply(self, plan: ItemPlan) -> UpdateOutcome:
        """Price first, then inventory. A stop request before a write skips the writes still to come."""
        variant = plan.variant
        outcome = UpdateOutcome(sku=plan.sku, status=OutcomeStatus.UPDATED)
        self._outcomes[plan.sku] = outcome
        messages: list[str] = []
        errors: list[str] = []
        stopped = False

        if plan.price_request is not None:
            request = plan.price_request
            previous = f"{variant.current_price} (compare-at {variant.current_compare_at_price})"
            try:
                self._raise_if_stopping()
                await self.adapter.update_price(request)
            except StopRequested:
                stopped = True
            except RemoteError as exc:
                errors.append(f"price: {exc}")
                outcome.error_code = outcome.error_code or exc.code
                logger.error("SKU %s: price update failed: %s", plan.sku, exc)
            else:
                outcome.price_changed = True
                messages.append(f"price {previous} -> {request.price} (compare-at {request.compare_at_price})")
                logger.log(SUCCESS, "SKU %s: price %s -> %s (compare-at %s)", plan.sku, previous, request.price, request.compare_at_price)

        if plan.inventory_target is not None and not stopped:
            try:
                self._raise_if_stopping()
                location_id = variant.location_id or await self.adapter.default_location_id()
                if not location_id:
                    raise TerminalRemoteError("no Shopify location available for the inventory update", target=variant.inventory_item_id)
                self._raise_if_stopping()
                await self.adapter.set_inventory(
                    InventoryUpdateRequest(
                        inventory_item_id=variant.inventory_item_id,
                        location_id=location_id,
                        quantity=plan.inventory_target,
                        previous_quantity=variant.current_available_qty,
                    )
                )
            except StopRequested:
                stopped = True
            except RemoteError as exc:
                errors.append(f"inventory: {exc}")
                outcome.error_code = outcome.error_code or exc.code
                logger.error("SKU %s: inventory update failed: %s", plan.sku, exc)
            else:
                outcome.inventory_changed = True
                messages.append(f"inventory {variant.current_available_qty} -> {plan.inventory_target}")
                logger.log(SUCCESS, "SKU %s: inventory %s -> %s", plan.sku, variant.current_available_qty, plan.inventory_target)

        if stopped:
            messages.append("shutdown requested before all writes were sent")
            logger.warning("SKU %s: shutdown requested; remaining writes not sent", plan.sku)
        if errors:
            outcome.status = OutcomeStatus.ERROR
            outcome.error_detail = "; ".join(errors)
        elif stopped and not (outcome.price_changed or outcome.inventory_changed):
            outcome.status = OutcomeStatus.CANCELLED
        outcome.message = "; ".join(messages + plan.notes)
        return outcome

    def _raise_if_stopping(self) -> None:
        if self.stop_event.is_set():
            raise StopRequested("shutdown requested before the write was sent")
