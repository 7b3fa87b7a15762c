from __future__ import annotations

from stocksync.pipeline import RunSummary


def render_summary(summary: RunSummary) -> list[str]:
    """Plain-text run summary, one line per entry."""
    lines = [
        "=" * 60,
        f"Sync summary ({summary.mode.value}, {summary.scope.value})",
        "=" * 60,
        f"Started:                {summary.started_at.isoformat(timespec='seconds')}",
        f"Duration:               {summary.duration_seconds:.1f}s",
        f"Items processed:        {summary.total_items}",
        f"Price updates:          {summary.price_updates}",
        f"Inventory updates:      {summary.inventory_updates}",
        f"Price and inventory:    {summary.both_updates}",
        f"No change:              {summary.skipped_no_change}",
        f"Not found locally:      {summary.not_found_local}",
        f"Not found in Shopify:   {summary.not_found_remote}",
        f"Invalid local data:     {summary.invalid_data_local}",
        f"Errors:                 {summary.errors}",
        f"Cancelled:              {summary.cancelled}",
    ]
    if summary.unusable_local_skus or summary.unusable_remote_skus:
        lines.append(f"Unusable SKUs:          {summary.unusable_local_skus} local, {summary.unusable_remote_skus} Shopify")
    if summary.interrupted:
        lines.append("Warning: the run was interrupted by a shutdown request")
    if summary.catalog_truncated:
        lines.append("Warning: the Shopify catalog was truncated at the page limit")

    if summary.failures:
        lines.append("")
        lines.append("Failed items:")
        lines.extend(f"  {outcome.sku} [{outcome.error_code or 'error'}]: {outcome.error_detail}" for outcome in summary.failures)
    if summary.invalid:
        lines.append("")
        lines.append("Invalid local data:")
        lines.extend(f"  {outcome.sku}: {outcome.error_detail}" for outcome in summary.invalid)
    lines.append("=" * 60)
    return lines
