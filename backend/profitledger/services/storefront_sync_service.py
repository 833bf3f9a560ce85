"""Storefront revenue sync (Shopify -> daily_metrics, source=shopify).

WHAT:
    Fetches orders processed in the window and refunds created in the window,
    buckets both into calendar days and upserts one DailyMetric row per day
    with revenue (net of refunds), orders and units.

WHY:
    - Refunds are bucketed on their own creation day, so a return lowers
      revenue on the day it happened, not retroactively on the sale day
    - Orders are searched by processed_at, refunds by the parent order's
      updated_at (a refund updates its order), then filtered to the window
    - The zero-row guard keeps an empty re-fetch from erasing a day written
      by an earlier pass

REFERENCES:
    - profitledger/services/day_bucketing.py (DailyRevenueBuckets)
    - profitledger/services/shopify_client.py
    - profitledger/services/upsert.py
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from profitledger.deps import Settings
from profitledger.errors import UpstreamFetchError
from profitledger.models import ProviderEnum
from profitledger.services.cost_allocation import CostSettings
from profitledger.services.day_bucketing import (
    DailyRevenueBuckets,
    date_range_inclusive,
    to_utc_iso,
    zoned_day_bounds_utc,
)
from profitledger.services.ledger_store import LedgerStore
from profitledger.services.shopify_client import ShopifyClient, collect_pages, money
from profitledger.services.sync_types import SyncStepResult
from profitledger.services.upsert import ResilientUpserter

logger = logging.getLogger(__name__)

DAILY_METRICS_TABLE = "daily_metrics"
DAILY_METRICS_KEY = ("client_id", "date", "source")
STOREFRONT_VALUE_FIELDS = ("revenue", "orders", "units")


def clamp_window(
    start: date,
    end: date,
    max_days_back: int,
    today: date,
    force: bool = False,
) -> Optional[tuple]:
    """Drop days older than `max_days_back` unless forced.

    Returns:
        (start, end) to fetch, or None when the whole window is too old
    """
    if force:
        return start, end
    earliest = today - timedelta(days=max_days_back)
    if end < earliest:
        return None
    return max(start, earliest), end


def _is_pos(order: Dict[str, Any]) -> bool:
    return (order.get("sourceName") or "").strip().lower() == "pos"


def _order_units(order: Dict[str, Any]) -> int:
    edges = ((order.get("lineItems") or {}).get("edges")) or []
    return sum(int((e.get("node") or {}).get("quantity") or 0) for e in edges)


def zero_rows(client_id: str, source: str, days: List[date]) -> List[Dict[str, Any]]:
    """Gap rows for `days` (all metrics zero)."""
    return [
        {
            "client_id": client_id,
            "date": d,
            "source": source,
            "revenue": 0,
            "orders": 0,
            "units": 0,
            "spend": 0,
            "clicks": 0,
            "impressions": 0,
            "conversions": 0,
        }
        for d in days
    ]


async def sync_storefront_revenue(
    db: Session,
    client_id: str,
    start: date,
    end: date,
    *,
    client: ShopifyClient,
    settings: Settings,
    cost_settings: Optional[CostSettings] = None,
    force: bool = False,
    fill_zeros: bool = False,
    today: Optional[date] = None,
) -> SyncStepResult:
    """Sync refund-aware daily storefront revenue for one client.

    Args:
        db: Database session
        client_id: Client whose ledger is written
        start: First day (inclusive)
        end: Last day (inclusive)
        client: Shopify client for the client's shop
        settings: Application settings (page bound, throttle, bucketing zone)
        cost_settings: Client cost settings (exclude_pos_orders)
        force: Fetch days older than SHOPIFY_MAX_DAYS_BACK
        fill_zeros: On a fetch failure, gap-fill the window before re-raising
        today: Reference day for the age guard (defaults to UTC today)

    Returns:
        SyncStepResult with days/rows written and bucketing stats

    Raises:
        UpstreamFetchError: Shopify failures (after the optional gap-fill)
        PersistenceError: Store failures outside per-row recovery
    """
    cost_settings = cost_settings or CostSettings()
    today = today or datetime.now(timezone.utc).date()
    source = ProviderEnum.shopify.value

    window = clamp_window(start, end, settings.SHOPIFY_MAX_DAYS_BACK, today, force)
    if window is None:
        logger.info(
            "[SHOPIFY_SYNC] %s: window %s..%s is older than %d days, skipping (use force)",
            client_id, start, end, settings.SHOPIFY_MAX_DAYS_BACK,
        )
        return SyncStepResult(skipped=True, stats={"reason": "window_too_old"})
    start, end = window

    upserter = ResilientUpserter(LedgerStore(db))
    throttle = settings.SHOPIFY_THROTTLE_MS / 1000.0

    logger.info("[SHOPIFY_SYNC] Starting storefront sync: client=%s, %s..%s", client_id, start, end)

    try:
        shop_tz = await client.get_shop_timezone()
        bucket_tz = shop_tz if settings.SHOPIFY_BUCKET_TZ.lower() == "shop" else "UTC"
        start_utc, end_utc = zoned_day_bounds_utc(start, end, bucket_tz)
        since, until = to_utc_iso(start_utc), to_utc_iso(end_utc)

        orders = await collect_pages(
            lambda cursor: client.get_orders_page(
                f"processed_at:>={since} processed_at:<={until} status:any", cursor
            ),
            max_pages=settings.MAX_PAGES,
            throttle_seconds=throttle,
            label="orders",
        )
        refund_orders = await collect_pages(
            lambda cursor: client.get_refunds_page(
                f"updated_at:>={since} updated_at:<={until} status:any", cursor
            ),
            max_pages=settings.MAX_PAGES,
            throttle_seconds=throttle,
            label="refunds",
        )
    except UpstreamFetchError as exc:
        logger.error("[SHOPIFY_SYNC] %s: fetch failed: %s", client_id, exc)
        if fill_zeros:
            report = upserter.gap_fill(
                DAILY_METRICS_TABLE, zero_rows(client_id, source, date_range_inclusive(start, end)), DAILY_METRICS_KEY
            )
            logger.info("[SHOPIFY_SYNC] %s: gap-filled %d days after failure", client_id, report.inserted_gaps)
        raise

    buckets = DailyRevenueBuckets(start, end, tz=bucket_tz)
    pos_skipped = 0
    for order in orders:
        if cost_settings.exclude_pos_orders and _is_pos(order):
            pos_skipped += 1
            continue
        buckets.add_order(
            order.get("processedAt"),
            order.get("createdAt"),
            money(order.get("totalPriceSet")),
            units=_order_units(order),
            cancelled=bool(order.get("cancelledAt")),
        )

    for order in refund_orders:
        if cost_settings.exclude_pos_orders and _is_pos(order):
            continue
        for refund in order.get("refunds") or []:
            buckets.add_refund(refund.get("createdAt"), money(refund.get("totalRefundedSet")))

    rows = [
        {
            "client_id": client_id,
            "date": t.day,
            "source": source,
            "revenue": round(t.revenue, 2),
            "orders": t.orders,
            "units": t.units,
        }
        for t in buckets.rows()
    ]
    report = upserter.upsert(
        DAILY_METRICS_TABLE, rows, DAILY_METRICS_KEY, value_fields=STOREFRONT_VALUE_FIELDS
    ).raise_for_failures()

    stats = {
        "shop_timezone": shop_tz,
        "bucket_timezone": bucket_tz,
        "orders_fetched": len(orders),
        "orders_skipped": buckets.orders_skipped,
        "pos_orders_skipped": pos_skipped,
        "refunds_skipped": buckets.refunds_skipped,
        "gross_sales": round(buckets.gross_sales, 2),
        "total_refunds": round(buckets.total_refunds, 2),
        "preserved_days": report.preserved,
    }
    logger.info(
        "[SHOPIFY_SYNC] %s: %d days written, gross=%.2f refunds=%.2f (tz=%s)",
        client_id, report.written, buckets.gross_sales, buckets.total_refunds, bucket_tz,
    )
    return SyncStepResult(days_written=report.written, rows_written=report.written, stats=stats)
