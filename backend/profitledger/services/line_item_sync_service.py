"""Line-item and unit-cost sync (Shopify -> daily_line_items, variant_unit_costs).

WHAT:
    Aggregates order line items into (day, inventory item) totals: units,
    discounted line revenue, first seen variant/sku, currency. Then fetches the
    unit cost of every distinct inventory item and stores it.

WHY:
    These are the raw inputs of COGS coverage. No customer data is read or
    stored; only product keys and totals.

REFERENCES:
    - profitledger/services/coverage.py (consumer)
    - profitledger/services/shopify_client.py (get_line_items_page, get_inventory_unit_costs)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from profitledger.deps import Settings
from profitledger.services.cost_allocation import CostSettings
from profitledger.services.day_bucketing import bucket_event_day
from profitledger.services.ledger_store import LedgerStore
from profitledger.services.shopify_client import ShopifyClient, collect_pages, gid_to_id
from profitledger.services.sync_types import SyncStepResult
from profitledger.services.upsert import ResilientUpserter

logger = logging.getLogger(__name__)

LINE_ITEMS_TABLE = "daily_line_items"
LINE_ITEMS_KEY = ("client_id", "day", "inventory_item_id")
UNIT_COSTS_TABLE = "variant_unit_costs"
UNIT_COSTS_KEY = ("client_id", "inventory_item_id")


@dataclass
class LineItemAggregate:
    day: str
    inventory_item_id: int
    variant_id: Optional[int] = None
    sku: Optional[str] = None
    units: int = 0
    line_revenue: float = 0.0
    currency: Optional[str] = None


def aggregate_line_items(
    orders: Iterable[Dict[str, Any]],
    exclude_pos: bool = False,
) -> Tuple[Dict[Tuple[str, int], LineItemAggregate], int]:
    """Group line items by (UTC day, inventory item).

    Cancelled orders are ignored. Lines with quantity <= 0 or without an
    inventory item are skipped.

    Returns:
        (aggregates keyed by (day, inventory_item_id), skipped line count)
    """
    aggregates: Dict[Tuple[str, int], LineItemAggregate] = {}
    skipped = 0
    for order in orders:
        if order.get("cancelledAt"):
            continue
        if exclude_pos and (order.get("sourceName") or "").strip().lower() == "pos":
            continue
        day = bucket_event_day(order.get("processedAt"), order.get("createdAt"), "UTC")
        if not day:
            continue
        for edge in ((order.get("lineItems") or {}).get("edges")) or []:
            node = edge.get("node") or {}
            qty = int(node.get("quantity") or 0)
            variant = node.get("variant") or {}
            inv_id = gid_to_id(((variant.get("inventoryItem")) or {}).get("id"), "InventoryItem")
            if qty <= 0 or inv_id is None:
                skipped += 1
                continue

            shop_money = ((node.get("discountedTotalSet") or {}).get("shopMoney")) or {}
            try:
                amount = float(shop_money.get("amount") or 0)
            except (TypeError, ValueError):
                amount = 0.0

            agg = aggregates.get((day, inv_id))
            if agg is None:
                agg = aggregates[(day, inv_id)] = LineItemAggregate(day=day, inventory_item_id=inv_id)
            agg.units += qty
            agg.line_revenue += amount
            if agg.variant_id is None:
                agg.variant_id = gid_to_id(variant.get("id"), "ProductVariant")
            if agg.sku is None and node.get("sku"):
                agg.sku = node["sku"]
            if agg.currency is None and shop_money.get("currencyCode"):
                agg.currency = shop_money["currencyCode"]
    return aggregates, skipped


async def sync_line_items(
    db: Session,
    client_id: str,
    start: date,
    end: date,
    *,
    client: ShopifyClient,
    shop_domain: str,
    settings: Settings,
    cost_settings: Optional[CostSettings] = None,
) -> SyncStepResult:
    """Sync daily line-item aggregates and unit costs for one client.

    Raises:
        UpstreamFetchError: Shopify failures or page bound exceeded
        PersistenceError: Store failures
    """
    cost_settings = cost_settings or CostSettings()
    throttle = settings.SHOPIFY_THROTTLE_MS / 1000.0
    search = (
        f"processed_at:>={start.isoformat()}T00:00:00Z "
        f"processed_at:<={end.isoformat()}T23:59:59Z status:any"
    )

    logger.info("[LINE_ITEMS] Starting line-item sync: client=%s, %s..%s", client_id, start, end)

    orders = await collect_pages(
        lambda cursor: client.get_line_items_page(search, cursor),
        max_pages=settings.MAX_PAGES,
        throttle_seconds=throttle,
        label="line item orders",
    )
    aggregates, skipped = aggregate_line_items(orders, exclude_pos=cost_settings.exclude_pos_orders)

    rows: List[Dict[str, Any]] = [
        {
            "client_id": client_id,
            "shop_domain": shop_domain,
            "day": date.fromisoformat(agg.day),
            "inventory_item_id": agg.inventory_item_id,
            "variant_id": agg.variant_id,
            "sku": agg.sku,
            "units": agg.units,
            "line_revenue": round(agg.line_revenue, 2),
            "currency": agg.currency,
        }
        for _, agg in sorted(aggregates.items())
    ]

    upserter = ResilientUpserter(LedgerStore(db))
    line_report = upserter.upsert(LINE_ITEMS_TABLE, rows, LINE_ITEMS_KEY).raise_for_failures()

    # First variant/sku per inventory item, for the unit cost rows
    variants: Dict[int, LineItemAggregate] = {}
    for agg in aggregates.values():
        variants.setdefault(agg.inventory_item_id, agg)

    costs = await client.get_inventory_unit_costs(list(variants), throttle_seconds=throttle)
    cost_rows = [
        {
            "client_id": client_id,
            "inventory_item_id": inv_id,
            "variant_id": variants[inv_id].variant_id,
            "sku": variants[inv_id].sku,
            "unit_cost_amount": round(amount, 4),
            "unit_cost_currency": currency,
            "source": "shopify",
        }
        for inv_id, (amount, currency) in sorted(costs.items())
        if amount is not None and inv_id in variants
    ]
    cost_report = upserter.upsert(UNIT_COSTS_TABLE, cost_rows, UNIT_COSTS_KEY).raise_for_failures()

    days = {row["day"] for row in rows}
    logger.info(
        "[LINE_ITEMS] %s: %d line rows over %d days, %d skipped lines, %d unit costs",
        client_id, line_report.written, len(days), skipped, cost_report.written,
    )
    return SyncStepResult(
        days_written=len(days),
        rows_written=line_report.written + cost_report.written,
        stats={
            "orders_fetched": len(orders),
            "line_rows": line_report.written,
            "lines_skipped": skipped,
            "inventory_items": len(variants),
            "unit_costs_written": cost_report.written,
            "items_without_cost": len(variants) - len(cost_rows),
        },
    )
