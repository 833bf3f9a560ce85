"""COGS coverage aggregation.

WHAT:
    Sums known product costs against a day's line items to measure how much of
    the day's revenue has a trustworthy COGS figure, and estimates the cost of
    the uncovered lines from the client's fallback margin.

WHY:
    The allocation engine picks its mode from the coverage fraction, so the
    fraction must never exceed the day's own totals. Line items are gross of
    refunds while daily revenue is net, so raw coverage above 1.0 happens;
    it is clamped and reported, never trusted.

REFERENCES:
    - profitledger/services/line_item_sync_service.py (DailyLineItem, VariantUnitCost)
    - profitledger/services/cost_allocation.py (consumer)
    - profitledger/services/recompute_service.py (orchestration of both)
"""

from __future__ import annotations

import logging
import warnings
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date
from typing import Any, Dict, Iterable, Optional

from profitledger.errors import DataIntegrityWarning
from profitledger.telemetry import capture_message

logger = logging.getLogger(__name__)

# Tolerance for float noise when comparing against day totals
EPSILON = 0.005


@dataclass(frozen=True)
class CoverageTotals:
    """Coverage aggregates for one (client, day)."""

    product_cogs_known: float = 0.0
    revenue_with_cogs: float = 0.0
    units_with_cogs: int = 0
    estimated_cogs_missing: float = 0.0

    @property
    def is_empty(self) -> bool:
        return (
            self.product_cogs_known <= 0
            and self.revenue_with_cogs <= 0
            and self.units_with_cogs <= 0
            and self.estimated_cogs_missing <= 0
        )


class UnitCostLookup:
    """Resolves a line item's unit cost: inventory item first, then variant.

    The first key with a positive cost wins. Costs found under several keys
    for the same line are never averaged.
    """

    def __init__(
        self,
        by_inventory_item: Optional[Dict[int, float]] = None,
        by_variant: Optional[Dict[int, float]] = None,
    ):
        self.by_inventory_item = {k: float(v) for k, v in (by_inventory_item or {}).items() if v and float(v) > 0}
        self.by_variant = {k: float(v) for k, v in (by_variant or {}).items() if v and float(v) > 0}

    @classmethod
    def from_rows(cls, rows: Iterable[Any]) -> "UnitCostLookup":
        """Build from VariantUnitCost-like rows."""
        by_item: Dict[int, float] = {}
        by_variant: Dict[int, float] = {}
        for row in rows:
            amount = row.unit_cost_amount
            if amount is None or float(amount) <= 0:
                continue
            if row.inventory_item_id is not None:
                by_item.setdefault(int(row.inventory_item_id), float(amount))
            if row.variant_id is not None:
                by_variant.setdefault(int(row.variant_id), float(amount))
        return cls(by_item, by_variant)

    def resolve(self, inventory_item_id: Optional[int], variant_id: Optional[int] = None) -> Optional[float]:
        if inventory_item_id is not None:
            cost = self.by_inventory_item.get(int(inventory_item_id))
            if cost:
                return cost
        if variant_id is not None:
            cost = self.by_variant.get(int(variant_id))
            if cost:
                return cost
        return None

    def __len__(self) -> int:
        return len(self.by_inventory_item) + len(self.by_variant)


def aggregate_day(items: Iterable[Any], lookup: UnitCostLookup, fallback_margin: float) -> CoverageTotals:
    """Coverage for one day's line items (objects with units/line_revenue/ids)."""
    cogs_known = 0.0
    revenue_with_cogs = 0.0
    units_with_cogs = 0
    missing = 0.0

    for item in items:
        units = int(item.units or 0)
        line_revenue = float(item.line_revenue or 0)
        cost = lookup.resolve(item.inventory_item_id, getattr(item, "variant_id", None))
        if cost is not None:
            cogs_known += units * cost
            revenue_with_cogs += line_revenue
            units_with_cogs += units
        else:
            missing += line_revenue * (1 - fallback_margin)

    return CoverageTotals(
        product_cogs_known=cogs_known,
        revenue_with_cogs=revenue_with_cogs,
        units_with_cogs=units_with_cogs,
        estimated_cogs_missing=max(missing, 0.0),
    )


def aggregate_coverage(
    line_items: Iterable[Any],
    lookup: UnitCostLookup,
    fallback_margin: float,
) -> Dict[date, CoverageTotals]:
    """Group line items by `day` and aggregate each group."""
    by_day = defaultdict(list)
    for item in line_items:
        by_day[item.day].append(item)
    return {day: aggregate_day(items, lookup, fallback_margin) for day, items in by_day.items()}


def coverage_fraction(revenue_with_cogs: float, revenue: float) -> float:
    """revenue_with_cogs / revenue clamped to [0, 1]; 0 without revenue."""
    if revenue <= 0:
        return 0.0
    return min(max(revenue_with_cogs / revenue, 0.0), 1.0)


def _report_integrity(client_id: str, day: date, field: str, raw: float, limit: float) -> None:
    message = f"{field} exceeds day total for {client_id} on {day}: {raw:.2f} > {limit:.2f}"
    logger.warning("[COVERAGE] %s (clamped)", message)
    warnings.warn(message, DataIntegrityWarning, stacklevel=3)
    capture_message(
        f"COGS coverage clamp: {field}",
        level="warning",
        extra={"client_id": client_id, "day": str(day), "raw": raw, "limit": limit},
    )


def clamp_to_day(
    totals: CoverageTotals,
    revenue: float,
    units: int,
    *,
    client_id: str = "",
    day: Optional[date] = None,
) -> CoverageTotals:
    """Clamp coverage against the day's totals.

    revenue_with_cogs <= revenue and units_with_cogs <= units always hold on
    the result. Raw coverage above 1.0 on a day with revenue is reported as a
    DataIntegrityWarning. product_cogs_known is capped at the day's revenue
    the same way, since it feeds actual and hybrid COGS directly.
    """
    revenue_cap = max(float(revenue or 0), 0.0)
    units_cap = max(int(units or 0), 0)

    if revenue_cap > 0 and totals.product_cogs_known > revenue_cap + EPSILON:
        _report_integrity(client_id, day, "product_cogs_known", totals.product_cogs_known, revenue_cap)
    if revenue_cap > 0 and totals.revenue_with_cogs > revenue_cap + EPSILON:
        _report_integrity(client_id, day, "revenue_with_cogs", totals.revenue_with_cogs, revenue_cap)
    if units_cap > 0 and totals.units_with_cogs > units_cap:
        _report_integrity(client_id, day, "units_with_cogs", float(totals.units_with_cogs), float(units_cap))

    revenue_with_cogs = min(max(totals.revenue_with_cogs, 0.0), revenue_cap)
    units_with_cogs = min(max(totals.units_with_cogs, 0), units_cap)
    uncovered = revenue_cap - revenue_with_cogs

    return replace(
        totals,
        product_cogs_known=min(max(totals.product_cogs_known, 0.0), revenue_cap),
        revenue_with_cogs=revenue_with_cogs,
        units_with_cogs=units_with_cogs,
        estimated_cogs_missing=min(max(totals.estimated_cogs_missing, 0.0), uncovered),
    )
