"""Recompute derived ledger rows from raw facts.

WHAT:
    For every day of the window: read storefront and ad activity, aggregate
    COGS coverage from line items and unit costs, clamp it to the day's totals,
    allocate costs and write one daily_cogs_coverage row and one
    daily_profit_summary row.

WHY:
    Derived rows hold no state of their own. Rebuilding them in full on every
    pass makes re-runs idempotent: same raw facts, same rows.

REFERENCES:
    - profitledger/services/coverage.py
    - profitledger/services/cost_allocation.py
    - profitledger/services/ledger_store.py (range scans)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from types import SimpleNamespace
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from profitledger.models import ClientCostSettings, ProviderEnum
from profitledger.services.cost_allocation import CostSettings, allocate_costs
from profitledger.services.coverage import CoverageTotals, UnitCostLookup, aggregate_coverage, clamp_to_day
from profitledger.services.day_bucketing import date_range_inclusive
from profitledger.services.ledger_store import LedgerStore
from profitledger.services.sync_types import SyncStepResult
from profitledger.services.upsert import ResilientUpserter

logger = logging.getLogger(__name__)

COVERAGE_TABLE = "daily_cogs_coverage"
SUMMARY_TABLE = "daily_profit_summary"
DERIVED_KEY = ("client_id", "date")

SOURCE_ALIASES = {
    "shopify": ProviderEnum.shopify.value,
    "google": ProviderEnum.google.value,
    "google_ads": ProviderEnum.google.value,
    "googleads": ProviderEnum.google.value,
    "meta": ProviderEnum.meta.value,
    "meta_ads": ProviderEnum.meta.value,
    "facebook": ProviderEnum.meta.value,
    "fb": ProviderEnum.meta.value,
}


def normalize_source(source: Optional[str]) -> Optional[str]:
    """Canonical source name, None for sources the ledger does not know."""
    return SOURCE_ALIASES.get((source or "").strip().lower())


def load_cost_settings(db: Session, client_id: str) -> CostSettings:
    """Client cost settings, defaults when the client has none configured."""
    return CostSettings.from_row(db.get(ClientCostSettings, client_id))


def _day_activity(metric_rows: Iterable[Dict[str, Any]]) -> Dict[date, Dict[str, float]]:
    """revenue/orders/units from shopify rows, spend summed over ad sources."""
    days: Dict[date, Dict[str, float]] = defaultdict(
        lambda: {"revenue": 0.0, "orders": 0, "units": 0, "paid_spend": 0.0}
    )
    for row in metric_rows:
        source = normalize_source(row.get("source"))
        if source is None:
            logger.debug("[RECOMPUTE] Ignoring unknown source %r", row.get("source"))
            continue
        day = days[row["date"]]
        if source == ProviderEnum.shopify.value:
            day["revenue"] += float(row.get("revenue") or 0)
            day["orders"] += int(row.get("orders") or 0)
            day["units"] += int(row.get("units") or 0)
        else:
            day["paid_spend"] += float(row.get("spend") or 0)
    return days


def recompute_profit(
    db: Session,
    client_id: str,
    start: date,
    end: date,
    cost_settings: Optional[CostSettings] = None,
) -> SyncStepResult:
    """Rebuild coverage and profit rows for every day in [start, end].

    Raises:
        PersistenceError: Store failures (reads, or any row failing to write)
    """
    store = LedgerStore(db)
    upserter = ResilientUpserter(store)
    settings = cost_settings or load_cost_settings(db, client_id)

    activity = _day_activity(store.scan("daily_metrics", client_id, start, end))
    line_items = [SimpleNamespace(**row) for row in store.scan("daily_line_items", client_id, start, end, date_column="day")]
    lookup = UnitCostLookup.from_rows(SimpleNamespace(**row) for row in store.scan("variant_unit_costs", client_id))
    coverage_by_day = aggregate_coverage(line_items, lookup, settings.fallback_margin)

    coverage_rows = []
    summary_rows = []
    mode_counts: Dict[str, int] = defaultdict(int)
    for day in date_range_inclusive(start, end):
        act = activity.get(day) or {"revenue": 0.0, "orders": 0, "units": 0, "paid_spend": 0.0}
        coverage = clamp_to_day(
            coverage_by_day.get(day, CoverageTotals()),
            act["revenue"],
            act["units"],
            client_id=client_id,
            day=day,
        )
        breakdown = allocate_costs(
            act["revenue"], act["orders"], act["units"], act["paid_spend"], coverage, settings
        )
        mode_counts[breakdown.mode.value] += 1

        coverage_rows.append({
            "client_id": client_id,
            "date": day,
            "product_cogs_known": round(coverage.product_cogs_known, 2) + 0.0,
            "revenue_with_cogs": round(coverage.revenue_with_cogs, 2) + 0.0,
            "units_with_cogs": int(coverage.units_with_cogs),
            "estimated_cogs_missing": round(coverage.estimated_cogs_missing, 2) + 0.0,
        })
        summary_rows.append(breakdown.as_summary_row(client_id, day))

    coverage_report = upserter.upsert(COVERAGE_TABLE, coverage_rows, DERIVED_KEY).raise_for_failures()
    summary_report = upserter.upsert(SUMMARY_TABLE, summary_rows, DERIVED_KEY).raise_for_failures()

    logger.info(
        "[RECOMPUTE] %s %s..%s: %d summary days (modes=%s, unit costs=%d)",
        client_id, start, end, summary_report.written, dict(mode_counts), len(lookup),
    )
    return SyncStepResult(
        days_written=summary_report.written,
        rows_written=coverage_report.written + summary_report.written,
        stats={
            "modes": dict(mode_counts),
            "line_items": len(line_items),
            "unit_costs": len(lookup),
        },
    )
