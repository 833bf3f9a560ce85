"""Ad spend sync (Meta and Google Ads -> daily_metrics).

WHAT:
    Pulls account-level daily totals from each ad platform and writes one
    DailyMetric row per day (source=meta or source=google), then gap-fills the
    rest of the window with zero rows.

WHY:
    - Recompute sums spend across ad sources per day; a missing day and a
      zero day must look the same to it, hence the gap-fill
    - Gap rows are insert-if-absent, so they never overwrite a real day
    - SDK calls are blocking; they run in a worker thread so the event loop
      (FastAPI, ARQ) stays responsive

REFERENCES:
    - profitledger/services/meta_ads_client.py
    - profitledger/services/google_ads_client.py
    - profitledger/services/recompute_service.py (consumer of spend)
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from profitledger.deps import Settings
from profitledger.models import ProviderEnum
from profitledger.services.day_bucketing import date_range_inclusive
from profitledger.services.google_ads_client import GAdsClient
from profitledger.services.ledger_store import LedgerStore
from profitledger.services.meta_ads_client import MetaAdsClient
from profitledger.services.storefront_sync_service import DAILY_METRICS_KEY, DAILY_METRICS_TABLE, zero_rows
from profitledger.services.sync_types import SyncStepResult
from profitledger.services.upsert import ResilientUpserter

logger = logging.getLogger(__name__)

# First action type present wins; values are never summed across types
PURCHASE_ACTION_PRIORITY = (
    "purchase",
    "omni_purchase",
    "offsite_conversion.fb_pixel_purchase",
    "offsite_conversion.purchase",
    "web_in_store_purchase",
)

AD_VALUE_FIELDS = ("spend", "impressions", "clicks")


def pick_action_value(
    actions: Optional[Iterable[Dict[str, Any]]],
    priority: Sequence[str] = PURCHASE_ACTION_PRIORITY,
) -> float:
    """Value of the highest-priority action type present, 0.0 when none is."""
    by_type: Dict[str, float] = {}
    for action in actions or []:
        action_type = action.get("action_type")
        if not action_type or action_type in by_type:
            continue
        try:
            by_type[action_type] = float(action.get("value") or 0)
        except (TypeError, ValueError):
            continue
    for action_type in priority:
        if action_type in by_type:
            return by_type[action_type]
    return 0.0


def _f(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _write_ad_days(
    db: Session,
    client_id: str,
    source: str,
    start: date,
    end: date,
    per_day: Dict[str, Dict[str, float]],
) -> SyncStepResult:
    """Upsert observed days, then gap-fill the remaining window days."""
    upserter = ResilientUpserter(LedgerStore(db))
    window = date_range_inclusive(start, end)
    window_keys = {d.isoformat() for d in window}

    rows: List[Dict[str, Any]] = []
    outside = 0
    for day_key in sorted(per_day):
        if day_key not in window_keys:
            outside += 1
            continue
        totals = per_day[day_key]
        purchases = int(round(totals.get("conversions", 0.0)))
        rows.append({
            "client_id": client_id,
            "date": date.fromisoformat(day_key),
            "source": source,
            "spend": round(totals.get("spend", 0.0), 2),
            "impressions": int(totals.get("impressions", 0)),
            "clicks": int(totals.get("clicks", 0)),
            "conversions": purchases,
            "orders": purchases,
            "revenue": round(totals.get("revenue", 0.0), 2),
        })

    report = upserter.upsert(DAILY_METRICS_TABLE, rows, DAILY_METRICS_KEY, value_fields=AD_VALUE_FIELDS)
    report.raise_for_failures()

    observed = {row["date"] for row in rows}
    gaps = upserter.gap_fill(
        DAILY_METRICS_TABLE,
        zero_rows(client_id, source, [d for d in window if d not in observed]),
        DAILY_METRICS_KEY,
    )
    gaps.raise_for_failures()

    total_spend = sum(row["spend"] for row in rows)
    logger.info(
        "[AD_SYNC] %s %s: %d days written, %d gaps filled, spend=%.2f",
        source, client_id, report.written, gaps.inserted_gaps, total_spend,
    )
    return SyncStepResult(
        days_written=report.written + gaps.inserted_gaps,
        rows_written=report.written + gaps.inserted_gaps,
        stats={
            "days_with_data": len(rows),
            "gaps_filled": gaps.inserted_gaps,
            "preserved_days": report.preserved,
            "rows_outside_window": outside,
            "total_spend": round(total_spend, 2),
        },
    )


async def sync_meta_spend(
    db: Session,
    client_id: str,
    start: date,
    end: date,
    *,
    client: MetaAdsClient,
    ad_account_id: str,
    settings: Settings,
) -> SyncStepResult:
    """Sync Meta account-level daily spend and purchases for one client.

    Raises:
        UpstreamFetchError: Meta API failures (status preserved)
        PersistenceError: Store failures
    """
    logger.info("[AD_SYNC] Starting Meta sync: client=%s, account=%s, %s..%s", client_id, ad_account_id, start, end)

    insights = await asyncio.to_thread(
        client.get_account_daily_insights,
        ad_account_id,
        start.isoformat(),
        end.isoformat(),
        settings.MAX_PAGES,
    )

    per_day: Dict[str, Dict[str, float]] = defaultdict(
        lambda: {"spend": 0.0, "impressions": 0.0, "clicks": 0.0, "conversions": 0.0, "revenue": 0.0}
    )
    for insight in insights:
        day_key = insight.get("date_start")
        if not day_key:
            continue
        totals = per_day[day_key]
        totals["spend"] += _f(insight.get("spend"))
        totals["impressions"] += _f(insight.get("impressions"))
        totals["clicks"] += _f(insight.get("clicks"))
        totals["conversions"] += pick_action_value(insight.get("actions"))
        totals["revenue"] += pick_action_value(insight.get("action_values"))

    return _write_ad_days(db, client_id, ProviderEnum.meta.value, start, end, per_day)


async def sync_google_spend(
    db: Session,
    client_id: str,
    start: date,
    end: date,
    *,
    client: GAdsClient,
    customer_id: str,
    settings: Settings,
) -> SyncStepResult:
    """Sync Google Ads customer-level daily spend for one client.

    Raises:
        UpstreamFetchError: Google Ads failures, including unparseable streams
        PersistenceError: Store failures
    """
    logger.info("[AD_SYNC] Starting Google sync: client=%s, customer=%s, %s..%s", client_id, customer_id, start, end)

    per_day = await asyncio.to_thread(
        client.fetch_daily_spend,
        customer_id,
        start,
        end,
        settings.MAX_PAGES,
    )
    return _write_ad_days(db, client_id, ProviderEnum.google.value, start, end, per_day)
