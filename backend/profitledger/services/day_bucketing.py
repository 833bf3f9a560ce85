"""Day bucketing for storefront and ad events.

WHAT:
    Maps timestamped events (orders, refunds) to calendar day keys in UTC or
    an IANA zone, builds the UTC bounds of zoned day windows, resolves the
    default sync window and accumulates refund-corrected daily revenue.

WHY:
    - Orders are bucketed by processedAt (createdAt only when processedAt is
      absent) so revenue lines up with the storefront's own sales reports.
    - Refunds are bucketed by the refund's creation time: a return lowers
      revenue on the day it happens, never retroactively on the sale day.
    - The zone offset is resolved at each event's instant (zoneinfo), so days
      straddling a DST change are bucketed correctly.

REFERENCES:
    - profitledger/services/storefront_sync_service.py (orders + refunds)
    - profitledger/services/line_item_sync_service.py (line items)
    - profitledger/services/sync_orchestrator.py (window defaulting)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Dict, Iterable, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from profitledger.errors import InvalidWindow

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30

DayLike = Union[str, date, None]
ZoneLike = Union[str, tzinfo, None]


# =============================================================================
# TIMESTAMPS AND ZONES
# =============================================================================

def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken as UTC. Malformed or empty input returns None.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def resolve_zone(tz: ZoneLike) -> tzinfo:
    """Return a tzinfo for an IANA name; unknown or empty names fall back to UTC."""
    if tz is None or tz == "" or tz == "UTC":
        return timezone.utc
    if isinstance(tz, tzinfo):
        return tz
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("[DAY_BUCKET] Unknown time zone %r, bucketing in UTC", tz)
        return timezone.utc


def bucket_event_day(
    processed_at: Optional[str],
    created_at: Optional[str] = None,
    tz: ZoneLike = "UTC",
) -> str:
    """Return the `YYYY-MM-DD` day an event belongs to, or "" if it has none.

    processed_at wins whenever present; created_at is only a fallback for an
    absent processed_at. A malformed winning stamp yields "" and the caller
    must skip the event.
    """
    stamp = processed_at or created_at
    dt = parse_timestamp(stamp)
    if dt is None:
        return ""
    return dt.astimezone(resolve_zone(tz)).date().isoformat()


def bucket_refund_day(created_at: Optional[str], tz: ZoneLike = "UTC") -> str:
    """Refunds land on the day they were created."""
    return bucket_event_day(None, created_at, tz)


def zoned_day_bounds_utc(start_day: date, end_day: date, tz: ZoneLike = "UTC") -> Tuple[datetime, datetime]:
    """UTC instants of `[start_day 00:00:00, end_day 23:59:59]` in zone `tz`."""
    zone = resolve_zone(tz)
    start_local = datetime.combine(start_day, time(0, 0, 0), tzinfo=zone)
    end_local = datetime.combine(end_day, time(23, 59, 59), tzinfo=zone)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def to_utc_iso(dt: datetime) -> str:
    """Format an aware datetime the way Shopify search filters expect."""
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# =============================================================================
# WINDOWS
# =============================================================================

def date_range_inclusive(start: date, end: date) -> List[date]:
    """All days from start to end inclusive; empty when start > end."""
    if start > end:
        return []
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def default_window(today: Optional[date] = None) -> Tuple[date, date]:
    """The 30 days ending yesterday (UTC). Today is partial and never ingested."""
    today = today or datetime.now(timezone.utc).date()
    end = today - timedelta(days=1)
    start = end - timedelta(days=DEFAULT_WINDOW_DAYS - 1)
    return start, end


def _parse_day(value: DayLike, label: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) != 10:
        raise InvalidWindow(f"Invalid {label} (expected YYYY-MM-DD): {value!r}")
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise InvalidWindow(f"Invalid {label} (expected YYYY-MM-DD): {value!r}") from exc


def parse_window(start: DayLike = None, end: DayLike = None, *, today: Optional[date] = None) -> Tuple[date, date]:
    """Resolve a sync window.

    Both bounds absent -> default window. One bound absent, a malformed bound
    or start > end -> InvalidWindow.
    """
    if not start and not end:
        return default_window(today)
    if not start or not end:
        raise InvalidWindow("Both start and end are required when either is given")

    start_day = _parse_day(start, "start")
    end_day = _parse_day(end, "end")
    if start_day > end_day:
        raise InvalidWindow(f"start {start_day} is after end {end_day}")
    return start_day, end_day


# =============================================================================
# REFUND-AWARE DAILY REVENUE
# =============================================================================

@dataclass
class DayTotals:
    """Storefront totals for one day."""

    day: date
    revenue: float = 0.0
    orders: int = 0
    units: int = 0


class DailyRevenueBuckets:
    """Accumulates orders and refunds into per-day revenue/orders/units.

    revenue(day) = sum(order totals bucketed to day) - sum(refunds created on day)

    Refunds are only counted when their instant lies within the window's UTC
    bounds; refunds from outside the window belong to another sync pass.
    """

    def __init__(self, start: date, end: date, tz: ZoneLike = "UTC", bounds_tz: ZoneLike = None):
        self.start = start
        self.end = end
        self.zone = resolve_zone(tz)
        self.window_start_utc, self.window_end_utc = zoned_day_bounds_utc(
            start, end, bounds_tz if bounds_tz is not None else self.zone
        )
        self._revenue: Dict[str, float] = {}
        self._orders: Dict[str, int] = {}
        self._units: Dict[str, int] = {}
        self._refunds: Dict[str, float] = {}
        self.orders_skipped = 0
        self.refunds_skipped = 0

    def add_order(
        self,
        processed_at: Optional[str],
        created_at: Optional[str],
        amount: float,
        units: int = 0,
        cancelled: bool = False,
    ) -> str:
        """Bucket one order; returns the day key or "" when skipped."""
        if cancelled:
            self.orders_skipped += 1
            return ""
        day = bucket_event_day(processed_at, created_at, self.zone)
        if not day:
            self.orders_skipped += 1
            return ""
        self._revenue[day] = self._revenue.get(day, 0.0) + float(amount or 0)
        self._orders[day] = self._orders.get(day, 0) + 1
        self._units[day] = self._units.get(day, 0) + int(units or 0)
        return day

    def add_refund(self, created_at: Optional[str], amount: float) -> str:
        """Bucket one refund on its own creation day; returns the day or ""."""
        amount = float(amount or 0)
        instant = parse_timestamp(created_at)
        if instant is None or amount <= 0:
            self.refunds_skipped += 1
            return ""
        if instant < self.window_start_utc or instant > self.window_end_utc:
            self.refunds_skipped += 1
            return ""
        day = instant.astimezone(self.zone).date().isoformat()
        self._refunds[day] = self._refunds.get(day, 0.0) + amount
        return day

    @property
    def gross_sales(self) -> float:
        return sum(self._revenue.values())

    @property
    def total_refunds(self) -> float:
        return sum(self._refunds.values())

    def rows(self, days: Optional[Iterable[date]] = None) -> List[DayTotals]:
        """Per-day totals for every day of the window, zeros included."""
        out = []
        for day in days if days is not None else date_range_inclusive(self.start, self.end):
            key = day.isoformat()
            out.append(DayTotals(
                day=day,
                revenue=self._revenue.get(key, 0.0) - self._refunds.get(key, 0.0),
                orders=self._orders.get(key, 0),
                units=self._units.get(key, 0),
            ))
        return out
