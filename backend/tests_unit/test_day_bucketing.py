"""Unit tests for day bucketing and window resolution.

WHAT:
    Pins which calendar day an order or refund lands on (UTC and zoned,
    across a DST change), the UTC bounds of zoned windows and the rules of
    parse_window/default_window.

WHY:
    A one-hour offset error moves revenue between days and shows up as a
    reporting discrepancy that is very hard to trace back.

REFERENCES:
    - profitledger/services/day_bucketing.py
"""

from datetime import date, datetime, timezone

import pytest

from profitledger.errors import InvalidWindow
from profitledger.services.day_bucketing import (
    DailyRevenueBuckets,
    bucket_event_day,
    bucket_refund_day,
    date_range_inclusive,
    default_window,
    parse_timestamp,
    parse_window,
    resolve_zone,
    to_utc_iso,
    zoned_day_bounds_utc,
)

NY = "America/New_York"


# =============================================================================
# EVENT DAYS
# =============================================================================

def test_processed_at_wins_over_created_at() -> None:
    assert bucket_event_day("2025-04-11T01:00:00Z", "2025-04-09T23:00:00Z") == "2025-04-11"


def test_created_at_used_only_when_processed_absent() -> None:
    assert bucket_event_day(None, "2025-04-09T23:00:00Z") == "2025-04-09"
    assert bucket_event_day("", "2025-04-09T23:00:00Z") == "2025-04-09"


def test_malformed_timestamp_yields_empty_day() -> None:
    assert bucket_event_day("not-a-date", "2025-04-09T23:00:00Z") == ""
    assert bucket_event_day(None, None) == ""


def test_offsets_are_normalized_to_utc() -> None:
    assert bucket_event_day("2025-04-10T23:30:00-02:00") == "2025-04-11"


def test_zoned_bucketing_across_dst_start() -> None:
    # 2025-03-09 02:00 local is the spring-forward instant in New York
    assert bucket_event_day("2025-03-09T04:30:00Z", tz=NY) == "2025-03-08"
    # EDT (UTC-4) already applies here; a fixed EST offset would say 03-09
    assert bucket_event_day("2025-03-10T04:30:00Z", tz=NY) == "2025-03-10"


def test_refund_day_is_its_own_creation_day() -> None:
    assert bucket_refund_day("2025-04-12T10:00:00Z") == "2025-04-12"
    assert bucket_refund_day("2025-04-12T02:00:00Z", NY) == "2025-04-11"


def test_parse_timestamp_naive_is_utc() -> None:
    assert parse_timestamp("2025-04-10T12:00:00") == datetime(2025, 4, 10, 12, tzinfo=timezone.utc)
    assert parse_timestamp(12345) is None


def test_unknown_zone_falls_back_to_utc() -> None:
    assert resolve_zone("Mars/Olympus_Mons") is timezone.utc
    assert resolve_zone(None) is timezone.utc


# =============================================================================
# WINDOWS
# =============================================================================

def test_zoned_bounds_on_dst_day() -> None:
    start, end = zoned_day_bounds_utc(date(2025, 3, 9), date(2025, 3, 9), NY)

    assert to_utc_iso(start) == "2025-03-09T05:00:00Z"
    assert to_utc_iso(end) == "2025-03-10T03:59:59Z"


def test_utc_bounds() -> None:
    start, end = zoned_day_bounds_utc(date(2025, 4, 10), date(2025, 4, 12))

    assert to_utc_iso(start) == "2025-04-10T00:00:00Z"
    assert to_utc_iso(end) == "2025-04-12T23:59:59Z"


def test_date_range_inclusive() -> None:
    assert date_range_inclusive(date(2025, 2, 27), date(2025, 3, 1)) == [
        date(2025, 2, 27), date(2025, 2, 28), date(2025, 3, 1),
    ]
    assert date_range_inclusive(date(2025, 3, 2), date(2025, 3, 1)) == []


def test_default_window_ends_yesterday() -> None:
    assert default_window(date(2025, 4, 20)) == (date(2025, 3, 21), date(2025, 4, 19))


def test_parse_window_defaults_when_both_absent() -> None:
    assert parse_window(None, None, today=date(2025, 4, 20)) == (date(2025, 3, 21), date(2025, 4, 19))


def test_parse_window_accepts_strings_and_dates() -> None:
    assert parse_window("2025-04-10", date(2025, 4, 12)) == (date(2025, 4, 10), date(2025, 4, 12))
    assert parse_window("2025-04-10", "2025-04-10") == (date(2025, 4, 10), date(2025, 4, 10))


@pytest.mark.parametrize("start,end", [
    ("2025-04-10", None),
    (None, "2025-04-10"),
    ("2025-4-1", "2025-04-10"),
    ("2025-13-01", "2025-13-02"),
    ("2025-04-12", "2025-04-10"),
])
def test_parse_window_rejects(start, end) -> None:
    with pytest.raises(InvalidWindow):
        parse_window(start, end)


# =============================================================================
# DAILY REVENUE
# =============================================================================

def test_revenue_buckets_apply_refunds_on_refund_day() -> None:
    buckets = DailyRevenueBuckets(date(2025, 4, 10), date(2025, 4, 12))
    buckets.add_order("2025-04-10T12:00:00Z", None, 100, units=2)
    buckets.add_order("2025-04-12T08:00:00Z", None, 40, units=1)
    buckets.add_refund("2025-04-12T09:00:00Z", 30)

    rows = {r.day.isoformat(): r for r in buckets.rows()}

    assert rows["2025-04-10"].revenue == 100
    assert rows["2025-04-11"].revenue == 0
    assert rows["2025-04-11"].orders == 0
    assert rows["2025-04-12"].revenue == 10
    assert rows["2025-04-12"].orders == 1
    assert buckets.gross_sales == 140
    assert buckets.total_refunds == 30


def test_revenue_buckets_skip_bad_input() -> None:
    buckets = DailyRevenueBuckets(date(2025, 4, 10), date(2025, 4, 12))

    assert buckets.add_order(None, None, 50) == ""
    assert buckets.add_order("2025-04-10T12:00:00Z", None, 50, cancelled=True) == ""
    assert buckets.add_refund("2025-04-11T00:00:00Z", 0) == ""
    assert buckets.add_refund("2025-04-13T00:00:00Z", 5) == ""
    assert buckets.add_refund("2025-04-09T23:59:59Z", 5) == ""

    assert buckets.orders_skipped == 2
    assert buckets.refunds_skipped == 3
    assert all(r.revenue == 0 for r in buckets.rows())


def test_revenue_buckets_zoned() -> None:
    buckets = DailyRevenueBuckets(date(2025, 4, 10), date(2025, 4, 10), tz=NY)

    # 02:00Z is still the previous evening in New York
    assert buckets.add_order("2025-04-10T02:00:00Z", None, 10) == "2025-04-09"
    assert buckets.add_refund("2025-04-11T02:00:00Z", 5) == "2025-04-10"
    assert buckets.rows()[0].revenue == -5
