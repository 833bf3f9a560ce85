"""Integration tests for the storefront revenue sync.

WHAT:
    Runs sync_storefront_revenue against a fake Shopify client and a real
    SQLite schema.

WHY:
    Covers refund day placement, shop-zone bucketing, the age guard, the
    zero-row guard and gap-filling after a failed fetch.

REFERENCES:
    - profitledger/services/storefront_sync_service.py
    - profitledger/tests/conftest.py (FakeShopifyClient, make_order)
"""

import asyncio
from datetime import date

import pytest

from profitledger.deps import Settings
from profitledger.models import DailyMetric
from profitledger.services.cost_allocation import CostSettings
from profitledger.services.shopify_client import ShopifyAPIError
from profitledger.services.storefront_sync_service import sync_storefront_revenue
from profitledger.tests.conftest import FakeShopifyClient, make_order

START = date(2025, 4, 10)
END = date(2025, 4, 12)
TODAY = date(2025, 4, 20)


def _run(db, client, settings, **kwargs):
    kwargs.setdefault("today", TODAY)
    return asyncio.run(
        sync_storefront_revenue(db, "c1", kwargs.pop("start", START), kwargs.pop("end", END),
                                client=client, settings=settings, **kwargs)
    )


def _revenue_by_day(db):
    return {
        m.date: float(m.revenue)
        for m in db.query(DailyMetric).filter_by(client_id="c1", source="shopify").all()
    }


def test_refund_lands_on_refund_day(test_db_session, settings) -> None:
    """A later refund lowers that day, and the window total is gross minus refunds."""
    order = make_order(
        "2025-04-10T15:00:00Z", 100.0,
        lines=[(1, 2, 100.0)],
        refunds=[("2025-04-12T09:30:00Z", 30.0)],
    )
    client = FakeShopifyClient(orders=[order])

    result = _run(test_db_session, client, settings)

    revenue = _revenue_by_day(test_db_session)
    assert revenue[date(2025, 4, 10)] == pytest.approx(100.0)
    assert revenue[date(2025, 4, 11)] == pytest.approx(0.0)
    assert revenue[date(2025, 4, 12)] == pytest.approx(-30.0)
    assert sum(revenue.values()) == pytest.approx(70.0)
    assert result.days_written == 3
    assert result.stats["gross_sales"] == pytest.approx(100.0)
    assert result.stats["total_refunds"] == pytest.approx(30.0)

    day = test_db_session.query(DailyMetric).filter_by(client_id="c1", date=date(2025, 4, 10)).one()
    assert day.orders == 1
    assert day.units == 2


def test_refund_outside_window_ignored(test_db_session, settings) -> None:
    order = make_order("2025-04-10T12:00:00Z", 80.0, refunds=[("2025-04-15T00:00:01Z", 80.0)])
    client = FakeShopifyClient(orders=[order])

    result = _run(test_db_session, client, settings)

    assert _revenue_by_day(test_db_session)[date(2025, 4, 10)] == pytest.approx(80.0)
    assert result.stats["refunds_skipped"] == 1


def test_search_filters_use_window_bounds(test_db_session, settings) -> None:
    client = FakeShopifyClient(orders=[])

    _run(test_db_session, client, settings)

    assert client.searches[0] == (
        "processed_at:>=2025-04-10T00:00:00Z processed_at:<=2025-04-12T23:59:59Z status:any"
    )
    assert client.searches[1].startswith("updated_at:>=2025-04-10T00:00:00Z")


def test_processed_at_wins_over_created_at(test_db_session, settings) -> None:
    order = make_order("2025-04-11T10:00:00Z", 40.0, created_at="2025-04-10T23:00:00Z")
    client = FakeShopifyClient(orders=[order])

    _run(test_db_session, client, settings)

    revenue = _revenue_by_day(test_db_session)
    assert revenue[date(2025, 4, 11)] == pytest.approx(40.0)
    assert revenue[date(2025, 4, 10)] == pytest.approx(0.0)


def test_shop_timezone_bucketing(test_db_session) -> None:
    """02:00 UTC on the 11th is still the 10th in New York."""
    settings = Settings(SHOPIFY_THROTTLE_MS=0, SHOPIFY_BUCKET_TZ="shop", MAX_PAGES=5)
    order = make_order("2025-04-11T02:00:00Z", 55.0)
    client = FakeShopifyClient(orders=[order], timezone="America/New_York")

    result = _run(test_db_session, client, settings)

    revenue = _revenue_by_day(test_db_session)
    assert revenue[date(2025, 4, 10)] == pytest.approx(55.0)
    assert revenue[date(2025, 4, 11)] == pytest.approx(0.0)
    assert result.stats["bucket_timezone"] == "America/New_York"
    # Window bounds are the shop's midnight expressed in UTC (EDT = UTC-4)
    assert "processed_at:>=2025-04-10T04:00:00Z" in client.searches[0]


def test_pos_orders_excluded_when_configured(test_db_session, settings) -> None:
    orders = [
        make_order("2025-04-10T10:00:00Z", 30.0),
        make_order("2025-04-10T11:00:00Z", 70.0, source_name="pos"),
    ]
    client = FakeShopifyClient(orders=orders)

    result = _run(test_db_session, client, settings, cost_settings=CostSettings(exclude_pos_orders=True))

    assert _revenue_by_day(test_db_session)[date(2025, 4, 10)] == pytest.approx(30.0)
    assert result.stats["pos_orders_skipped"] == 1


def test_empty_refetch_preserves_existing_day(test_db_session, settings) -> None:
    test_db_session.add(DailyMetric(client_id="c1", date=date(2025, 4, 11), source="shopify",
                                    revenue=250, orders=3, units=4))
    test_db_session.commit()
    client = FakeShopifyClient(orders=[])

    result = _run(test_db_session, client, settings)

    assert _revenue_by_day(test_db_session)[date(2025, 4, 11)] == pytest.approx(250.0)
    assert result.stats["preserved_days"] == 1


def test_window_older_than_limit_is_skipped(test_db_session, settings) -> None:
    client = FakeShopifyClient(orders=[make_order("2025-04-10T10:00:00Z", 10.0)])

    result = _run(test_db_session, client, settings, today=date(2025, 8, 1))

    assert result.skipped
    assert client.searches == []
    assert _revenue_by_day(test_db_session) == {}


def test_force_fetches_old_window(test_db_session, settings) -> None:
    client = FakeShopifyClient(orders=[make_order("2025-04-10T10:00:00Z", 10.0)])

    result = _run(test_db_session, client, settings, today=date(2025, 8, 1), force=True)

    assert not result.skipped
    assert _revenue_by_day(test_db_session)[date(2025, 4, 10)] == pytest.approx(10.0)


def test_fetch_failure_gap_fills_then_raises(test_db_session, settings) -> None:
    test_db_session.add(DailyMetric(client_id="c1", date=date(2025, 4, 10), source="shopify",
                                    revenue=99, orders=1, units=1))
    test_db_session.commit()
    client = FakeShopifyClient(fail_with=ShopifyAPIError("Shopify unavailable", status_code=503))

    with pytest.raises(ShopifyAPIError) as exc_info:
        _run(test_db_session, client, settings, fill_zeros=True)

    assert exc_info.value.status_code == 503
    revenue = _revenue_by_day(test_db_session)
    assert revenue == {
        date(2025, 4, 10): pytest.approx(99.0),
        date(2025, 4, 11): pytest.approx(0.0),
        date(2025, 4, 12): pytest.approx(0.0),
    }


def test_fetch_failure_without_fill_zeros_writes_nothing(test_db_session, settings) -> None:
    client = FakeShopifyClient(fail_with=ShopifyAPIError("Shopify unavailable", status_code=503))

    with pytest.raises(ShopifyAPIError):
        _run(test_db_session, client, settings)

    assert _revenue_by_day(test_db_session) == {}


def test_page_bound_stops_runaway_pagination(test_db_session, settings) -> None:
    orders = [make_order("2025-04-10T10:00:00Z", 1.0) for _ in range(settings.MAX_PAGES + 1)]
    client = FakeShopifyClient(orders=orders, page_size=1)

    with pytest.raises(ShopifyAPIError, match="Too many pages"):
        _run(test_db_session, client, settings)


def test_pagination_within_bound(test_db_session, settings) -> None:
    orders = [make_order("2025-04-10T10:00:00Z", 1.0) for _ in range(settings.MAX_PAGES)]
    client = FakeShopifyClient(orders=orders, refund_orders=[], page_size=1)

    result = _run(test_db_session, client, settings)

    assert result.stats["orders_fetched"] == settings.MAX_PAGES
    assert _revenue_by_day(test_db_session)[date(2025, 4, 10)] == pytest.approx(5.0)


def test_cancelled_orders_ignored(test_db_session, settings) -> None:
    orders = [
        make_order("2025-04-10T10:00:00Z", 30.0),
        make_order("2025-04-10T11:00:00Z", 70.0, cancelled_at="2025-04-10T12:00:00Z"),
    ]
    client = FakeShopifyClient(orders=orders)

    result = _run(test_db_session, client, settings)

    day = test_db_session.query(DailyMetric).filter_by(client_id="c1", date=date(2025, 4, 10)).one()
    assert float(day.revenue) == pytest.approx(30.0)
    assert day.orders == 1
    assert result.stats["orders_skipped"] == 1
