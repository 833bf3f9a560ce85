"""Pytest configuration for ledger integration tests

WHAT: Provides shared fixtures for store, service and orchestrator tests
WHY: Ensures consistent test setup, database isolation and fake upstream clients
REFERENCES:
    - profitledger/models.py: Ledger schema
    - profitledger/database.py: Engine construction
    - profitledger/services/sync_orchestrator.py: SyncDependencies
"""

import os
from typing import Any, Dict, Generator, List, Optional, Tuple

import pytest
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before settings are read
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")

from profitledger.deps import Settings  # noqa: E402
from profitledger.models import Base  # noqa: E402
from profitledger.security import TokenCipher  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite engine shared by every connection of one test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def test_db_schema(test_db_engine):
    """Create all ledger tables."""
    Base.metadata.create_all(bind=test_db_engine)
    yield test_db_engine
    Base.metadata.drop_all(bind=test_db_engine)


@pytest.fixture
def test_db_session(test_db_schema) -> Generator[Session, None, None]:
    """Session over the full schema, rolled back after the test."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_schema)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings & Security Fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    """Settings with no throttling so fake paginated fetches run instantly."""
    return Settings(
        DATABASE_URL="sqlite:///:memory:",
        CRON_SECRET="test-cron-secret",
        SHOPIFY_THROTTLE_MS=0,
        SHOPIFY_MAX_DAYS_BACK=60,
        SHOPIFY_BUCKET_TZ="UTC",
        MAX_PAGES=5,
        REQUIRED_PROVIDERS=["shopify"],
    )


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(Fernet.generate_key().decode("utf-8"))


# ============================================================================
# Fake Upstream Clients
# ============================================================================

def money_set(amount: float, currency: str = "USD") -> Dict[str, Any]:
    return {"shopMoney": {"amount": f"{amount:.2f}", "currencyCode": currency}}


def make_order(
    processed_at: Optional[str],
    total: float,
    *,
    created_at: Optional[str] = None,
    lines: Optional[List[Tuple[int, int, float]]] = None,
    source_name: str = "web",
    cancelled_at: Optional[str] = None,
    refunds: Optional[List[Tuple[str, float]]] = None,
) -> Dict[str, Any]:
    """Order node as returned by the Admin API.

    lines: (inventory_item_id, quantity, discounted line total)
    refunds: (created_at, refunded amount)
    """
    edges = []
    for inv_id, qty, line_total in lines or []:
        edges.append({
            "node": {
                "quantity": qty,
                "sku": f"SKU-{inv_id}",
                "discountedTotalSet": money_set(line_total),
                "variant": {
                    "id": f"gid://shopify/ProductVariant/{inv_id + 1000}",
                    "inventoryItem": {"id": f"gid://shopify/InventoryItem/{inv_id}"},
                },
            }
        })
    return {
        "id": "gid://shopify/Order/1",
        "processedAt": processed_at,
        "createdAt": created_at or processed_at,
        "cancelledAt": cancelled_at,
        "sourceName": source_name,
        "totalPriceSet": money_set(total),
        "lineItems": {"edges": edges},
        "refunds": [
            {"createdAt": stamp, "totalRefundedSet": money_set(amount)}
            for stamp, amount in refunds or []
        ],
    }


class FakeShopifyClient:
    """In-memory stand-in for ShopifyClient.

    Orders are served in pages of `page_size`; `fail_with` makes every order
    fetch raise.
    """

    def __init__(
        self,
        orders: Optional[List[Dict[str, Any]]] = None,
        refund_orders: Optional[List[Dict[str, Any]]] = None,
        unit_costs: Optional[Dict[int, Tuple[Optional[float], str]]] = None,
        timezone: str = "UTC",
        page_size: int = 50,
        fail_with: Optional[Exception] = None,
    ):
        self.orders = orders or []
        self.refund_orders = refund_orders if refund_orders is not None else self.orders
        self.unit_costs = unit_costs or {}
        self.timezone = timezone
        self.page_size = page_size
        self.fail_with = fail_with
        self.searches: List[str] = []
        self.cost_requests: List[List[int]] = []

    def _paged(self, nodes, cursor):
        offset = int(cursor or 0)
        page = nodes[offset:offset + self.page_size]
        nxt = offset + self.page_size
        return page, (str(nxt) if nxt < len(nodes) else None)

    async def get_shop_timezone(self) -> str:
        return self.timezone

    async def get_orders_page(self, search, cursor=None, limit=200):
        self.searches.append(search)
        if self.fail_with is not None:
            raise self.fail_with
        return self._paged(self.orders, cursor)

    async def get_refunds_page(self, search, cursor=None, limit=200):
        self.searches.append(search)
        if self.fail_with is not None:
            raise self.fail_with
        return self._paged(self.refund_orders, cursor)

    async def get_line_items_page(self, search, cursor=None, limit=50):
        self.searches.append(search)
        if self.fail_with is not None:
            raise self.fail_with
        return self._paged(self.orders, cursor)

    async def get_inventory_unit_costs(self, inventory_item_ids, throttle_seconds=0.0):
        self.cost_requests.append(list(inventory_item_ids))
        return {i: self.unit_costs[i] for i in inventory_item_ids if i in self.unit_costs}


class FakeMetaClient:
    """Stand-in for MetaAdsClient returning canned daily insight rows."""

    def __init__(self, insights: Optional[List[Dict[str, Any]]] = None, fail_with: Optional[Exception] = None):
        self.insights = insights or []
        self.fail_with = fail_with
        self.calls: List[tuple] = []

    def get_account_daily_insights(self, ad_account_id, start_date, end_date, max_pages=200, page_size=500):
        self.calls.append((ad_account_id, start_date, end_date, max_pages))
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.insights)


class FakeGoogleClient:
    """Stand-in for GAdsClient returning canned per-day totals."""

    def __init__(self, per_day: Optional[Dict[str, Dict[str, float]]] = None, fail_with: Optional[Exception] = None):
        self.per_day = per_day or {}
        self.fail_with = fail_with
        self.calls: List[tuple] = []

    def fetch_daily_spend(self, customer_id, start, end, max_pages=200):
        self.calls.append((customer_id, start, end, max_pages))
        if self.fail_with is not None:
            raise self.fail_with
        return dict(self.per_day)
