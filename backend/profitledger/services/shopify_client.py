"""Shopify GraphQL Admin API client.

WHAT:
    Wrapper for the Shopify Admin GraphQL API with:
    - Rate limiting (2 requests/second) and 429/throttle retries
    - Cursor-based pagination with a hard page bound
    - Queries for orders, refunds, order line items, inventory unit costs and
      the shop's time zone

WHY:
    Encapsulates all Shopify traffic for the storefront and line-item sync
    steps. HTTP-level and GraphQL-level errors are reported distinctly through
    ShopifyAPIError.status_code (None for GraphQL errors).

REFERENCES:
    - Shopify GraphQL Admin API: https://shopify.dev/docs/api/admin-graphql
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-graphql
"""

import asyncio
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from profitledger.errors import UpstreamFetchError

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-07"

# Shopify allows 2 requests/second for regular apps
RATE_LIMIT_DELAY = 0.5

# nodes(ids:) accepts at most 250 ids; 75 keeps query cost low
UNIT_COST_CHUNK_SIZE = 75

PageFetcher = Callable[[Optional[str]], Awaitable[Tuple[List[Dict[str, Any]], Optional[str]]]]


class ShopifyAPIError(UpstreamFetchError):
    """Shopify HTTP or GraphQL error."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message, status_code=status_code or 502, provider="shopify", errors=errors)
        self.http_status = status_code


def gid_to_id(gid: Optional[str], kind: str) -> Optional[int]:
    """`gid://shopify/InventoryItem/123` -> 123 (None when absent or another kind)."""
    if not gid:
        return None
    match = re.search(rf"{kind}/(\d+)", gid)
    return int(match.group(1)) if match else None


def money(node: Optional[Dict[str, Any]]) -> float:
    """Amount of a `*Set { shopMoney { amount } }` node, 0.0 when missing."""
    try:
        return float(((node or {}).get("shopMoney") or {}).get("amount") or 0)
    except (TypeError, ValueError):
        return 0.0


async def collect_pages(
    fetch_page: PageFetcher,
    *,
    max_pages: int,
    throttle_seconds: float = 0.0,
    label: str = "pages",
) -> List[Dict[str, Any]]:
    """Follow a cursor until exhausted.

    Raises:
        ShopifyAPIError: When more than `max_pages` pages would be fetched, so a
            pagination loop terminates even if the cursor never does.
    """
    items: List[Dict[str, Any]] = []
    cursor: Optional[str] = None
    pages = 0
    while True:
        page, cursor = await fetch_page(cursor)
        pages += 1
        items.extend(page)
        if not cursor:
            break
        if pages >= max_pages:
            raise ShopifyAPIError(f"Too many pages while fetching {label} (safety stop after {pages})")
        if throttle_seconds > 0:
            await asyncio.sleep(throttle_seconds)
    logger.debug("[SHOPIFY_CLIENT] Collected %d %s over %d pages", len(items), label, pages)
    return items


class ShopifyClient:
    """GraphQL client for the Shopify Admin API.

    Usage:
        client = ShopifyClient(shop_domain="mystore.myshopify.com", access_token="shpat_xxx")
        tz = await client.get_shop_timezone()
        orders, cursor = await client.get_orders_page(query)
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 30.0,
    ):
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}/graphql.json"

        self._last_request_time: float = 0

        logger.info(f"[SHOPIFY_CLIENT] Initialized for {shop_domain} (API version: {api_version})")

    async def _rate_limit(self) -> None:
        """Wait if needed to respect the 2 req/sec limit."""
        elapsed = time.time() - self._last_request_time
        if elapsed < RATE_LIMIT_DELAY:
            await asyncio.sleep(RATE_LIMIT_DELAY - elapsed)
        self._last_request_time = time.time()

    async def execute(
        self,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
        retries: int = 3,
    ) -> Dict[str, Any]:
        """Execute a GraphQL query with rate limiting and retries.

        Raises:
            ShopifyAPIError: HTTP errors carry the status; GraphQL errors do not
        """
        await self._rate_limit()

        headers = {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        last_error: Optional[Exception] = None
        last_status: Optional[int] = None

        for attempt in range(retries):
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.base_url, json=payload, headers=headers)

                    if response.status_code == 429:
                        retry_after = float(response.headers.get("Retry-After", 2))
                        last_status = 429
                        logger.warning(
                            f"[SHOPIFY_CLIENT] Rate limited, waiting {retry_after}s (attempt {attempt + 1}/{retries})"
                        )
                        await asyncio.sleep(retry_after)
                        continue

                    response.raise_for_status()
                    data = response.json()

                    if "errors" in data:
                        errors = data["errors"]
                        if isinstance(errors, str):
                            errors = [{"message": errors}]
                        error_messages = [e.get("message", str(e)) for e in errors]
                        logger.error(f"[SHOPIFY_CLIENT] GraphQL errors: {error_messages}")

                        if any("throttled" in msg.lower() for msg in error_messages):
                            logger.warning("[SHOPIFY_CLIENT] Throttled, waiting 2s")
                            await asyncio.sleep(2)
                            continue

                        raise ShopifyAPIError(
                            f"GraphQL errors: {', '.join(error_messages)}",
                            errors=errors,
                        )

                    return data.get("data") or {}

            except httpx.HTTPStatusError as e:
                last_error = e
                last_status = e.response.status_code
                logger.warning(
                    f"[SHOPIFY_CLIENT] HTTP error {e.response.status_code} (attempt {attempt + 1}/{retries})"
                )
                # Auth/permission/validation errors will not improve on retry
                if e.response.status_code in (400, 401, 403, 404):
                    break
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[SHOPIFY_CLIENT] Request error: {e} (attempt {attempt + 1}/{retries})")
                if attempt < retries - 1:
                    await asyncio.sleep(1 * (attempt + 1))

        raise ShopifyAPIError(f"Failed after {retries} attempts: {last_error or 'rate limited'}", status_code=last_status)

    # =========================================================================
    # SHOP
    # =========================================================================

    async def get_shop_timezone(self) -> str:
        """IANA time zone of the shop, 'UTC' when not reported."""
        data = await self.execute("query ShopTZ { shop { ianaTimezone } }")
        return ((data.get("shop") or {}).get("ianaTimezone")) or "UTC"

    # =========================================================================
    # ORDERS AND REFUNDS
    # =========================================================================

    async def get_orders_page(
        self,
        search: str,
        cursor: Optional[str] = None,
        limit: int = 200,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Orders matching a search filter with totals and line quantities.

        Returns:
            Tuple of (order nodes, next_cursor or None if last page)
        """
        query = """
        query OrdersProcessed($first: Int!, $after: String, $query: String!) {
            orders(first: $first, after: $after, query: $query, sortKey: PROCESSED_AT) {
                pageInfo { hasNextPage endCursor }
                edges {
                    node {
                        id
                        processedAt
                        createdAt
                        cancelledAt
                        sourceName
                        totalPriceSet { shopMoney { amount } }
                        lineItems(first: 250) { edges { node { quantity } } }
                    }
                }
            }
        }
        """
        data = await self.execute(query, {"first": limit, "after": cursor, "query": search})
        return self._page(data.get("orders"))

    async def get_refunds_page(
        self,
        search: str,
        cursor: Optional[str] = None,
        limit: int = 200,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Orders updated in a window with their refunds (refunds carry their own createdAt)."""
        query = """
        query OrdersUpdated($first: Int!, $after: String, $query: String!) {
            orders(first: $first, after: $after, query: $query, sortKey: UPDATED_AT) {
                pageInfo { hasNextPage endCursor }
                edges {
                    node {
                        id
                        updatedAt
                        sourceName
                        refunds {
                            createdAt
                            totalRefundedSet { shopMoney { amount } }
                        }
                    }
                }
            }
        }
        """
        data = await self.execute(query, {"first": limit, "after": cursor, "query": search})
        return self._page(data.get("orders"))

    async def get_line_items_page(
        self,
        search: str,
        cursor: Optional[str] = None,
        limit: int = 50,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """Orders with line-level quantity, discounted total and inventory item."""
        query = """
        query OrdersWithLineItems($first: Int!, $after: String, $query: String!) {
            orders(first: $first, after: $after, query: $query, sortKey: PROCESSED_AT) {
                pageInfo { hasNextPage endCursor }
                edges {
                    node {
                        id
                        createdAt
                        processedAt
                        cancelledAt
                        sourceName
                        lineItems(first: 250) {
                            edges {
                                node {
                                    quantity
                                    sku
                                    discountedTotalSet { shopMoney { amount currencyCode } }
                                    variant { id inventoryItem { id } }
                                }
                            }
                        }
                    }
                }
            }
        }
        """
        data = await self.execute(query, {"first": limit, "after": cursor, "query": search})
        return self._page(data.get("orders"))

    @staticmethod
    def _page(conn: Optional[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        conn = conn or {}
        nodes = [edge.get("node") for edge in conn.get("edges") or [] if edge.get("node")]
        page_info = conn.get("pageInfo") or {}
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return nodes, next_cursor

    # =========================================================================
    # UNIT COSTS
    # =========================================================================

    async def get_inventory_unit_costs(
        self,
        inventory_item_ids: List[int],
        throttle_seconds: float = 0.0,
    ) -> Dict[int, Tuple[Optional[float], Optional[str]]]:
        """Unit cost (amount, currency) per inventory item id, fetched in chunks of 75.

        Items without a cost map to (None, None).
        """
        query = """
        query InventoryItemCosts($ids: [ID!]!) {
            nodes(ids: $ids) {
                __typename
                ... on InventoryItem {
                    id
                    unitCost { amount currencyCode }
                }
            }
        }
        """
        ids = sorted({int(i) for i in inventory_item_ids if i})
        costs: Dict[int, Tuple[Optional[float], Optional[str]]] = {}

        for start in range(0, len(ids), UNIT_COST_CHUNK_SIZE):
            chunk = ids[start:start + UNIT_COST_CHUNK_SIZE]
            gids = [f"gid://shopify/InventoryItem/{i}" for i in chunk]
            data = await self.execute(query, {"ids": gids})
            for node in data.get("nodes") or []:
                if not node or node.get("__typename") != "InventoryItem":
                    continue
                inv_id = gid_to_id(node.get("id"), "InventoryItem")
                if inv_id is None:
                    continue
                unit_cost = node.get("unitCost") or {}
                try:
                    amount = float(unit_cost["amount"]) if unit_cost.get("amount") is not None else None
                except (TypeError, ValueError):
                    amount = None
                costs[inv_id] = (amount, unit_cost.get("currencyCode"))
            if throttle_seconds > 0:
                await asyncio.sleep(throttle_seconds)

        logger.info(
            "[SHOPIFY_CLIENT] Unit costs: requested=%d fetched=%d with_cost=%d",
            len(ids), len(costs), sum(1 for a, _ in costs.values() if a is not None),
        )
        return costs
