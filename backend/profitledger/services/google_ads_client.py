"""Google Ads client service abstraction.

WHAT:
    Encapsulates Google Ads API usage behind a small, testable service layer:
    GAQL streaming with a page bound, retries on transient errors, rate
    limiting, and the customer-level daily spend query used by the ledger.

WHY:
    - Keep SDK specifics (GAQL, micros, proto-plus rows) out of the sync step
    - Testability: the SDK client is injectable, tests pass a fake with
      get_service("GoogleAdsService").search_stream(...)
    - Quota exhaustion surfaces as UpstreamFetchError(429) instead of being
      retried for minutes

REFERENCES:
    - profitledger/services/ad_spend_sync_service.py (consumer)
    - https://developers.google.com/google-ads/api/docs/query/overview
"""

from __future__ import annotations

import logging
import random
import re
import time
from collections import defaultdict
from datetime import date
from typing import Any, Dict, List, Optional

from google.ads.googleads.client import GoogleAdsClient as _SdkClient
from google.ads.googleads.errors import GoogleAdsException
from google.api_core.exceptions import GoogleAPICallError

from profitledger.errors import UpstreamFetchError

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class QuotaExhaustedError(UpstreamFetchError):
    """Google Ads quota exhausted (429) with Google's retry hint."""

    def __init__(self, message: str, retry_seconds: int = 600):
        super().__init__(message, status_code=429, provider="google")
        self.retry_seconds = retry_seconds


def _extract_retry_seconds(error_str: str) -> Optional[int]:
    """Parse "Retry in 723 seconds" hints out of an error message."""
    match = re.search(r'[Rr]etry in (\d+) seconds', error_str)
    if match:
        return int(match.group(1))
    return None


class GoogleAdsRateLimiter:
    """Simple token bucket rate limiter.

    WHAT:
        Guard outgoing requests to honor QPS/quota. Defaults are conservative.
    WHY:
        Avoid RESOURCE_EXHAUSTED errors and smooth out bursts.
    """

    def __init__(self, capacity: int = 15, refill_per_sec: float = 5.0) -> None:
        self.capacity = capacity
        self.tokens = capacity
        self.refill_per_sec = refill_per_sec
        self.last = time.monotonic()

    def acquire(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last
        self.last = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_sec)
        if self.tokens < 1:
            missing = 1 - self.tokens
            time.sleep(max(0.0, missing / self.refill_per_sec))
            self.tokens = 0
        self.tokens = max(0.0, self.tokens - 1)


def _with_retries(func):
    """Retry decorator with exponential backoff and jitter.

    Transient errors (UNAVAILABLE, INTERNAL, RST_STREAM) are retried up to 3
    times. Quota exhaustion is never retried beyond a short (< 2 min) hint and
    raises QuotaExhaustedError. Anything else becomes UpstreamFetchError.
    """

    def wrapper(self, *args, **kwargs):  # type: ignore
        max_attempts = 3
        base = 1.0
        for attempt in range(1, max_attempts + 1):
            try:
                return func(self, *args, **kwargs)
            except (GoogleAdsException, GoogleAPICallError) as e:
                error_str = str(e)

                is_quota_exhausted = (
                    'RESOURCE_EXHAUSTED' in error_str or
                    'Too many requests' in error_str or
                    'quota' in error_str.lower()
                )
                if is_quota_exhausted:
                    retry_seconds = _extract_retry_seconds(error_str)
                    if retry_seconds and retry_seconds <= 120 and attempt < max_attempts:
                        logger.info(
                            "[GOOGLE_ADS] Quota warning (attempt %d/%d), waiting %ds",
                            attempt, max_attempts, retry_seconds
                        )
                        time.sleep(retry_seconds)
                        continue
                    logger.warning("[GOOGLE_ADS] Quota exhausted, retry hint %ss", retry_seconds)
                    raise QuotaExhaustedError(
                        f"Google Ads quota exhausted: {error_str[:200]}",
                        retry_seconds=retry_seconds or 600,
                    ) from e

                transient = any(k in error_str for k in ('UNAVAILABLE', 'INTERNAL', 'RST_STREAM', 'deadline exceeded'))
                if not transient or attempt == max_attempts:
                    raise UpstreamFetchError(
                        f"Google Ads request failed: {error_str[:300]}", provider="google"
                    ) from e

                sleep_s = min(base * (2 ** (attempt - 1)) * (1 + random.random()), 30.0)
                logger.info(
                    "[GOOGLE_ADS] Transient error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt, max_attempts, sleep_s, error_str[:100]
                )
                time.sleep(sleep_s)
    return wrapper


def normalize_customer_id(customer_id: Optional[str]) -> str:
    """Digits only ("123-456-7890" -> "1234567890")."""
    return "".join(ch for ch in str(customer_id or "") if ch.isdigit())


class GAdsClient:
    """Testable wrapper around the Google Ads Python SDK."""

    def __init__(self, client: Any, rate_limiter: Optional[GoogleAdsRateLimiter] = None) -> None:
        self._client = client
        self._ga_service = None
        self._rate = rate_limiter or GoogleAdsRateLimiter()

    # --- Client factory -------------------------------------------------
    @classmethod
    def from_tokens(
        cls,
        refresh_token: str,
        developer_token: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        login_customer_id: Optional[str] = None,
    ) -> "GAdsClient":
        """Build an SDK client from a stored refresh token plus app credentials.

        Raises:
            ValueError: When the developer/app credentials are not configured
        """
        if not developer_token or not client_id or not client_secret:
            raise ValueError(
                "Missing required Google Ads settings: GOOGLE_DEVELOPER_TOKEN, GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET"
            )

        # Only a valid 10-digit manager id is passed; otherwise the SDK rejects the config
        login_customer_id = normalize_customer_id(login_customer_id) or None
        if login_customer_id and len(login_customer_id) != 10:
            login_customer_id = None

        config = {
            "developer_token": developer_token,
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            # google-ads >= 21 requires explicit use_proto_plus
            "use_proto_plus": True,
        }
        if login_customer_id:
            config["login_customer_id"] = login_customer_id

        return cls(_SdkClient.load_from_dict(config))

    # --- Low-level GAQL -------------------------------------------------
    def _service(self):
        if self._ga_service is None:
            self._ga_service = self._client.get_service("GoogleAdsService")
        return self._ga_service

    @_with_retries
    def search_stream_batches(self, customer_id: str, query: str, max_pages: int = 200) -> List[List[Any]]:
        """Streaming GAQL results, one list of rows per server batch.

        Raises:
            UpstreamFetchError: When more than `max_pages` batches arrive
        """
        self._rate.acquire()
        stream = self._service().search_stream(customer_id=customer_id, query=query)
        batches: List[List[Any]] = []
        for batch in stream:
            if len(batches) >= max_pages:
                raise UpstreamFetchError(
                    f"Too many Google Ads result pages for {customer_id} (safety stop after {max_pages})",
                    provider="google",
                )
            batches.append(list(getattr(batch, "results", []) or []))
        return batches

    # --- Ledger queries -------------------------------------------------
    def fetch_daily_spend(
        self,
        customer_id: str,
        start: date,
        end: date,
        max_pages: int = 200,
    ) -> Dict[str, Dict[str, float]]:
        """Customer-level daily totals keyed by YYYY-MM-DD.

        Returns:
            {day: {"spend", "impressions", "clicks", "conversions", "revenue"}}

        Raises:
            UpstreamFetchError: API failures, page bound exceeded, or a
                non-empty stream none of whose rows could be parsed
        """
        cid = normalize_customer_id(customer_id)
        q = (
            "SELECT segments.date, metrics.cost_micros, metrics.impressions, metrics.clicks, "
            "metrics.conversions, metrics.conversions_value "
            "FROM customer "
            f"WHERE segments.date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}'"
        )
        batches = self.search_stream_batches(cid, q, max_pages=max_pages)

        totals: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"spend": 0.0, "impressions": 0.0, "clicks": 0.0, "conversions": 0.0, "revenue": 0.0}
        )
        seen = 0
        parsed = 0
        for rows in batches:
            for r in rows:
                seen += 1
                m = getattr(r, "metrics", None)
                d = getattr(getattr(r, "segments", None), "date", None)
                if m is None or not d:
                    continue
                day = totals[str(d)]
                # Normalize spend from micros to standard units
                day["spend"] += (getattr(m, "cost_micros", 0) or 0) / 1_000_000.0
                day["impressions"] += int(getattr(m, "impressions", 0) or 0)
                day["clicks"] += int(getattr(m, "clicks", 0) or 0)
                day["conversions"] += float(getattr(m, "conversions", 0.0) or 0.0)
                day["revenue"] += float(getattr(m, "conversions_value", 0.0) or 0.0)
                parsed += 1

        if seen and not parsed:
            raise UpstreamFetchError(
                f"Google Ads returned {seen} rows for {cid} but none could be parsed", provider="google"
            )

        logger.info("[GOOGLE_ADS] %s: %d rows over %d batches -> %d days", cid, parsed, len(batches), len(totals))
        return dict(totals)
