"""Meta Ads API client.

WHAT:
    Wrapper for the Facebook Business SDK that fetches account-level daily
    insights (spend, impressions, clicks, purchase actions) for one ad account.

WHY:
    - One account-level call per window instead of one per ad keeps the sync
      inside Meta's 200 calls/hour budget
    - Each client gets its own FacebookAdsApi instance; nothing is installed as
      the SDK's process-wide default, so concurrent jobs never share a token
    - SDK errors are mapped to UpstreamFetchError with the HTTP status

DEPENDENCIES:
    - facebook_business SDK

RATE LIMITS:
    - 200 API calls per hour per ad account (@rate_limit)

REFERENCES:
    - profitledger/services/ad_spend_sync_service.py (consumer)
    - https://developers.facebook.com/docs/marketing-api/insights
"""

import logging
from collections import deque
from functools import wraps
from time import sleep, time
from typing import Any, Dict, List, Optional

from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.adsinsights import AdsInsights
from facebook_business.api import FacebookAdsApi
from facebook_business.exceptions import FacebookRequestError
from facebook_business.session import FacebookSession

from profitledger.errors import UpstreamFetchError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500


def rate_limit(calls_per_hour: int):
    """Decorator to enforce rate limiting using a sliding window.

    Tracks call timestamps in a deque and sleeps when the next call would
    exceed `calls_per_hour`.
    """
    call_times = deque(maxlen=calls_per_hour)

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            now = time()

            # Remove calls older than 1 hour
            while call_times and call_times[0] < now - 3600:
                call_times.popleft()

            if len(call_times) >= calls_per_hour:
                sleep_time = 3600 - (now - call_times[0]) + 1
                logger.warning(
                    f"[META_CLIENT] Rate limit reached ({calls_per_hour} calls/hour). "
                    f"Sleeping for {sleep_time:.1f}s"
                )
                sleep(sleep_time)

            call_times.append(now)
            return func(*args, **kwargs)
        return wrapper
    return decorator


class MetaAdsClientError(UpstreamFetchError):
    """Meta Marketing API error; status_code carries the HTTP status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code, provider="meta")


class MetaAdsClient:
    """Client for Meta Marketing API insights.

    Usage:
        client = MetaAdsClient(access_token="EAAB...")
        rows = client.get_account_daily_insights("act_123", "2025-01-01", "2025-01-31")
    """

    def __init__(
        self,
        access_token: str,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        api_version: Optional[str] = None,
    ):
        # System user tokens do not need app credentials
        session = FacebookSession(app_id=app_id, app_secret=app_secret, access_token=access_token)
        self.api = FacebookAdsApi(session, api_version=api_version)

        logger.info("[META_CLIENT] Initialized with access token (api_version=%s)", api_version or "sdk default")

    @staticmethod
    def normalize_account_id(ad_account_id: str) -> str:
        """Meta expects the `act_` prefix on ad account ids."""
        ad_account_id = str(ad_account_id).strip()
        return ad_account_id if ad_account_id.startswith("act_") else f"act_{ad_account_id}"

    @rate_limit(calls_per_hour=200)
    def get_account_daily_insights(
        self,
        ad_account_id: str,
        start_date: str,
        end_date: str,
        max_pages: int = 200,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> List[Dict[str, Any]]:
        """Fetch account-level insights with one row per day.

        Args:
            ad_account_id: Ad account id, with or without `act_`
            start_date: Start date in YYYY-MM-DD format
            end_date: End date in YYYY-MM-DD format
            max_pages: Safety bound on cursor pages
            page_size: Rows requested per page

        Returns:
            List of insight dicts with date_start, spend, impressions, clicks,
            actions, action_values

        Raises:
            MetaAdsClientError: On API errors or when the page bound is exceeded
        """
        account_id = self.normalize_account_id(ad_account_id)
        logger.info(f"[META_CLIENT] Fetching daily account insights: {account_id}, {start_date} to {end_date}")

        fields = [
            AdsInsights.Field.date_start,
            AdsInsights.Field.date_stop,
            AdsInsights.Field.spend,
            AdsInsights.Field.impressions,
            AdsInsights.Field.clicks,
            AdsInsights.Field.actions,
            AdsInsights.Field.action_values,
            AdsInsights.Field.account_currency,
        ]
        params = {
            "level": "account",
            "time_increment": 1,
            "time_range": {"since": start_date, "until": end_date},
            "limit": page_size,
        }
        max_rows = max_pages * page_size

        try:
            account = AdAccount(account_id, api=self.api)
            # The cursor follows paging.next transparently while iterated
            result = []
            for insight in account.get_insights(fields=fields, params=params):
                result.append(dict(insight))
                if len(result) > max_rows:
                    raise MetaAdsClientError(
                        f"Too many insight pages for {account_id} (safety stop after {max_pages})"
                    )
        except FacebookRequestError as e:
            self._handle_api_error(e, f"fetching account insights for {account_id}")

        logger.info(f"[META_CLIENT] Fetched {len(result)} daily insight rows")
        return result

    def _handle_api_error(self, error: FacebookRequestError, context: str) -> None:
        """Translate a FacebookRequestError into MetaAdsClientError.

        Raises:
            MetaAdsClientError: Always; 401/403/400/429 keep their status, any
                other failure maps to 502
        """
        error_code = error.api_error_code()
        error_message = error.api_error_message()
        http_status = error.http_status()

        logger.error(
            f"[META_CLIENT] API error while {context}: "
            f"HTTP {http_status}, Code {error_code}, Message: {error_message}"
        )

        if http_status == 401:
            raise MetaAdsClientError(
                f"Authentication failed while {context}. Token may be expired or invalid.", 401
            ) from error
        if http_status == 403:
            raise MetaAdsClientError(f"Permission denied while {context}. Check token permissions.", 403) from error
        if http_status == 400:
            raise MetaAdsClientError(f"Invalid request while {context}: {error_message}", 400) from error
        if http_status == 429:
            raise MetaAdsClientError(f"Rate limit exceeded while {context}", 429) from error
        raise MetaAdsClientError(f"API error while {context}: HTTP {http_status}, {error_message}", 502) from error
