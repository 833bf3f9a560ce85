"""Unit tests for Google Ads client service.

WHAT:
    Validate the daily spend query, micros conversion, the page bound and
    error mapping without the real SDK transport.

WHY:
    The sync step trusts these totals verbatim; parsing and failure modes
    must be pinned down.

REFERENCES:
    profitledger/services/google_ads_client.py
"""

from datetime import date
import types
from unittest.mock import patch

import pytest
from google.api_core.exceptions import InternalServerError, ResourceExhausted

from profitledger.errors import UpstreamFetchError
from profitledger.services.google_ads_client import (
    GAdsClient,
    QuotaExhaustedError,
    _extract_retry_seconds,
    normalize_customer_id,
)


class _FakeService:
    def __init__(self, batches=None, error=None, fail_times=0):
        self._batches = batches or []
        self._error = error
        self._fail_times = fail_times
        self.calls = []

    def search_stream(self, customer_id, query):
        self.calls.append((customer_id, query))
        if self._error is not None and len(self.calls) <= self._fail_times:
            raise self._error
        # Return batches with `.results` to simulate streaming
        return [types.SimpleNamespace(results=rows) for rows in self._batches]


class _FakeClient:
    def __init__(self, service):
        self._service = service

    def get_service(self, name):  # noqa: ARG002
        return self._service


def _mk_row(day, cost_micros, impressions=0, clicks=0, conversions=0.0, value=0.0):
    # Build a nested SimpleNamespace mock similar to SDK rows
    return types.SimpleNamespace(
        segments=types.SimpleNamespace(date=day),
        metrics=types.SimpleNamespace(
            cost_micros=cost_micros,
            impressions=impressions,
            clicks=clicks,
            conversions=conversions,
            conversions_value=value,
        ),
    )


def test_normalize_customer_id():
    assert normalize_customer_id("123-456-7890") == "1234567890"
    assert normalize_customer_id(None) == ""


def test_extract_retry_seconds():
    assert _extract_retry_seconds("Quota exceeded. Retry in 723 seconds.") == 723
    assert _extract_retry_seconds("no hint") is None


def test_fetch_daily_spend_sums_batches():
    service = _FakeService(batches=[
        [_mk_row("2025-04-10", 12_500_000, 100, 4, 1.5, 60.0)],
        [_mk_row("2025-04-10", 2_500_000, 20, 1), _mk_row("2025-04-11", 1_000_000)],
    ])
    client = GAdsClient(client=_FakeClient(service))

    totals = client.fetch_daily_spend("123-456-7890", date(2025, 4, 10), date(2025, 4, 11))

    assert totals["2025-04-10"]["spend"] == pytest.approx(15.0)
    assert totals["2025-04-10"]["impressions"] == 120
    assert totals["2025-04-10"]["clicks"] == 5
    assert totals["2025-04-10"]["conversions"] == pytest.approx(1.5)
    assert totals["2025-04-10"]["revenue"] == pytest.approx(60.0)
    assert totals["2025-04-11"]["spend"] == pytest.approx(1.0)
    customer_id, query = service.calls[0]
    assert customer_id == "1234567890"
    assert "FROM customer" in query
    assert "BETWEEN '2025-04-10' AND '2025-04-11'" in query


def test_empty_stream_is_not_an_error():
    client = GAdsClient(client=_FakeClient(_FakeService(batches=[])))

    assert client.fetch_daily_spend("1234567890", date(2025, 4, 10), date(2025, 4, 10)) == {}


def test_unparseable_rows_raise():
    bad = types.SimpleNamespace(segments=None, metrics=None)
    client = GAdsClient(client=_FakeClient(_FakeService(batches=[[bad, bad]])))

    with pytest.raises(UpstreamFetchError, match="none could be parsed"):
        client.fetch_daily_spend("1234567890", date(2025, 4, 10), date(2025, 4, 10))


def test_page_bound_enforced():
    batches = [[_mk_row("2025-04-10", 1)] for _ in range(4)]
    client = GAdsClient(client=_FakeClient(_FakeService(batches=batches)))

    with pytest.raises(UpstreamFetchError, match="Too many Google Ads result pages"):
        client.fetch_daily_spend("1234567890", date(2025, 4, 10), date(2025, 4, 10), max_pages=3)


def test_quota_exhaustion_raises_429():
    service = _FakeService(error=ResourceExhausted("RESOURCE_EXHAUSTED. Retry in 900 seconds."), fail_times=5)
    client = GAdsClient(client=_FakeClient(service))

    with pytest.raises(QuotaExhaustedError) as exc_info:
        client.fetch_daily_spend("1234567890", date(2025, 4, 10), date(2025, 4, 10))

    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_seconds == 900
    assert len(service.calls) == 1


@patch("profitledger.services.google_ads_client.time.sleep")
def test_transient_error_retried(mock_sleep):
    service = _FakeService(
        batches=[[_mk_row("2025-04-10", 3_000_000)]],
        error=InternalServerError("INTERNAL error"),
        fail_times=1,
    )
    client = GAdsClient(client=_FakeClient(service))

    totals = client.fetch_daily_spend("1234567890", date(2025, 4, 10), date(2025, 4, 10))

    assert totals["2025-04-10"]["spend"] == pytest.approx(3.0)
    assert len(service.calls) == 2
    mock_sleep.assert_called_once()


def test_from_tokens_requires_app_credentials():
    with pytest.raises(ValueError, match="GOOGLE_DEVELOPER_TOKEN"):
        GAdsClient.from_tokens("refresh", None, "client-id", "secret")
