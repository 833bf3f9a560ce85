"""Integration tests for the idempotent upsert layer.

WHAT:
    Exercises ResilientUpserter against a real SQLite schema: last-write-wins
    overwrites, the zero-row guard, insert-if-absent gap filling and recovery
    from a destination that lacks a column.

WHY:
    Every sync step writes through this layer; re-runs must converge on the
    same rows and a drifted schema must never fail a whole batch.

REFERENCES:
    - profitledger/services/upsert.py
    - profitledger/services/ledger_store.py
"""

from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from profitledger.errors import PersistenceError
from profitledger.models import DailyMetric
from profitledger.services.ledger_store import LedgerStore
from profitledger.services.upsert import ResilientUpserter, UpsertReport

KEY = ("client_id", "date", "source")
D1 = date(2025, 3, 1)
D2 = date(2025, 3, 2)
D3 = date(2025, 3, 3)


def _row(day, revenue=0, orders=0, units=0, source="shopify", client_id="c1"):
    return {"client_id": client_id, "date": day, "source": source,
            "revenue": revenue, "orders": orders, "units": units}


def _metrics(session, client_id="c1"):
    return {
        (m.date, m.source): m
        for m in session.query(DailyMetric).filter(DailyMetric.client_id == client_id).all()
    }


class TestUpsert:
    """Insert-or-overwrite on the composite key."""

    def test_second_write_overwrites(self, test_db_session):
        upserter = ResilientUpserter(LedgerStore(test_db_session))

        upserter.upsert("daily_metrics", [_row(D1, 100, 2, 3)], KEY)
        report = upserter.upsert("daily_metrics", [_row(D1, 80, 1, 1)], KEY)

        assert report.written == 1 and report.ok
        rows = _metrics(test_db_session)
        assert len(rows) == 1
        assert float(rows[(D1, "shopify")].revenue) == 80
        assert rows[(D1, "shopify")].orders == 1

    def test_rerun_is_idempotent(self, test_db_session):
        upserter = ResilientUpserter(LedgerStore(test_db_session))
        batch = [_row(D1, 10, 1, 1), _row(D2, 20, 2, 2)]

        upserter.upsert("daily_metrics", batch, KEY)
        first = {k: (float(v.revenue), v.orders, v.units) for k, v in _metrics(test_db_session).items()}
        upserter.upsert("daily_metrics", batch, KEY)
        second = {k: (float(v.revenue), v.orders, v.units) for k, v in _metrics(test_db_session).items()}

        assert first == second
        assert len(second) == 2

    def test_sources_do_not_collide(self, test_db_session):
        upserter = ResilientUpserter(LedgerStore(test_db_session))

        upserter.upsert("daily_metrics", [_row(D1, 50, 1, 1)], KEY)
        upserter.upsert("daily_metrics", [{"client_id": "c1", "date": D1, "source": "meta", "spend": 12.5}], KEY)

        rows = _metrics(test_db_session)
        assert float(rows[(D1, "shopify")].revenue) == 50
        assert float(rows[(D1, "meta")].spend) == 12.5
        # Omitted metric columns fall back to the column default
        assert rows[(D1, "meta")].orders == 0

    def test_failing_row_does_not_block_the_batch(self, test_db_session):
        upserter = ResilientUpserter(LedgerStore(test_db_session))
        # revenue is NOT NULL
        batch = [_row(D1, 10, 1, 1), {**_row(D2), "revenue": None}, _row(D3, 30, 3, 3)]

        report = upserter.upsert("daily_metrics", batch, KEY)

        assert report.written == 2
        assert report.failed == 1
        assert len(report.errors) == 1
        assert not report.ok
        rows = _metrics(test_db_session)
        assert set(rows) == {(D1, "shopify"), (D3, "shopify")}
        assert float(rows[(D3, "shopify")].revenue) == 30

    def test_constraint_error_not_retried(self, test_db_session, monkeypatch):
        store = LedgerStore(test_db_session)
        calls = []

        def rejecting_upsert(table_name, row, key):
            calls.append(row)
            raise IntegrityError("INSERT INTO daily_metrics", {}, Exception("NOT NULL constraint failed"))

        monkeypatch.setattr(store, "upsert_row", rejecting_upsert)
        report = ResilientUpserter(store, max_attempts=3).upsert("daily_metrics", [_row(D1, 10, 1, 1)], KEY)

        assert len(calls) == 1
        assert report.failed == 1
        assert report.written == 0
        assert report.removed_fields == set()


class TestZeroRowGuard:
    """All-zero rows never erase a day with data."""

    def test_zero_row_preserves_existing_data(self, test_db_session):
        upserter = ResilientUpserter(LedgerStore(test_db_session))
        fields = ("revenue", "orders", "units")

        upserter.upsert("daily_metrics", [_row(D1, 120, 3, 4)], KEY, value_fields=fields)
        report = upserter.upsert("daily_metrics", [_row(D1)], KEY, value_fields=fields)

        assert report.preserved == 1
        assert report.written == 0
        assert float(_metrics(test_db_session)[(D1, "shopify")].revenue) == 120

    def test_zero_row_written_when_no_row_exists(self, test_db_session):
        upserter = ResilientUpserter(LedgerStore(test_db_session))

        report = upserter.upsert("daily_metrics", [_row(D1)], KEY, value_fields=("revenue", "orders", "units"))

        assert report.written == 1
        assert (D1, "shopify") in _metrics(test_db_session)

    def test_non_zero_row_overwrites_without_guard(self, test_db_session):
        upserter = ResilientUpserter(LedgerStore(test_db_session))
        fields = ("revenue", "orders", "units")

        upserter.upsert("daily_metrics", [_row(D1, 120, 3, 4)], KEY, value_fields=fields)
        upserter.upsert("daily_metrics", [_row(D1, 0, 1, 1)], KEY, value_fields=fields)

        row = _metrics(test_db_session)[(D1, "shopify")]
        assert float(row.revenue) == 0
        assert row.orders == 1

    def test_guard_read_failure_counts_row_as_failed(self, test_db_session, monkeypatch):
        store = LedgerStore(test_db_session)

        def broken_read(table_name, key_values):
            raise PersistenceError("Read from 'daily_metrics' failed: connection reset")

        monkeypatch.setattr(store, "get_row", broken_read)
        report = ResilientUpserter(store).upsert(
            "daily_metrics", [_row(D1), _row(D2, 10, 1, 1)], KEY, value_fields=("revenue", "orders", "units"),
        )

        assert report.failed == 1
        assert report.written == 1
        assert "connection reset" in report.errors[0]
        assert set(_metrics(test_db_session)) == {(D2, "shopify")}


class TestGapFill:
    def test_gap_fill_never_overwrites(self, test_db_session):
        upserter = ResilientUpserter(LedgerStore(test_db_session))
        upserter.upsert("daily_metrics", [_row(D1, 75, 1, 1)], KEY)

        report = upserter.gap_fill("daily_metrics", [_row(D1), _row(D2)], KEY)

        assert report.inserted_gaps == 1
        rows = _metrics(test_db_session)
        assert float(rows[(D1, "shopify")].revenue) == 75
        assert float(rows[(D2, "shopify")].revenue) == 0


class TestSchemaDrift:
    """Destinations missing a column still accept the rest of the row."""

    DDL = (
        "CREATE TABLE daily_metrics ("
        " id INTEGER PRIMARY KEY AUTOINCREMENT,"
        " client_id VARCHAR NOT NULL,"
        " date DATE NOT NULL,"
        " source VARCHAR NOT NULL,"
        " revenue NUMERIC(18, 4) NOT NULL DEFAULT 0,"
        " orders INTEGER NOT NULL DEFAULT 0,"
        " units INTEGER NOT NULL DEFAULT 0,"
        " spend NUMERIC(18, 4) NOT NULL DEFAULT 0,"
        " clicks INTEGER NOT NULL DEFAULT 0,"
        " impressions INTEGER NOT NULL DEFAULT 0,"
        " updated_at DATETIME,"
        " CONSTRAINT uq_daily_metrics_client_date_source UNIQUE (client_id, date, source))"
    )

    @pytest.fixture
    def drifted_session(self, test_db_engine):
        with test_db_engine.begin() as conn:
            conn.exec_driver_sql(self.DDL)
        session = sessionmaker(bind=test_db_engine, autoflush=False)()
        yield session
        session.close()

    def _ad_row(self, day):
        return {"client_id": "c1", "date": day, "source": "google",
                "spend": 9.5, "clicks": 3, "impressions": 40, "conversions": 2}

    def test_unsupported_field_dropped_before_write(self, drifted_session):
        upserter = ResilientUpserter(LedgerStore(drifted_session))

        report = upserter.upsert("daily_metrics", [self._ad_row(D1)], KEY)

        assert report.written == 1
        assert report.removed_fields == {"conversions"}
        rows = LedgerStore(drifted_session).scan("daily_metrics", "c1", D1, D1)
        assert len(rows) == 1
        assert float(rows[0]["spend"]) == 9.5
        assert "conversions" not in rows[0]

    def test_stale_capabilities_recovered_on_retry(self, drifted_session):
        store = LedgerStore(drifted_session)
        # Cached capabilities still advertise the dropped column
        store._capabilities["daily_metrics"] = frozenset(
            c.name for c in DailyMetric.__table__.columns
        )
        upserter = ResilientUpserter(store)

        report = upserter.upsert("daily_metrics", [self._ad_row(D1), self._ad_row(D2)], KEY)

        assert report.written == 2
        assert report.failed == 0
        assert "conversions" in report.removed_fields
        assert "conversions" not in store.supported_fields("daily_metrics")

    def test_drift_retries_exhausted(self, test_db_engine):
        # Destination lacks both clicks and conversions
        with test_db_engine.begin() as conn:
            conn.exec_driver_sql(self.DDL.replace(" clicks INTEGER NOT NULL DEFAULT 0,", ""))
        session = sessionmaker(bind=test_db_engine, autoflush=False)()
        try:
            store = LedgerStore(session)
            store._capabilities["daily_metrics"] = frozenset(
                c.name for c in DailyMetric.__table__.columns
            )
            upserter = ResilientUpserter(store, max_attempts=1)

            report = upserter.upsert("daily_metrics", [self._ad_row(D1)], KEY)

            assert report.failed == 1
            assert report.written == 0
            assert "schema-drift" in report.errors[0]
            assert store.scan("daily_metrics", "c1", D1, D1) == []
        finally:
            session.close()

    def test_missing_key_column_fails_row(self, drifted_session):
        upserter = ResilientUpserter(LedgerStore(drifted_session))

        report = upserter.upsert(
            "daily_metrics",
            [{"client_id": "c1", "date": D1, "source": "shopify", "region": "eu", "revenue": 1}],
            ("client_id", "date", "source", "region"),
        )

        assert report.failed == 1
        with pytest.raises(PersistenceError):
            report.raise_for_failures()


class TestUpsertReport:
    def test_merge_accumulates(self):
        a = UpsertReport(table="t", written=2, removed_fields={"x"})
        b = UpsertReport(table="t", written=1, failed=1, removed_fields={"y"}, errors=["boom"])

        a.merge(b)

        assert a.written == 3
        assert a.failed == 1
        assert a.removed_fields == {"x", "y"}
        assert not a.ok

    def test_raise_for_failures_returns_self_when_clean(self):
        report = UpsertReport(table="t", written=4)
        assert report.raise_for_failures() is report
