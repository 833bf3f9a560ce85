"""Idempotent, schema-tolerant upserts.

WHAT:
    Writes day-keyed rows through LedgerStore with:
    - insert-or-overwrite on the composite key (last write wins)
    - capability negotiation: fields the destination does not support are
      dropped before writing; a write that still fails triggers a capability
      refresh, and a field the refreshed schema no longer has is removed and
      the write retried (bounded by MAX_DRIFT_ATTEMPTS)
    - zero-row guard: an all-zero row never overwrites a row that has data
    - gap_fill(): insert-if-absent, never overwrites anything
    - per-row success/failure accounting (UpsertReport)

WHY:
    Environments drift (a column added in one database but not another). The
    schema is asked, not guessed from error text. Zero rows are how gaps are
    represented; they must never erase a real day that a backfill or an
    earlier sync wrote.

REFERENCES:
    - profitledger/services/ledger_store.py
    - profitledger/errors.py (SchemaDriftError, PersistenceError)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy.exc import SQLAlchemyError

from profitledger.errors import PersistenceError, SchemaDriftError
from profitledger.services.ledger_store import LedgerStore, stamp_updated_at

logger = logging.getLogger(__name__)

MAX_DRIFT_ATTEMPTS = 8


@dataclass
class UpsertReport:
    """Per-row outcome counts for one batch."""

    table: str
    written: int = 0
    inserted_gaps: int = 0
    preserved: int = 0
    failed: int = 0
    removed_fields: Set[str] = field(default_factory=set)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def raise_for_failures(self) -> "UpsertReport":
        """Escalate any failed row to PersistenceError for the whole batch."""
        if self.failed:
            raise PersistenceError(
                f"{self.table}: {self.failed} row(s) failed: {'; '.join(self.errors[:3])}"
            )
        return self

    def merge(self, other: "UpsertReport") -> "UpsertReport":
        self.written += other.written
        self.inserted_gaps += other.inserted_gaps
        self.preserved += other.preserved
        self.failed += other.failed
        self.removed_fields |= other.removed_fields
        self.errors.extend(other.errors)
        return self


def _is_zero(value: Any) -> bool:
    if value is None:
        return True
    try:
        return float(value) == 0
    except (TypeError, ValueError):
        return False


class ResilientUpserter:
    """Row-at-a-time writer with drift recovery.

    Each row is its own unit of work (commit on success, rollback on failure),
    so a failure mid-batch leaves earlier rows written and is reported for the
    failing row only.
    """

    def __init__(self, store: LedgerStore, max_attempts: int = MAX_DRIFT_ATTEMPTS):
        self.store = store
        self.session = store.session
        self.max_attempts = max_attempts

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def upsert(
        self,
        table_name: str,
        rows: Iterable[Dict[str, Any]],
        key: Sequence[str],
        *,
        value_fields: Optional[Sequence[str]] = None,
    ) -> UpsertReport:
        """Insert-or-overwrite every row.

        Args:
            table_name: Destination table
            rows: Row dicts including the key fields
            key: Composite conflict key
            value_fields: When set, rows whose value fields are all zero do not
                overwrite an existing row with any non-zero value field

        Returns:
            UpsertReport with per-row counts
        """
        report = UpsertReport(table=table_name)
        for row in rows:
            if value_fields:
                try:
                    erase = self._would_erase(table_name, row, key, value_fields)
                except PersistenceError as exc:
                    self.session.rollback()
                    self._record_failure(report, row, key, exc)
                    continue
                if erase:
                    report.preserved += 1
                    continue
            self._write(table_name, row, key, report, insert_only=False)

        self._log(report, "upsert")
        return report

    def gap_fill(self, table_name: str, rows: Iterable[Dict[str, Any]], key: Sequence[str]) -> UpsertReport:
        """Insert rows only where no row exists for the key."""
        report = UpsertReport(table=table_name)
        for row in rows:
            self._write(table_name, row, key, report, insert_only=True)

        self._log(report, "gap_fill")
        return report

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _would_erase(self, table_name: str, row: Dict[str, Any], key: Sequence[str], value_fields: Sequence[str]) -> bool:
        if not all(_is_zero(row.get(name)) for name in value_fields):
            return False
        existing = self.store.get_row(table_name, {k: row[k] for k in key})
        if existing is None:
            return False
        return any(not _is_zero(existing.get(name)) for name in value_fields)

    def _write(
        self,
        table_name: str,
        row: Dict[str, Any],
        key: Sequence[str],
        report: UpsertReport,
        *,
        insert_only: bool,
    ) -> None:
        try:
            inserted = self._write_with_drift_recovery(table_name, row, key, report, insert_only)
        except PersistenceError as exc:
            self._record_failure(report, row, key, exc)
            return

        if insert_only:
            if inserted:
                report.inserted_gaps += 1
        else:
            report.written += 1

    @staticmethod
    def _record_failure(report: UpsertReport, row: Dict[str, Any], key: Sequence[str], exc: PersistenceError) -> None:
        report.failed += 1
        report.errors.append(str(exc))
        logger.error(
            "[UPSERT] %s row %s failed: %s",
            report.table, {k: row.get(k) for k in key}, exc,
        )

    def _write_with_drift_recovery(
        self,
        table_name: str,
        row: Dict[str, Any],
        key: Sequence[str],
        report: UpsertReport,
        insert_only: bool,
    ) -> bool:
        payload = self._negotiate(table_name, row, key, report)

        for attempt in range(1, self.max_attempts + 1):
            try:
                if insert_only:
                    inserted = self.store.insert_if_absent(table_name, payload, key)
                else:
                    self.store.upsert_row(table_name, payload, key)
                    inserted = True
                self.session.commit()
                return inserted
            except SQLAlchemyError as exc:
                self.session.rollback()
                error = self._classify(table_name, payload, key, exc)
                if not isinstance(error, SchemaDriftError):
                    raise error from exc
                logger.warning(
                    "[UPSERT] %s: dropping '%s' and retrying (attempt %d/%d)",
                    table_name, error.field, attempt, self.max_attempts,
                )
                payload = {k: v for k, v in payload.items() if k != error.field}
                report.removed_fields.add(error.field)

        raise PersistenceError(
            f"{table_name}: write still rejected after {self.max_attempts} schema-drift attempts"
        )

    def _negotiate(self, table_name: str, row: Dict[str, Any], key: Sequence[str], report: UpsertReport) -> Dict[str, Any]:
        """Drop fields the destination does not advertise; key fields are mandatory."""
        supported = self.store.supported_fields(table_name)
        missing_key = [k for k in key if k not in supported]
        if missing_key:
            raise PersistenceError(f"{table_name}: key columns missing from schema: {missing_key}")

        unsupported = [name for name in row if name not in supported]
        if unsupported:
            logger.info("[UPSERT] %s: skipping unsupported fields %s", table_name, unsupported)
            report.removed_fields.update(unsupported)
        payload = {k: v for k, v in row.items() if k in supported}
        return stamp_updated_at(payload, supported)

    def _classify(self, table_name: str, payload: Dict[str, Any], key: Sequence[str], exc: SQLAlchemyError) -> Exception:
        """SchemaDriftError when the refreshed schema lacks a sent field, else PersistenceError."""
        try:
            supported = self.store.refresh_capabilities(table_name)
        except PersistenceError as refresh_exc:
            return refresh_exc
        for name in payload:
            if name not in supported and name not in key:
                return SchemaDriftError(table_name, name)
        return PersistenceError(f"{table_name}: write failed: {exc}")

    @staticmethod
    def _log(report: UpsertReport, op: str) -> None:
        level = logging.INFO if report.ok else logging.WARNING
        logger.log(
            level,
            "[UPSERT] %s %s: written=%d gaps=%d preserved=%d failed=%d removed=%s",
            op, report.table, report.written, report.inserted_gaps,
            report.preserved, report.failed, sorted(report.removed_fields),
        )
