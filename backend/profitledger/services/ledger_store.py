"""Ledger store: composite-key writes and range scans over SQLAlchemy.

WHAT:
    The persistence collaborator of the pipeline. Exposes:
    - supported_fields(): the columns the live destination table actually has
      (capability read from the database, cached per store)
    - upsert_row(): insert-or-overwrite on a composite key
    - insert_if_absent(): insert-only, never touches an existing row
    - get_row() / scan(): point and date-range reads

WHY:
    - Writes are built against a lightweight table made of the row's own keys,
      so a column that the live schema lacks is never sent implicitly (ORM
      defaults would otherwise add every mapped column to the INSERT).
    - PostgreSQL (production) and SQLite (tests/dev) share the same
      ON CONFLICT semantics through their dialect-specific insert().

REFERENCES:
    - profitledger/services/upsert.py (drift recovery and zero-row guard)
    - profitledger/models.py (unique constraints used as conflict targets)
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from sqlalchemy import and_, column, inspect, select, table
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.orm import Session

from profitledger.errors import PersistenceError
from profitledger.models import Base

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class LedgerStore:
    """SQLAlchemy-backed store for ledger tables.

    The store never commits on its own; ResilientUpserter and the services own
    the unit of work.
    """

    def __init__(self, session: Session):
        self.session = session
        self._capabilities: Dict[str, FrozenSet[str]] = {}

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def supported_fields(self, table_name: str) -> FrozenSet[str]:
        """Columns present in the live destination table (cached)."""
        cached = self._capabilities.get(table_name)
        if cached is not None:
            return cached
        try:
            columns = inspect(self.session.connection()).get_columns(table_name)
        except NoSuchTableError as exc:
            raise PersistenceError(f"Table '{table_name}' does not exist") from exc
        fields = frozenset(c["name"] for c in columns)
        self._capabilities[table_name] = fields
        logger.debug("[LEDGER_STORE] Capabilities for %s: %s", table_name, sorted(fields))
        return fields

    def refresh_capabilities(self, table_name: str) -> FrozenSet[str]:
        """Drop the cached column set and read it again from the database."""
        self._capabilities.pop(table_name, None)
        return self.supported_fields(table_name)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _dialect_insert(self):
        name = self.session.get_bind().dialect.name
        insert = _INSERT_BY_DIALECT.get(name)
        if insert is None:
            raise PersistenceError(f"Upserts are not supported on dialect '{name}'")
        return insert

    @staticmethod
    def _write_table(table_name: str, fields: Sequence[str]):
        """Lightweight table for exactly `fields`, typed from the model when known."""
        mapped = Base.metadata.tables.get(table_name)
        cols = []
        for name in fields:
            if mapped is not None and name in mapped.c:
                cols.append(column(name, mapped.c[name].type))
            else:
                cols.append(column(name))
        return table(table_name, *cols)

    def upsert_row(self, table_name: str, row: Dict[str, Any], key: Sequence[str]) -> None:
        """Insert the row or overwrite every non-key field of the existing one."""
        insert = self._dialect_insert()
        target = self._write_table(table_name, list(row.keys()))
        stmt = insert(target).values(**row)
        update_fields = {name: stmt.excluded[name] for name in row if name not in key}
        if update_fields:
            stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=update_fields)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=list(key))
        self.session.execute(stmt)

    def insert_if_absent(self, table_name: str, row: Dict[str, Any], key: Sequence[str]) -> bool:
        """Insert only when no row has this key. Returns True when inserted."""
        insert = self._dialect_insert()
        target = self._write_table(table_name, list(row.keys()))
        stmt = insert(target).values(**row).on_conflict_do_nothing(index_elements=list(key))
        result = self.session.execute(stmt)
        return bool(result.rowcount)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _mapped(self, table_name: str):
        mapped = Base.metadata.tables.get(table_name)
        if mapped is None:
            raise PersistenceError(f"Unknown ledger table '{table_name}'")
        return mapped

    def get_row(self, table_name: str, key_values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Fetch one row by its composite key, restricted to supported columns."""
        mapped = self._mapped(table_name)
        supported = self.supported_fields(table_name)
        cols = [c for c in mapped.c if c.name in supported]
        stmt = select(*cols).where(and_(*[mapped.c[k] == v for k, v in key_values.items()]))
        try:
            found = self.session.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Read from '{table_name}' failed: {exc}") from exc
        return dict(found) if found is not None else None

    def scan(
        self,
        table_name: str,
        client_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        date_column: str = "date",
        **filters: Any,
    ) -> List[Dict[str, Any]]:
        """Rows for one client with `start <= date_column <= end`, plus filters.

        A list/tuple/set filter value becomes an IN clause. Without bounds the
        whole client slice is returned (e.g. unit costs).
        """
        mapped = self._mapped(table_name)
        supported = self.supported_fields(table_name)
        cols = [c for c in mapped.c if c.name in supported]
        conditions = [mapped.c.client_id == client_id]
        if start is not None:
            conditions.append(mapped.c[date_column] >= start)
        if end is not None:
            conditions.append(mapped.c[date_column] <= end)
        for name, value in filters.items():
            if isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(mapped.c[name].in_(list(value)))
            else:
                conditions.append(mapped.c[name] == value)
        stmt = select(*cols).where(and_(*conditions))
        if date_column in mapped.c:
            stmt = stmt.order_by(mapped.c[date_column])
        try:
            return [dict(r) for r in self.session.execute(stmt).mappings().all()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Scan of '{table_name}' failed: {exc}") from exc


def stamp_updated_at(row: Dict[str, Any], supported: FrozenSet[str]) -> Dict[str, Any]:
    """Add updated_at when the destination tracks it."""
    if "updated_at" in supported and "updated_at" not in row:
        return {**row, "updated_at": datetime.utcnow()}
    return row
