"""Pipeline error taxonomy.

WHAT:
    Exceptions shared by the sync steps, the upsert layer and the HTTP/worker
    surfaces.

WHY:
    Callers distinguish caller errors (Unauthorized, InvalidWindow) from step
    failures (UpstreamFetchError, PersistenceError) by type instead of by
    message text. SchemaDriftError never leaves the upsert layer: it is either
    recovered by dropping the field or escalated to PersistenceError.

REFERENCES:
    - profitledger/services/upsert.py (drift recovery)
    - profitledger/services/sync_orchestrator.py (error -> step outcome)
    - profitledger/main.py (error -> HTTP status)
"""

from typing import Any, List, Optional


class ProfitLedgerError(Exception):
    """Base class for all pipeline errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class Unauthorized(ProfitLedgerError):
    """Missing or invalid credential for the pipeline invocation itself."""

    status_code = 401


class InvalidWindow(ProfitLedgerError):
    """Malformed, partial or inverted date window."""

    status_code = 400


class UpstreamFetchError(ProfitLedgerError):
    """Network, HTTP or API-level error from an event source (includes 429)."""

    status_code = 502

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
        errors: Optional[List[Any]] = None,
    ):
        super().__init__(message, status_code)
        self.provider = provider
        self.errors = errors or []


class NotConnected(UpstreamFetchError):
    """A required provider has no credential for this client."""

    status_code = 400


class SchemaDriftError(ProfitLedgerError):
    """Destination rejected a write because `field` is not in its schema."""

    def __init__(self, table: str, field: str):
        super().__init__(f"Column '{field}' is not supported by '{table}'")
        self.table = table
        self.field = field


class PersistenceError(ProfitLedgerError):
    """Any other store failure. Fatal for the unit of work it occurred in."""

    status_code = 500


class DataIntegrityWarning(UserWarning):
    """Clamp violations such as coverage above 1.0.

    Reported through logging and Sentry; never raised by the pipeline.
    """
