"""Chunked historical backfill.

WHAT:
    Splits a long window into calendar-month chunks and runs the unified sync
    for each, retrying a failed chunk with backoff. Stops at the first chunk
    that still fails after its retries. Client errors other than 429 are not
    retried.

WHY:
    Month-sized windows keep each run inside upstream pagination and rate
    limits. Later chunks are not attempted after a hard failure so a backfill
    never leaves holes in the middle of the history.

REFERENCES:
    - profitledger/services/sync_orchestrator.py (runner)
    - profitledger/routers/sync.py (POST /sync/backfill)
"""

import calendar
import logging
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from profitledger.errors import InvalidWindow

logger = logging.getLogger(__name__)


def is_permanent_failure(status: int) -> bool:
    """Client errors repeat on every attempt; 429 is a rate limit and may clear."""
    return 400 <= status < 500 and status != 429


def month_chunks(start: date, end: date) -> List[Tuple[date, date]]:
    """Calendar-month slices of [start, end]; the first and last may be partial."""
    if start > end:
        raise InvalidWindow(f"start {start} is after end {end}")
    chunks = []
    cursor = start
    while cursor <= end:
        last_of_month = cursor.replace(day=calendar.monthrange(cursor.year, cursor.month)[1])
        chunk_end = min(last_of_month, end)
        chunks.append((cursor, chunk_end))
        cursor = chunk_end + timedelta(days=1)
    return chunks


@dataclass
class ChunkResult:
    start: date
    end: date
    ok: bool
    status: int
    attempts: int


@dataclass
class BackfillReport:
    client_id: str
    start: date
    end: date
    chunks: List[ChunkResult] = field(default_factory=list)
    stopped_at: Optional[Tuple[date, date]] = None

    @property
    def ok(self) -> bool:
        return self.stopped_at is None

    def as_dict(self) -> dict:
        return {
            "ok": self.ok,
            "client_id": self.client_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "stopped_at": [d.isoformat() for d in self.stopped_at] if self.stopped_at else None,
            "chunks": [
                {"start": c.start.isoformat(), "end": c.end.isoformat(),
                 "ok": c.ok, "status": c.status, "attempts": c.attempts}
                for c in self.chunks
            ],
        }


def run_backfill(
    client_id: str,
    start: date,
    end: date,
    *,
    runner: Callable,
    max_retries: int = 3,
    backoff_seconds: Sequence[float] = (30, 60, 120),
    sleep: Callable[[float], None] = time.sleep,
) -> BackfillReport:
    """Backfill [start, end] month by month.

    Args:
        client_id: Client to backfill
        start: First day (inclusive)
        end: Last day (inclusive)
        runner: Callable(client_id, chunk_start, chunk_end) returning an object
            with `ok` and `status` (a SyncRunResult)
        max_retries: Retries per chunk after the first attempt
        backoff_seconds: Wait before retry n (last value repeats)
        sleep: Injected for tests

    Returns:
        BackfillReport; `stopped_at` is the chunk that failed for good
    """
    report = BackfillReport(client_id=client_id, start=start, end=end)
    chunks = month_chunks(start, end)
    logger.info("[BACKFILL] %s: %s..%s in %d chunks", client_id, start, end, len(chunks))

    for chunk_start, chunk_end in chunks:
        attempts = 0
        while True:
            attempts += 1
            result = runner(client_id, chunk_start, chunk_end)
            if result.ok or attempts > max_retries:
                break
            if is_permanent_failure(result.status):
                logger.warning(
                    "[BACKFILL] %s %s..%s failed with status %s, not retrying",
                    client_id, chunk_start, chunk_end, result.status,
                )
                break
            wait = backoff_seconds[min(attempts - 1, len(backoff_seconds) - 1)] if backoff_seconds else 0
            logger.warning(
                "[BACKFILL] %s %s..%s failed (status=%s), retry %d/%d in %ss",
                client_id, chunk_start, chunk_end, result.status, attempts, max_retries, wait,
            )
            sleep(wait)

        report.chunks.append(ChunkResult(chunk_start, chunk_end, result.ok, result.status, attempts))
        if not result.ok:
            report.stopped_at = (chunk_start, chunk_end)
            logger.error(
                "[BACKFILL] %s: stopping at %s..%s after %d attempts", client_id, chunk_start, chunk_end, attempts
            )
            break

    logger.info("[BACKFILL] %s finished: ok=%s chunks=%d", client_id, report.ok, len(report.chunks))
    return report
