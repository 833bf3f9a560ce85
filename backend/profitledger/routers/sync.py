"""Ledger sync endpoints.

WHAT:
    Thin HTTP wrappers around the unified sync and the chunked backfill.

WHY:
    - Routers handle auth + request parsing only
    - The same orchestrator runs from the ARQ worker on a schedule

REFERENCES:
    - profitledger/services/sync_orchestrator.py
    - profitledger/services/backfill.py
    - profitledger/deps.py (require_sync_token)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from profitledger.database import get_db, get_sync_session
from profitledger.deps import get_settings, require_sync_token
from profitledger.services.backfill import run_backfill
from profitledger.services.day_bucketing import parse_window
from profitledger.services.sync_orchestrator import default_dependencies, run_unified_sync

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class StepOutcomeResponse(BaseModel):
    step: str = Field(description="Pipeline step name")
    ok: bool = Field(description="Whether the step succeeded (or was skipped)")
    status: int = Field(description="HTTP-style status of the step")
    days_written: int = Field(default=0, description="Days written by the step")
    rows_written: int = Field(default=0, description="Rows written by the step")
    skipped: bool = Field(default=False, description="Optional provider not connected")
    error: Optional[str] = Field(default=None, description="Error message when the step failed")


class SyncRunResponse(BaseModel):
    ok: bool = Field(description="True when every attempted step succeeded")
    client_id: str
    start: date
    end: date
    status: int = Field(description="200, or the failing step's status")
    steps: List[StepOutcomeResponse] = Field(default_factory=list, description="Attempted steps, in order")


class BackfillChunkResponse(BaseModel):
    start: date
    end: date
    ok: bool
    status: int
    attempts: int


class BackfillResponse(BaseModel):
    ok: bool
    client_id: str
    start: date
    end: date
    stopped_at: Optional[List[date]] = Field(default=None, description="Chunk that failed for good")
    chunks: List[BackfillChunkResponse] = Field(default_factory=list)


router = APIRouter(
    prefix="/sync",
    tags=["Sync"],
    dependencies=[Depends(require_sync_token)],
)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/run", response_model=SyncRunResponse)
async def run_sync(
    response: Response,
    client_id: str = Query(..., description="Client to sync"),
    start: Optional[str] = Query(default=None, description="First day, YYYY-MM-DD"),
    end: Optional[str] = Query(default=None, description="Last day, YYYY-MM-DD"),
    force: bool = Query(default=False, description="Allow days older than SHOPIFY_MAX_DAYS_BACK"),
    fill_zeros: bool = Query(default=False, description="Gap-fill storefront days when its fetch fails"),
    db: Session = Depends(get_db),
) -> SyncRunResponse:
    """Run the full pipeline for one client.

    The response status mirrors the run: 200, or the failing step's status.
    """
    logger.info("[SYNC_API] Run requested: client=%s %s..%s force=%s", client_id, start, end, force)

    deps = default_dependencies(db, get_settings(), force=force, fill_zeros=fill_zeros, trigger="api")
    result = await run_unified_sync(client_id, start, end, deps=deps)

    response.status_code = result.status
    return SyncRunResponse(**result.as_dict())


def _sync_chunk(client_id: str, start: date, end: date):
    """Run one backfill chunk on its own session and event loop."""
    with get_sync_session() as db:
        deps = default_dependencies(db, get_settings(), force=True, trigger="backfill")
        return asyncio.run(run_unified_sync(client_id, start, end, deps=deps))


@router.post("/backfill", response_model=BackfillResponse)
def backfill(
    response: Response,
    client_id: str = Query(..., description="Client to backfill"),
    start: str = Query(..., description="First day, YYYY-MM-DD"),
    end: str = Query(..., description="Last day, YYYY-MM-DD"),
    max_retries: int = Query(default=3, ge=0, le=5, description="Retries per month chunk"),
) -> BackfillResponse:
    """Backfill month by month, stopping at the first chunk that keeps failing.

    Runs in FastAPI's threadpool; each chunk gets a fresh session.
    """
    start_day, end_day = parse_window(start, end)
    logger.info("[SYNC_API] Backfill requested: client=%s %s..%s", client_id, start_day, end_day)

    report = run_backfill(client_id, start_day, end_day, runner=_sync_chunk, max_retries=max_retries)
    if not report.ok:
        response.status_code = report.chunks[-1].status
    return BackfillResponse(**report.as_dict())
