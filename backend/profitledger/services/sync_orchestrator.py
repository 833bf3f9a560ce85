"""Unified sync orchestrator.

WHAT:
    Runs the ledger pipeline for one (client, window):
        shopify_sync -> googleads_sync -> meta_sync
        -> shopify_daily_line_items -> shopify_recompute
    Each step returns a StepOutcome; the run stops at the first failed step.

WHY:
    - Recompute must never run over incomplete raw data, hence fail-fast
    - No retries here: steps own their upstream backoff, and a failed run is
      re-invoked by the scheduler or by hand (every step is idempotent)
    - Every run is recorded in sync_runs so a partial run can be diagnosed
      from the step list alone

REFERENCES:
    - profitledger/services/storefront_sync_service.py
    - profitledger/services/ad_spend_sync_service.py
    - profitledger/services/line_item_sync_service.py
    - profitledger/services/recompute_service.py
    - profitledger/workers/arq_worker.py (scheduled runs)
    - profitledger/routers/sync.py (manual runs)
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from profitledger.deps import Settings
from profitledger.errors import NotConnected, PersistenceError, UpstreamFetchError
from profitledger.models import ProviderEnum, SyncRun
from profitledger.security import TokenCipher
from profitledger.services.ad_spend_sync_service import sync_google_spend, sync_meta_spend
from profitledger.services.cost_allocation import CostSettings
from profitledger.services.credential_store import Credential, CredentialStore
from profitledger.services.day_bucketing import parse_window
from profitledger.services.google_ads_client import GAdsClient
from profitledger.services.line_item_sync_service import sync_line_items
from profitledger.services.meta_ads_client import MetaAdsClient
from profitledger.services.recompute_service import load_cost_settings, recompute_profit
from profitledger.services.shopify_client import ShopifyClient
from profitledger.services.storefront_sync_service import sync_storefront_revenue
from profitledger.services.sync_types import SyncStepResult
from profitledger.telemetry import capture_exception

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class StepOutcome:
    """Normalized outcome of one pipeline step."""
    step: str
    ok: bool
    status: int = 200
    days_written: int = 0
    rows_written: int = 0
    skipped: bool = False
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncRunResult:
    """Outcome of one orchestrator invocation (attempted steps only)."""
    ok: bool
    client_id: str
    start: date
    end: date
    status: int = 200
    steps: List[StepOutcome] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "client_id": self.client_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "status": self.status,
            "steps": [s.as_dict() for s in self.steps],
        }


# =============================================================================
# DEPENDENCIES
# =============================================================================

def build_shopify_client(credential: Credential, settings: Settings) -> ShopifyClient:
    return ShopifyClient(
        shop_domain=credential.account_ref,
        access_token=credential.access_token or "",
        api_version=settings.SHOPIFY_API_VERSION,
    )


def build_meta_client(credential: Credential, settings: Settings) -> MetaAdsClient:
    return MetaAdsClient(
        access_token=credential.access_token or "",
        app_id=settings.META_APP_ID,
        app_secret=settings.META_APP_SECRET,
        api_version=settings.META_API_VERSION,
    )


def build_google_client(credential: Credential, settings: Settings) -> GAdsClient:
    return GAdsClient.from_tokens(
        refresh_token=credential.refresh_token or "",
        developer_token=settings.GOOGLE_DEVELOPER_TOKEN,
        client_id=settings.GOOGLE_CLIENT_ID,
        client_secret=settings.GOOGLE_CLIENT_SECRET,
        login_customer_id=credential.extra.get("login_customer_id") or settings.GOOGLE_LOGIN_CUSTOMER_ID,
    )


@dataclass
class SyncDependencies:
    """Everything a run needs, passed explicitly.

    Client factories take (credential, settings); tests replace them with
    fakes.
    """
    db: Session
    credentials: CredentialStore
    settings: Settings
    shopify_factory: Callable[[Credential, Settings], Any] = build_shopify_client
    meta_factory: Callable[[Credential, Settings], Any] = build_meta_client
    google_factory: Callable[[Credential, Settings], Any] = build_google_client
    force: bool = False
    fill_zeros: bool = False
    trigger: str = "manual"


def default_dependencies(
    db: Session,
    settings: Settings,
    *,
    force: bool = False,
    fill_zeros: bool = False,
    trigger: str = "manual",
) -> SyncDependencies:
    """Production wiring: real SDK clients and the Fernet-backed credential store."""
    cipher = TokenCipher(settings.TOKEN_ENCRYPTION_KEY) if settings.TOKEN_ENCRYPTION_KEY else None
    return SyncDependencies(
        db=db,
        credentials=CredentialStore(db, cipher),
        settings=settings,
        force=force,
        fill_zeros=fill_zeros,
        trigger=trigger,
    )


@dataclass
class _RunContext:
    client_id: str
    start: date
    end: date
    today: Optional[date]
    deps: SyncDependencies
    cost_settings: CostSettings


StepRunner = Callable[[_RunContext, Optional[Credential]], Awaitable[SyncStepResult]]


# =============================================================================
# STEPS
# =============================================================================

async def _shopify_sync(ctx: _RunContext, credential: Optional[Credential]) -> SyncStepResult:
    return await sync_storefront_revenue(
        ctx.deps.db, ctx.client_id, ctx.start, ctx.end,
        client=ctx.deps.shopify_factory(credential, ctx.deps.settings),
        settings=ctx.deps.settings,
        cost_settings=ctx.cost_settings,
        force=ctx.deps.force,
        fill_zeros=ctx.deps.fill_zeros,
        today=ctx.today,
    )


async def _googleads_sync(ctx: _RunContext, credential: Optional[Credential]) -> SyncStepResult:
    return await sync_google_spend(
        ctx.deps.db, ctx.client_id, ctx.start, ctx.end,
        client=ctx.deps.google_factory(credential, ctx.deps.settings),
        customer_id=credential.account_ref,
        settings=ctx.deps.settings,
    )


async def _meta_sync(ctx: _RunContext, credential: Optional[Credential]) -> SyncStepResult:
    return await sync_meta_spend(
        ctx.deps.db, ctx.client_id, ctx.start, ctx.end,
        client=ctx.deps.meta_factory(credential, ctx.deps.settings),
        ad_account_id=credential.account_ref,
        settings=ctx.deps.settings,
    )


async def _line_items_sync(ctx: _RunContext, credential: Optional[Credential]) -> SyncStepResult:
    return await sync_line_items(
        ctx.deps.db, ctx.client_id, ctx.start, ctx.end,
        client=ctx.deps.shopify_factory(credential, ctx.deps.settings),
        shop_domain=credential.account_ref,
        settings=ctx.deps.settings,
        cost_settings=ctx.cost_settings,
    )


async def _recompute(ctx: _RunContext, credential: Optional[Credential]) -> SyncStepResult:
    return recompute_profit(ctx.deps.db, ctx.client_id, ctx.start, ctx.end, cost_settings=ctx.cost_settings)


# (step name, provider whose credential the step needs, runner)
PIPELINE: List[tuple] = [
    ("shopify_sync", ProviderEnum.shopify.value, _shopify_sync),
    ("googleads_sync", ProviderEnum.google.value, _googleads_sync),
    ("meta_sync", ProviderEnum.meta.value, _meta_sync),
    ("shopify_daily_line_items", ProviderEnum.shopify.value, _line_items_sync),
    ("shopify_recompute", None, _recompute),
]


async def _run_step(ctx: _RunContext, name: str, provider: Optional[str], runner: StepRunner) -> StepOutcome:
    """Run one step and convert its result or exception into a StepOutcome."""
    deps = ctx.deps
    required = {p.lower() for p in deps.settings.REQUIRED_PROVIDERS}
    started = time.time()
    try:
        credential = None
        if provider is not None:
            credential = deps.credentials.lookup(ctx.client_id, provider)
            if credential is None:
                if provider in required:
                    raise NotConnected(f"{provider} not connected for client {ctx.client_id}", provider=provider)
                logger.info("[ORCHESTRATOR] %s: %s not connected, skipping", name, provider)
                return StepOutcome(step=name, ok=True, status=200, skipped=True)

        result = await runner(ctx, credential)

    except UpstreamFetchError as exc:
        deps.db.rollback()
        status = exc.status_code or 502
        logger.error("[ORCHESTRATOR] %s failed (status=%d): %s", name, status, exc)
        return StepOutcome(step=name, ok=False, status=status, error=str(exc))
    except PersistenceError as exc:
        deps.db.rollback()
        logger.error("[ORCHESTRATOR] %s failed to persist: %s", name, exc)
        return StepOutcome(step=name, ok=False, status=500, error=str(exc))
    except Exception as exc:
        deps.db.rollback()
        logger.exception("[ORCHESTRATOR] %s crashed: %s", name, exc)
        capture_exception(exc, extra={"client_id": ctx.client_id, "step": name,
                                      "start": str(ctx.start), "end": str(ctx.end)})
        return StepOutcome(step=name, ok=False, status=500, error=f"{type(exc).__name__}: {exc}")

    logger.info(
        "[ORCHESTRATOR] %s ok: days=%d rows=%d (%.1fs)",
        name, result.days_written, result.rows_written, time.time() - started,
    )
    return StepOutcome(
        step=name,
        ok=True,
        status=200,
        days_written=result.days_written,
        rows_written=result.rows_written,
        skipped=result.skipped,
    )


def _record_run(db: Session, result: SyncRunResult, trigger: str, started_at: datetime) -> None:
    """Persist the run summary; a failure here never changes the run's result."""
    try:
        db.add(SyncRun(
            client_id=result.client_id,
            start_date=result.start,
            end_date=result.end,
            ok=result.ok,
            status=result.status,
            steps=[s.as_dict() for s in result.steps],
            trigger=trigger,
            started_at=started_at,
            finished_at=datetime.utcnow(),
        ))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[ORCHESTRATOR] Could not record sync run for %s: %s", result.client_id, exc)
        capture_exception(exc, extra={"client_id": result.client_id, "stage": "record_run"})


# =============================================================================
# PUBLIC API
# =============================================================================

async def run_unified_sync(
    client_id: str,
    start: Any = None,
    end: Any = None,
    *,
    deps: SyncDependencies,
    today: Optional[date] = None,
) -> SyncRunResult:
    """Run the full pipeline for one client and window.

    Args:
        client_id: Client to sync
        start: First day (date or YYYY-MM-DD); both bounds or neither
        end: Last day (date or YYYY-MM-DD)
        deps: Session, credential store, settings and client factories
        today: Reference day (defaults to UTC today)

    Returns:
        SyncRunResult with the attempted steps; `status` is 200 or the
        failing step's status

    Raises:
        InvalidWindow: Malformed, partial or inverted window (nothing runs)
    """
    start_day, end_day = parse_window(start, end, today=today)
    started_at = datetime.utcnow()

    logger.info(
        "[ORCHESTRATOR] Starting unified sync: client=%s, %s..%s (trigger=%s)",
        client_id, start_day, end_day, deps.trigger,
    )

    result = SyncRunResult(ok=True, client_id=client_id, start=start_day, end=end_day)
    try:
        cost_settings = load_cost_settings(deps.db, client_id)
    except SQLAlchemyError as exc:
        deps.db.rollback()
        logger.error("[ORCHESTRATOR] Could not load cost settings for %s: %s", client_id, exc)
        result.ok = False
        result.status = 500
        result.steps.append(StepOutcome(step="load_cost_settings", ok=False, status=500, error=str(exc)))
        _record_run(deps.db, result, deps.trigger, started_at)
        return result

    ctx = _RunContext(
        client_id=client_id,
        start=start_day,
        end=end_day,
        today=today,
        deps=deps,
        cost_settings=cost_settings,
    )

    for name, provider, runner in PIPELINE:
        outcome = await _run_step(ctx, name, provider, runner)
        result.steps.append(outcome)
        if not outcome.ok:
            result.ok = False
            result.status = outcome.status
            logger.warning("[ORCHESTRATOR] Halting after %s (status=%d)", name, outcome.status)
            break

    _record_run(deps.db, result, deps.trigger, started_at)
    logger.info(
        "[ORCHESTRATOR] Finished unified sync: client=%s ok=%s status=%d steps=%d",
        client_id, result.ok, result.status, len(result.steps),
    )
    return result
