"""FastAPI application entrypoint.

Includes the sync router, maps pipeline errors to HTTP statuses and exposes a
healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .errors import ProfitLedgerError
from .routers import sync as sync_router
from .telemetry import configure_logging, init_observability

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str


def create_app() -> FastAPI:
    configure_logging()
    observability = init_observability()
    logger.info("[STARTUP] Observability: %s", observability)

    app = FastAPI(
        title="profitledger API",
        description="""
        Daily profitability ledger.

        - **POST /sync/run**: run the pipeline for one client and window
        - **POST /sync/backfill**: month-by-month historical backfill
        - **GET /health**: liveness

        Sync endpoints require `Authorization: Bearer <CRON_SECRET>` or `?token=`.
        """,
        version="1.0.0",
    )

    @app.exception_handler(ProfitLedgerError)
    async def profit_ledger_error_handler(request: Request, exc: ProfitLedgerError):
        # Unauthorized -> 401, InvalidWindow -> 400, UpstreamFetchError -> 502, PersistenceError -> 500
        if exc.status_code >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": type(exc).__name__, "detail": str(exc)},
        )

    app.include_router(sync_router.router)

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return HealthResponse(status="ok")

    return app


app = create_app()
