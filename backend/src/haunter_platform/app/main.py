"""FastAPI application entry point for the Haunter engagement and escrow API."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from haunter_platform.app.config import get_settings
from haunter_platform.infra.database import async_session, init_db
from haunter_platform.services.errors import (
    EngineError,
    NotAuthorizedError,
    NotFoundError,
    StateError,
    ValidationFailure,
)
from haunter_platform.services.expiry_monitor import run_sweeps

logger = logging.getLogger(__name__)


async def expiry_monitor_loop():
    """Run forfeiture, deadline warning and retry sweeps on a fixed interval."""
    interval = get_settings().expiry_sweep_interval_minutes * 60
    while True:
        try:
            async with async_session() as db:
                counts = await run_sweeps(db)
                if any(counts.values()):
                    logger.info("Expiry monitor: %s", counts)
        except Exception as e:
            logger.error("Expiry monitor error: %s", e)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the sweep loop."""
    await init_db()
    monitor = asyncio.create_task(expiry_monitor_loop())
    yield
    monitor.cancel()


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Haunter Engagement & Escrow API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS: any origin in debug mode
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Engine errors -> HTTP
# ---------------------------------------------------------------------------

_STATUS_BY_FAMILY = (
    (NotFoundError, 404),
    (NotAuthorizedError, 403),
    (ValidationFailure, 422),
    (StateError, 409),
)


def status_for(exc: EngineError) -> int:
    for family, status_code in _STATUS_BY_FAMILY:
        if isinstance(exc, family):
            return status_code
    return 400


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status_code = status_for(exc)
    logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.reason)
    return JSONResponse(status_code=status_code, content={"code": exc.code, "detail": exc.reason})


# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from haunter_platform.app.routes.engagements import router as engagements_router
from haunter_platform.app.routes.search_jobs import router as search_jobs_router
from haunter_platform.app.routes.admin_disputes import router as admin_disputes_router

app.include_router(engagements_router)
app.include_router(search_jobs_router)
app.include_router(admin_disputes_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "haunter-platform"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "haunter_platform.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
