"""FastAPI application: the threadline feed server."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from backend.app.config import settings
from threadline.log import logger, setup_logging

# Loguru is the single logging backend; stdlib loggers are routed into it.
setup_logging(
    settings.log_level,
    log_file=str(settings.data_dir / "threadline-server.log"),
    intercept_stdlib=True,
    force=True,
)

# ---------------------------------------------------------------------------
# Now import everything else (after logging is configured)
# ---------------------------------------------------------------------------

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from sqlalchemy import text  # noqa: E402

from backend.app.api.db import router as db_router  # noqa: E402
from backend.app.api.ws import router as ws_router  # noqa: E402
from backend.app.db import async_session, engine, init_db  # noqa: E402
from backend.app.services.tree_store import tree_store  # noqa: E402
from backend.app.services.ws_manager import ws_manager  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    await init_db()
    tree_store.attach(async_session)
    await tree_store.load()
    yield
    # Shutdown
    await ws_manager.close_all()


app = FastAPI(
    title="threadline",
    description="Realtime change feed for threadline chat clients",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Global exception handler ---


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch unhandled exceptions and return a clean JSON 500 instead of a stack trace."""
    logger.exception("Unhandled exception on {} {}", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Include routers
app.include_router(db_router, prefix="/api")
app.include_router(ws_router)  # /ws endpoint (no /api prefix)


# --- Health check ---


@app.get("/api/health")
async def health() -> dict[str, str]:
    """Health check with DB connectivity verification."""
    db_ok = "ok"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        db_ok = "error"
        logger.exception("Health check: database connectivity failed")

    return {
        "status": "ok" if db_ok == "ok" else "degraded",
        "database": db_ok,
        "persistent": str(tree_store.persistent).lower(),
        "ws_clients": str(ws_manager.active_count),
        "subscriptions": str(ws_manager.subscription_count),
    }
