"""Recall FastAPI backend entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend import config
from backend.routers.sessions import sessions_router
from backend.routers.work_units import work_units_router

from backend.db import connection, migrations
from backend.services.work_units import WorkUnitService
from backend.observability import initialize as initialize_observability, shutdown as shutdown_observability

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("recall")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Recall backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Work unit service (recompute is triggered by callers, never on a timer)
    app.state.work_unit_service = WorkUnitService(db)

    yield

    logger.info("Recall backend shutting down")

    service = app.state.work_unit_service
    if await service.abort_recompute():
        logger.info("In-flight recompute cancelled for shutdown")

    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Recall API",
    description="Backend API for grouping agent sessions into work units",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for the local dev frontends
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(sessions_router)
app.include_router(work_units_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    service = getattr(app.state, "work_unit_service", None)
    return {
        "status": "ok",
        "db": connection.backend_name(connection._connection),
        "recompute": "running" if service and service.recompute_running else "idle",
    }


def run() -> None:
    """Serve the API on ``RECALL_HOST``/``RECALL_PORT``."""
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
