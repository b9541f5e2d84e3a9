"""FastAPI main application"""
from dotenv import load_dotenv
load_dotenv()

import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.config import settings
from app.deps import cache_conn, db_pool
from app.routers import experiments, indexes, query
from app.smart_logger import SmartLogger
from app.core.background_jobs import is_started, start_experiment_worker, stop_experiment_worker
from app.sanity_checks.runner import run_startup_sanity_checks_or_raise
from app.utils.log_sanitize import sanitize_for_log


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    if not os.getenv("SMART_LOGGER_MIN_LEVEL"):
        SmartLogger.instance().min_level = settings.log_level.upper()

    print("Starting Plan Lab API...")
    await db_pool.connect()
    cache = cache_conn.connect()
    # Fail-fast sanity checks (database required, cache optional)
    await run_startup_sanity_checks_or_raise(db_pool.pool, cache)
    print(f"Target database: {sanitize_for_log(settings.database_url)}")
    print(f"Result cache: {sanitize_for_log(settings.redis_url)} (ttl={settings.cache_ttl_seconds}s)")

    await start_experiment_worker()
    SmartLogger.log(
        "INFO",
        "Starting Plan Lab API...",
        category="main.lifespan.start",
        params=sanitize_for_log({"database_url": settings.database_url, "redis_url": settings.redis_url}),
    )

    yield

    # Shutdown
    print("Shutting down...")
    await stop_experiment_worker()
    await cache_conn.close()
    await db_pool.close()
    print("Database pool and cache closed")


app = FastAPI(
    title="Plan Lab API",
    description="""
    Query execution and plan-analysis engine for PostgreSQL.

    ## Features
    - SQL safety guard (destructive statements rejected unless EXPLAIN/SELECT)
    - Result cache keyed by exact query text (60s TTL)
    - Scan-strategy classification from EXPLAIN ANALYZE plans
    - Non-blocking index create/drop
    - Write-cost, selectivity and composite-index experiments

    ## Workflow
    1. Run SQL: `POST /api/sql`
    2. Manage indexes: `POST /api/manage-index`
    3. Run experiments: `POST /api/experiments/{family}/steps/{step}`
    """,
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query.router, prefix="/api")
app.include_router(indexes.router, prefix="/api")
app.include_router(experiments.router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Plan Lab API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health"
    }


@app.get("/api/health")
async def health_check():
    """Health check endpoint; never waits on the experiment worker"""
    status = "healthy"
    db_state = "disconnected"
    if db_pool.pool is not None:
        db_state = "connected"
    else:
        status = "unhealthy"

    cache_state = {"ok": False, "error": "not connected"}
    if cache_conn.gateway is not None:
        ok, error = await cache_conn.gateway.ping()
        cache_state = {"ok": ok, "error": error, **cache_conn.gateway.get_stats()}
        if not ok:
            status = "degraded" if status == "healthy" else status

    return {
        "status": status,
        "database": db_state,
        "cache": cache_state,
        "experimentWorker": "running" if is_started() else "stopped",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True
    )
