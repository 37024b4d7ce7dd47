import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from shoplytics.adapters.dev_jobs import create_dev_prune_runner, create_dev_scheduler
from shoplytics.adapters.sqlite.migrator import SQLiteMigrator
from shoplytics.adapters.sqlite_db import SQLiteAnalyticsStore
from shoplytics.api.deps import get_rules, get_settings, get_time_port
from shoplytics.components.analytics import build_retention_config, create_retention_pruner

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()

    # Load rules and migrate on startup (fail-fast)
    try:
        rules = get_rules()
        Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
        SQLiteMigrator(settings.db_path, settings.migrations_dir).run_migrations()
        logger.info("Rules loaded from %s", settings.rules_path)
    except Exception as e:
        logger.critical("Startup failed: %s", e)
        sys.exit(1)

    scheduler = None
    if os.environ.get("SHOPLYTICS_DEV_SCHEDULER") == "1":
        analytics = rules.analytics
        store = SQLiteAnalyticsStore(
            settings.db_path, busy_timeout_ms=analytics.storage.busy_timeout_ms
        )
        pruner = create_retention_pruner(
            store, time_port=get_time_port(), config=build_retention_config(analytics)
        )
        scheduler = create_dev_scheduler(
            create_dev_prune_runner(pruner),
            poll_interval_seconds=analytics.retention.poll_interval_seconds,
        )
        scheduler.start()

    yield

    if scheduler is not None:
        scheduler.stop()


app = FastAPI(
    title="Shoplytics API",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# --- Routers ---
from shoplytics.api.routes import admin_analytics, analytics_ingest  # noqa: E402

app.include_router(analytics_ingest.router, prefix="/api/analytics", tags=["Analytics"])
app.include_router(admin_analytics.router, prefix="/api/admin/analytics", tags=["Admin Analytics"])


# CORS (Allow Storefront/Admin frontends)
origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return {"status": "ok", "service": "api"}
