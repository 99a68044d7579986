from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError

from src.api.errors import APIError, api_error_handler, unhandled_error_handler, validation_error_handler
from src.config.load_config import AppConfig, load_app_config
from src.runtime.container import build_runtime
from src.runtime.interfaces import ScanDispatcher
from src.storage.sqlite_store import SQLiteStore
from src.utils.log import configure_logging

from .routers.bulk_scans import router as bulk_scans_router
from .routers.health import router as health_router
from .routers.images import router as images_router
from .routers.scans import router as scans_router
from .routers.scheduled_scans import router as scheduled_scans_router


logger = logging.getLogger(__name__)


def _cors_origins_from_env() -> list[str]:
    raw = os.getenv("SCANQ_CORS_ORIGINS", "").strip()
    if not raw:
        # Safe local defaults: allow typical dev ports.
        return [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app(
    *,
    config: AppConfig | None = None,
    db_path: str | Path | None = None,
    dispatcher: ScanDispatcher | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        configure_logging()
        cfg = config or load_app_config()
        store = SQLiteStore(db_path)

        # In-memory jobs do not survive a restart; fail what the last process left behind.
        reconciled = 0
        if _env_bool("SCANQ_RECONCILE_ON_STARTUP", True):
            reconciled = store.reconcile_running_scans()
            if reconciled:
                logger.warning("Marked %d stale scans as failed after restart", reconciled)
        app.state.reconciled_stale_scans = int(reconciled)

        runtime = build_runtime(cfg, store, dispatcher=dispatcher)
        app.state.runtime = runtime
        try:
            yield
        finally:
            app.state.runtime = None
            try:
                await runtime.aclose()
            finally:
                store.close()

    app = FastAPI(title="scanq API", version="0.1.0", lifespan=lifespan)

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    origins = _cors_origins_from_env()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(scans_router, prefix="/api/v1", tags=["scans"])
    app.include_router(bulk_scans_router, prefix="/api/v1", tags=["bulk-scans"])
    app.include_router(images_router, prefix="/api/v1", tags=["images"])
    app.include_router(scheduled_scans_router, prefix="/api/v1", tags=["scheduled-scans"])

    return app


app = create_app()
