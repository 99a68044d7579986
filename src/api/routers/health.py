from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends
from fastapi import Request

from src.api.dependencies import get_runtime
from src.runtime.container import ScanRuntime
from src.storage.sqlite_store import SCHEMA_VERSION


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
async def version() -> dict[str, Any]:
    return {
        "service": "scanq",
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "pydantic": _pkg_version("pydantic"),
            "uvicorn": _pkg_version("uvicorn"),
        },
        "ts": time.time(),
    }


@router.get("/system/queue")
async def system_queue(request: Request, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    # Minimal runtime observability: live queue plus persisted totals.
    scanner = runtime.scanner
    return {
        "ts": time.time(),
        "queue": scanner.get_queue_stats(),
        "running": [scan.snapshot() for scan in scanner.get_running_scans()],
        "queued": [
            {**scan.snapshot(), "queue_position": scanner.get_queue_position(scan.request_id)}
            for scan in scanner.get_queued_scans()
        ],
        "scans_by_status": runtime.store.count_scans_by_status(),
        "progress_listeners": scanner.progress.listener_count,
        "startup": {
            "reconciled_stale_scans": getattr(request.app.state, "reconciled_stale_scans", 0),
        },
    }
