from __future__ import annotations

from fastapi import Request

from src.api.errors import APIError
from src.runtime.container import ScanRuntime


def get_runtime(request: Request) -> ScanRuntime:
    """FastAPI dependency: the ScanRuntime built by the app lifespan.

    There is exactly one per process; it owns the in-memory job table and queue,
    so it must never be rebuilt per request.
    """
    runtime = getattr(request.app.state, "runtime", None)
    if not isinstance(runtime, ScanRuntime):
        raise APIError(status_code=503, code="unavailable", message="Scan runtime is not running.")
    return runtime
