from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncGenerator, Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from src.api.dependencies import get_runtime
from src.api.errors import APIError
from src.runtime.container import ScanRuntime
from src.runtime.scanner_service import ScanSubmissionError
from src.runtime.types import ProgressEvent, ScanRequest
from src.storage.adapters import scan_source_for_image
from src.storage.sqlite_store import row_to_dict


router = APIRouter()

SSE_KEEPALIVE_S = 15.0
SSE_QUEUE_MAXSIZE = 256


def offer_event(events: asyncio.Queue[ProgressEvent], event: ProgressEvent) -> None:
    """Queue an event for a stream client, dropping its oldest event when full."""
    if events.full():
        events.get_nowait()
    events.put_nowait(event)


class StartScanBody(BaseModel):
    image: str = Field(min_length=1)
    tag: str = Field(default="latest", min_length=1)
    source: Literal["registry", "local", "tar"] = "registry"
    tar_path: str | None = None
    registry: str | None = None
    registry_type: str | None = None
    repository_id: str | None = None
    docker_image_id: str | None = None
    scanners: dict[str, bool] | None = None
    priority: int | None = Field(default=None, description="Higher starts first; defaults to the interactive tier.")

    def to_request(self) -> ScanRequest:
        return ScanRequest(
            image=self.image.strip(),
            tag=self.tag.strip(),
            source=self.source,
            tar_path=self.tar_path,
            registry=self.registry,
            registry_type=self.registry_type,
            repository_id=self.repository_id,
            docker_image_id=self.docker_image_id,
            scanners=self.scanners,
        )


class RescanBody(BaseModel):
    scan_id: str | None = None
    image_id: str | None = None
    tag: str | None = None


async def _start(runtime: ScanRuntime, request: ScanRequest, priority: int | None = None) -> dict[str, Any]:
    try:
        result = await runtime.scanner.start_scan(request, priority)
    except ScanSubmissionError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    return result.to_dict()


@router.post("/scans", status_code=202)
async def start_scan(body: StartScanBody, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await _start(runtime, body.to_request(), body.priority)


@router.get("/scans")
async def list_scans(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    status: list[str] | None = Query(default=None),
    image_id: str | None = Query(default=None),
    runtime: ScanRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    rows, total = runtime.store.list_scans_page(
        limit=int(limit),
        offset=int(offset),
        statuses=status or None,
        image_id=image_id,
    )
    return {
        "items": [row_to_dict(r) for r in rows],
        "total": total,
        "has_more": offset + limit < total,
    }


@router.get("/scans/jobs")
async def list_jobs(runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.scanner.get_jobs_snapshot()


@router.get("/scans/jobs/{request_id}")
async def get_job(request_id: str, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    job = runtime.scanner.get_scan_job(request_id)
    if job is None:
        raise APIError(status_code=404, code="not_found", message="Scan job not found.")
    return {
        "job": job.snapshot(),
        "queue_position": runtime.scanner.get_queue_position(request_id),
        "estimated_wait_time": runtime.scanner.get_estimated_wait_time(request_id),
    }


@router.post("/scans/jobs/{request_id}/cancel")
async def cancel_job(request_id: str, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    job = runtime.scanner.get_scan_job(request_id)
    if job is None:
        raise APIError(status_code=404, code="not_found", message="Scan job not found.")
    cancelled = await runtime.scanner.cancel_scan(request_id)
    return {"request_id": request_id, "cancelled": cancelled, "status": job.status.value}


@router.get("/scans/events")
async def scan_events(
    request: Request,
    request_id: str | None = Query(default=None, description="Only stream events of this job."),
    runtime: ScanRuntime = Depends(get_runtime),
) -> StreamingResponse:
    """Server-sent events: one `progress` event per job status/progress change.

    SSE format:
        event: progress
        data: {"request_id": ..., "status": ..., "progress": ..., ...}
    """

    async def event_generator() -> AsyncGenerator[str, None]:
        events: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=SSE_QUEUE_MAXSIZE)

        def listener(event: ProgressEvent) -> None:
            if request_id is None or event.request_id == request_id:
                offer_event(events, event)

        # Registered only once the response is actually streamed.
        runtime.scanner.add_progress_listener(listener)
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(events.get(), timeout=SSE_KEEPALIVE_S)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"event: progress\ndata: {json.dumps(event.to_dict())}\n\n"
        finally:
            runtime.scanner.remove_progress_listener(listener)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/scans/rescan", status_code=202)
async def rescan(body: RescanBody, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    store = runtime.store
    if not body.scan_id and not body.image_id:
        raise APIError(status_code=400, code="invalid_argument", message="Either scan_id or image_id is required.")

    if body.scan_id:
        scan = store.get_scan(scan_id=body.scan_id)
        if scan is None:
            raise APIError(status_code=404, code="not_found", message="Scan not found.")
        image = store.get_image(image_id=str(scan["image_id"]))
        if image is None:
            raise APIError(status_code=404, code="not_found", message="Image of the scan not found.")
    else:
        image = store.get_image(image_id=str(body.image_id))
        if image is None:
            raise APIError(status_code=404, code="not_found", message="Image not found.")
        scan = store.get_latest_scan_for_image(image_id=str(image["image_id"]))

    tag = body.tag or (scan["tag"] if scan is not None and scan["tag"] else None) or image["tag"] or "latest"
    source = scan_source_for_image(image["source"])
    request = ScanRequest(
        image=str(image["name"]),
        tag=str(tag),
        source=source,
        repository_id=image["repository_id"],
        docker_image_id=image["docker_image_id"] if source == "local" else None,
        registry_type=image["registry_type"] if source == "registry" and not image["repository_id"] else None,
    )
    result = await _start(runtime, request)
    result["message"] = "Rescan queued successfully" if result["queued"] else "Rescan started successfully"
    return result


@router.get("/scans/{scan_id}")
async def get_scan(
    scan_id: str,
    include_reports: bool = Query(default=False),
    runtime: ScanRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    row = row_to_dict(runtime.store.get_scan(scan_id=scan_id))
    if row is None:
        raise APIError(status_code=404, code="not_found", message="Scan not found.")
    reports = row.pop("reports", None)
    if include_reports:
        row["reports"] = reports
    return {"scan": row}
