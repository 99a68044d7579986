from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from src.api.dependencies import get_runtime
from src.api.errors import APIError
from src.runtime.container import ScanRuntime
from src.runtime.scheduled_scans import ScheduledScanError


router = APIRouter()

SelectionMode = Literal["SPECIFIC", "PATTERN", "ALL", "REPOSITORY"]


class CreateScheduledScanBody(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    schedule: str | None = Field(default=None, description="Stored as given; not evaluated.")
    enabled: bool = True
    image_selection_mode: SelectionMode
    image_pattern: str | None = None
    selected_image_ids: list[str] = Field(default_factory=list)
    source: Literal["MANUAL", "AUTOMATED"] = "MANUAL"


class UpdateScheduledScanBody(BaseModel):
    name: str | None = None
    description: str | None = None
    schedule: str | None = None
    enabled: bool | None = None
    image_selection_mode: SelectionMode | None = None
    image_pattern: str | None = None
    selected_image_ids: list[str] | None = None


class ExecuteScheduledScanBody(BaseModel):
    trigger_source: Literal["MANUAL", "SCHEDULED", "API"] = "MANUAL"
    triggered_by: str | None = "API"


def _api_error(e: ScheduledScanError) -> APIError:
    return APIError.from_code(e.code, str(e))


@router.get("/scheduled-scans")
async def list_scheduled_scans(
    limit: int = Query(default=25, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    enabled: bool | None = Query(default=None),
    runtime: ScanRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    return runtime.scheduled.list_scheduled_scans(limit=limit, offset=offset, enabled=enabled)


@router.post("/scheduled-scans", status_code=201)
async def create_scheduled_scan(
    body: CreateScheduledScanBody,
    runtime: ScanRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    try:
        return runtime.scheduled.create_scheduled_scan(**body.model_dump())
    except ScheduledScanError as e:
        raise _api_error(e) from e


@router.get("/scheduled-scans/history")
async def scheduled_scan_history(
    scheduled_scan_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    trigger_source: str | None = Query(default=None),
    limit: int = Query(default=25, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    runtime: ScanRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    return runtime.scheduled.get_execution_history(
        scheduled_scan_id=scheduled_scan_id,
        status=status,
        trigger_source=trigger_source,
        limit=limit,
        offset=offset,
    )


@router.get("/scheduled-scans/{scheduled_scan_id}")
async def get_scheduled_scan(scheduled_scan_id: str, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    try:
        return runtime.scheduled.get_scheduled_scan(scheduled_scan_id)
    except ScheduledScanError as e:
        raise _api_error(e) from e


@router.patch("/scheduled-scans/{scheduled_scan_id}")
async def update_scheduled_scan(
    scheduled_scan_id: str,
    body: UpdateScheduledScanBody,
    runtime: ScanRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    try:
        return runtime.scheduled.update_scheduled_scan(scheduled_scan_id, **body.model_dump())
    except ScheduledScanError as e:
        raise _api_error(e) from e


@router.delete("/scheduled-scans/{scheduled_scan_id}", status_code=204)
async def delete_scheduled_scan(scheduled_scan_id: str, runtime: ScanRuntime = Depends(get_runtime)) -> Response:
    try:
        runtime.scheduled.delete_scheduled_scan(scheduled_scan_id)
    except ScheduledScanError as e:
        raise _api_error(e) from e
    return Response(status_code=204)


@router.post("/scheduled-scans/{scheduled_scan_id}/execute", status_code=202)
async def execute_scheduled_scan(
    scheduled_scan_id: str,
    body: ExecuteScheduledScanBody | None = None,
    runtime: ScanRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    body = body or ExecuteScheduledScanBody()
    try:
        return await runtime.scheduled.execute_scheduled_scan(
            scheduled_scan_id,
            trigger_source=body.trigger_source,
            triggered_by=body.triggered_by,
        )
    except ScheduledScanError as e:
        raise _api_error(e) from e
