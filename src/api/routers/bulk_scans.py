from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.api.dependencies import get_runtime
from src.api.errors import APIError
from src.runtime.bulk_scan import BulkScanError, BulkScanNotFoundError, BulkScanRequest
from src.runtime.container import ScanRuntime


router = APIRouter()


class BulkPatterns(BaseModel):
    image_pattern: str | None = None
    tag_pattern: str | None = None
    exclude_tag_pattern: str | None = Field(default=None, description="Glob over name:tag, e.g. `*:latest`.")


class CreateBulkScanBody(BaseModel):
    name: str | None = None
    patterns: BulkPatterns = Field(default_factory=BulkPatterns)
    exclude_patterns: list[str] = Field(default_factory=list)
    max_images: int | None = Field(default=None, ge=0, description="0 means no cap beyond the configured limit.")
    scanners: dict[str, bool] | None = None

    def to_request(self) -> BulkScanRequest:
        excludes = [p for p in self.exclude_patterns if p]
        if self.patterns.exclude_tag_pattern:
            excludes.append(self.patterns.exclude_tag_pattern)
        return BulkScanRequest(
            name=self.name,
            image_pattern=self.patterns.image_pattern,
            tag_pattern=self.patterns.tag_pattern,
            exclude_patterns=tuple(excludes),
            max_images=self.max_images,
            scanners=self.scanners,
        )


@router.post("/bulk-scans", status_code=202)
async def create_bulk_scan(body: CreateBulkScanBody, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    try:
        result = await runtime.bulk.execute_bulk_scan(body.to_request())
    except BulkScanError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e
    return result.to_dict()


@router.get("/bulk-scans")
async def list_bulk_scans(
    limit: int | None = Query(default=None, ge=1, le=200),
    runtime: ScanRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    return {"items": runtime.bulk.get_bulk_scan_history(limit)}


@router.get("/bulk-scans/active")
async def list_active_bulk_scans(runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return {"items": runtime.bulk.get_active_batches()}


@router.get("/bulk-scans/{batch_id}")
async def get_bulk_scan(batch_id: str, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    try:
        return {"batch": runtime.bulk.get_bulk_scan_status(batch_id)}
    except BulkScanNotFoundError as e:
        raise APIError(status_code=404, code="not_found", message=str(e)) from e


@router.post("/bulk-scans/{batch_id}/cancel")
async def cancel_bulk_scan(batch_id: str, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    try:
        return await runtime.bulk.cancel_bulk_scan(batch_id)
    except BulkScanNotFoundError as e:
        raise APIError(status_code=404, code="not_found", message=str(e)) from e
    except BulkScanError as e:
        raise APIError(status_code=409, code="conflict", message=str(e)) from e
