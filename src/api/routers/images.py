from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from src.api.dependencies import get_runtime
from src.api.errors import APIError
from src.runtime.container import ScanRuntime
from src.storage.sqlite_store import row_to_dict


router = APIRouter()


class RegisterImageBody(BaseModel):
    name: str = Field(min_length=1)
    tag: str = Field(default="latest", min_length=1)
    source: Literal["REGISTRY", "REGISTRY_PRIVATE", "LOCAL_DOCKER", "FILE_UPLOAD"] = "REGISTRY"
    digest: str | None = None
    registry: str | None = None
    registry_type: str | None = None
    repository_id: str | None = None
    docker_image_id: str | None = None


@router.post("/images", status_code=201)
async def register_image(body: RegisterImageBody, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    record = runtime.store.upsert_image(
        name=body.name.strip(),
        tag=body.tag.strip(),
        source=body.source,
        digest=body.digest,
        registry=body.registry,
        registry_type=body.registry_type,
        repository_id=body.repository_id,
        docker_image_id=body.docker_image_id,
    )
    return {"image": row_to_dict(runtime.store.get_image(image_id=record.image_id))}


@router.get("/images")
async def list_images(
    name: str | None = Query(default=None, description="Substring of the image name."),
    tag: str | None = Query(default=None, description="Substring of the tag."),
    runtime: ScanRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    images = await runtime.inventory.find_images(image_pattern=name, tag_pattern=tag)
    return {
        "items": [
            {"image_id": img.id, "name": img.name, "tag": img.tag, "source": img.source, "digest": img.digest}
            for img in images
        ]
    }


@router.get("/images/{image_id}")
async def get_image(image_id: str, runtime: ScanRuntime = Depends(get_runtime)) -> dict[str, Any]:
    row = row_to_dict(runtime.store.get_image(image_id=image_id))
    if row is None:
        raise APIError(status_code=404, code="not_found", message="Image not found.")
    row["latest_scan"] = row_to_dict(runtime.store.get_latest_scan_for_image(image_id=image_id))
    if row["latest_scan"] is not None:
        row["latest_scan"].pop("reports", None)
    return {"image": row}
