from __future__ import annotations

import uuid
from typing import Any

from src.runtime.types import ImageRef, ScanRequest
from src.storage.sqlite_store import ImageRecord, SQLiteStore


# ScanRequest.source -> images.source
IMAGE_SOURCE_BY_SCAN_SOURCE = {
    "registry": "REGISTRY",
    "local": "LOCAL_DOCKER",
    "tar": "FILE_UPLOAD",
}


def scan_source_for_image(image_source: str | None) -> str:
    """Map an inventory source to the dispatcher path that can scan it."""
    if image_source == "LOCAL_DOCKER":
        return "local"
    if image_source == "FILE_UPLOAD":
        return "tar"
    return "registry"


def image_ref(record: ImageRecord) -> ImageRef:
    return ImageRef(
        id=record.image_id,
        name=record.name,
        tag=record.tag,
        source=record.source,
        digest=record.digest,
    )


class SQLitePersistence:
    """ScanPersistence backed by SQLiteStore."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    async def create_scan_record(self, request_id: str, request: ScanRequest) -> tuple[str, str]:
        image = self._store.find_image(name=request.image, tag=request.tag)
        if image is None:
            record = self._store.upsert_image(
                name=request.image,
                tag=request.tag,
                source=IMAGE_SOURCE_BY_SCAN_SOURCE.get(request.source, "REGISTRY"),
                registry=request.registry,
                registry_type=request.registry_type,
                repository_id=request.repository_id,
                docker_image_id=request.docker_image_id,
            )
            image_id = record.image_id
        else:
            image_id = str(image["image_id"])

        scan = self._store.create_scan(
            request_id=request_id,
            image_id=image_id,
            source=request.source,
            tag=request.tag,
        )
        return scan.scan_id, image_id

    async def update_scan_record(self, scan_id: str, **fields: Any) -> None:
        self._store.update_scan(scan_id, **fields)

    async def upload_scan_results(self, scan_id: str, reports: dict[str, Any]) -> None:
        self._store.save_scan_reports(scan_id, reports)

    async def create_failed_scan_record(self, image_id: str, error: str) -> str:
        scan = self._store.create_scan(
            request_id=f"failed-{uuid.uuid4().hex[:12]}",
            image_id=image_id,
            source="registry",
            tag=None,
            status="FAILED",
            error_message=error,
        )
        return scan.scan_id


class SQLiteInventory:
    """ImageInventory backed by the images table.

    Name and tag patterns are substring matches; `*` wildcards are dropped.
    """

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    async def find_images(
        self,
        *,
        image_pattern: str | None = None,
        tag_pattern: str | None = None,
    ) -> list[ImageRef]:
        records = self._store.list_images(
            name_contains=(image_pattern or "").replace("*", "") or None,
            tag_contains=(tag_pattern or "").replace("*", "") or None,
        )
        return [image_ref(r) for r in records]

    async def get_images(self, image_ids: list[str]) -> list[ImageRef]:
        return [image_ref(r) for r in self._store.get_images(image_ids)]

    async def list_images(self) -> list[ImageRef]:
        return [image_ref(r) for r in self._store.list_images()]
