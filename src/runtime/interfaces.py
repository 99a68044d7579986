"""Contracts of the collaborators the scan runtime depends on.

Scan execution, persistence, notifications and the image inventory live outside
the orchestration core; these protocols are the only surface the core relies on.
"""

from __future__ import annotations

from typing import Any, Protocol

from src.runtime.types import ImageRef, ScanContext, ScanRequest, SeverityCounts


class ScanPersistence(Protocol):
    async def create_scan_record(self, request_id: str, request: ScanRequest) -> tuple[str, str]:
        """Create the durable scan record; returns (scan_id, image_id)."""
        ...

    async def update_scan_record(self, scan_id: str, **fields: Any) -> None: ...

    async def upload_scan_results(self, scan_id: str, reports: dict[str, Any]) -> None: ...

    async def create_failed_scan_record(self, image_id: str, error: str) -> str:
        """Create a terminal FAILED scan record with no job behind it; returns scan_id."""
        ...


class ScanDispatcher(Protocol):
    async def execute_tar_scan(self, ctx: ScanContext) -> None: ...

    async def execute_local_scan(self, ctx: ScanContext) -> None: ...

    async def execute_registry_scan(self, ctx: ScanContext) -> None: ...

    async def load_scan_results(self, request_id: str) -> dict[str, Any]:
        """Raw reports keyed by scanner name (trivy, grype, syft, ...)."""
        ...

    async def scanner_versions(self) -> dict[str, str]: ...


class Notifier(Protocol):
    async def notify_scan_complete(self, image_ref: str, scan_id: str, counts: SeverityCounts) -> None: ...


class ImageInventory(Protocol):
    async def find_images(
        self,
        *,
        image_pattern: str | None = None,
        tag_pattern: str | None = None,
    ) -> list[ImageRef]: ...

    async def get_images(self, image_ids: list[str]) -> list[ImageRef]: ...

    async def list_images(self) -> list[ImageRef]: ...
