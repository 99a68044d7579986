from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src.config.load_config import BulkConfig
from src.runtime.interfaces import ImageInventory, ScanPersistence
from src.runtime.scanner_service import ScannerService
from src.runtime.types import ImageRef, ProgressEvent, ScanRequest
from src.storage.adapters import scan_source_for_image
from src.storage.sqlite_store import SQLiteStore, row_to_dict


logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"
SHUTTING_DOWN = "Bulk scan service shutting down"


class BulkScanError(RuntimeError):
    pass


class BulkScanNotFoundError(BulkScanError):
    pass


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile a `*`/`?` glob into an anchored regex; other characters match literally."""
    escaped = re.escape(pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{escaped}$")


def apply_exclude_patterns(images: list[ImageRef], exclude_patterns: list[str] | None) -> list[ImageRef]:
    if not exclude_patterns:
        return list(images)
    compiled = [glob_to_regex(p) for p in exclude_patterns if p]
    return [img for img in images if not any(rx.match(img.full_name) for rx in compiled)]


@dataclass(frozen=True)
class BulkScanRequest:
    image_pattern: str | None = None
    tag_pattern: str | None = None
    exclude_patterns: tuple[str, ...] = ()
    max_images: int | None = None
    name: str | None = None
    scanners: dict[str, bool] | None = None

    def patterns(self) -> dict[str, Any]:
        return {
            "image_pattern": self.image_pattern,
            "tag_pattern": self.tag_pattern,
            "exclude_patterns": list(self.exclude_patterns),
        }


@dataclass(frozen=True)
class BulkScanResult:
    batch_id: str
    total_images: int
    skipped: int

    def to_dict(self) -> dict[str, Any]:
        return {"batch_id": self.batch_id, "total_images": self.total_images, "skipped": self.skipped}


@dataclass
class _BatchRun:
    batch_id: str
    total_images: int
    scanned: int = 0
    failed: int = 0
    stop_reason: str | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)


def _new_batch_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"bulk-{stamp}-{uuid.uuid4().hex[:8]}"


def _summary(counts: dict[str, int]) -> dict[str, int]:
    return {
        "running": counts.get("RUNNING", 0),
        "completed": counts.get("SUCCESS", 0),
        "failed": counts.get("FAILED", 0),
        "cancelled": counts.get("CANCELLED", 0),
    }


class BulkScanService:
    """Expands a pattern selection into one batch of scans submitted at bulk priority.

    Submission is sequential: each child contends for one queue slot at a time, so an
    interactive scan arriving mid-batch still gets ahead of the remaining bulk work.
    Batch COMPLETED means every submission was attempted; per-item status follows
    the children's own lifecycle.
    """

    def __init__(
        self,
        *,
        scanner: ScannerService,
        inventory: ImageInventory,
        persistence: ScanPersistence,
        store: SQLiteStore,
        config: BulkConfig,
        priority: int = -1,
    ) -> None:
        self._scanner = scanner
        self._inventory = inventory
        self._persistence = persistence
        self._store = store
        self._config = config
        self._priority = int(priority)
        self._runs: dict[str, _BatchRun] = {}
        self._scan_batches: dict[str, str] = {}
        self._closed = False
        self._scanner.add_progress_listener(self._on_progress)

    async def execute_bulk_scan(self, request: BulkScanRequest) -> BulkScanResult:
        if self._closed:
            raise BulkScanError(SHUTTING_DOWN)

        candidates = await self._inventory.find_images(
            image_pattern=request.image_pattern,
            tag_pattern=request.tag_pattern,
        )
        images = apply_exclude_patterns(candidates, list(request.exclude_patterns))
        logger.info("Found %d images matching bulk scan criteria (%d excluded)", len(images), len(candidates) - len(images))
        if not images:
            raise BulkScanError("No images found matching the specified patterns")

        if request.max_images is not None and int(request.max_images) < 0:
            raise BulkScanError("max_images must not be negative")
        cap = self._config.max_images_limit
        if request.max_images:
            # 0 means no cap beyond the configured limit.
            cap = min(cap, int(request.max_images))
        selected = images[:cap]
        skipped = len(candidates) - len(selected)

        batch_id = _new_batch_id()
        self._store.create_bulk_batch(
            batch_id=batch_id,
            name=request.name,
            total_images=len(selected),
            patterns=request.patterns(),
        )
        logger.info("Starting bulk scan %s for %d images", batch_id, len(selected))

        run = _BatchRun(batch_id=batch_id, total_images=len(selected))
        self._runs[batch_id] = run
        run.task = asyncio.get_running_loop().create_task(
            self._submit_all(run, selected, request.scanners),
            name=f"bulk-{batch_id}",
        )
        run.task.add_done_callback(lambda _t, bid=batch_id: self._runs.pop(bid, None))

        return BulkScanResult(batch_id=batch_id, total_images=len(selected), skipped=skipped)

    async def _submit_all(self, run: _BatchRun, images: list[ImageRef], scanners: dict[str, bool] | None) -> None:
        try:
            for index, image in enumerate(images, start=1):
                if run.stop_reason is not None:
                    logger.info("Bulk scan %s stopped before image %d/%d", run.batch_id, index, run.total_images)
                    break
                await self._submit_one(run, image, scanners, index=index)
                # Let interactive requests and cancels run between items.
                await asyncio.sleep(0)
        except Exception as e:
            logger.exception("Bulk scan %s failed", run.batch_id)
            self._store.finish_bulk_batch(run.batch_id, "FAILED", error=str(e) or type(e).__name__)
            return

        if run.stop_reason is not None:
            self._store.finish_bulk_batch(run.batch_id, "FAILED", error=run.stop_reason)
            return
        if self._store.finish_bulk_batch(run.batch_id, "COMPLETED"):
            logger.info(
                "Bulk scan batch %s completed. %d submitted, %d failed",
                run.batch_id,
                run.scanned,
                run.failed,
            )

    async def _submit_one(
        self,
        run: _BatchRun,
        image: ImageRef,
        scanners: dict[str, bool] | None,
        *,
        index: int,
    ) -> None:
        request = ScanRequest(
            image=image.name,
            tag=image.tag,
            source=scan_source_for_image(image.source),
            scanners=scanners,
        )
        try:
            result = await self._scanner.start_scan(request, self._priority)
            self._scan_batches[result.scan_id] = run.batch_id
            job = self._scanner.get_scan_job(result.request_id)
            status = "RUNNING"
            if job is not None and job.status.terminal:
                # Finished before it could be linked; no further event will arrive.
                status = job.status.value
                self._scan_batches.pop(result.scan_id, None)
            self._store.add_bulk_item(
                batch_id=run.batch_id,
                scan_id=result.scan_id,
                image_id=image.id,
                status=status,
            )
            if result.queued:
                logger.info("[%d/%d] Scan for %s queued at position %s", index, run.total_images, image.full_name, result.queue_position)
            else:
                logger.info("[%d/%d] Scan for %s started", index, run.total_images, image.full_name)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error("Failed to start scan for %s: %s", image.full_name, message)
            try:
                scan_id = await self._persistence.create_failed_scan_record(image.id, message)
                self._store.add_bulk_item(batch_id=run.batch_id, scan_id=scan_id, image_id=image.id, status="FAILED")
            except Exception:
                logger.exception("Failed to record failed scan for %s", image.full_name)
            run.failed += 1
            self._store.record_bulk_submission(run.batch_id, failed=True)
        else:
            run.scanned += 1
            self._store.record_bulk_submission(run.batch_id, failed=False)

    def _on_progress(self, event: ProgressEvent) -> None:
        if not event.status.terminal:
            return
        batch_id = self._scan_batches.pop(event.scan_id, None)
        if batch_id is None:
            return
        self._store.update_bulk_items_for_scan(event.scan_id, event.status.value)

    async def cancel_bulk_scan(self, batch_id: str) -> dict[str, Any]:
        batch = self._store.get_bulk_batch(batch_id=batch_id)
        if batch is None:
            raise BulkScanNotFoundError(f"Bulk scan batch {batch_id} not found")
        if batch["status"] != "RUNNING":
            raise BulkScanError(f"Bulk scan batch {batch_id} is not running")

        run = self._runs.get(batch_id)
        if run is not None:
            run.stop_reason = CANCELLED_BY_USER

        cancelled = 0
        for item in self._store.list_bulk_items(batch_id=batch_id, status="RUNNING"):
            try:
                if await self._scanner.cancel_scan(str(item["request_id"])):
                    cancelled += 1
            except Exception:
                logger.warning("Failed to cancel scan %s", item["scan_id"], exc_info=True)

        self._store.finish_bulk_batch(batch_id, "FAILED", error=CANCELLED_BY_USER)
        logger.info("Bulk scan %s cancelled (%d running scans cancelled)", batch_id, cancelled)
        return {"batch_id": batch_id, "cancelled_scans": cancelled}

    def get_bulk_scan_status(self, batch_id: str) -> dict[str, Any]:
        batch = row_to_dict(self._store.get_bulk_batch(batch_id=batch_id))
        if batch is None:
            raise BulkScanNotFoundError(f"Bulk scan batch {batch_id} not found")
        items = [row_to_dict(r) for r in self._store.list_bulk_items(batch_id=batch_id)]
        return {
            **batch,
            "items": items,
            "summary": _summary(self._store.count_bulk_items_by_status(batch_id=batch_id)),
        }

    def get_bulk_scan_history(self, limit: int | None = None) -> list[dict[str, Any]]:
        limit = self._config.history_default_limit if limit is None else max(1, int(limit))
        out: list[dict[str, Any]] = []
        for row in self._store.list_bulk_batches(limit=limit):
            batch = row_to_dict(row) or {}
            batch["summary"] = _summary(self._store.count_bulk_items_by_status(batch_id=batch["batch_id"]))
            out.append(batch)
        return out

    def get_active_batches(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for row in self._store.list_bulk_batches(limit=self._config.max_images_limit, status="RUNNING"):
            batch = row_to_dict(row) or {}
            batch["items"] = [row_to_dict(r) for r in self._store.list_bulk_items(batch_id=batch["batch_id"])]
            out.append(batch)
        return out

    async def wait_submitted(self, batch_id: str) -> None:
        """Wait for the background submission loop of a batch to finish."""
        run = self._runs.get(batch_id)
        if run is not None and run.task is not None:
            await asyncio.wait({run.task})

    async def aclose(self, *, timeout_s: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        tasks = []
        for run in list(self._runs.values()):
            run.stop_reason = SHUTTING_DOWN
            if run.task is not None:
                tasks.append(run.task)
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=timeout_s)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._scanner.remove_progress_listener(self._on_progress)
