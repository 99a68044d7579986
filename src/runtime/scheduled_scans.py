from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any

from src.config.load_config import ScheduledConfig
from src.runtime.interfaces import ImageInventory
from src.runtime.scanner_service import ScannerService
from src.runtime.types import ImageRef, ProgressEvent, ScanRequest, ScanStatus
from src.storage.adapters import image_ref, scan_source_for_image
from src.storage.sqlite_store import ExecutionRecord, SQLiteStore, row_to_dict


logger = logging.getLogger(__name__)

SELECTION_MODES = ("SPECIFIC", "PATTERN", "ALL", "REPOSITORY")
TRIGGER_SOURCES = ("MANUAL", "SCHEDULED", "API")
SHUTTING_DOWN = "Scheduled scan service shutting down"
MAX_PAGE_LIMIT = 100


class ScheduledScanError(RuntimeError):
    """Invalid scheduled-scan request; `code` maps onto the API error envelope."""

    def __init__(self, message: str, *, code: str = "invalid_argument") -> None:
        super().__init__(message)
        self.code = code


class ScheduledScanNotFoundError(ScheduledScanError):
    def __init__(self, scheduled_scan_id: str) -> None:
        super().__init__(f"Scheduled scan {scheduled_scan_id} not found", code="not_found")


@dataclass
class _ExecutionRun:
    record: ExecutionRecord
    # scan_id -> scheduled_scan_results.result_id for scans still in flight.
    pending: dict[str, str] = field(default_factory=dict)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    stop_reason: str | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)


def _page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(int(limit), MAX_PAGE_LIMIT)), max(0, int(offset))


def final_execution_status(*, total: int, succeeded: int, failed: int, timed_out: bool) -> str:
    if timed_out or total == 0 or failed >= total:
        return "FAILED"
    if failed > 0 or succeeded < total:
        return "PARTIAL"
    return "COMPLETED"


class ScheduledScanService:
    """Named image selections that can be executed on demand.

    `schedule` is stored as an opaque string; nothing here evaluates it. An execution
    submits one scan per selected image, records a result row per image and then
    follows the scans through progress events until all of them are terminal or
    `monitor_timeout_s` elapses.
    """

    def __init__(
        self,
        *,
        scanner: ScannerService,
        store: SQLiteStore,
        inventory: ImageInventory,
        config: ScheduledConfig,
        priority: int = -1,
    ) -> None:
        self._scanner = scanner
        self._store = store
        self._inventory = inventory
        self._config = config
        self._priority = int(priority)
        self._runs: dict[str, _ExecutionRun] = {}
        self._watched: dict[str, _ExecutionRun] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._scanner.add_progress_listener(self._on_progress)

    # --- definitions
    def create_scheduled_scan(
        self,
        *,
        name: str,
        image_selection_mode: str,
        description: str | None = None,
        schedule: str | None = None,
        enabled: bool = True,
        image_pattern: str | None = None,
        selected_image_ids: list[str] | None = None,
        source: str = "MANUAL",
    ) -> dict[str, Any]:
        name = (name or "").strip()
        if not name:
            raise ScheduledScanError("Name is required")
        self._validate_selection(image_selection_mode, image_pattern, selected_image_ids)

        scheduled_scan_id = self._store.create_scheduled_scan(
            name=name,
            description=description,
            schedule=schedule,
            enabled=enabled,
            image_selection_mode=image_selection_mode,
            image_pattern=image_pattern,
            image_ids=list(selected_image_ids or []) if image_selection_mode == "SPECIFIC" else [],
            source=source,
        )
        logger.info("Created scheduled scan %s (%s)", scheduled_scan_id, name)
        return self.get_scheduled_scan(scheduled_scan_id)

    def _validate_selection(self, mode: str, pattern: str | None, image_ids: list[str] | None) -> None:
        if mode not in SELECTION_MODES:
            raise ScheduledScanError(f"Invalid image selection mode: {mode!r}")
        if mode == "PATTERN":
            if not pattern:
                raise ScheduledScanError("Image pattern is required for pattern-based selection")
            try:
                re.compile(pattern)
            except re.error as e:
                raise ScheduledScanError(f"Invalid image pattern: {e}") from e
        if mode == "SPECIFIC":
            ids = list(dict.fromkeys(image_ids or []))
            if not ids:
                raise ScheduledScanError("At least one image must be selected for specific selection mode")
            if len(self._store.get_images(ids)) != len(ids):
                raise ScheduledScanError("Some selected images were not found")

    def update_scheduled_scan(
        self,
        scheduled_scan_id: str,
        *,
        selected_image_ids: list[str] | None = None,
        **fields: Any,
    ) -> dict[str, Any]:
        current = self._store.get_scheduled_scan(scheduled_scan_id=scheduled_scan_id)
        if current is None:
            raise ScheduledScanNotFoundError(scheduled_scan_id)

        fields = {k: v for k, v in fields.items() if v is not None}
        if "name" in fields and not str(fields["name"]).strip():
            raise ScheduledScanError("Name is required")
        mode = fields.get("image_selection_mode", current["image_selection_mode"])
        pattern = fields.get("image_pattern", current["image_pattern"])
        ids = selected_image_ids
        if mode == "SPECIFIC" and ids is None:
            ids = [img.image_id for img in self._store.list_scheduled_scan_images(scheduled_scan_id=scheduled_scan_id)]
        self._validate_selection(mode, pattern, ids)

        self._store.update_scheduled_scan(
            scheduled_scan_id,
            image_ids=(ids or []) if mode == "SPECIFIC" else [],
            **fields,
        )
        return self.get_scheduled_scan(scheduled_scan_id)

    def delete_scheduled_scan(self, scheduled_scan_id: str) -> None:
        if not self._store.delete_scheduled_scan(scheduled_scan_id):
            raise ScheduledScanNotFoundError(scheduled_scan_id)

    def get_scheduled_scan(self, scheduled_scan_id: str) -> dict[str, Any]:
        row = row_to_dict(self._store.get_scheduled_scan(scheduled_scan_id=scheduled_scan_id))
        if row is None:
            raise ScheduledScanNotFoundError(scheduled_scan_id)
        return self._with_details(row)

    def list_scheduled_scans(
        self,
        *,
        limit: int = 25,
        offset: int = 0,
        enabled: bool | None = None,
    ) -> dict[str, Any]:
        limit, offset = _page(limit, offset)
        rows, total = self._store.list_scheduled_scans_page(limit=limit, offset=offset, enabled=enabled)
        return {
            "scheduled_scans": [self._with_details(row_to_dict(r) or {}) for r in rows],
            "pagination": {"total": total, "limit": limit, "offset": offset, "has_more": offset + limit < total},
        }

    def _with_details(self, row: dict[str, Any]) -> dict[str, Any]:
        sid = row["scheduled_scan_id"]
        images = self._store.list_scheduled_scan_images(scheduled_scan_id=sid)
        row["selected_images"] = [
            {"image_id": img.image_id, "image_name": img.name, "image_tag": img.tag} for img in images
        ]
        row["last_execution"] = row_to_dict(self._store.get_latest_execution(scheduled_scan_id=sid))
        return row

    # --- execution
    async def execute_scheduled_scan(
        self,
        scheduled_scan_id: str,
        *,
        trigger_source: str = "MANUAL",
        triggered_by: str | None = "API",
    ) -> dict[str, Any]:
        if self._closed:
            raise ScheduledScanError(SHUTTING_DOWN, code="unavailable")
        if trigger_source not in TRIGGER_SOURCES:
            raise ScheduledScanError(f"Invalid trigger source: {trigger_source!r}")

        scheduled = self._store.get_scheduled_scan(scheduled_scan_id=scheduled_scan_id)
        if scheduled is None:
            raise ScheduledScanNotFoundError(scheduled_scan_id)
        if not scheduled["enabled"]:
            raise ScheduledScanError("Scheduled scan is disabled")

        images = await self._resolve_images(scheduled)
        if not images:
            raise ScheduledScanError("No images found to scan")

        record = self._store.create_execution(
            scheduled_scan_id=scheduled_scan_id,
            total_images=len(images),
            trigger_source=trigger_source,
            triggered_by=triggered_by,
        )
        run = _ExecutionRun(record=record)
        self._runs[record.history_id] = run
        run.task = asyncio.get_running_loop().create_task(
            self._run_execution(run, images),
            name=f"scheduled-{record.execution_id}",
        )
        self._tasks.add(run.task)
        run.task.add_done_callback(self._tasks.discard)

        logger.info("Scheduled scan %s execution %s started for %d images", scheduled_scan_id, record.execution_id, len(images))
        return {
            "execution_id": record.execution_id,
            "history_id": record.history_id,
            "total_images": record.total_images,
            "status": "STARTED",
            "message": f"Scheduled scan execution started for {record.total_images} images",
        }

    async def _resolve_images(self, scheduled: Any) -> list[ImageRef]:
        mode = scheduled["image_selection_mode"]
        if mode == "SPECIFIC":
            records = self._store.list_scheduled_scan_images(scheduled_scan_id=scheduled["scheduled_scan_id"])
            return [image_ref(r) for r in records]
        if mode == "PATTERN":
            if not scheduled["image_pattern"]:
                return []
            regex = re.compile(scheduled["image_pattern"])
            return [img for img in await self._inventory.list_images() if regex.search(img.full_name)]
        if mode == "ALL":
            return await self._inventory.list_images()
        if mode == "REPOSITORY":
            raise ScheduledScanError("Repository-based selection not yet implemented", code="not_implemented")
        raise ScheduledScanError(f"Invalid image selection mode: {mode!r}")

    async def _run_execution(self, run: _ExecutionRun, images: list[ImageRef]) -> None:
        history_id = run.record.history_id
        try:
            self._store.update_execution(history_id, status="RUNNING", started_at=time.time())
            scanned, failed = await self._submit_all(run, images)
            self._store.update_execution(history_id, scanned_images=scanned, failed_images=failed)

            if scanned == 0:
                self._finish(run, timed_out=False, error="No scans could be started")
                return

            timed_out = False
            if run.pending and run.stop_reason is None:
                # Scans that finished during submission may have set it early.
                run.done.clear()
                try:
                    await asyncio.wait_for(run.done.wait(), timeout=self._config.monitor_timeout_s)
                except asyncio.TimeoutError:
                    timed_out = True
            error = None
            if timed_out:
                error = f"Scan monitoring timeout after {self._config.monitor_timeout_s:g} seconds"
            self._finish(run, timed_out=timed_out, error=run.stop_reason or error)
        except Exception as e:
            logger.exception("Scheduled scan execution %s failed", run.record.execution_id)
            self._store.update_execution(
                history_id,
                status="FAILED",
                error_message=str(e) or type(e).__name__,
                completed_at=time.time(),
            )
        finally:
            for scan_id in list(run.pending):
                self._watched.pop(scan_id, None)
            self._runs.pop(history_id, None)

    async def _submit_all(self, run: _ExecutionRun, images: list[ImageRef]) -> tuple[int, int]:
        history_id = run.record.history_id
        scanned = 0
        failed = 0
        for image in images:
            if run.stop_reason is not None:
                break
            result_id = self._store.create_execution_result(
                history_id=history_id,
                image_id=image.id,
                image_name=image.name,
                image_tag=image.tag,
            )
            try:
                started = await self._scanner.start_scan(
                    ScanRequest(image=image.name, tag=image.tag, source=scan_source_for_image(image.source)),
                    self._priority,
                )
            except Exception as e:
                logger.error("Error scanning image %s: %s", image.full_name, e)
                self._store.update_execution_result(
                    result_id,
                    status="FAILED",
                    error_message=str(e) or "Failed to start scan",
                    completed_at=time.time(),
                )
                failed += 1
            else:
                self._store.update_execution_result(result_id, scan_id=started.scan_id, status="RUNNING")
                job = self._scanner.get_scan_job(started.request_id)
                if job is not None and job.status.terminal:
                    self._record_outcome(result_id, job.status, job.error)
                else:
                    run.pending[started.scan_id] = result_id
                    self._watched[started.scan_id] = run
                scanned += 1
            self._store.update_execution(history_id, scanned_images=scanned, failed_images=failed)
            await asyncio.sleep(0)
        return scanned, failed

    def _on_progress(self, event: ProgressEvent) -> None:
        if not event.status.terminal:
            return
        run = self._watched.pop(event.scan_id, None)
        if run is None:
            return
        result_id = run.pending.pop(event.scan_id, None)
        if result_id is not None:
            self._record_outcome(result_id, event.status, event.error)
        if not run.pending:
            run.done.set()

    def _record_outcome(self, result_id: str, status: ScanStatus, error: str | None) -> None:
        if status is ScanStatus.SUCCESS:
            self._store.update_execution_result(result_id, status="SUCCESS", completed_at=time.time())
            return
        self._store.update_execution_result(
            result_id,
            status="FAILED",
            error_message=error or ("Scan cancelled" if status is ScanStatus.CANCELLED else "Scan failed"),
            completed_at=time.time(),
        )

    def _finish(self, run: _ExecutionRun, *, timed_out: bool, error: str | None) -> None:
        results = self._store.list_execution_results(history_id=run.record.history_id)
        succeeded = sum(1 for r in results if r["status"] == "SUCCESS")
        failed = sum(1 for r in results if r["status"] == "FAILED")
        status = final_execution_status(
            total=run.record.total_images,
            succeeded=succeeded,
            failed=failed,
            timed_out=timed_out or run.stop_reason is not None,
        )
        self._store.update_execution(
            run.record.history_id,
            status=status,
            scanned_images=succeeded,
            failed_images=failed,
            error_message=error,
            completed_at=time.time(),
        )
        logger.info(
            "Scheduled scan execution %s finished %s (%d succeeded, %d failed)",
            run.record.execution_id,
            status,
            succeeded,
            failed,
        )

    # --- history
    def get_execution_history(
        self,
        *,
        scheduled_scan_id: str | None = None,
        status: str | None = None,
        trigger_source: str | None = None,
        limit: int = 25,
        offset: int = 0,
    ) -> dict[str, Any]:
        limit, offset = _page(limit, offset)
        rows, total = self._store.list_executions_page(
            limit=limit,
            offset=offset,
            scheduled_scan_id=scheduled_scan_id,
            status=status,
            trigger_source=trigger_source,
        )
        history = []
        for row in rows:
            entry = row_to_dict(row) or {}
            results = [row_to_dict(r) or {} for r in self._store.list_execution_results(history_id=entry["history_id"])]
            entry["scan_results"] = results
            entry["vulnerability_stats"] = {
                level: sum(int(r[f"vulnerability_{level}"] or 0) for r in results)
                for level in ("critical", "high", "medium", "low")
            }
            entry["scan_stats"] = {
                "success": sum(1 for r in results if r["status"] == "SUCCESS"),
                "failed": sum(1 for r in results if r["status"] == "FAILED"),
                "pending": sum(1 for r in results if r["status"] in ("PENDING", "RUNNING")),
            }
            history.append(entry)
        return {
            "history": history,
            "pagination": {"total": total, "limit": limit, "offset": offset, "has_more": offset + limit < total},
        }

    async def wait_execution(self, history_id: str) -> None:
        """Wait for an in-flight execution to reach its final status."""
        run = self._runs.get(history_id)
        if run is not None and run.task is not None:
            await asyncio.wait({run.task})

    async def aclose(self, *, timeout_s: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        for run in list(self._runs.values()):
            run.stop_reason = SHUTTING_DOWN
            run.done.set()
        tasks = set(self._tasks)
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=timeout_s)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._scanner.remove_progress_listener(self._on_progress)
