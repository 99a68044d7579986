from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Coroutine

from src.config.load_config import AppConfig, ProgressConfig
from src.runtime.interfaces import Notifier, ScanDispatcher, ScanPersistence
from src.runtime.notifications import LoggingNotifier
from src.runtime.progress import ProgressListener, ProgressTracker
from src.runtime.scan_queue import ScanQueue
from src.runtime.severity import calculate_severity_counts
from src.runtime.types import (
    ProgressEvent,
    QueuedScan,
    ScanContext,
    ScanJob,
    ScanRequest,
    ScanStatus,
    SeverityCounts,
    StartScanResult,
    can_transition,
)


logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"
SHUTTING_DOWN = "Scanner service shutting down"


class ScanSubmissionError(RuntimeError):
    """A scan request was rejected before any job was created."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class ScannerService:
    """Job registry and lifecycle state machine for image scans.

    Owns the in-memory job table (one ScanJob per request id, kept for the process
    lifetime), the bounded queue and the progress tracker. All mutation happens on
    the event loop that calls into it; there are no locks because the only
    suspension points are awaits on persistence and on the dispatcher.

    Slot accounting: every path that ends a RUNNING job goes through
    `_release_slot`, which releases the queue slot at most once per job.
    """

    def __init__(
        self,
        *,
        persistence: ScanPersistence,
        dispatcher: ScanDispatcher,
        queue: ScanQueue,
        progress_config: ProgressConfig,
        notifier: Notifier | None = None,
        default_priority: int = 0,
    ) -> None:
        self._persistence = persistence
        self._dispatcher = dispatcher
        self._queue = queue
        self._notifier = notifier or LoggingNotifier()
        self._default_priority = int(default_priority)
        self._jobs: dict[str, ScanJob] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False
        self._progress = ProgressTracker(
            get_job=self._jobs.get,
            update_status=self._update_job_status,
            config=progress_config,
        )
        self._queue.on_scan_started(self._on_scan_started)

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        *,
        persistence: ScanPersistence,
        dispatcher: ScanDispatcher,
        notifier: Notifier | None = None,
    ) -> ScannerService:
        queue = ScanQueue(
            max_concurrent=cfg.queue.max_concurrent_scans,
            duration_history=cfg.queue.duration_history,
        )
        return cls(
            persistence=persistence,
            dispatcher=dispatcher,
            queue=queue,
            progress_config=cfg.progress,
            notifier=notifier,
            default_priority=cfg.priorities.interactive,
        )

    @property
    def queue(self) -> ScanQueue:
        return self._queue

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    # --- submission
    async def start_scan(self, request: ScanRequest, priority: int | None = None) -> StartScanResult:
        if self._closed:
            raise ScanSubmissionError(SHUTTING_DOWN)
        if not (request.image or "").strip():
            raise ScanSubmissionError("Scan request requires an image name")
        if request.source == "tar" and not request.tar_path:
            raise ScanSubmissionError("Archive scans require tar_path")

        request_id = self._new_request_id()
        logger.info("Requesting scan for %s with request id %s", request.image_ref, request_id)

        scan_id, image_id = await self._persistence.create_scan_record(request_id, request)

        self._jobs[request_id] = ScanJob(
            request_id=request_id,
            scan_id=scan_id,
            image_id=image_id,
            image_ref=request.image_ref,
        )
        position = self._queue.enqueue(
            QueuedScan(
                request_id=request_id,
                scan_id=scan_id,
                image_id=image_id,
                request=request,
                priority=self._default_priority if priority is None else int(priority),
            )
        )

        queued = position > 0
        if queued:
            logger.info("Scan %s queued at position %d", request_id, position)
            await self._persist_quietly(scan_id, status=ScanStatus.PENDING.value)

        return StartScanResult(
            request_id=request_id,
            scan_id=scan_id,
            queued=queued,
            queue_position=position if queued else None,
        )

    def _new_request_id(self) -> str:
        while True:
            stamp = _utc_now().strftime("%Y%m%d-%H%M%S")
            request_id = f"{stamp}-{uuid.uuid4().hex[:8]}"
            if request_id not in self._jobs:
                return request_id

    # --- execution
    def _on_scan_started(self, queued: QueuedScan) -> None:
        job = self._jobs.get(queued.request_id)
        if job is None:
            logger.error("Queue started unknown scan %s; releasing its slot", queued.request_id)
            self._queue.complete_scan(queued.request_id, error="unknown job")
            return
        if self._closed:
            job.cancel.request_cancel(SHUTTING_DOWN)
            self._update_job_status(job.request_id, ScanStatus.CANCELLED, error=SHUTTING_DOWN)
            self._release_slot(job, error=SHUTTING_DOWN)
            return

        logger.info("Processing queued scan %s", queued.request_id)
        self._update_job_status(job.request_id, ScanStatus.RUNNING, step="Starting scan")
        self._spawn(self._execute_scan(job, queued.request), name=f"scan-{job.request_id}")

    async def _execute_scan(self, job: ScanJob, request: ScanRequest) -> None:
        """Single dispatch boundary: nothing raised below escapes, the slot is always released."""
        try:
            if job.status.terminal:
                return
            await self._persistence.update_scan_record(
                job.scan_id, status=ScanStatus.RUNNING.value, started_at=time.time()
            )
            if job.status.terminal:
                # Cancelled while the RUNNING write was in flight.
                await self._persist_quietly(job.scan_id, status=job.status.value)
                return
            await self._dispatch(job, request)
            if job.status.terminal:
                logger.info("Ignoring late completion of scan %s (%s)", job.request_id, job.status.value)
                return
            await self._finalize_scan(job, request)
        except Exception as e:
            await self._fail_scan(job, e)
        finally:
            self._progress.cleanup(job.request_id)
            self._release_slot(job)

    async def _dispatch(self, job: ScanJob, request: ScanRequest) -> None:
        ctx = ScanContext(
            request_id=job.request_id,
            scan_id=job.scan_id,
            image_id=job.image_id,
            request=request,
            cancel=job.cancel,
            report_progress=lambda value, step: self._progress.update_progress(job.request_id, value, step),
        )
        if request.source == "tar":
            await self._dispatcher.execute_tar_scan(ctx)
        elif request.source == "local":
            await self._dispatcher.execute_local_scan(ctx)
        else:
            self._progress.simulate_download_progress(job.request_id)
            self._progress.simulate_scanning_progress(job.request_id)
            await self._dispatcher.execute_registry_scan(ctx)

    async def _finalize_scan(self, job: ScanJob, request: ScanRequest) -> None:
        self._progress.cleanup(job.request_id)
        self._update_job_status(job.request_id, ScanStatus.RUNNING, 90, step="Processing scan results")

        reports = dict(await self._dispatcher.load_scan_results(job.request_id))
        metadata = dict(reports.get("metadata") or {})
        metadata["scannerVersions"] = await self._dispatcher.scanner_versions()
        reports["metadata"] = metadata
        if self._ended_while_finalizing(job):
            return

        await self._persistence.upload_scan_results(job.scan_id, reports)
        counts = calculate_severity_counts(reports)
        if self._ended_while_finalizing(job):
            return

        await self._persistence.update_scan_record(
            job.scan_id,
            status=ScanStatus.SUCCESS.value,
            finished_at=time.time(),
            vulnerability_critical=counts.critical,
            vulnerability_high=counts.high,
            vulnerability_medium=counts.medium,
            vulnerability_low=counts.low,
        )
        if self._ended_while_finalizing(job):
            return

        if counts.needs_attention:
            self._spawn(self._notify(request.image_ref, job.scan_id, counts), name=f"notify-{job.request_id}")

        self._update_job_status(job.request_id, ScanStatus.SUCCESS, 100, step="Scan completed successfully")
        self._release_slot(job)

    def _ended_while_finalizing(self, job: ScanJob) -> bool:
        if job.status.terminal:
            logger.info("Scan %s was %s while finalizing", job.request_id, job.status.value)
            return True
        return False

    async def _fail_scan(self, job: ScanJob, exc: Exception) -> None:
        message = _error_message(exc)
        self._progress.cleanup(job.request_id)
        if not self._update_job_status(job.request_id, ScanStatus.FAILED, error=message, step="Scan failed"):
            logger.info("Ignoring failure of scan %s after %s: %s", job.request_id, job.status.value, message)
            return
        logger.error("Scan %s failed: %s", job.request_id, message, exc_info=exc)
        self._release_slot(job, error=message)
        await self._persist_quietly(
            job.scan_id,
            status=ScanStatus.FAILED.value,
            error_message=message,
            finished_at=time.time(),
        )

    async def _notify(self, image_ref: str, scan_id: str, counts: SeverityCounts) -> None:
        try:
            await self._notifier.notify_scan_complete(image_ref, scan_id, counts)
        except Exception:
            logger.exception("Notification for scan %s failed", scan_id)

    def _release_slot(self, job: ScanJob, error: str | None = None) -> None:
        if job.slot_released:
            return
        job.slot_released = True
        self._queue.complete_scan(job.request_id, error)

    # --- cancellation
    async def cancel_scan(self, request_id: str) -> bool:
        job = self._jobs.get(request_id)

        if self._queue.cancel_queued_scan(request_id):
            if job is not None:
                job.cancel.request_cancel(CANCELLED_BY_USER)
                # Never held a slot.
                job.slot_released = True
                self._update_job_status(request_id, ScanStatus.CANCELLED, step="Cancelled")
                await self._persist_quietly(
                    job.scan_id, status=ScanStatus.CANCELLED.value, finished_at=time.time()
                )
            return True

        if job is None or job.status is not ScanStatus.RUNNING:
            return False

        job.cancel.request_cancel(CANCELLED_BY_USER)
        self._progress.cleanup(request_id)
        self._update_job_status(request_id, ScanStatus.CANCELLED, step="Cancelled")
        self._release_slot(job, error=CANCELLED_BY_USER)
        await self._persist_quietly(job.scan_id, status=ScanStatus.CANCELLED.value, finished_at=time.time())
        return True

    # --- state machine
    def _update_job_status(
        self,
        request_id: str,
        status: ScanStatus,
        progress: int | None = None,
        *,
        step: str | None = None,
        error: str | None = None,
    ) -> bool:
        job = self._jobs.get(request_id)
        if job is None:
            return False
        if not can_transition(job.status, status):
            logger.debug("Rejected transition %s -> %s for %s", job.status.value, status.value, request_id)
            return False

        job.status = status
        if progress is not None:
            value = max(0, min(100, int(progress)))
            if status is ScanStatus.RUNNING:
                # Only a terminal SUCCESS may report 100.
                value = min(99, max(job.progress, value))
            job.progress = value
        if step is not None:
            job.step = step
        if error:
            job.error = error

        self._progress.emit_progress(
            ProgressEvent(
                request_id=request_id,
                scan_id=job.scan_id,
                status=status,
                progress=job.progress,
                step=step,
                error=error,
            )
        )
        return True

    # --- reads
    def get_scan_job(self, request_id: str) -> ScanJob | None:
        return self._jobs.get(request_id)

    def get_all_jobs(self) -> list[ScanJob]:
        return list(self._jobs.values())

    def get_queue_stats(self) -> dict[str, int]:
        return self._queue.get_stats()

    def get_queued_scans(self) -> list[QueuedScan]:
        return self._queue.get_queued_scans()

    def get_running_scans(self) -> list[QueuedScan]:
        return self._queue.get_running_scans()

    def get_queue_position(self, request_id: str) -> int:
        return self._queue.get_queue_position(request_id)

    def get_estimated_wait_time(self, request_id: str) -> float | None:
        return self._queue.get_estimated_wait_time(request_id)

    def get_jobs_snapshot(self) -> dict[str, Any]:
        return {
            "jobs": [job.snapshot() for job in self._jobs.values()],
            "queued_scans": [
                {
                    **scan.snapshot(),
                    "status": "QUEUED",
                    "queue_position": self._queue.get_queue_position(scan.request_id),
                    "estimated_wait_time": self._queue.get_estimated_wait_time(scan.request_id),
                }
                for scan in self._queue.get_queued_scans()
            ],
            "queue_stats": self._queue.get_stats(),
        }

    # --- listeners
    def add_progress_listener(self, listener: ProgressListener) -> None:
        self._progress.add_progress_listener(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        self._progress.remove_progress_listener(listener)

    # --- background work
    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=exc)

    async def wait_idle(self, *, timeout_s: float | None = None) -> bool:
        """Wait until no scan is queued or running. Returns False on timeout."""
        deadline = None if timeout_s is None else time.monotonic() + timeout_s
        while self._tasks or self._queue.queued_count or self._queue.running_count:
            if deadline is not None and time.monotonic() >= deadline:
                return False
            if self._tasks:
                await asyncio.wait(set(self._tasks), timeout=0.05)
            else:
                await asyncio.sleep(0.01)
        return True

    async def aclose(self, *, timeout_s: float = 5.0) -> None:
        """Stop accepting scans, cancel pending ones and join in-flight work."""
        if self._closed:
            return
        self._closed = True

        for queued in self._queue.get_queued_scans():
            self._queue.cancel_queued_scan(queued.request_id)
            job = self._jobs.get(queued.request_id)
            if job is not None:
                job.slot_released = True
                self._update_job_status(job.request_id, ScanStatus.CANCELLED, error=SHUTTING_DOWN)
                await self._persist_quietly(job.scan_id, status=ScanStatus.CANCELLED.value, error_message=SHUTTING_DOWN)

        tasks = set(self._tasks)
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=timeout_s)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await self._progress.aclose()
        self._queue.off_scan_started(self._on_scan_started)

    async def _persist_quietly(self, scan_id: str, **fields: Any) -> None:
        try:
            await self._persistence.update_scan_record(scan_id, **fields)
        except Exception:
            logger.exception("Failed to persist %s for scan %s", fields.get("status"), scan_id)
