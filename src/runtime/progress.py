from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

from src.config.load_config import ProgressConfig
from src.runtime.types import ProgressEvent, ScanJob, ScanStatus


logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]


class StatusUpdater(Protocol):
    def __call__(
        self,
        request_id: str,
        status: ScanStatus,
        progress: int | None = None,
        *,
        step: str | None = None,
        error: str | None = None,
    ) -> bool: ...


class ProgressTracker:
    """Fan-out of scan progress plus synthetic progress for sources without a real signal.

    Simulated curves rise quickly and then flatten below their ceiling, so they never
    report completion on their own. They stop as soon as real progress arrives, the
    job leaves RUNNING, or `cleanup()` is called for the request.
    """

    def __init__(
        self,
        *,
        get_job: Callable[[str], ScanJob | None],
        update_status: StatusUpdater,
        config: ProgressConfig,
    ) -> None:
        self._get_job = get_job
        self._update_status = update_status
        self._config = config
        self._listeners: list[ProgressListener] = []
        self._timers: dict[str, list[asyncio.Task[None]]] = {}
        self._download_timers: dict[str, asyncio.Task[None]] = {}

    # --- listeners
    def add_progress_listener(self, listener: ProgressListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_progress_listener(self, listener: ProgressListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit_progress(self, event: ProgressEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed for %s", event.request_id)

    # --- real progress
    def update_progress(self, request_id: str, progress: int, step: str | None = None) -> None:
        """Report progress measured by the dispatcher; supersedes any simulation."""
        self.cleanup(request_id)
        self._update_status(request_id, ScanStatus.RUNNING, int(progress), step=step)

    # --- simulated progress
    def simulate_download_progress(self, request_id: str) -> asyncio.Task[None]:
        task = self._spawn(
            request_id,
            self._run_curve(
                request_id,
                ceiling=self._config.download_ceiling,
                step="Downloading image",
                max_ticks=self._config.download_max_ticks,
            ),
        )
        self._download_timers[request_id] = task
        return task

    def simulate_scanning_progress(self, request_id: str) -> asyncio.Task[None]:
        download = self._download_timers.get(request_id)
        if download is not None and download.done():
            download = None
        return self._spawn(request_id, self._run_scanning(request_id, after=download))

    def cleanup(self, request_id: str) -> None:
        tasks = self._timers.pop(request_id, [])
        self._download_timers.pop(request_id, None)
        for task in tasks:
            if not task.done():
                task.cancel()

    def active_simulations(self, request_id: str) -> int:
        return sum(1 for t in self._timers.get(request_id, []) if not t.done())

    async def aclose(self) -> None:
        tasks = [t for ts in self._timers.values() for t in ts]
        self._timers.clear()
        self._download_timers.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, request_id: str, coro) -> asyncio.Task[None]:  # noqa: ANN001
        task = asyncio.get_running_loop().create_task(coro, name=f"progress-{request_id}")
        self._timers.setdefault(request_id, []).append(task)
        task.add_done_callback(lambda t, rid=request_id: self._forget(rid, t))
        return task

    def _forget(self, request_id: str, task: asyncio.Task[None]) -> None:
        tasks = self._timers.get(request_id)
        if tasks is None:
            return
        try:
            tasks.remove(task)
        except ValueError:
            return
        if not tasks:
            self._timers.pop(request_id, None)
        if self._download_timers.get(request_id) is task:
            self._download_timers.pop(request_id, None)

    async def _run_scanning(self, request_id: str, *, after: asyncio.Task[None] | None) -> None:
        if after is not None:
            await asyncio.wait({after})
        await self._run_curve(
            request_id,
            ceiling=self._config.scanning_ceiling,
            step="Scanning image",
            max_ticks=None,
        )

    async def _run_curve(self, request_id: str, *, ceiling: int, step: str, max_ticks: int | None) -> None:
        cap = max(0, min(int(ceiling), 99) - 1)
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            await asyncio.sleep(self._config.tick_interval_s)
            ticks += 1

            job = self._get_job(request_id)
            if job is None or job.status is not ScanStatus.RUNNING:
                return
            current = int(job.progress)
            if current >= cap:
                return
            increment = max(1, int(round((cap - current) * self._config.curve_factor)))
            self._update_status(request_id, ScanStatus.RUNNING, min(cap, current + increment), step=step)
