from __future__ import annotations

import bisect
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from src.runtime.types import QueuedScan


logger = logging.getLogger(__name__)

ScanStartedListener = Callable[[QueuedScan], None]


class QueueError(ValueError):
    pass


@dataclass
class _RunningSlot:
    scan: QueuedScan
    started_at: float


class ScanQueue:
    """Bounded priority queue for scan jobs.

    - At most `max_concurrent` scans hold a running slot at any time.
    - Pending scans start in order of priority (higher value first), then arrival.
    - Promotion happens synchronously inside `enqueue` / `complete_scan`; every
      promoted scan is announced to the "scan started" listeners.
    """

    def __init__(
        self,
        *,
        max_concurrent: int,
        duration_history: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent < 1:
            raise QueueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent = int(max_concurrent)
        self._clock = clock
        self._seq = itertools.count()
        # Sorted by (-priority, arrival seq).
        self._pending: list[tuple[tuple[int, int], QueuedScan]] = []
        self._running: dict[str, _RunningSlot] = {}
        self._durations: deque[float] = deque(maxlen=max(1, int(duration_history)))
        self._listeners: list[ScanStartedListener] = []

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_count(self) -> int:
        return len(self._pending)

    def on_scan_started(self, listener: ScanStartedListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def off_scan_started(self, listener: ScanStartedListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def contains(self, request_id: str) -> bool:
        return request_id in self._running or self._pending_index(request_id) is not None

    def is_running(self, request_id: str) -> bool:
        return request_id in self._running

    def enqueue(self, scan: QueuedScan) -> int:
        """Add a scan; returns its queue position (0 when it started immediately)."""
        if self.contains(scan.request_id):
            raise QueueError(f"Scan {scan.request_id} is already queued or running")

        key = (-int(scan.priority), next(self._seq))
        bisect.insort(self._pending, (key, scan), key=lambda entry: entry[0])
        logger.debug(
            "Enqueued scan %s (priority=%s, queued=%d, running=%d/%d)",
            scan.request_id,
            scan.priority,
            len(self._pending),
            len(self._running),
            self._max_concurrent,
        )
        self._promote()
        return self.get_queue_position(scan.request_id)

    def complete_scan(self, request_id: str, error: str | None = None) -> bool:
        """Release the running slot held by `request_id`.

        Returns False when the scan does not hold a slot (unknown, still pending, or
        already released); a second release for the same scan is a no-op.
        """
        slot = self._running.pop(request_id, None)
        if slot is None:
            return False

        duration = self._clock() - slot.started_at
        if error is None:
            self._durations.append(max(0.0, duration))
            logger.info("Scan %s released its slot after %.1fs", request_id, duration)
        else:
            logger.info("Scan %s released its slot after %.1fs (%s)", request_id, duration, error)

        self._promote()
        return True

    def cancel_queued_scan(self, request_id: str) -> bool:
        idx = self._pending_index(request_id)
        if idx is None:
            return False
        del self._pending[idx]
        logger.info("Removed pending scan %s from the queue", request_id)
        return True

    def get_queue_position(self, request_id: str) -> int:
        idx = self._pending_index(request_id)
        return 0 if idx is None else idx + 1

    def get_estimated_wait_time(self, request_id: str) -> float | None:
        """Seconds until the scan is expected to start, or None without history."""
        position = self.get_queue_position(request_id)
        if position == 0 or not self._durations:
            return None
        average = sum(self._durations) / len(self._durations)
        return position * average

    def get_stats(self) -> dict[str, int]:
        return {
            "queued": len(self._pending),
            "running": len(self._running),
            "limit": self._max_concurrent,
        }

    def get_queued_scans(self) -> list[QueuedScan]:
        return [scan for _key, scan in self._pending]

    def get_running_scans(self) -> list[QueuedScan]:
        return [slot.scan for slot in self._running.values()]

    def snapshot(self) -> dict[str, Any]:
        return {
            **self.get_stats(),
            "queued_scans": [
                {**scan.snapshot(), "queue_position": i + 1} for i, (_key, scan) in enumerate(self._pending)
            ],
            "running_scans": [slot.scan.snapshot() for slot in self._running.values()],
        }

    def _pending_index(self, request_id: str) -> int | None:
        for i, (_key, scan) in enumerate(self._pending):
            if scan.request_id == request_id:
                return i
        return None

    def _promote(self) -> None:
        while self._pending and len(self._running) < self._max_concurrent:
            _key, scan = self._pending.pop(0)
            self._running[scan.request_id] = _RunningSlot(scan=scan, started_at=self._clock())
            logger.info(
                "Starting scan %s (running=%d/%d, queued=%d)",
                scan.request_id,
                len(self._running),
                self._max_concurrent,
                len(self._pending),
            )
            self._fire_started(scan)

    def _fire_started(self, scan: QueuedScan) -> None:
        failed = False
        for listener in list(self._listeners):
            try:
                listener(scan)
            except Exception:
                failed = True
                logger.exception("scan-started listener failed for %s", scan.request_id)
        if failed:
            # Nobody reliably owns this slot any more; give it back.
            self.complete_scan(scan.request_id, error="scan-started listener failed")
