from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Literal

from src.utils.cancel import CancellationToken


ScanSource = Literal["registry", "local", "tar"]

ProgressReporter = Callable[[int, str | None], None]


class ScanStatus(Enum):
    """Lifecycle of one scan job. Transitions only move forward."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ScanStatus.SUCCESS, ScanStatus.FAILED, ScanStatus.CANCELLED})

_ALLOWED_TRANSITIONS: dict[ScanStatus, frozenset[ScanStatus]] = {
    ScanStatus.PENDING: frozenset({ScanStatus.RUNNING, ScanStatus.CANCELLED}),
    # RUNNING -> RUNNING carries progress updates.
    ScanStatus.RUNNING: frozenset(
        {ScanStatus.RUNNING, ScanStatus.SUCCESS, ScanStatus.FAILED, ScanStatus.CANCELLED}
    ),
    ScanStatus.SUCCESS: frozenset(),
    ScanStatus.FAILED: frozenset(),
    ScanStatus.CANCELLED: frozenset(),
}


def can_transition(current: ScanStatus, target: ScanStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ScanRequest:
    image: str
    tag: str = "latest"
    source: ScanSource = "registry"
    tar_path: str | None = None
    registry: str | None = None
    registry_type: str | None = None
    repository_id: str | None = None
    docker_image_id: str | None = None
    scanners: dict[str, bool] | None = None

    @property
    def image_ref(self) -> str:
        return f"{self.image}:{self.tag}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "tag": self.tag,
            "source": self.source,
            "tar_path": self.tar_path,
            "registry": self.registry,
            "registry_type": self.registry_type,
            "repository_id": self.repository_id,
            "docker_image_id": self.docker_image_id,
            "scanners": dict(self.scanners) if self.scanners else None,
        }


@dataclass
class ScanJob:
    request_id: str
    scan_id: str
    image_id: str
    image_ref: str
    status: ScanStatus = ScanStatus.PENDING
    progress: int = 0
    step: str | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    cancel: CancellationToken = field(default_factory=CancellationToken, repr=False)
    slot_released: bool = field(default=False, repr=False)

    def snapshot(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "scan_id": self.scan_id,
            "image_id": self.image_id,
            "image_name": self.image_ref,
            "status": self.status.value,
            "progress": int(self.progress),
            "step": self.step,
            "error": self.error,
            "created_at": float(self.created_at),
        }


@dataclass(frozen=True)
class QueuedScan:
    request_id: str
    scan_id: str
    image_id: str
    request: ScanRequest
    priority: int = 0
    enqueued_at: float = field(default_factory=time.time)

    def snapshot(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "scan_id": self.scan_id,
            "image_id": self.image_id,
            "image_name": self.request.image_ref,
            "priority": int(self.priority),
            "enqueued_at": float(self.enqueued_at),
        }


@dataclass(frozen=True)
class ProgressEvent:
    request_id: str
    scan_id: str
    status: ScanStatus
    progress: int
    step: str | None = None
    error: str | None = None
    timestamp: str = field(default_factory=_iso_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "scan_id": self.scan_id,
            "status": self.status.value,
            "progress": int(self.progress),
            "step": self.step,
            "error": self.error,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class StartScanResult:
    request_id: str
    scan_id: str
    queued: bool
    queue_position: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "scan_id": self.scan_id,
            "queued": self.queued,
            "queue_position": self.queue_position,
        }


@dataclass(frozen=True)
class SeverityCounts:
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0

    @property
    def needs_attention(self) -> bool:
        return self.critical > 0 or self.high > 0

    def to_dict(self) -> dict[str, int]:
        return {"critical": self.critical, "high": self.high, "medium": self.medium, "low": self.low}


@dataclass(frozen=True)
class ImageRef:
    id: str
    name: str
    tag: str
    source: str
    digest: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.name}:{self.tag}"


@dataclass
class ScanContext:
    """Everything a dispatcher needs to execute one scan."""

    request_id: str
    scan_id: str
    image_id: str
    request: ScanRequest
    cancel: CancellationToken
    report_progress: ProgressReporter

    def progress(self, value: int, step: str | None = None) -> None:
        self.report_progress(int(value), step)

    def check_cancelled(self) -> None:
        self.cancel.raise_if_cancelled()
