from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _require_positive(value: int, *, key: str) -> int:
    if value < 1:
        raise ConfigError(f"Invalid {key}: must be >= 1, got {value}")
    return value


def _require_percent(value: int, *, key: str) -> int:
    """Simulated progress ceilings must stay strictly below 100."""
    if value < 1 or value > 99:
        raise ConfigError(f"Invalid {key}: must be in [1..99], got {value}")
    return value


@dataclass(frozen=True)
class QueueConfig:
    max_concurrent_scans: int
    duration_history: int


@dataclass(frozen=True)
class PriorityConfig:
    interactive: int
    bulk: int
    scheduled: int


@dataclass(frozen=True)
class ProgressConfig:
    tick_interval_s: float
    download_ceiling: int
    scanning_ceiling: int
    download_max_ticks: int
    curve_factor: float


@dataclass(frozen=True)
class BulkConfig:
    max_images_limit: int
    history_default_limit: int


@dataclass(frozen=True)
class ScheduledConfig:
    monitor_timeout_s: float


@dataclass(frozen=True)
class DispatcherConfig:
    factory: str
    dry_run_step_s: float


@dataclass(frozen=True)
class AppConfig:
    queue: QueueConfig
    priorities: PriorityConfig
    progress: ProgressConfig
    bulk: BulkConfig
    scheduled: ScheduledConfig
    dispatcher: DispatcherConfig


def default_config_path() -> Path:
    raw = os.getenv("SCANQ_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    # Repo layout: `<repo>/src/config/load_config.py` -> `<repo>/config/default.toml`.
    return (Path(__file__).resolve().parents[2] / "config" / "default.toml").resolve()


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    return app_config_from_mapping(raw)


def app_config_from_mapping(raw: dict[str, Any]) -> AppConfig:
    queue = raw.get("queue", {})
    priorities = raw.get("priorities", {})
    progress = raw.get("progress", {})
    bulk = raw.get("bulk", {})
    scheduled = raw.get("scheduled", {})
    dispatcher = raw.get("dispatcher", {})

    # Deploy-time knobs win over the file.
    max_concurrent = os.getenv("SCANQ_MAX_CONCURRENT_SCANS", "").strip() or queue.get("max_concurrent_scans")
    dispatcher_factory = os.getenv("SCANQ_DISPATCHER")
    if dispatcher_factory is None:
        dispatcher_factory = dispatcher.get("factory", "")

    download_ceiling = _require_percent(
        _as_int(progress.get("download_ceiling"), key="progress.download_ceiling"),
        key="progress.download_ceiling",
    )
    scanning_ceiling = _require_percent(
        _as_int(progress.get("scanning_ceiling"), key="progress.scanning_ceiling"),
        key="progress.scanning_ceiling",
    )
    if scanning_ceiling < download_ceiling:
        raise ConfigError(
            f"progress.scanning_ceiling ({scanning_ceiling}) must be >= progress.download_ceiling ({download_ceiling})"
        )
    curve_factor = _as_float(progress.get("curve_factor"), key="progress.curve_factor")
    if not 0.0 < curve_factor < 1.0:
        raise ConfigError(f"Invalid progress.curve_factor: must be in (0, 1), got {curve_factor}")

    return AppConfig(
        queue=QueueConfig(
            max_concurrent_scans=_require_positive(
                _as_int(max_concurrent, key="queue.max_concurrent_scans"), key="queue.max_concurrent_scans"
            ),
            duration_history=_require_positive(
                _as_int(queue.get("duration_history", 50), key="queue.duration_history"),
                key="queue.duration_history",
            ),
        ),
        priorities=PriorityConfig(
            interactive=_as_int(priorities.get("interactive"), key="priorities.interactive"),
            bulk=_as_int(priorities.get("bulk"), key="priorities.bulk"),
            scheduled=_as_int(priorities.get("scheduled"), key="priorities.scheduled"),
        ),
        progress=ProgressConfig(
            tick_interval_s=_as_float(progress.get("tick_interval_s"), key="progress.tick_interval_s"),
            download_ceiling=download_ceiling,
            scanning_ceiling=scanning_ceiling,
            download_max_ticks=_require_positive(
                _as_int(progress.get("download_max_ticks"), key="progress.download_max_ticks"),
                key="progress.download_max_ticks",
            ),
            curve_factor=curve_factor,
        ),
        bulk=BulkConfig(
            max_images_limit=_require_positive(
                _as_int(bulk.get("max_images_limit"), key="bulk.max_images_limit"), key="bulk.max_images_limit"
            ),
            history_default_limit=_as_int(bulk.get("history_default_limit", 20), key="bulk.history_default_limit"),
        ),
        scheduled=ScheduledConfig(
            monitor_timeout_s=_as_float(scheduled.get("monitor_timeout_s"), key="scheduled.monitor_timeout_s"),
        ),
        dispatcher=DispatcherConfig(
            factory=str(dispatcher_factory or "").strip(),
            dry_run_step_s=_as_float(dispatcher.get("dry_run_step_s", 0.5), key="dispatcher.dry_run_step_s"),
        ),
    )
