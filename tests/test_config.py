from __future__ import annotations

import tempfile
from pathlib import Path

import pytest

from src.config.load_config import ConfigError, app_config_from_mapping, default_config_path, load_app_config


def _mapping(**overrides: dict) -> dict:
    raw = {
        "queue": {"max_concurrent_scans": 3},
        "priorities": {"interactive": 0, "bulk": -1, "scheduled": -1},
        "progress": {
            "tick_interval_s": 1.0,
            "download_ceiling": 50,
            "scanning_ceiling": 89,
            "download_max_ticks": 20,
            "curve_factor": 0.15,
        },
        "bulk": {"max_images_limit": 500},
        "scheduled": {"monitor_timeout_s": 900},
        "dispatcher": {},
    }
    for section, values in overrides.items():
        raw[section] = {**raw[section], **values}
    return raw


def test_repo_default_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SCANQ_CONFIG_PATH", raising=False)
    monkeypatch.delenv("SCANQ_MAX_CONCURRENT_SCANS", raising=False)
    monkeypatch.delenv("SCANQ_DISPATCHER", raising=False)

    cfg = load_app_config()
    assert default_config_path().name == "default.toml"
    assert cfg.queue.max_concurrent_scans == 3
    assert cfg.priorities.interactive > cfg.priorities.bulk
    assert cfg.progress.scanning_ceiling < 100
    assert cfg.dispatcher.factory == ""
    assert cfg.queue.duration_history == 50


def test_env_overrides_win_over_file(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCANQ_MAX_CONCURRENT_SCANS", "7")
    monkeypatch.setenv("SCANQ_DISPATCHER", "my_scanners.trivy:build")

    cfg = app_config_from_mapping(_mapping())
    assert cfg.queue.max_concurrent_scans == 7
    assert cfg.dispatcher.factory == "my_scanners.trivy:build"
    assert cfg.dispatcher.dry_run_step_s == 0.5
    assert cfg.bulk.history_default_limit == 20


@pytest.mark.parametrize(
    "overrides",
    [
        {"queue": {"max_concurrent_scans": 0}},
        {"queue": {"max_concurrent_scans": "many"}},
        {"progress": {"download_ceiling": 100}},
        {"progress": {"scanning_ceiling": 40}},
        {"progress": {"curve_factor": 1.5}},
        {"priorities": {"bulk": None}},
    ],
)
def test_invalid_values_raise_config_error(monkeypatch: pytest.MonkeyPatch, overrides: dict) -> None:
    monkeypatch.delenv("SCANQ_MAX_CONCURRENT_SCANS", raising=False)
    with pytest.raises(ConfigError):
        app_config_from_mapping(_mapping(**overrides))


def test_config_path_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    with tempfile.TemporaryDirectory() as td:
        missing = Path(td) / "nope.toml"
        monkeypatch.setenv("SCANQ_CONFIG_PATH", str(missing))
        assert default_config_path() == missing.resolve()
        with pytest.raises(ConfigError):
            load_app_config()

        path = Path(td) / "scanq.toml"
        path.write_text(
            (Path(__file__).resolve().parents[1] / "config" / "default.toml")
            .read_text(encoding="utf-8")
            .replace("max_concurrent_scans = 3", "max_concurrent_scans = 1"),
            encoding="utf-8",
        )
        monkeypatch.setenv("SCANQ_CONFIG_PATH", str(path))
        monkeypatch.delenv("SCANQ_MAX_CONCURRENT_SCANS", raising=False)
        assert load_app_config().queue.max_concurrent_scans == 1
