from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Any

from src.config.load_config import AppConfig, ConfigError
from src.runtime.interfaces import ScanDispatcher
from src.runtime.types import ScanContext


logger = logging.getLogger(__name__)


DRY_RUN_SCANNER_VERSIONS = {"trivy": "dry-run", "grype": "dry-run"}


def _empty_reports(image_ref: str) -> dict[str, Any]:
    # Same shapes as real scanner output, with nothing found.
    return {
        "trivy": {"ArtifactName": image_ref, "Results": []},
        "grype": {"matches": [], "source": {"target": {"userInput": image_ref}}},
    }


class DryRunDispatcher:
    """Dispatcher that pretends to scan: no registry pulls and no scanner processes.

    Useful for exercising the queue, progress and persistence surfaces end to end.
    `reports_by_image` injects canned reports per `name:tag`; images listed in
    `fail_images` raise during execution.
    """

    def __init__(
        self,
        *,
        step_s: float = 0.5,
        reports_by_image: dict[str, dict[str, Any]] | None = None,
        fail_images: set[str] | None = None,
    ) -> None:
        self._step_s = float(step_s)
        self._reports_by_image = dict(reports_by_image or {})
        self._fail_images = set(fail_images or ())
        self._results: dict[str, dict[str, Any]] = {}

    async def execute_tar_scan(self, ctx: ScanContext) -> None:
        await self._run(ctx, [(20, "Extracting archive"), (60, "Running scanners"), (85, "Collecting reports")])

    async def execute_local_scan(self, ctx: ScanContext) -> None:
        await self._run(ctx, [(15, "Exporting local image"), (60, "Running scanners"), (85, "Collecting reports")])

    async def execute_registry_scan(self, ctx: ScanContext) -> None:
        # Registry pulls have no byte-level signal; the tracker simulates progress.
        await self._run(ctx, [(None, None), (None, None), (None, None)])

    async def load_scan_results(self, request_id: str) -> dict[str, Any]:
        try:
            return dict(self._results.pop(request_id))
        except KeyError:
            raise LookupError(f"No scan results recorded for request {request_id}") from None

    async def scanner_versions(self) -> dict[str, str]:
        return dict(DRY_RUN_SCANNER_VERSIONS)

    async def _run(self, ctx: ScanContext, steps: list[tuple[int | None, str | None]]) -> None:
        image_ref = ctx.request.image_ref
        for progress, label in steps:
            ctx.check_cancelled()
            await asyncio.sleep(self._step_s)
            if progress is not None:
                ctx.progress(progress, label)
        ctx.check_cancelled()
        if image_ref in self._fail_images:
            raise RuntimeError(f"Dry-run failure requested for {image_ref}")
        self._results[ctx.request_id] = dict(self._reports_by_image.get(image_ref) or _empty_reports(image_ref))


def load_dispatcher(cfg: AppConfig) -> ScanDispatcher:
    """Build the configured dispatcher.

    `dispatcher.factory` is "module:attribute" naming a callable that takes the
    AppConfig and returns a ScanDispatcher. Empty means the dry-run dispatcher.
    """
    target = cfg.dispatcher.factory
    if not target:
        logger.warning("No dispatcher factory configured; scans run in dry-run mode")
        return DryRunDispatcher(step_s=cfg.dispatcher.dry_run_step_s)

    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Invalid dispatcher.factory {target!r}: expected 'module:attribute'")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError(f"Cannot load dispatcher factory {target!r}: {e}") from e
    return factory(cfg)
