from __future__ import annotations

import logging
from dataclasses import dataclass

from src.config.load_config import AppConfig
from src.runtime.bulk_scan import BulkScanService
from src.runtime.dispatch import load_dispatcher
from src.runtime.interfaces import Notifier, ScanDispatcher
from src.runtime.scanner_service import ScannerService
from src.runtime.scheduled_scans import ScheduledScanService
from src.storage.adapters import SQLiteInventory, SQLitePersistence
from src.storage.sqlite_store import SQLiteStore


logger = logging.getLogger(__name__)


@dataclass
class ScanRuntime:
    """The process-wide set of scan services, built once and shared by API and CLI."""

    config: AppConfig
    store: SQLiteStore
    inventory: SQLiteInventory
    scanner: ScannerService
    bulk: BulkScanService
    scheduled: ScheduledScanService

    async def aclose(self) -> None:
        # Outer services first so they stop feeding the queue before it drains.
        await self.bulk.aclose()
        await self.scheduled.aclose()
        await self.scanner.aclose()


def build_runtime(
    cfg: AppConfig,
    store: SQLiteStore,
    *,
    dispatcher: ScanDispatcher | None = None,
    notifier: Notifier | None = None,
) -> ScanRuntime:
    persistence = SQLitePersistence(store)
    inventory = SQLiteInventory(store)
    scanner = ScannerService.from_config(
        cfg,
        persistence=persistence,
        dispatcher=dispatcher or load_dispatcher(cfg),
        notifier=notifier,
    )
    bulk = BulkScanService(
        scanner=scanner,
        inventory=inventory,
        persistence=persistence,
        store=store,
        config=cfg.bulk,
        priority=cfg.priorities.bulk,
    )
    scheduled = ScheduledScanService(
        scanner=scanner,
        store=store,
        inventory=inventory,
        config=cfg.scheduled,
        priority=cfg.priorities.scheduled,
    )
    logger.info(
        "Scan runtime ready (max_concurrent_scans=%d, db=%s)",
        cfg.queue.max_concurrent_scans,
        store.db_path,
    )
    return ScanRuntime(
        config=cfg,
        store=store,
        inventory=inventory,
        scanner=scanner,
        bulk=bulk,
        scheduled=scheduled,
    )
