from __future__ import annotations

import logging

from src.runtime.types import SeverityCounts


logger = logging.getLogger(__name__)


class LoggingNotifier:
    """Default notifier: records high/critical findings in the service log."""

    async def notify_scan_complete(self, image_ref: str, scan_id: str, counts: SeverityCounts) -> None:
        logger.warning(
            "Scan %s of %s found %d critical and %d high vulnerabilities",
            scan_id,
            image_ref,
            counts.critical,
            counts.high,
        )
