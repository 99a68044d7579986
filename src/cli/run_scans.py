from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys

from src.config.load_config import AppConfig, ConfigError, load_app_config
from src.runtime.bulk_scan import BulkScanError, BulkScanRequest
from src.runtime.container import ScanRuntime, build_runtime
from src.runtime.dispatch import DryRunDispatcher
from src.runtime.scanner_service import ScanSubmissionError
from src.runtime.types import ScanRequest, ScanStatus
from src.storage.sqlite_store import SQLiteStore
from src.utils.log import configure_logging


def _split_ref(ref: str) -> tuple[str, str]:
    """`name[:tag]` -> (name, tag); a colon inside a registry host:port is not a tag."""
    name, sep, tag = ref.strip().rpartition(":")
    if not sep or not name or "/" in tag:
        return ref.strip(), "latest"
    return name, tag or "latest"


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run image scans through the scan queue and print a summary.")
    parser.add_argument("images", nargs="*", help="Image references (name[:tag]) to scan.")
    parser.add_argument("--source", choices=["registry", "local", "tar"], default="registry")
    parser.add_argument("--tar-path", default="", help="Archive path for --source tar (single image only).")
    parser.add_argument("--priority", type=int, default=None, help="Queue priority; higher starts first.")
    parser.add_argument("--image-pattern", default="", help="Bulk mode: substring of registered image names.")
    parser.add_argument("--tag-pattern", default="", help="Bulk mode: substring of registered tags.")
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        help="Bulk mode: glob over name:tag to skip (repeatable).",
    )
    parser.add_argument("--max-images", type=int, default=None, help="Bulk mode: cap on selected images (0 for no cap).")
    parser.add_argument("--max-concurrent", type=int, default=None, help="Override queue.max_concurrent_scans.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env SCANQ_SQLITE_PATH or data/scanq.db).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the dry-run dispatcher regardless of dispatcher.factory.",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Give up waiting after this many seconds.")
    parser.add_argument("--log-level", default="", help="Override SCANQ_LOG_LEVEL.")
    return parser.parse_args(argv)


async def _run(runtime: ScanRuntime, args: argparse.Namespace) -> int:
    scanner = runtime.scanner
    request_ids: list[str] = []
    submit_failures = 0

    if args.source == "tar" and len(args.images) > 1:
        print("--source tar takes exactly one image.", file=sys.stderr)
        return 2

    for ref in args.images:
        name, tag = _split_ref(ref)
        request = ScanRequest(image=name, tag=tag, source=args.source, tar_path=args.tar_path or None)
        try:
            result = await scanner.start_scan(request, args.priority)
        except ScanSubmissionError as e:
            print(f"{name}:{tag}: rejected: {e}", file=sys.stderr)
            submit_failures += 1
            continue
        where = f"queued at position {result.queue_position}" if result.queued else "started"
        print(f"{name}:{tag}: {result.request_id} {where}")
        request_ids.append(result.request_id)

    if args.image_pattern or args.tag_pattern or args.exclude:
        try:
            batch = await runtime.bulk.execute_bulk_scan(
                BulkScanRequest(
                    image_pattern=args.image_pattern or None,
                    tag_pattern=args.tag_pattern or None,
                    exclude_patterns=tuple(args.exclude),
                    max_images=args.max_images,
                    name="cli",
                )
            )
        except BulkScanError as e:
            print(f"Bulk scan rejected: {e}", file=sys.stderr)
            return 1
        print(f"Bulk batch {batch.batch_id}: {batch.total_images} images ({batch.skipped} skipped)")
        await runtime.bulk.wait_submitted(batch.batch_id)

    if not request_ids and not scanner.get_all_jobs():
        print("Nothing to scan.", file=sys.stderr)
        return 2 if submit_failures == 0 else 1

    idle = await scanner.wait_idle(timeout_s=args.timeout)
    if not idle:
        print("Timed out waiting for scans; cancelling the rest.", file=sys.stderr)

    failed = submit_failures
    for job in scanner.get_all_jobs():
        line = f"{job.request_id} {job.image_ref} {job.status.value} {job.progress}%"
        if job.error:
            line += f" ({job.error})"
        print(line)
        if job.status is not ScanStatus.SUCCESS:
            failed += 1
    return 0 if failed == 0 and idle else 1


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    configure_logging(args.log_level or None)

    try:
        cfg: AppConfig = load_app_config()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2
    if args.max_concurrent is not None:
        if args.max_concurrent < 1:
            raise SystemExit(f"--max-concurrent must be >= 1, got {args.max_concurrent}")
        cfg = dataclasses.replace(cfg, queue=dataclasses.replace(cfg.queue, max_concurrent_scans=args.max_concurrent))

    store = SQLiteStore(args.db_path or None)

    async def _main() -> int:
        dispatcher = DryRunDispatcher(step_s=cfg.dispatcher.dry_run_step_s) if args.dry_run else None
        runtime = build_runtime(cfg, store, dispatcher=dispatcher)
        try:
            return await _run(runtime, args)
        finally:
            await runtime.aclose()

    try:
        return asyncio.run(_main())
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
