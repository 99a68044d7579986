from __future__ import annotations

import asyncio
from collections import Counter
from typing import Any

import pytest

from src.runtime.scanner_service import CANCELLED_BY_USER, SHUTTING_DOWN, ScanSubmissionError
from src.runtime.types import ProgressEvent, ScanRequest, ScanStatus
from tests.fakes import FakeDispatcher, FakePersistence, RecordingNotifier, make_service, trivy_report, wait_until


def _local(image: str, tag: str = "latest") -> ScanRequest:
    return ScanRequest(image=image, tag=tag, source="local")


def test_successful_scan_is_finalized_and_notifies_on_high_findings() -> None:
    async def _run() -> None:
        persistence = FakePersistence()
        dispatcher = FakeDispatcher(
            reports={
                "trivy": trivy_report("CRITICAL", "HIGH", "LOW"),
                "grype": {"matches": [{"vulnerability": {"severity": "High"}}]},
            }
        )
        notifier = RecordingNotifier()
        service = make_service(persistence=persistence, dispatcher=dispatcher, notifier=notifier)
        events: list[ProgressEvent] = []
        service.add_progress_listener(events.append)

        result = await service.start_scan(_local("nginx", "1.25"))
        assert result.queued is False
        assert result.queue_position is None
        assert await service.wait_idle(timeout_s=2)

        job = service.get_scan_job(result.request_id)
        assert job is not None
        assert job.status is ScanStatus.SUCCESS
        assert job.progress == 100
        assert job.step == "Scan completed successfully"

        record = persistence.records[result.scan_id]
        assert record["status"] == "SUCCESS"
        assert record["vulnerability_critical"] == 1
        assert record["vulnerability_high"] == 2
        assert record["vulnerability_low"] == 1
        assert persistence.uploads[result.scan_id]["metadata"]["scannerVersions"] == {"trivy": "0.50.1"}

        assert [(ref, sid) for ref, sid, _counts in notifier.calls] == [("nginx:1.25", result.scan_id)]
        assert [e.status for e in events][0] is ScanStatus.RUNNING
        assert events[-1].status is ScanStatus.SUCCESS
        assert all(e.progress < 100 for e in events[:-1])
        assert service.get_queue_stats() == {"queued": 0, "running": 0, "limit": 2}

    asyncio.run(_run())


def test_clean_scan_does_not_notify_and_notifier_failure_is_ignored() -> None:
    async def _run() -> None:
        notifier = RecordingNotifier(fail=True)
        service = make_service(notifier=notifier)
        clean = await service.start_scan(_local("alpine"))
        assert await service.wait_idle(timeout_s=2)
        assert notifier.calls == []

        service_bad = make_service(
            dispatcher=FakeDispatcher(reports={"trivy": trivy_report("HIGH")}),
            notifier=notifier,
        )
        noisy = await service_bad.start_scan(_local("busybox"))
        assert await service_bad.wait_idle(timeout_s=2)
        assert len(notifier.calls) == 1
        assert service.get_scan_job(clean.request_id).status is ScanStatus.SUCCESS
        assert service_bad.get_scan_job(noisy.request_id).status is ScanStatus.SUCCESS

    asyncio.run(_run())


def test_dispatcher_failure_marks_job_failed_and_frees_the_slot() -> None:
    async def _run() -> None:
        persistence = FakePersistence()
        dispatcher = FakeDispatcher(fail_images={"broken:latest"})
        service = make_service(limit=1, persistence=persistence, dispatcher=dispatcher)

        broken = await service.start_scan(_local("broken"))
        follower = await service.start_scan(_local("redis"))
        assert follower.queued is True
        assert follower.queue_position == 1
        assert await service.wait_idle(timeout_s=2)

        job = service.get_scan_job(broken.request_id)
        assert job.status is ScanStatus.FAILED
        assert job.error == "scanner crashed on broken:latest"
        assert persistence.records[broken.scan_id]["status"] == "FAILED"
        assert persistence.records[broken.scan_id]["error_message"] == "scanner crashed on broken:latest"

        assert service.get_scan_job(follower.request_id).status is ScanStatus.SUCCESS
        assert persistence.statuses(follower.scan_id)[0] == "PENDING"

    asyncio.run(_run())


def test_submission_errors_create_no_job() -> None:
    async def _run() -> None:
        persistence = FakePersistence(fail_images={"flaky:latest"})
        service = make_service(persistence=persistence)

        with pytest.raises(ScanSubmissionError):
            await service.start_scan(ScanRequest(image="  "))
        with pytest.raises(ScanSubmissionError):
            await service.start_scan(ScanRequest(image="bundle", source="tar"))
        with pytest.raises(RuntimeError):
            await service.start_scan(ScanRequest(image="flaky"))

        assert service.get_all_jobs() == []
        assert service.get_queue_stats()["running"] == 0

    asyncio.run(_run())


def test_cancelling_a_pending_scan_never_dispatches_it() -> None:
    async def _run() -> None:
        persistence = FakePersistence()
        dispatcher = FakeDispatcher(gated=True)
        service = make_service(limit=1, persistence=persistence, dispatcher=dispatcher)

        first = await service.start_scan(_local("first"))
        second = await service.start_scan(_local("second"))
        assert service.get_queue_position(second.request_id) == 1

        assert await service.cancel_scan(second.request_id) is True
        assert await service.cancel_scan(second.request_id) is False
        job = service.get_scan_job(second.request_id)
        assert job.status is ScanStatus.CANCELLED
        assert persistence.records[second.scan_id]["status"] == "CANCELLED"

        dispatcher.release_all()
        assert await service.wait_idle(timeout_s=2)
        assert dispatcher.started == ["first:latest"]
        assert service.get_scan_job(first.request_id).status is ScanStatus.SUCCESS
        assert service.get_scan_job(second.request_id).status is ScanStatus.CANCELLED

    asyncio.run(_run())


def test_late_completion_after_running_cancel_is_ignored() -> None:
    async def _run() -> None:
        persistence = FakePersistence()
        dispatcher = FakeDispatcher(gated=True)
        service = make_service(limit=1, persistence=persistence, dispatcher=dispatcher)

        running = await service.start_scan(_local("slow"))
        queued = await service.start_scan(_local("next"))
        await wait_until(lambda: "slow:latest" in dispatcher.started)

        assert await service.cancel_scan(running.request_id) is True
        job = service.get_scan_job(running.request_id)
        assert job.status is ScanStatus.CANCELLED
        assert job.cancel.reason == CANCELLED_BY_USER
        assert dispatcher.contexts[running.request_id].cancel.cancelled

        # The slot went to the queued scan straight away.
        assert [s.request_id for s in service.get_running_scans()] == [queued.request_id]

        dispatcher.release_all()
        assert await service.wait_idle(timeout_s=2)

        assert job.status is ScanStatus.CANCELLED
        assert running.request_id not in dispatcher.loaded
        assert persistence.records[running.scan_id]["status"] == "CANCELLED"
        assert "SUCCESS" not in persistence.statuses(running.scan_id)
        assert service.get_scan_job(queued.request_id).status is ScanStatus.SUCCESS
        assert service.get_queue_stats()["running"] == 0

    asyncio.run(_run())


def test_terminal_jobs_do_not_change() -> None:
    async def _run() -> None:
        service = make_service()
        result = await service.start_scan(_local("nginx"))
        assert await service.wait_idle(timeout_s=2)
        job = service.get_scan_job(result.request_id)
        assert job.status is ScanStatus.SUCCESS

        assert await service.cancel_scan(result.request_id) is False
        assert await service.cancel_scan("no-such-request") is False
        assert job.status is ScanStatus.SUCCESS
        assert job.progress == 100

    asyncio.run(_run())


def test_request_ids_are_unique_and_snapshot_lists_queue() -> None:
    async def _run() -> None:
        dispatcher = FakeDispatcher(gated=True)
        service = make_service(limit=1, dispatcher=dispatcher)
        results = [await service.start_scan(_local(f"app-{i}")) for i in range(3)]
        assert len({r.request_id for r in results}) == 3

        snap = service.get_jobs_snapshot()
        assert len(snap["jobs"]) == 3
        assert [q["queue_position"] for q in snap["queued_scans"]] == [1, 2]
        assert all(q["status"] == "QUEUED" for q in snap["queued_scans"])
        assert snap["queue_stats"] == {"queued": 2, "running": 1, "limit": 1}

        dispatcher.release_all()
        assert await service.wait_idle(timeout_s=2)

    asyncio.run(_run())


def test_registry_scans_report_simulated_progress_below_100() -> None:
    async def _run() -> None:
        dispatcher = FakeDispatcher(gated=True)
        service = make_service(dispatcher=dispatcher)
        events: list[ProgressEvent] = []
        service.add_progress_listener(events.append)

        result = await service.start_scan(ScanRequest(image="postgres", tag="16"))
        await wait_until(lambda: any(e.step == "Downloading image" for e in events))
        dispatcher.release_all()
        assert await service.wait_idle(timeout_s=2)

        assert service.get_scan_job(result.request_id).status is ScanStatus.SUCCESS
        running = [e.progress for e in events if e.status is ScanStatus.RUNNING]
        assert running == sorted(running)
        assert max(running) < 100
        assert service.progress.active_simulations(result.request_id) == 0

    asyncio.run(_run())


def test_close_cancels_pending_scans_and_rejects_new_ones() -> None:
    async def _run() -> None:
        persistence = FakePersistence()
        dispatcher = FakeDispatcher(gated=True)
        service = make_service(limit=1, persistence=persistence, dispatcher=dispatcher)

        running = await service.start_scan(_local("a"))
        pending = await service.start_scan(_local("b"))
        await wait_until(lambda: "a:latest" in dispatcher.started)

        dispatcher.release("a:latest")
        await service.aclose(timeout_s=2)

        job = service.get_scan_job(pending.request_id)
        assert job.status is ScanStatus.CANCELLED
        assert job.error == SHUTTING_DOWN
        assert persistence.records[pending.scan_id]["status"] == "CANCELLED"
        assert service.get_scan_job(running.request_id).status is ScanStatus.SUCCESS
        assert dispatcher.started == ["a:latest"]

        with pytest.raises(ScanSubmissionError):
            await service.start_scan(_local("c"))

    asyncio.run(_run())


def test_every_terminal_outcome_releases_its_slot_exactly_once() -> None:
    async def _run() -> None:
        dispatcher = FakeDispatcher(gated=True, fail_images={"bad:latest"})
        service = make_service(limit=3, dispatcher=dispatcher)
        releases: Counter[str] = Counter()
        complete_scan = service.queue.complete_scan

        def counting_complete(request_id: str, error: str | None = None) -> bool:
            releases[request_id] += 1
            return complete_scan(request_id, error)

        service.queue.complete_scan = counting_complete  # type: ignore[method-assign]

        ok = await service.start_scan(_local("ok"))
        bad = await service.start_scan(_local("bad"))
        cut = await service.start_scan(_local("cut"))
        await wait_until(lambda: len(dispatcher.started) == 3)

        assert await service.cancel_scan(cut.request_id) is True
        dispatcher.release_all()
        assert await service.wait_idle(timeout_s=2)

        assert service.get_scan_job(ok.request_id).status is ScanStatus.SUCCESS
        assert service.get_scan_job(bad.request_id).status is ScanStatus.FAILED
        assert service.get_scan_job(cut.request_id).status is ScanStatus.CANCELLED
        assert releases == {ok.request_id: 1, bad.request_id: 1, cut.request_id: 1}

        # Terminal jobs ignore further cancels and never release again.
        assert await service.cancel_scan(bad.request_id) is False
        assert await service.cancel_scan(cut.request_id) is False
        assert service.get_scan_job(bad.request_id).status is ScanStatus.FAILED
        assert service.get_scan_job(bad.request_id).error == "scanner crashed on bad:latest"
        assert releases == {ok.request_id: 1, bad.request_id: 1, cut.request_id: 1}
        assert service.get_queue_stats()["running"] == 0

    asyncio.run(_run())


class SlowResultsDispatcher(FakeDispatcher):
    """Scans finish at once; loading their results waits for `results_ready`."""

    def __init__(self) -> None:
        super().__init__()
        self.results_ready: asyncio.Event | None = None

    async def load_scan_results(self, request_id: str) -> dict[str, Any]:
        self.loaded.append(request_id)
        if self.results_ready is None:
            self.results_ready = asyncio.Event()
        await self.results_ready.wait()
        return {"trivy": trivy_report("CRITICAL")}


def test_cancel_while_loading_results_skips_upload_and_success() -> None:
    async def _run() -> None:
        persistence = FakePersistence()
        dispatcher = SlowResultsDispatcher()
        notifier = RecordingNotifier()
        service = make_service(persistence=persistence, dispatcher=dispatcher, notifier=notifier)

        result = await service.start_scan(_local("nginx"))
        await wait_until(lambda: dispatcher.results_ready is not None)
        assert service.get_scan_job(result.request_id).progress == 90

        assert await service.cancel_scan(result.request_id) is True
        dispatcher.results_ready.set()
        assert await service.wait_idle(timeout_s=2)

        job = service.get_scan_job(result.request_id)
        assert job.status is ScanStatus.CANCELLED
        assert result.scan_id not in persistence.uploads
        assert persistence.records[result.scan_id]["status"] == "CANCELLED"
        assert "SUCCESS" not in persistence.statuses(result.scan_id)
        assert notifier.calls == []
        assert service.get_queue_stats()["running"] == 0

    asyncio.run(_run())
