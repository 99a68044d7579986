from __future__ import annotations

import sqlite3
import tempfile

import pytest

from src.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore, row_to_dict


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def _schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT value FROM meta WHERE key = 'schema_version';").fetchone()[0])


def test_new_database_is_migrated_to_current_schema() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            assert _schema_version(store._conn) == SCHEMA_VERSION
            for table in ["images", "scans", "bulk_scan_batches", "scheduled_scans", "scheduled_scan_results"]:
                assert _table_exists(store._conn, table)
        finally:
            store.close()


def test_v1_database_gains_scheduled_scan_tables() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        store = SQLiteStore(db_path)
        img = store.upsert_image(name="nginx", tag="1.25")
        store.close()

        # Roll the file back to the v1 layout.
        conn = sqlite3.connect(db_path)
        for table in ["scheduled_scan_results", "scheduled_scan_history", "scheduled_scan_images", "scheduled_scans"]:
            conn.execute(f"DROP TABLE {table};")
        conn.execute("UPDATE meta SET value = '1' WHERE key = 'schema_version';")
        conn.commit()
        conn.close()

        store = SQLiteStore(db_path)
        try:
            assert _schema_version(store._conn) == 2
            assert _table_exists(store._conn, "scheduled_scan_history")
            assert store.get_image(image_id=img.image_id) is not None
        finally:
            store.close()


def test_newer_schema_is_refused() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/app.db"
        SQLiteStore(db_path).close()
        conn = sqlite3.connect(db_path)
        conn.execute("UPDATE meta SET value = '99' WHERE key = 'schema_version';")
        conn.commit()
        conn.close()

        with pytest.raises(RuntimeError):
            SQLiteStore(db_path)


def test_reconcile_marks_stale_work_failed() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            img = store.upsert_image(name="redis", tag="7")
            running = store.create_scan(request_id="r-1", image_id=img.image_id, source="registry", tag="7")
            store.update_scan(running.scan_id, status="RUNNING", started_at=1.0)
            pending = store.create_scan(request_id="r-2", image_id=img.image_id, source="registry", tag="7")
            done = store.create_scan(request_id="r-3", image_id=img.image_id, source="registry", tag="7")
            store.update_scan(done.scan_id, status="SUCCESS", finished_at=2.0)

            store.create_bulk_batch(batch_id="bulk-1", name=None, total_images=1, patterns={})
            store.add_bulk_item(batch_id="bulk-1", scan_id=running.scan_id, image_id=img.image_id, status="RUNNING")

            reconciled = store.reconcile_running_scans(reason="server_restarted")
            assert reconciled == 2

            for scan_id in (running.scan_id, pending.scan_id):
                row = store.get_scan(scan_id=scan_id)
                assert row["status"] == "FAILED"
                assert row["error_message"] == "server_restarted"
                assert row["finished_at"] is not None
            assert store.get_scan(scan_id=done.scan_id)["status"] == "SUCCESS"

            batch = store.get_bulk_batch(batch_id="bulk-1")
            assert batch["status"] == "FAILED"
            assert [i["status"] for i in store.list_bulk_items(batch_id="bulk-1")] == ["FAILED"]

            assert store.reconcile_running_scans() == 0
        finally:
            store.close()


def test_scan_updates_are_whitelisted_and_idempotent() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            img = store.upsert_image(name="alpine", tag="3.20")
            scan = store.create_scan(request_id="r-1", image_id=img.image_id, source="registry", tag="3.20")

            with pytest.raises(ValueError):
                store.update_scan(scan.scan_id, request_id="hijack")

            for _ in range(2):
                store.update_scan(scan.scan_id, status="SUCCESS", vulnerability_high=3)
            store.save_scan_reports(scan.scan_id, {"trivy": {"Results": []}})

            row = row_to_dict(store.get_scan(scan_id=scan.scan_id))
            assert row["status"] == "SUCCESS"
            assert row["vulnerability_high"] == 3
            assert row["image_name"] == "alpine"
            assert row["reports"] == {"trivy": {"Results": []}}

            rows, total = store.list_scans_page(limit=10, offset=0, statuses=["SUCCESS"])
            assert total == 1
            assert [r["scan_id"] for r in rows] == [scan.scan_id]
            assert store.count_scans_by_status() == {"SUCCESS": 1}
        finally:
            store.close()


def test_cancelled_scan_is_not_overwritten_by_late_outcome() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            img = store.upsert_image(name="redis", tag="7")
            scan = store.create_scan(request_id="r-1", image_id=img.image_id, source="registry", tag="7")
            store.update_scan(scan.scan_id, status="RUNNING", started_at=1.0)
            store.update_scan(scan.scan_id, status="CANCELLED", finished_at=2.0)

            store.update_scan(scan.scan_id, status="SUCCESS", finished_at=3.0, vulnerability_high=4)
            store.update_scan(scan.scan_id, status="FAILED", error_message="late")

            row = row_to_dict(store.get_scan(scan_id=scan.scan_id))
            assert row["status"] == "CANCELLED"
            assert row["finished_at"] == 2.0
            assert row["error_message"] is None
            assert row["vulnerability_high"] == 0
        finally:
            store.close()


def test_upsert_image_keeps_one_row_per_name_and_tag() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            first = store.upsert_image(name="app", tag="v1", digest="sha256:aaa")
            second = store.upsert_image(name="app", tag="v1", source="LOCAL_DOCKER")
            assert first.image_id == second.image_id
            assert second.source == "LOCAL_DOCKER"
            assert second.digest == "sha256:aaa"

            store.upsert_image(name="app", tag="latest")
            store.upsert_image(name="db", tag="v1")
            assert [(i.name, i.tag) for i in store.list_images(name_contains="app")] == [("app", "latest"), ("app", "v1")]
            assert [(i.name, i.tag) for i in store.list_images(tag_contains="v1")] == [("app", "v1"), ("db", "v1")]
        finally:
            store.close()


def test_finish_bulk_batch_only_leaves_running_once() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            store.create_bulk_batch(batch_id="bulk-1", name="n", total_images=2, patterns={"image_pattern": "app"})
            store.record_bulk_submission("bulk-1", failed=False)
            store.record_bulk_submission("bulk-1", failed=True)

            assert store.finish_bulk_batch("bulk-1", "FAILED", error="Cancelled by user") is True
            assert store.finish_bulk_batch("bulk-1", "COMPLETED") is False
            with pytest.raises(ValueError):
                store.finish_bulk_batch("bulk-1", "RUNNING")

            batch = row_to_dict(store.get_bulk_batch(batch_id="bulk-1"))
            assert batch["status"] == "FAILED"
            assert batch["scanned_count"] == 1
            assert batch["failed_count"] == 1
            assert batch["patterns"] == {"image_pattern": "app"}
        finally:
            store.close()
