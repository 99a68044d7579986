from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable


SCHEMA_VERSION = 2

SCAN_TERMINAL_STATUSES = ("SUCCESS", "FAILED", "CANCELLED")
BATCH_TERMINAL_STATUSES = ("COMPLETED", "FAILED")
EXECUTION_TERMINAL_STATUSES = ("COMPLETED", "FAILED", "CANCELLED", "PARTIAL")

# Columns a caller may set through update_scan(); everything else is owned by the store.
_SCAN_UPDATE_COLUMNS = frozenset(
    {
        "status",
        "started_at",
        "finished_at",
        "error_message",
        "vulnerability_critical",
        "vulnerability_high",
        "vulnerability_medium",
        "vulnerability_low",
    }
)
_HISTORY_UPDATE_COLUMNS = frozenset(
    {"status", "started_at", "completed_at", "scanned_images", "failed_images", "error_message"}
)
_RESULT_UPDATE_COLUMNS = frozenset({"scan_id", "status", "completed_at", "error_message"})
_SCHEDULED_UPDATE_COLUMNS = frozenset(
    {"name", "description", "schedule", "enabled", "image_selection_mode", "image_pattern", "last_run_at"}
)


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def _json_loads(raw: str | None) -> Any:
    if not raw:
        return None
    return json.loads(raw)


def default_db_path() -> str:
    return os.getenv("SCANQ_SQLITE_PATH", "data/scanq.db")


def _assignments(fields: dict[str, Any], allowed: frozenset[str], *, table: str) -> tuple[str, list[Any]]:
    unknown = sorted(set(fields) - allowed)
    if unknown:
        raise ValueError(f"Unknown {table} columns: {', '.join(unknown)}")
    names = sorted(fields)
    return ", ".join(f"{name} = ?" for name in names), [fields[name] for name in names]


@dataclass(frozen=True)
class ImageRecord:
    image_id: str
    name: str
    tag: str
    source: str
    digest: str | None


@dataclass(frozen=True)
class ScanRecord:
    scan_id: str
    request_id: str
    image_id: str
    created_at: float
    status: str


@dataclass(frozen=True)
class ExecutionRecord:
    history_id: str
    execution_id: str
    scheduled_scan_id: str
    total_images: int
    status: str


class SQLiteStore:
    """SQLite-backed store for images, scans, bulk batches and scheduled scans.

    Design goals (project constraints):
    - Single-instance: the in-memory scan queue is the source of truth for what runs;
      this store is the durable record of what happened.
    - Writes are idempotent per scan_id so retried updates never corrupt a record.
    - Raw scanner reports are stored as JSON next to the aggregated counts.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # The API server touches the store from the event loop and from the
        # test client's portal thread; access stays serialized by the loop.
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction."""
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): images/scans/bulk batches.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS images (
              image_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              name TEXT NOT NULL,
              tag TEXT NOT NULL,
              source TEXT NOT NULL,
              digest TEXT,
              registry TEXT,
              registry_type TEXT,
              repository_id TEXT,
              docker_image_id TEXT,
              UNIQUE (name, tag)
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS scans (
              scan_id TEXT PRIMARY KEY,
              request_id TEXT NOT NULL UNIQUE,
              image_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              started_at REAL,
              finished_at REAL,
              status TEXT NOT NULL,
              source TEXT NOT NULL,
              tag TEXT,
              error_message TEXT,
              vulnerability_critical INTEGER NOT NULL DEFAULT 0,
              vulnerability_high INTEGER NOT NULL DEFAULT 0,
              vulnerability_medium INTEGER NOT NULL DEFAULT 0,
              vulnerability_low INTEGER NOT NULL DEFAULT 0,
              reports_json TEXT,
              FOREIGN KEY (image_id) REFERENCES images(image_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS bulk_scan_batches (
              batch_id TEXT PRIMARY KEY,
              name TEXT,
              created_at REAL NOT NULL,
              completed_at REAL,
              total_images INTEGER NOT NULL,
              status TEXT NOT NULL,
              scanned_count INTEGER NOT NULL DEFAULT 0,
              failed_count INTEGER NOT NULL DEFAULT 0,
              patterns_json TEXT NOT NULL,
              error_message TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS bulk_scan_items (
              item_id TEXT PRIMARY KEY,
              batch_id TEXT NOT NULL,
              scan_id TEXT NOT NULL,
              image_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              status TEXT NOT NULL,
              FOREIGN KEY (batch_id) REFERENCES bulk_scan_batches(batch_id) ON DELETE CASCADE,
              FOREIGN KEY (scan_id) REFERENCES scans(scan_id) ON DELETE CASCADE,
              FOREIGN KEY (image_id) REFERENCES images(image_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_scans_image_created ON scans(image_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_scans_status_created ON scans(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_bulk_items_batch ON bulk_scan_items(batch_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_bulk_items_scan ON bulk_scan_items(scan_id);")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_bulk_batches_status_created ON bulk_scan_batches(status, created_at);"
        )

        # Important: initialize new databases at schema_version=1 (base tables),
        # then run explicit migrations up to SCHEMA_VERSION.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Scheduled scans: definitions, selected images, executions and per-image results.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_scans (
              scheduled_scan_id TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL,
              name TEXT NOT NULL,
              description TEXT,
              schedule TEXT,
              enabled INTEGER NOT NULL DEFAULT 1,
              source TEXT NOT NULL DEFAULT 'MANUAL',
              image_selection_mode TEXT NOT NULL DEFAULT 'SPECIFIC',
              image_pattern TEXT,
              last_run_at REAL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_scans_enabled ON scheduled_scans(enabled);")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_scan_images (
              scheduled_scan_id TEXT NOT NULL,
              image_id TEXT NOT NULL,
              added_at REAL NOT NULL,
              PRIMARY KEY (scheduled_scan_id, image_id),
              FOREIGN KEY (scheduled_scan_id) REFERENCES scheduled_scans(scheduled_scan_id) ON DELETE CASCADE,
              FOREIGN KEY (image_id) REFERENCES images(image_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_scan_history (
              history_id TEXT PRIMARY KEY,
              execution_id TEXT NOT NULL UNIQUE,
              scheduled_scan_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              started_at REAL,
              completed_at REAL,
              status TEXT NOT NULL,
              total_images INTEGER NOT NULL,
              scanned_images INTEGER NOT NULL DEFAULT 0,
              failed_images INTEGER NOT NULL DEFAULT 0,
              error_message TEXT,
              trigger_source TEXT NOT NULL,
              triggered_by TEXT,
              FOREIGN KEY (scheduled_scan_id) REFERENCES scheduled_scans(scheduled_scan_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_scheduled_history_scan_created "
            "ON scheduled_scan_history(scheduled_scan_id, created_at);"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_history_status ON scheduled_scan_history(status);")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_scan_results (
              result_id TEXT PRIMARY KEY,
              history_id TEXT NOT NULL,
              scan_id TEXT,
              image_id TEXT NOT NULL,
              image_name TEXT NOT NULL,
              image_tag TEXT NOT NULL,
              created_at REAL NOT NULL,
              completed_at REAL,
              status TEXT NOT NULL,
              error_message TEXT,
              FOREIGN KEY (history_id) REFERENCES scheduled_scan_history(history_id) ON DELETE CASCADE,
              FOREIGN KEY (scan_id) REFERENCES scans(scan_id) ON DELETE CASCADE
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_results_history ON scheduled_scan_results(history_id);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_results_scan ON scheduled_scan_results(scan_id);")

    # --- Images (inventory)
    def upsert_image(
        self,
        *,
        name: str,
        tag: str,
        source: str = "REGISTRY",
        digest: str | None = None,
        registry: str | None = None,
        registry_type: str | None = None,
        repository_id: str | None = None,
        docker_image_id: str | None = None,
        commit: bool = True,
    ) -> ImageRecord:
        """Insert an image or refresh the known details of an existing name:tag."""
        ts = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO images(
              image_id, created_at, updated_at, name, tag, source, digest,
              registry, registry_type, repository_id, docker_image_id
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(name, tag) DO UPDATE SET
              updated_at = excluded.updated_at,
              source = excluded.source,
              digest = COALESCE(excluded.digest, images.digest),
              registry = COALESCE(excluded.registry, images.registry),
              registry_type = COALESCE(excluded.registry_type, images.registry_type),
              repository_id = COALESCE(excluded.repository_id, images.repository_id),
              docker_image_id = COALESCE(excluded.docker_image_id, images.docker_image_id);
            """,
            (
                _new_id("img"),
                ts,
                ts,
                name,
                tag,
                source,
                digest,
                registry,
                registry_type,
                repository_id,
                docker_image_id,
            ),
        )
        if commit:
            self._conn.commit()
        row = self.find_image(name=name, tag=tag)
        if row is None:
            raise RuntimeError(f"Image {name}:{tag} missing after upsert")
        return _image_record(row)

    def get_image(self, *, image_id: str) -> sqlite3.Row | None:
        return self._conn.execute("SELECT * FROM images WHERE image_id = ? LIMIT 1;", (image_id,)).fetchone()

    def find_image(self, *, name: str, tag: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT * FROM images WHERE name = ? AND tag = ? LIMIT 1;",
            (name, tag),
        ).fetchone()

    def list_images(
        self,
        *,
        name_contains: str | None = None,
        tag_contains: str | None = None,
    ) -> list[ImageRecord]:
        where: list[str] = []
        params: list[Any] = []
        if name_contains:
            where.append("instr(name, ?) > 0")
            params.append(name_contains)
        if tag_contains:
            where.append("instr(tag, ?) > 0")
            params.append(tag_contains)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self._conn.execute(
            f"SELECT * FROM images {where_sql} ORDER BY name ASC, tag ASC;",
            params,
        ).fetchall()
        return [_image_record(r) for r in rows]

    def get_images(self, image_ids: list[str]) -> list[ImageRecord]:
        if not image_ids:
            return []
        placeholders = ", ".join("?" for _ in image_ids)
        rows = self._conn.execute(
            f"SELECT * FROM images WHERE image_id IN ({placeholders}) ORDER BY name ASC, tag ASC;",
            list(image_ids),
        ).fetchall()
        return [_image_record(r) for r in rows]

    # --- Scans
    def create_scan(
        self,
        *,
        request_id: str,
        image_id: str,
        source: str,
        tag: str | None,
        status: str = "PENDING",
        error_message: str | None = None,
        commit: bool = True,
    ) -> ScanRecord:
        scan_id = _new_id("scan")
        created_at = _utc_ts()
        finished_at = created_at if status in SCAN_TERMINAL_STATUSES else None
        self._conn.execute(
            """
            INSERT INTO scans(
              scan_id, request_id, image_id, created_at, started_at, finished_at,
              status, source, tag, error_message
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                scan_id,
                request_id,
                image_id,
                created_at,
                finished_at,
                finished_at,
                status,
                source,
                tag,
                error_message,
            ),
        )
        if commit:
            self._conn.commit()
        return ScanRecord(
            scan_id=scan_id,
            request_id=request_id,
            image_id=image_id,
            created_at=created_at,
            status=status,
        )

    def update_scan(self, scan_id: str, **fields: Any) -> None:
        """Set the given columns; repeated writes of the same values are harmless."""
        if not fields:
            return
        assignments, params = _assignments(fields, _SCAN_UPDATE_COLUMNS, table="scans")
        where = "scan_id = ?"
        if fields.get("status") in ("SUCCESS", "FAILED"):
            # A cancelled scan keeps its status.
            where += " AND status != 'CANCELLED'"
        self._conn.execute(f"UPDATE scans SET {assignments} WHERE {where};", (*params, scan_id))
        self._conn.commit()

    def save_scan_reports(self, scan_id: str, reports: dict[str, Any]) -> None:
        self._conn.execute(
            "UPDATE scans SET reports_json = ? WHERE scan_id = ?;",
            (_json_dumps(reports), scan_id),
        )
        self._conn.commit()

    def get_scan(self, *, scan_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT s.*, i.name AS image_name, i.tag AS image_tag, i.source AS image_source
            FROM scans s JOIN images i ON i.image_id = s.image_id
            WHERE s.scan_id = ?
            LIMIT 1;
            """,
            (scan_id,),
        ).fetchone()

    def get_scan_reports(self, *, scan_id: str) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT reports_json FROM scans WHERE scan_id = ?;", (scan_id,)).fetchone()
        if row is None:
            return None
        return _json_loads(row["reports_json"])

    def get_latest_scan_for_image(self, *, image_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT * FROM scans
            WHERE image_id = ?
            ORDER BY created_at DESC, scan_id DESC
            LIMIT 1;
            """,
            (image_id,),
        ).fetchone()

    def list_scans_page(
        self,
        *,
        limit: int,
        offset: int = 0,
        statuses: list[str] | None = None,
        image_id: str | None = None,
    ) -> tuple[list[sqlite3.Row], int]:
        """Newest-first scans with their image names, plus the total matching count."""
        where: list[str] = []
        params: list[Any] = []
        if statuses:
            where.append(f"s.status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if image_id:
            where.append("s.image_id = ?")
            params.append(image_id)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        total = int(
            self._conn.execute(f"SELECT COUNT(1) AS n FROM scans s {where_sql};", params).fetchone()["n"]
        )
        rows = self._conn.execute(
            f"""
            SELECT
              s.scan_id, s.request_id, s.image_id, s.created_at, s.started_at, s.finished_at,
              s.status, s.source, s.tag, s.error_message,
              s.vulnerability_critical, s.vulnerability_high, s.vulnerability_medium, s.vulnerability_low,
              i.name AS image_name, i.tag AS image_tag
            FROM scans s JOIN images i ON i.image_id = s.image_id
            {where_sql}
            ORDER BY s.created_at DESC, s.scan_id DESC
            LIMIT ? OFFSET ?;
            """,
            (*params, int(limit), int(offset)),
        ).fetchall()
        return rows, total

    def count_scans_by_status(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT status, COUNT(1) AS n FROM scans GROUP BY status;").fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Reconcile (startup safety)
    def reconcile_running_scans(self, *, reason: str = "server_restarted") -> int:
        """Mark any PENDING/RUNNING scans as FAILED.

        In-memory jobs do not survive a restart, so these would otherwise stay
        "running forever". Bulk items linked to them follow. Returns the number
        of scans reconciled.
        """
        ts = _utc_ts()
        with self.transaction():
            rows = self._conn.execute(
                "SELECT scan_id FROM scans WHERE status IN ('PENDING', 'RUNNING');",
            ).fetchall()
            scan_ids = [r["scan_id"] for r in rows]
            for scan_id in scan_ids:
                self._conn.execute(
                    """
                    UPDATE scans
                    SET
                      status = 'FAILED',
                      finished_at = COALESCE(finished_at, ?),
                      error_message = COALESCE(error_message, ?)
                    WHERE scan_id = ? AND status IN ('PENDING', 'RUNNING');
                    """,
                    (ts, reason, scan_id),
                )
                self._conn.execute(
                    "UPDATE bulk_scan_items SET status = 'FAILED' WHERE scan_id = ? AND status = 'RUNNING';",
                    (scan_id,),
                )
            self._conn.execute(
                """
                UPDATE bulk_scan_batches
                SET status = 'FAILED', completed_at = COALESCE(completed_at, ?), error_message = COALESCE(error_message, ?)
                WHERE status = 'RUNNING';
                """,
                (ts, reason),
            )
            self._conn.execute(
                """
                UPDATE scheduled_scan_history
                SET status = 'FAILED', completed_at = COALESCE(completed_at, ?), error_message = COALESCE(error_message, ?)
                WHERE status IN ('PENDING', 'RUNNING');
                """,
                (ts, reason),
            )
        return len(scan_ids)

    # --- Bulk batches
    def create_bulk_batch(
        self,
        *,
        batch_id: str,
        name: str | None,
        total_images: int,
        patterns: dict[str, Any],
    ) -> sqlite3.Row:
        self._conn.execute(
            """
            INSERT INTO bulk_scan_batches(batch_id, name, created_at, total_images, status, patterns_json)
            VALUES(?, ?, ?, ?, ?, ?);
            """,
            (batch_id, name, _utc_ts(), int(total_images), "RUNNING", _json_dumps(patterns)),
        )
        self._conn.commit()
        row = self.get_bulk_batch(batch_id=batch_id)
        if row is None:
            raise RuntimeError(f"Bulk batch {batch_id} missing after insert")
        return row

    def get_bulk_batch(self, *, batch_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT * FROM bulk_scan_batches WHERE batch_id = ? LIMIT 1;",
            (batch_id,),
        ).fetchone()

    def finish_bulk_batch(self, batch_id: str, status: str, *, error: str | None = None) -> bool:
        """Move a RUNNING batch to a terminal status. Returns False if it already left RUNNING."""
        if status not in BATCH_TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal batch status: {status}")
        updated = self._conn.execute(
            """
            UPDATE bulk_scan_batches
            SET status = ?, completed_at = ?, error_message = COALESCE(?, error_message)
            WHERE batch_id = ? AND status = 'RUNNING';
            """,
            (status, _utc_ts(), error, batch_id),
        )
        self._conn.commit()
        return updated.rowcount == 1

    def record_bulk_submission(self, batch_id: str, *, failed: bool) -> None:
        column = "failed_count" if failed else "scanned_count"
        self._conn.execute(
            f"UPDATE bulk_scan_batches SET {column} = {column} + 1 WHERE batch_id = ?;",
            (batch_id,),
        )
        self._conn.commit()

    def add_bulk_item(self, *, batch_id: str, scan_id: str, image_id: str, status: str) -> str:
        item_id = _new_id("item")
        self._conn.execute(
            """
            INSERT INTO bulk_scan_items(item_id, batch_id, scan_id, image_id, created_at, status)
            VALUES(?, ?, ?, ?, ?, ?);
            """,
            (item_id, batch_id, scan_id, image_id, _utc_ts(), status),
        )
        self._conn.commit()
        return item_id

    def update_bulk_items_for_scan(self, scan_id: str, status: str) -> int:
        updated = self._conn.execute(
            "UPDATE bulk_scan_items SET status = ? WHERE scan_id = ? AND status = 'RUNNING';",
            (status, scan_id),
        )
        self._conn.commit()
        return int(updated.rowcount)

    def list_bulk_items(self, *, batch_id: str, status: str | None = None) -> list[sqlite3.Row]:
        params: list[Any] = [batch_id]
        status_sql = ""
        if status:
            status_sql = "AND b.status = ?"
            params.append(status)
        return self._conn.execute(
            f"""
            SELECT
              b.item_id, b.batch_id, b.scan_id, b.image_id, b.created_at, b.status,
              s.request_id, s.status AS scan_status, s.started_at, s.finished_at,
              i.name AS image_name, i.tag AS image_tag, i.source AS image_source
            FROM bulk_scan_items b
            JOIN scans s ON s.scan_id = b.scan_id
            JOIN images i ON i.image_id = b.image_id
            WHERE b.batch_id = ? {status_sql}
            ORDER BY b.created_at ASC, b.item_id ASC;
            """,
            params,
        ).fetchall()

    def count_bulk_items_by_status(self, *, batch_id: str) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(1) AS n FROM bulk_scan_items WHERE batch_id = ? GROUP BY status;",
            (batch_id,),
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def list_bulk_batches(self, *, limit: int, status: str | None = None) -> list[sqlite3.Row]:
        params: list[Any] = []
        where_sql = ""
        if status:
            where_sql = "WHERE status = ?"
            params.append(status)
        return self._conn.execute(
            f"""
            SELECT * FROM bulk_scan_batches
            {where_sql}
            ORDER BY created_at DESC, batch_id DESC
            LIMIT ?;
            """,
            (*params, int(limit)),
        ).fetchall()

    # --- Scheduled scans
    def create_scheduled_scan(
        self,
        *,
        name: str,
        description: str | None,
        schedule: str | None,
        enabled: bool,
        image_selection_mode: str,
        image_pattern: str | None,
        image_ids: list[str],
        source: str = "MANUAL",
    ) -> str:
        scheduled_scan_id = _new_id("sched")
        ts = _utc_ts()
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO scheduled_scans(
                  scheduled_scan_id, created_at, updated_at, name, description, schedule,
                  enabled, source, image_selection_mode, image_pattern
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    scheduled_scan_id,
                    ts,
                    ts,
                    name,
                    description,
                    schedule,
                    1 if enabled else 0,
                    source,
                    image_selection_mode,
                    image_pattern,
                ),
            )
            self._replace_scheduled_images(scheduled_scan_id, image_ids, ts=ts)
        return scheduled_scan_id

    def _replace_scheduled_images(self, scheduled_scan_id: str, image_ids: list[str], *, ts: float) -> None:
        self._conn.execute("DELETE FROM scheduled_scan_images WHERE scheduled_scan_id = ?;", (scheduled_scan_id,))
        for image_id in dict.fromkeys(image_ids):
            self._conn.execute(
                "INSERT INTO scheduled_scan_images(scheduled_scan_id, image_id, added_at) VALUES(?, ?, ?);",
                (scheduled_scan_id, image_id, ts),
            )

    def update_scheduled_scan(
        self,
        scheduled_scan_id: str,
        *,
        image_ids: list[str] | None = None,
        **fields: Any,
    ) -> None:
        if "enabled" in fields and fields["enabled"] is not None:
            fields["enabled"] = 1 if fields["enabled"] else 0
        ts = _utc_ts()
        with self.transaction():
            if fields:
                assignments, params = _assignments(fields, _SCHEDULED_UPDATE_COLUMNS, table="scheduled_scans")
                self._conn.execute(
                    f"UPDATE scheduled_scans SET {assignments}, updated_at = ? WHERE scheduled_scan_id = ?;",
                    (*params, ts, scheduled_scan_id),
                )
            if image_ids is not None:
                self._replace_scheduled_images(scheduled_scan_id, image_ids, ts=ts)

    def delete_scheduled_scan(self, scheduled_scan_id: str) -> bool:
        deleted = self._conn.execute(
            "DELETE FROM scheduled_scans WHERE scheduled_scan_id = ?;",
            (scheduled_scan_id,),
        )
        self._conn.commit()
        return deleted.rowcount == 1

    def get_scheduled_scan(self, *, scheduled_scan_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT * FROM scheduled_scans WHERE scheduled_scan_id = ? LIMIT 1;",
            (scheduled_scan_id,),
        ).fetchone()

    def list_scheduled_scans_page(
        self,
        *,
        limit: int,
        offset: int = 0,
        enabled: bool | None = None,
    ) -> tuple[list[sqlite3.Row], int]:
        params: list[Any] = []
        where_sql = ""
        if enabled is not None:
            where_sql = "WHERE enabled = ?"
            params.append(1 if enabled else 0)
        total = int(
            self._conn.execute(f"SELECT COUNT(1) AS n FROM scheduled_scans {where_sql};", params).fetchone()["n"]
        )
        rows = self._conn.execute(
            f"""
            SELECT * FROM scheduled_scans
            {where_sql}
            ORDER BY created_at DESC, scheduled_scan_id DESC
            LIMIT ? OFFSET ?;
            """,
            (*params, int(limit), int(offset)),
        ).fetchall()
        return rows, total

    def list_scheduled_scan_images(self, *, scheduled_scan_id: str) -> list[ImageRecord]:
        rows = self._conn.execute(
            """
            SELECT i.*
            FROM scheduled_scan_images ssi JOIN images i ON i.image_id = ssi.image_id
            WHERE ssi.scheduled_scan_id = ?
            ORDER BY i.name ASC, i.tag ASC;
            """,
            (scheduled_scan_id,),
        ).fetchall()
        return [_image_record(r) for r in rows]

    def create_execution(
        self,
        *,
        scheduled_scan_id: str,
        total_images: int,
        trigger_source: str,
        triggered_by: str | None,
    ) -> ExecutionRecord:
        history_id = _new_id("hist")
        execution_id = str(uuid.uuid4())
        ts = _utc_ts()
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO scheduled_scan_history(
                  history_id, execution_id, scheduled_scan_id, created_at, status,
                  total_images, trigger_source, triggered_by
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (history_id, execution_id, scheduled_scan_id, ts, "PENDING", int(total_images), trigger_source, triggered_by),
            )
            self._conn.execute(
                "UPDATE scheduled_scans SET last_run_at = ? WHERE scheduled_scan_id = ?;",
                (ts, scheduled_scan_id),
            )
        return ExecutionRecord(
            history_id=history_id,
            execution_id=execution_id,
            scheduled_scan_id=scheduled_scan_id,
            total_images=int(total_images),
            status="PENDING",
        )

    def update_execution(self, history_id: str, **fields: Any) -> None:
        if not fields:
            return
        assignments, params = _assignments(fields, _HISTORY_UPDATE_COLUMNS, table="scheduled_scan_history")
        self._conn.execute(
            f"UPDATE scheduled_scan_history SET {assignments} WHERE history_id = ?;",
            (*params, history_id),
        )
        self._conn.commit()

    def get_execution(self, *, history_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT * FROM scheduled_scan_history WHERE history_id = ? LIMIT 1;",
            (history_id,),
        ).fetchone()

    def get_latest_execution(self, *, scheduled_scan_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT * FROM scheduled_scan_history
            WHERE scheduled_scan_id = ?
            ORDER BY created_at DESC, history_id DESC
            LIMIT 1;
            """,
            (scheduled_scan_id,),
        ).fetchone()

    def list_executions_page(
        self,
        *,
        limit: int,
        offset: int = 0,
        scheduled_scan_id: str | None = None,
        status: str | None = None,
        trigger_source: str | None = None,
    ) -> tuple[list[sqlite3.Row], int]:
        where: list[str] = []
        params: list[Any] = []
        if scheduled_scan_id:
            where.append("h.scheduled_scan_id = ?")
            params.append(scheduled_scan_id)
        if status:
            where.append("h.status = ?")
            params.append(status)
        if trigger_source:
            where.append("h.trigger_source = ?")
            params.append(trigger_source)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        total = int(
            self._conn.execute(
                f"SELECT COUNT(1) AS n FROM scheduled_scan_history h {where_sql};", params
            ).fetchone()["n"]
        )
        rows = self._conn.execute(
            f"""
            SELECT h.*, s.name AS scheduled_scan_name, s.image_selection_mode
            FROM scheduled_scan_history h
            JOIN scheduled_scans s ON s.scheduled_scan_id = h.scheduled_scan_id
            {where_sql}
            ORDER BY h.created_at DESC, h.history_id DESC
            LIMIT ? OFFSET ?;
            """,
            (*params, int(limit), int(offset)),
        ).fetchall()
        return rows, total

    def create_execution_result(
        self,
        *,
        history_id: str,
        image_id: str,
        image_name: str,
        image_tag: str,
        status: str = "PENDING",
    ) -> str:
        result_id = _new_id("res")
        self._conn.execute(
            """
            INSERT INTO scheduled_scan_results(
              result_id, history_id, image_id, image_name, image_tag, created_at, status
            ) VALUES(?, ?, ?, ?, ?, ?, ?);
            """,
            (result_id, history_id, image_id, image_name, image_tag, _utc_ts(), status),
        )
        self._conn.commit()
        return result_id

    def update_execution_result(self, result_id: str, **fields: Any) -> None:
        if not fields:
            return
        assignments, params = _assignments(fields, _RESULT_UPDATE_COLUMNS, table="scheduled_scan_results")
        self._conn.execute(
            f"UPDATE scheduled_scan_results SET {assignments} WHERE result_id = ?;",
            (*params, result_id),
        )
        self._conn.commit()

    def list_execution_results(self, *, history_id: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT
              r.result_id, r.history_id, r.scan_id, r.image_id, r.image_name, r.image_tag,
              r.created_at, r.completed_at, r.status, r.error_message,
              COALESCE(s.vulnerability_critical, 0) AS vulnerability_critical,
              COALESCE(s.vulnerability_high, 0) AS vulnerability_high,
              COALESCE(s.vulnerability_medium, 0) AS vulnerability_medium,
              COALESCE(s.vulnerability_low, 0) AS vulnerability_low
            FROM scheduled_scan_results r
            LEFT JOIN scans s ON s.scan_id = r.scan_id
            WHERE r.history_id = ?
            ORDER BY r.created_at ASC, r.result_id ASC;
            """,
            (history_id,),
        ).fetchall()


def _image_record(row: sqlite3.Row) -> ImageRecord:
    return ImageRecord(
        image_id=str(row["image_id"]),
        name=str(row["name"]),
        tag=str(row["tag"]),
        source=str(row["source"]),
        digest=row["digest"],
    )


def row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    out = {key: row[key] for key in row.keys()}
    for key in [k for k in out if k.endswith("_json")]:
        out[key[: -len("_json")]] = _json_loads(out.pop(key))
    if "enabled" in out and out["enabled"] is not None:
        out["enabled"] = bool(out["enabled"])
    return out
