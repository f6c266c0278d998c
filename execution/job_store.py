"""Persistent job store: status, engine snapshot and data packets per job."""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable

from shared.models import (
    DIRECT_EXECUTION,
    DataPacket,
    Job,
    JobStatus,
)

_ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


def _coerce_id(raw: Any) -> int | str:
    text = str(raw)
    return int(text) if text.isdigit() else text


class JobStore:
    """SQLite-backed store for jobs."""

    def __init__(self, db_path: str = "flowmachine.db", clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self._clock = clock
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                job_id INTEGER PRIMARY KEY AUTOINCREMENT,
                flow_id TEXT NOT NULL,
                pipeline_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                engine_snapshot_json TEXT NOT NULL DEFAULT '{}'
            )
            """
        )
        self._ensure_column("jobs", "status_reason", "TEXT NOT NULL DEFAULT ''")
        self._ensure_column("jobs", "source", "TEXT NOT NULL DEFAULT 'pipeline'")
        self._ensure_column("jobs", "label", "TEXT NOT NULL DEFAULT ''")
        self._ensure_column("jobs", "data_packets_json", "TEXT NOT NULL DEFAULT '[]'")
        self._ensure_column("jobs", "started_at", "TEXT")
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_jobs_flow_id
            ON jobs(flow_id, job_id)
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_jobs_status
            ON jobs(status)
            """
        )
        self._conn.commit()

    def _ensure_column(self, table_name: str, column_name: str, declaration: str) -> None:
        rows = self._conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        columns = {str(row["name"]) for row in rows}
        if column_name in columns:
            return
        self._conn.execute(
            f"ALTER TABLE {table_name} ADD COLUMN {column_name} {declaration}"
        )

    def _timestamp(self) -> str:
        return datetime.fromtimestamp(self._clock(), timezone.utc).isoformat()

    def _execute_write(self, sql: str, params: tuple) -> sqlite3.Cursor:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
        return cursor

    def create_job(
        self,
        flow_id: int | str,
        pipeline_id: int | str,
        source: str = "pipeline",
        label: str = "",
    ) -> Job:
        if (flow_id == DIRECT_EXECUTION) != (pipeline_id == DIRECT_EXECUTION):
            raise ValueError("flow_id and pipeline_id must both be 'direct' or both be real ids")
        created_at = self._timestamp()
        cursor = self._execute_write(
            """
            INSERT INTO jobs (flow_id, pipeline_id, status, status_reason, source, label, created_at)
            VALUES (?, ?, ?, '', ?, ?, ?)
            """,
            (str(flow_id), str(pipeline_id), JobStatus.PENDING.value, source, label, created_at),
        )
        return Job(
            job_id=int(cursor.lastrowid),
            flow_id=flow_id,
            pipeline_id=pipeline_id,
            source=source,
            label=label,
            created_at=created_at,
        )

    def get_job(self, job_id: int) -> Job | None:
        row = self._conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def start_job(self, job_id: int) -> bool:
        """pending → running. False when the job is missing or already started."""
        cursor = self._execute_write(
            "UPDATE jobs SET status = ?, started_at = ? WHERE job_id = ? AND status = ?",
            (JobStatus.RUNNING.value, self._timestamp(), job_id, JobStatus.PENDING.value),
        )
        return cursor.rowcount > 0

    def complete_job(self, job_id: int, status: JobStatus, reason: str = "") -> bool:
        """Move a job to a terminal status. Terminal jobs are never rewritten."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        cursor = self._execute_write(
            f"""
            UPDATE jobs SET status = ?, status_reason = ?, completed_at = ?
            WHERE job_id = ? AND status IN ({",".join("?" for _ in _ACTIVE_STATUSES)})
            """,
            (
                status.value,
                str(reason or ""),
                self._timestamp(),
                job_id,
                *_ACTIVE_STATUSES,
            ),
        )
        return cursor.rowcount > 0

    def store_snapshot(self, job_id: int, snapshot: dict[str, Any]) -> None:
        self._execute_write(
            "UPDATE jobs SET engine_snapshot_json = ? WHERE job_id = ?",
            (json.dumps(snapshot, ensure_ascii=False, default=str), job_id),
        )

    def store_packets(self, job_id: int, packets: list[DataPacket]) -> None:
        payload = [packet.model_dump(mode="json") for packet in packets]
        self._execute_write(
            "UPDATE jobs SET data_packets_json = ? WHERE job_id = ?",
            (json.dumps(payload, ensure_ascii=False, default=str), job_id),
        )

    def clear_packets(self, job_id: int) -> None:
        self._execute_write("UPDATE jobs SET data_packets_json = '[]' WHERE job_id = ?", (job_id,))

    def list_jobs(
        self,
        flow_id: int | str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if flow_id is not None:
            clauses.append("flow_id = ?")
            params.append(str(flow_id))
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM jobs {where} ORDER BY job_id DESC LIMIT ?",
            (*params, max(1, int(limit))),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def running_jobs(self, flow_id: int | str | None = None) -> list[Job]:
        return self.list_jobs(flow_id=flow_id, status=JobStatus.RUNNING, limit=10_000)

    def pending_jobs(self, flow_id: int | str | None = None) -> list[Job]:
        return self.list_jobs(flow_id=flow_id, status=JobStatus.PENDING, limit=10_000)

    def count_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS total FROM jobs GROUP BY status"
        ).fetchall()
        counts = {status.value: 0 for status in JobStatus}
        counts.update({row["status"]: int(row["total"]) for row in rows})
        return counts

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            job_id=int(row["job_id"]),
            flow_id=_coerce_id(row["flow_id"]),
            pipeline_id=_coerce_id(row["pipeline_id"]),
            status=JobStatus(row["status"]),
            status_reason=row["status_reason"] or "",
            source=row["source"] or "pipeline",
            label=row["label"] or "",
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            engine_snapshot=json.loads(row["engine_snapshot_json"] or "{}"),
            data_packets=[DataPacket(**item) for item in json.loads(row["data_packets_json"] or "[]")],
        )

    def close(self) -> None:
        self._conn.close()
