"""
Dedup Ledger — processed-item memory for fetch steps.

Design goals:
- Idempotent marking keyed by (flow_step_id, source_type, item_identifier)
- Scoped bulk clearing (pipeline, flow, flow step, job) to allow reprocessing
- History check to tell "nothing new" apart from "never run"
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any

from shared.models import split_flow_step_id


class ProcessedItemsStore:
    """SQLite-backed ledger of items already emitted by fetch handlers."""

    def __init__(self, db_path: str = "flowmachine.db"):
        self.db_path = db_path
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
            CREATE TABLE IF NOT EXISTS processed_items (
                flow_step_id TEXT NOT NULL,
                source_type TEXT NOT NULL,
                item_identifier TEXT NOT NULL,
                flow_id TEXT,
                pipeline_id TEXT,
                job_id INTEGER,
                processed_at TEXT NOT NULL,
                PRIMARY KEY(flow_step_id, source_type, item_identifier)
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_processed_items_flow_id
            ON processed_items(flow_id)
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_processed_items_job_id
            ON processed_items(job_id)
            """
        )
        self._conn.commit()

    def has_processed(self, flow_step_id: str, source_type: str, identifier: str) -> bool:
        row = self._conn.execute(
            """
            SELECT 1 FROM processed_items
            WHERE flow_step_id = ? AND source_type = ? AND item_identifier = ?
            """,
            (flow_step_id, source_type, str(identifier)),
        ).fetchone()
        return row is not None

    def mark_processed(
        self,
        flow_step_id: str,
        source_type: str,
        identifier: str,
        job_id: int | None = None,
        pipeline_id: int | str | None = None,
    ) -> bool:
        """Record an item. Returns False when it was already recorded."""
        try:
            _, flow_id = split_flow_step_id(flow_step_id)
        except ValueError:
            flow_id = None
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO processed_items
                    (flow_step_id, source_type, item_identifier, flow_id, pipeline_id, job_id, processed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    flow_step_id,
                    source_type,
                    str(identifier),
                    flow_id,
                    str(pipeline_id) if pipeline_id is not None else None,
                    job_id,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def has_any_history(self, flow_step_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM processed_items WHERE flow_step_id = ? LIMIT 1",
            (flow_step_id,),
        ).fetchone()
        return row is not None

    def clear(
        self,
        pipeline_id: int | str | None = None,
        flow_id: int | str | None = None,
        flow_step_id: str | None = None,
        job_id: int | None = None,
    ) -> int:
        """Delete entries for exactly one scope. Returns the number of deleted rows."""
        scopes = {
            "pipeline_id": pipeline_id,
            "flow_id": flow_id,
            "flow_step_id": flow_step_id,
            "job_id": job_id,
        }
        provided = {key: value for key, value in scopes.items() if value is not None}
        if len(provided) != 1:
            raise ValueError("Exactly one of pipeline_id, flow_id, flow_step_id or job_id is required")
        column, value = next(iter(provided.items()))
        if column in {"pipeline_id", "flow_id"}:
            value = str(value)
        with self._lock:
            cursor = self._conn.execute(
                f"DELETE FROM processed_items WHERE {column} = ?",
                (value,),
            )
            self._conn.commit()
        return cursor.rowcount

    def count(self, flow_step_id: str | None = None) -> int:
        if flow_step_id is None:
            row = self._conn.execute("SELECT COUNT(*) AS total FROM processed_items").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) AS total FROM processed_items WHERE flow_step_id = ?",
                (flow_step_id,),
            ).fetchone()
        return int(row["total"])

    def list_items(self, flow_step_id: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            """
            SELECT flow_step_id, source_type, item_identifier, job_id, processed_at
            FROM processed_items
            WHERE flow_step_id = ?
            ORDER BY processed_at DESC
            LIMIT ?
            """,
            (flow_step_id, max(1, int(limit))),
        ).fetchall()
        return [dict(row) for row in rows]

    def close(self) -> None:
        self._conn.close()


class DedupContext:
    """Ledger view bound to one flow step and source type, handed to fetch handlers."""

    def __init__(
        self,
        ledger: ProcessedItemsStore,
        flow_step_id: str,
        source_type: str,
        job_id: int | None = None,
        pipeline_id: int | str | None = None,
    ):
        self.ledger = ledger
        self.flow_step_id = flow_step_id
        self.source_type = source_type
        self.job_id = job_id
        self.pipeline_id = pipeline_id

    def has_processed(self, identifier: str) -> bool:
        return self.ledger.has_processed(self.flow_step_id, self.source_type, identifier)

    def mark_processed(self, identifier: str) -> bool:
        return self.ledger.mark_processed(
            self.flow_step_id,
            self.source_type,
            identifier,
            job_id=self.job_id,
            pipeline_id=self.pipeline_id,
        )

    def has_any_history(self) -> bool:
        return self.ledger.has_any_history(self.flow_step_id)
