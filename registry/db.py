"""
Workflow Database — SQLite storage for pipelines and flows.

Responsibility:
- Persist pipeline templates (ordered step definitions)
- Persist flows (per-step handler config, prompt queues, schedule + run counters)
- Provide an atomic read-modify-write primitive for flows (queue pops, counters)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from shared.models import (
    Flow,
    FlowStepConfig,
    Pipeline,
    PipelineStep,
    ScheduleConfig,
    StepKind,
    make_flow_step_id,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_flow_step_config(step: PipelineStep, flow_id: int, pipeline_id: int) -> FlowStepConfig:
    return FlowStepConfig(
        flow_step_id=make_flow_step_id(step.pipeline_step_id, flow_id),
        pipeline_step_id=step.pipeline_step_id,
        pipeline_id=pipeline_id,
        flow_id=flow_id,
        step_type=step.step_type,
        execution_order=step.execution_order,
    )


def build_pipeline_steps(steps: list[dict[str, Any]], start_order: int = 0) -> dict[str, PipelineStep]:
    """Create PipelineStep records from plain dicts, assigning ids and execution order."""
    config: dict[str, PipelineStep] = {}
    for offset, raw in enumerate(steps):
        step_id = str(raw.get("pipeline_step_id") or uuid.uuid4())
        config[step_id] = PipelineStep(
            pipeline_step_id=step_id,
            step_type=StepKind(str(raw.get("step_type", "")).strip()),
            execution_order=int(raw.get("execution_order", start_order + offset)),
            label=str(raw.get("label", "") or ""),
            provider=str(raw.get("provider", "") or ""),
            model=str(raw.get("model", "") or ""),
            system_prompt=str(raw.get("system_prompt", "") or ""),
            disabled_tools=list(raw.get("disabled_tools") or []),
            max_turns=raw.get("max_turns"),
        )
    return config


class WorkflowDB:
    """SQLite-backed store for pipelines and flows."""

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
            CREATE TABLE IF NOT EXISTS pipelines (
                pipeline_id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                config_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flows (
                flow_id INTEGER PRIMARY KEY AUTOINCREMENT,
                pipeline_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                config_json TEXT NOT NULL,
                schedule_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_flows_pipeline_id
            ON flows(pipeline_id)
            """
        )
        self._conn.commit()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction (BEGIN IMMEDIATE takes the database write lock up front)."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()

    # ─── Pipelines ──────────────────────────────────────────────

    def create_pipeline(self, name: str, steps: list[dict[str, Any]] | None = None) -> Pipeline:
        now = utc_now_iso()
        config = build_pipeline_steps(steps or [])
        payload = {key: step.model_dump(mode="json") for key, step in config.items()}
        with self._write() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pipelines (name, config_json, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (name, json.dumps(payload, ensure_ascii=False), now, now),
            )
            pipeline_id = int(cursor.lastrowid)
        logger.info("Created pipeline %d (%s) with %d step(s)", pipeline_id, name, len(config))
        return Pipeline(
            pipeline_id=pipeline_id,
            name=name,
            pipeline_config=config,
            created_at=now,
            updated_at=now,
        )

    def get_pipeline(self, pipeline_id: int) -> Pipeline | None:
        row = self._conn.execute(
            "SELECT * FROM pipelines WHERE pipeline_id = ?",
            (pipeline_id,),
        ).fetchone()
        return self._row_to_pipeline(row) if row else None

    def list_pipelines(self) -> list[Pipeline]:
        rows = self._conn.execute("SELECT * FROM pipelines ORDER BY pipeline_id ASC").fetchall()
        return [self._row_to_pipeline(row) for row in rows]

    def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        updated = pipeline.model_copy(update={"updated_at": utc_now_iso()})
        payload = {key: step.model_dump(mode="json") for key, step in updated.pipeline_config.items()}
        with self._write() as conn:
            conn.execute(
                """
                UPDATE pipelines SET name = ?, config_json = ?, updated_at = ?
                WHERE pipeline_id = ?
                """,
                (
                    updated.name,
                    json.dumps(payload, ensure_ascii=False),
                    updated.updated_at,
                    updated.pipeline_id,
                ),
            )
        return updated

    def delete_pipeline(self, pipeline_id: int) -> list[int]:
        """Delete a pipeline and its flows. Returns the deleted flow ids."""
        with self._write() as conn:
            rows = conn.execute(
                "SELECT flow_id FROM flows WHERE pipeline_id = ?",
                (pipeline_id,),
            ).fetchall()
            conn.execute("DELETE FROM flows WHERE pipeline_id = ?", (pipeline_id,))
            conn.execute("DELETE FROM pipelines WHERE pipeline_id = ?", (pipeline_id,))
        return [int(row["flow_id"]) for row in rows]

    def sync_flows_with_pipeline(self, pipeline: Pipeline) -> int:
        """Add/remove/reorder flow steps so every flow of the pipeline mirrors its steps."""
        synced = 0
        for flow in self.list_flows(pipeline_id=pipeline.pipeline_id):
            def _sync(current: Flow) -> tuple[Flow, None]:
                config: dict[str, FlowStepConfig] = {}
                for step in pipeline.ordered_steps():
                    flow_step_id = make_flow_step_id(step.pipeline_step_id, current.flow_id)
                    existing = current.flow_config.get(flow_step_id)
                    if existing is None:
                        config[flow_step_id] = build_flow_step_config(
                            step, current.flow_id, current.pipeline_id
                        )
                    else:
                        config[flow_step_id] = existing.model_copy(
                            update={
                                "execution_order": step.execution_order,
                                "step_type": step.step_type,
                            }
                        )
                return current.model_copy(update={"flow_config": config}), None

            self.update_flow_atomic(flow.flow_id, _sync)
            synced += 1
        return synced

    # ─── Flows ──────────────────────────────────────────────────

    def create_flow(
        self,
        pipeline: Pipeline,
        name: str,
        scheduling: ScheduleConfig | None = None,
    ) -> Flow:
        now = utc_now_iso()
        schedule = scheduling or ScheduleConfig()
        with self._write() as conn:
            cursor = conn.execute(
                """
                INSERT INTO flows (pipeline_id, name, config_json, schedule_json, created_at, updated_at)
                VALUES (?, ?, '{}', ?, ?, ?)
                """,
                (
                    pipeline.pipeline_id,
                    name,
                    json.dumps(schedule.model_dump(mode="json"), ensure_ascii=False),
                    now,
                    now,
                ),
            )
            flow_id = int(cursor.lastrowid)
            flow_config = {}
            for step in pipeline.ordered_steps():
                step_config = build_flow_step_config(step, flow_id, pipeline.pipeline_id)
                flow_config[step_config.flow_step_id] = step_config
            conn.execute(
                "UPDATE flows SET config_json = ? WHERE flow_id = ?",
                (self._dump_flow_config(flow_config), flow_id),
            )
        logger.info("Created flow %d (%s) on pipeline %d", flow_id, name, pipeline.pipeline_id)
        return Flow(
            flow_id=flow_id,
            pipeline_id=pipeline.pipeline_id,
            name=name,
            flow_config=flow_config,
            scheduling=schedule,
            created_at=now,
            updated_at=now,
        )

    def get_flow(self, flow_id: int) -> Flow | None:
        row = self._conn.execute("SELECT * FROM flows WHERE flow_id = ?", (flow_id,)).fetchone()
        return self._row_to_flow(row) if row else None

    def list_flows(self, pipeline_id: int | None = None) -> list[Flow]:
        if pipeline_id is None:
            rows = self._conn.execute("SELECT * FROM flows ORDER BY flow_id ASC").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM flows WHERE pipeline_id = ? ORDER BY flow_id ASC",
                (pipeline_id,),
            ).fetchall()
        return [self._row_to_flow(row) for row in rows]

    def save_flow(self, flow: Flow) -> Flow:
        updated = flow.model_copy(update={"updated_at": utc_now_iso()})
        with self._write() as conn:
            self._store_flow(conn, updated)
        return updated

    def delete_flow(self, flow_id: int) -> bool:
        with self._write() as conn:
            cursor = conn.execute("DELETE FROM flows WHERE flow_id = ?", (flow_id,))
        return cursor.rowcount > 0

    def update_flow_atomic(self, flow_id: int, mutator: Callable[[Flow], tuple[Flow, T]]) -> T:
        """Read, mutate and write one flow inside a single write transaction.

        The mutator receives the current flow and returns (new_flow, result).
        Raises LookupError when the flow does not exist.
        """
        with self._write() as conn:
            row = conn.execute("SELECT * FROM flows WHERE flow_id = ?", (flow_id,)).fetchone()
            if row is None:
                raise LookupError(f"Flow {flow_id} not found")
            current = self._row_to_flow(row)
            updated, result = mutator(current)
            if updated is not current:
                self._store_flow(conn, updated.model_copy(update={"updated_at": utc_now_iso()}))
        return result

    # ─── Serialization ──────────────────────────────────────────

    def _store_flow(self, conn: sqlite3.Connection, flow: Flow) -> None:
        conn.execute(
            """
            UPDATE flows SET pipeline_id = ?, name = ?, config_json = ?, schedule_json = ?, updated_at = ?
            WHERE flow_id = ?
            """,
            (
                flow.pipeline_id,
                flow.name,
                self._dump_flow_config(flow.flow_config),
                json.dumps(flow.scheduling.model_dump(mode="json"), ensure_ascii=False),
                flow.updated_at,
                flow.flow_id,
            ),
        )

    @staticmethod
    def _dump_flow_config(flow_config: dict[str, FlowStepConfig]) -> str:
        payload = {key: step.model_dump(mode="json") for key, step in flow_config.items()}
        return json.dumps(payload, ensure_ascii=False)

    @staticmethod
    def _row_to_pipeline(row: sqlite3.Row) -> Pipeline:
        config = json.loads(row["config_json"] or "{}")
        return Pipeline(
            pipeline_id=int(row["pipeline_id"]),
            name=row["name"],
            pipeline_config={key: PipelineStep(**value) for key, value in config.items()},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_flow(row: sqlite3.Row) -> Flow:
        config = json.loads(row["config_json"] or "{}")
        schedule = json.loads(row["schedule_json"] or "{}")
        return Flow(
            flow_id=int(row["flow_id"]),
            pipeline_id=int(row["pipeline_id"]),
            name=row["name"],
            flow_config={key: FlowStepConfig(**value) for key, value in config.items()},
            scheduling=ScheduleConfig(**schedule),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def close(self) -> None:
        self._conn.close()
