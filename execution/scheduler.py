"""
Scheduler Adapter — flow schedule config ↔ deferred-task service.

Responsibility:
- Validate schedule input (manual | named interval | one-time timestamp | cron)
- Register/unregister the flow's run_flow_now task, always unscheduling first
- Register missing non-manual flow tasks on startup (idempotent)

PersistentTaskService is the bundled deferred-task service: schedule-once,
recurring and cron tasks kept in SQLite next to the jobs table, run by
run_due() from the worker loop or the API.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from apscheduler.triggers.cron import CronTrigger

from registry.db import WorkflowDB
from shared.errors import ValidationError, flow_not_found, remediation
from shared.models import Flow, ScheduleConfig

logger = logging.getLogger(__name__)

RUN_FLOW_ACTION = "run_flow_now"

SCHEDULER_INTERVALS: dict[str, dict[str, Any]] = {
    "every_5_minutes": {"label": "Every 5 Minutes", "seconds": 300},
    "every_15_minutes": {"label": "Every 15 Minutes", "seconds": 900},
    "every_30_minutes": {"label": "Every 30 Minutes", "seconds": 1800},
    "hourly": {"label": "Hourly", "seconds": 3600},
    "every_2_hours": {"label": "Every 2 Hours", "seconds": 7200},
    "every_4_hours": {"label": "Every 4 Hours", "seconds": 14400},
    "qtrdaily": {"label": "Every 6 Hours", "seconds": 21600},
    "twicedaily": {"label": "Twice Daily", "seconds": 43200},
    "daily": {"label": "Daily", "seconds": 86400},
    "weekly": {"label": "Weekly", "seconds": 604800},
}


def next_cron_fire(expression: str, now: float) -> float:
    """Next fire time (epoch seconds) for a crontab expression. Raises ValueError when invalid."""
    trigger = CronTrigger.from_crontab(expression, timezone=timezone.utc)
    fire_time = trigger.get_next_fire_time(None, datetime.fromtimestamp(now, timezone.utc))
    if fire_time is None:
        raise ValueError(f"Cron expression '{expression}' never fires")
    return fire_time.timestamp()


class DeferredTaskService(Protocol):
    def register_action(self, action: str, callback: Callable[..., Any]) -> None: ...

    def now(self) -> float: ...

    def schedule_once(self, action: str, args: dict[str, Any], timestamp: float) -> int: ...

    def schedule_recurring(
        self,
        action: str,
        args: dict[str, Any],
        interval: int,
        first_run: float | None = None,
    ) -> int: ...

    def schedule_cron(self, action: str, args: dict[str, Any], expression: str) -> int: ...

    def unschedule(self, action: str, args: dict[str, Any]) -> int: ...

    def has_scheduled(self, action: str, args: dict[str, Any]) -> bool: ...

    def run_due(self, now: float | None = None, limit: int = 1000) -> int: ...


@dataclass
class ScheduledTask:
    task_id: int
    action: str
    args: dict[str, Any]
    run_at: float
    interval: int | None = None
    cron: str | None = None
    attempts: int = 0


def _args_key(args: dict[str, Any]) -> str:
    return json.dumps(args, sort_keys=True, default=str)


class PersistentTaskService:
    """SQLite-backed deferred-task service with at-least-once semantics.

    Every process opened on the same database (API server, worker, one-off CLI
    command) sees the same task table. A due task is claimed with a conditional
    UPDATE, so two workers never run it at the same time; a claim left behind by
    a crashed worker expires after lease_seconds and the task becomes due again.
    """

    def __init__(
        self,
        db_path: str = "flowmachine.db",
        clock: Callable[[], float] = time.time,
        lease_seconds: float = 3600.0,
    ):
        self.db_path = db_path
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._actions: dict[str, Callable[..., Any]] = {}
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
            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                task_id INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                args_json TEXT NOT NULL,
                run_at REAL NOT NULL,
                interval_seconds INTEGER,
                cron_expression TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                claimed_until REAL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_due
            ON scheduled_tasks(run_at, task_id)
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_scheduled_tasks_action
            ON scheduled_tasks(action, args_json)
            """
        )
        self._conn.commit()

    def _execute_write(self, sql: str, params: tuple) -> sqlite3.Cursor:
        with self._lock:
            cursor = self._conn.execute(sql, params)
            self._conn.commit()
        return cursor

    def register_action(self, action: str, callback: Callable[..., Any]) -> None:
        logger.info("Registered deferred action: %s", action)
        self._actions[action] = callback

    def now(self) -> float:
        return self._clock()

    def schedule_once(self, action: str, args: dict[str, Any], timestamp: float) -> int:
        return self._add(action, args, float(timestamp))

    def schedule_recurring(
        self,
        action: str,
        args: dict[str, Any],
        interval: int,
        first_run: float | None = None,
    ) -> int:
        if int(interval) <= 0:
            raise ValueError("interval must be positive")
        run_at = first_run if first_run is not None else self.now() + int(interval)
        return self._add(action, args, float(run_at), interval=int(interval))

    def schedule_cron(self, action: str, args: dict[str, Any], expression: str) -> int:
        return self._add(action, args, next_cron_fire(expression, self.now()), cron=expression)

    def _add(
        self,
        action: str,
        args: dict[str, Any],
        run_at: float,
        interval: int | None = None,
        cron: str | None = None,
    ) -> int:
        cursor = self._execute_write(
            """
            INSERT INTO scheduled_tasks (action, args_json, run_at, interval_seconds, cron_expression)
            VALUES (?, ?, ?, ?, ?)
            """,
            (action, _args_key(args), run_at, interval, cron),
        )
        return int(cursor.lastrowid)

    def unschedule(self, action: str, args: dict[str, Any]) -> int:
        cursor = self._execute_write(
            "DELETE FROM scheduled_tasks WHERE action = ? AND args_json = ?",
            (action, _args_key(args)),
        )
        return cursor.rowcount

    def has_scheduled(self, action: str, args: dict[str, Any]) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM scheduled_tasks WHERE action = ? AND args_json = ? LIMIT 1",
            (action, _args_key(args)),
        ).fetchone()
        return row is not None

    def pending(self, action: str | None = None) -> list[ScheduledTask]:
        if action is None:
            rows = self._conn.execute("SELECT * FROM scheduled_tasks ORDER BY run_at, task_id").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM scheduled_tasks WHERE action = ? ORDER BY run_at, task_id",
                (action,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def _claim_next(self, now: float) -> ScheduledTask | None:
        while True:
            with self._lock:
                row = self._conn.execute(
                    """
                    SELECT * FROM scheduled_tasks
                    WHERE run_at <= ? AND (claimed_until IS NULL OR claimed_until <= ?)
                    ORDER BY run_at, task_id
                    LIMIT 1
                    """,
                    (now, now),
                ).fetchone()
                if row is None:
                    return None
                cursor = self._conn.execute(
                    """
                    UPDATE scheduled_tasks
                    SET claimed_until = ?, attempts = attempts + 1
                    WHERE task_id = ? AND (claimed_until IS NULL OR claimed_until <= ?)
                    """,
                    (now + self.lease_seconds, row["task_id"], now),
                )
                self._conn.commit()
            if cursor.rowcount == 1:
                return self._row_to_task(row)
            logger.debug("Task %s claimed by another worker", row["task_id"])

    def _release(self, task: ScheduledTask, now: float) -> None:
        """Reschedule a recurring task after its run; drop a one-time task."""
        if task.interval:
            self._execute_write(
                "UPDATE scheduled_tasks SET run_at = ?, claimed_until = NULL WHERE task_id = ?",
                (now + task.interval, task.task_id),
            )
        elif task.cron:
            self._execute_write(
                "UPDATE scheduled_tasks SET run_at = ?, claimed_until = NULL WHERE task_id = ?",
                (next_cron_fire(task.cron, now), task.task_id),
            )
        else:
            self._execute_write("DELETE FROM scheduled_tasks WHERE task_id = ?", (task.task_id,))

    def run_due(self, now: float | None = None, limit: int = 1000) -> int:
        """Run due tasks (including ones scheduled for 'now' by earlier tasks). Returns tasks run."""
        executed = 0
        while executed < limit:
            current = self.now() if now is None else now
            task = self._claim_next(current)
            if task is None:
                break
            executed += 1
            callback = self._actions.get(task.action)
            try:
                if callback is None:
                    logger.error("No handler registered for deferred action '%s'", task.action)
                else:
                    callback(**task.args)
            except Exception:
                logger.exception("Deferred action '%s' failed (args=%s)", task.action, task.args)
            finally:
                self._release(task, current)
        return executed

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            task_id=int(row["task_id"]),
            action=row["action"],
            args=json.loads(row["args_json"]),
            run_at=float(row["run_at"]),
            interval=row["interval_seconds"],
            cron=row["cron_expression"],
            attempts=int(row["attempts"]),
        )

    def close(self) -> None:
        self._conn.close()


class SchedulerAdapter:
    """Keeps the deferred-task service in sync with flow schedules."""

    def __init__(self, db: WorkflowDB, tasks: DeferredTaskService, clock: Callable[[], float] = time.time):
        self.db = db
        self.tasks = tasks
        self._clock = clock

    def normalize(self, schedule: Any) -> ScheduleConfig:
        """Turn user input into a validated ScheduleConfig (timing fields only)."""
        if isinstance(schedule, ScheduleConfig):
            schedule = schedule.timing_only()
        if isinstance(schedule, (int, float)) and not isinstance(schedule, bool):
            schedule = {"interval": "one_time", "timestamp": int(schedule)}
        if isinstance(schedule, str):
            text = schedule.strip()
            schedule = {"interval": "one_time", "timestamp": int(text)} if text.isdigit() else {"interval": text}
        if not isinstance(schedule, dict):
            raise ValidationError("scheduling_config must be a string, timestamp or object")

        if schedule.get("cron") or schedule.get("cron_expression"):
            expression = str(schedule.get("cron") or schedule.get("cron_expression")).strip()
            try:
                next_fire = next_cron_fire(expression, self._clock())
            except ValueError as e:
                raise ValidationError(
                    f"Invalid cron expression '{expression}': {e}",
                    diagnostic={"cron_expression": expression},
                    remediation=remediation("fix_cron", "Use a five-field crontab expression, e.g. '0 9 * * 1-5'."),
                ) from None
            return ScheduleConfig(
                interval="cron",
                cron_expression=expression,
                first_run=datetime.fromtimestamp(next_fire, timezone.utc).isoformat(),
            )

        interval = str(schedule.get("interval") or "manual").strip()
        if interval == "manual":
            return ScheduleConfig(interval="manual")

        if interval == "one_time":
            try:
                timestamp = int(schedule.get("timestamp"))
            except (TypeError, ValueError):
                raise ValidationError("One-time schedules require a numeric timestamp") from None
            if timestamp <= self._clock():
                raise ValidationError(
                    "One-time schedule timestamp must be in the future",
                    diagnostic={"timestamp": timestamp, "now": int(self._clock())},
                )
            return ScheduleConfig(
                interval="one_time",
                timestamp=timestamp,
                scheduled_time=datetime.fromtimestamp(timestamp, timezone.utc).isoformat(),
            )

        spec = SCHEDULER_INTERVALS.get(interval)
        if spec is None:
            raise ValidationError(
                f"Invalid schedule interval '{interval}'",
                diagnostic={"interval": interval, "valid_intervals": ["manual", "one_time", *SCHEDULER_INTERVALS]},
                remediation=remediation("use_valid_interval", "Use manual, a named interval, a timestamp or {cron}."),
            )
        first_run = self._clock() + spec["seconds"]
        return ScheduleConfig(
            interval=interval,
            interval_seconds=spec["seconds"],
            first_run=datetime.fromtimestamp(first_run, timezone.utc).isoformat(),
        )

    def unschedule_flow(self, flow_id: int) -> int:
        return self.tasks.unschedule(RUN_FLOW_ACTION, {"flow_id": int(flow_id)})

    def _register(self, flow_id: int, schedule: ScheduleConfig) -> bool:
        args = {"flow_id": int(flow_id)}
        if schedule.interval == "manual":
            return False
        if schedule.interval == "one_time":
            if not schedule.timestamp or schedule.timestamp <= self._clock():
                return False
            self.tasks.schedule_once(RUN_FLOW_ACTION, args, schedule.timestamp)
            return True
        if schedule.interval == "cron":
            self.tasks.schedule_cron(RUN_FLOW_ACTION, args, str(schedule.cron_expression))
            return True
        seconds = SCHEDULER_INTERVALS.get(schedule.interval, {}).get("seconds")
        if not seconds:
            logger.error("Unknown interval '%s' on flow %s; not scheduled", schedule.interval, flow_id)
            return False
        self.tasks.schedule_recurring(RUN_FLOW_ACTION, args, seconds, first_run=self._clock() + seconds)
        return True

    def apply(self, flow_id: int, schedule: Any) -> ScheduleConfig:
        """Validate, persist and register a flow's schedule. Run counters are preserved."""
        timing = self.normalize(schedule)
        flow = self.db.get_flow(int(flow_id))
        if flow is None:
            raise flow_not_found(flow_id)

        def _persist(current: Flow) -> tuple[Flow, ScheduleConfig]:
            merged = current.scheduling.model_copy(
                update={
                    "interval": timing.interval,
                    "interval_seconds": timing.interval_seconds,
                    "timestamp": timing.timestamp,
                    "scheduled_time": timing.scheduled_time,
                    "cron_expression": timing.cron_expression,
                    "first_run": timing.first_run,
                }
            )
            return current.model_copy(update={"scheduling": merged}), merged

        saved = self.db.update_flow_atomic(flow.flow_id, _persist)
        self.unschedule_flow(flow.flow_id)
        self._register(flow.flow_id, saved)
        logger.info("Flow %d schedule set to %s", flow.flow_id, saved.interval)
        return saved

    def reregister_all(self) -> int:
        """Register every non-manual flow that has no task yet. Safe to call repeatedly.

        The task table is shared by every process, so a flow that is already
        registered keeps its next run time instead of being pushed back.
        """
        scheduled = 0
        for flow in self.db.list_flows():
            if flow.scheduling.is_manual:
                self.unschedule_flow(flow.flow_id)
                continue
            if self.tasks.has_scheduled(RUN_FLOW_ACTION, {"flow_id": flow.flow_id}):
                scheduled += 1
                continue
            if self._register(flow.flow_id, flow.scheduling):
                scheduled += 1
        if scheduled:
            logger.info("Flows re-scheduled on startup: %d", scheduled)
        return scheduled
