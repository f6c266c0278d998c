"""
Job Engine — owns the job lifecycle through a four-action cycle.

run_now → execute_step → schedule_next → (execute_step ...) → complete
run_later registers future run_now invocations via the Scheduler Adapter.

Every step is dispatched as its own deferred task, so one step's failure is
isolated and step N+1 is never dispatched before step N finished. Actions are
idempotent under at-least-once delivery: terminal jobs are never re-executed.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from conversation.loop import ConversationLoop
from execution.job_store import JobStore
from execution.scheduler import RUN_FLOW_ACTION, DeferredTaskService, SchedulerAdapter
from execution.steps import STEP_TYPES, StepContext, StepServices
from memory.store import ProcessedItemsStore
from observability.logger import Observability
from registry.db import WorkflowDB
from registry.flow_queue import FlowQueue
from registry.handler_registry import HandlerRegistry
from shared.engine_data import EngineSnapshot, build_snapshot
from shared.errors import (
    HandlerError,
    ValidationError,
    WorkflowError,
    flow_not_found,
    job_not_found,
    pipeline_not_found,
)
from shared.models import (
    DIRECT_EXECUTION,
    Flow,
    Job,
    JobStatus,
    StepKind,
    compose_status,
)
from shared.settings import Settings
from skills.registry import ToolRegistry

logger = logging.getLogger(__name__)

EXECUTE_STEP_ACTION = "execute_step"


class JobEngine:
    """Orchestrates a job's steps end-to-end and persists job status."""

    def __init__(
        self,
        settings: Settings,
        db: WorkflowDB,
        jobs: JobStore,
        ledger: ProcessedItemsStore,
        handler_registry: HandlerRegistry,
        tool_registry: ToolRegistry,
        conversation: ConversationLoop,
        tasks: DeferredTaskService,
        flow_queue: FlowQueue | None = None,
        scheduler: SchedulerAdapter | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.db = db
        self.jobs = jobs
        self.ledger = ledger
        self.flow_queue = flow_queue or FlowQueue(db)
        self.tasks = tasks
        self.scheduler = scheduler or SchedulerAdapter(db, tasks, clock=clock)
        self._clock = clock
        self.observability = Observability()
        self.services = StepServices(
            settings=settings,
            handler_registry=handler_registry,
            ledger=ledger,
            flow_queue=self.flow_queue,
            tool_registry=tool_registry,
            conversation=conversation,
            http_client=http_client or httpx.Client(timeout=settings.http_timeout_seconds),
        )
        tasks.register_action(RUN_FLOW_ACTION, self._run_flow_action)
        tasks.register_action(EXECUTE_STEP_ACTION, self.execute_step)

    def apply_settings(self, settings: Settings) -> None:
        self.settings = settings
        self.services.settings = settings
        self.services.tool_registry.apply_settings(settings)
        logger.info("Engine settings applied")

    # ─── Action 1: run_now ──────────────────────────────────────

    def _run_flow_action(self, flow_id: int, job_id: int | None = None) -> None:
        self.run_now(flow_id, job_id=job_id, source="system" if job_id is None else "pipeline")

    def run_now(self, flow_id: int, job_id: int | None = None, source: str = "pipeline") -> Job:
        """Create (or reuse a pending) job, snapshot configuration and dispatch the first step."""
        flow = self.db.get_flow(int(flow_id))
        if flow is None:
            raise flow_not_found(flow_id)
        pipeline = self.db.get_pipeline(flow.pipeline_id)
        if pipeline is None:
            raise pipeline_not_found(flow.pipeline_id)

        if job_id is None:
            job = self.jobs.create_job(flow.flow_id, flow.pipeline_id, source=source, label=flow.name)
        else:
            job = self.jobs.get_job(int(job_id))
            if job is None:
                raise job_not_found(job_id)
            if job.status != JobStatus.PENDING:
                logger.info("Job %d already started (%s); ignoring duplicate run", job.job_id, job.display_status)
                return job

        if not self.jobs.start_job(job.job_id):
            logger.info("Job %d was started by another delivery; ignoring duplicate run", job.job_id)
            return self.jobs.get_job(job.job_id) or job
        snapshot = build_snapshot(job, flow, pipeline)
        self.jobs.store_snapshot(job.job_id, snapshot.model_dump(mode="json"))
        obs = self.observability.for_job(flow.flow_id, job.job_id)
        obs.log_event("job_started", {"pipeline_id": flow.pipeline_id, "flow_name": flow.name, "source": source})

        if not snapshot.ordered_flow_steps():
            logger.error("Flow %d has no steps; cannot start job %d", flow.flow_id, job.job_id)
            self.fail_job(job.job_id, "no_first_step")
        else:
            self._dispatch_step(job.job_id, 0)
        return self.jobs.get_job(job.job_id) or job

    def run_direct(
        self,
        workflow: dict[str, Any],
        initial_data: dict[str, Any] | None = None,
        dry_run: bool = False,
        timestamp: float | None = None,
    ) -> Job:
        """Execute an ephemeral workflow as a 'direct' job (no flow or pipeline rows)."""
        steps = workflow.get("steps") if isinstance(workflow, dict) else None
        if not isinstance(steps, list) or not steps:
            raise ValidationError("workflow.steps must be a non-empty list")

        flow_config: dict[str, Any] = {}
        pipeline_config: dict[str, Any] = {}
        for index, raw in enumerate(steps):
            try:
                kind = StepKind(str(raw.get("type", "")).strip())
            except ValueError:
                raise ValidationError(
                    f"Step {index} has invalid type '{raw.get('type')}'",
                    diagnostic={"valid_types": [k.value for k in StepKind]},
                ) from None
            handler_slug = str(raw.get("handler_slug") or "")
            if kind in (StepKind.FETCH, StepKind.PUBLISH, StepKind.UPDATE):
                self.services.handler_registry.require(handler_slug, kind)
            pipeline_step_id = f"ephemeral_step_{index}"
            flow_step_id = f"{pipeline_step_id}_{DIRECT_EXECUTION}"
            pipeline_config[pipeline_step_id] = {
                "pipeline_step_id": pipeline_step_id,
                "step_type": kind.value,
                "execution_order": index,
                "provider": raw.get("provider", ""),
                "model": raw.get("model", ""),
                "system_prompt": raw.get("system_prompt", ""),
                "disabled_tools": list(raw.get("disabled_tools") or []),
                "max_turns": raw.get("max_turns"),
            }
            flow_config[flow_step_id] = {
                "flow_step_id": flow_step_id,
                "pipeline_step_id": pipeline_step_id,
                "pipeline_id": DIRECT_EXECUTION,
                "flow_id": DIRECT_EXECUTION,
                "step_type": kind.value,
                "execution_order": index,
                "handler_slug": handler_slug,
                "handler_config": dict(raw.get("handler_config") or {}),
                "user_message": str(raw.get("user_message") or ""),
                "queue_enabled": False,
            }

        job = self.jobs.create_job(DIRECT_EXECUTION, DIRECT_EXECUTION, source="direct", label="Direct Workflow")
        if not self.jobs.start_job(job.job_id):
            logger.info("Direct job %d was started by another delivery", job.job_id)
            return self.jobs.get_job(job.job_id) or job
        data: dict[str, Any] = {
            "job": {
                "job_id": job.job_id,
                "flow_id": DIRECT_EXECUTION,
                "pipeline_id": DIRECT_EXECUTION,
                "created_at": job.created_at,
            },
            "flow": {"name": "Direct Workflow"},
            "pipeline": {"name": "Direct Workflow"},
            "flow_config": flow_config,
            "pipeline_config": pipeline_config,
        }
        snapshot = EngineSnapshot(version=1, data=data).merge(initial_data or {})
        if dry_run:
            snapshot = snapshot.merge({"dry_run_mode": True})
        self.jobs.store_snapshot(job.job_id, snapshot.model_dump(mode="json"))
        self.observability.for_job(DIRECT_EXECUTION, job.job_id).log_event(
            "job_started",
            {"execution_mode": "direct", "step_count": len(steps), "dry_run": dry_run},
        )
        self._dispatch_step(job.job_id, 0, timestamp=timestamp)
        return self.jobs.get_job(job.job_id) or job

    # ─── Action 2: execute_step ─────────────────────────────────

    def execute_step(self, job_id: int, step_index: int) -> None:
        """Run one step, persist its output, then schedule the next action."""
        job = self.jobs.get_job(int(job_id))
        if job is None:
            logger.warning("execute_step: job %s not found", job_id)
            return
        if job.status != JobStatus.RUNNING:
            logger.info("execute_step: job %d is %s; skipping step %d", job.job_id, job.display_status, step_index)
            return

        obs = self.observability.for_job(job.flow_id, job.job_id)
        snapshot = EngineSnapshot(**job.engine_snapshot)
        steps = snapshot.ordered_flow_steps()
        if not 0 <= step_index < len(steps):
            self.fail_job(job.job_id, "step_config_missing", {"step_index": step_index})
            return
        step_config = steps[step_index]
        flow_step_id = str(step_config.get("flow_step_id") or "")
        try:
            kind = StepKind(str(step_config.get("step_type") or ""))
        except ValueError:
            self.fail_job(job.job_id, "unknown_step_type", {"step_type": step_config.get("step_type")})
            return
        if not flow_step_id:
            self.fail_job(job.job_id, "step_config_missing", {"step_index": step_index})
            return

        step = STEP_TYPES[kind](self.services)
        context = StepContext(
            job_id=job.job_id,
            flow_id=job.flow_id,
            pipeline_id=job.pipeline_id,
            flow_step_id=flow_step_id,
            step_config=step_config,
            snapshot=snapshot,
            packets=list(job.data_packets),
            dry_run=bool(snapshot.get("dry_run_mode")),
        )
        try:
            with obs.measure("step_execution", {"step_index": step_index, "step_type": kind.value}):
                result = step.execute(context)
        except WorkflowError as e:
            obs.log_event("step_failed", {"flow_step_id": flow_step_id, "error": e.message}, level="ERROR")
            reason = "step_execution_exception" if isinstance(e, HandlerError) else "step_configuration_error"
            self.fail_job(job.job_id, reason, {"error": e.message, "flow_step_id": flow_step_id})
            return
        except Exception as e:
            logger.exception("Step %s of job %d raised", flow_step_id, job.job_id)
            self.fail_job(job.job_id, "step_execution_exception", {"error": str(e), "flow_step_id": flow_step_id})
            return

        snapshot = snapshot.merge(result.engine_delta)
        packets = list(reversed(result.packets)) + list(job.data_packets)
        self.jobs.store_snapshot(job.job_id, snapshot.model_dump(mode="json"))
        self.jobs.store_packets(job.job_id, packets)

        override = snapshot.job_status_override
        if override is not None:
            status, reason = override
            logger.info("Job %d status override from step %s: %s", job.job_id, flow_step_id, compose_status(status, reason))
            self.complete_job(job.job_id, status, reason)
            return

        succeeded = result.success and bool(result.packets) and not any(p.failed for p in result.packets)
        if succeeded:
            obs.log_event(
                "step_completed",
                {"flow_step_id": flow_step_id, "step_type": kind.value, "packets": len(result.packets)},
            )
            self.schedule_next(job.job_id, step_index)
            return

        if kind == StepKind.FETCH and result.no_items:
            self.complete_job(job.job_id, JobStatus.COMPLETED_NO_ITEMS)
            return

        obs.log_event(
            "step_failed",
            {"flow_step_id": flow_step_id, "reason": result.reason, "error": result.error},
            level="ERROR",
        )
        self.fail_job(
            job.job_id,
            result.reason or "empty_data_packet_returned",
            {"error": result.error, "flow_step_id": flow_step_id} if result.error else {"flow_step_id": flow_step_id},
        )

    # ─── Action 3: schedule_next ────────────────────────────────

    def schedule_next(self, job_id: int, step_index: int) -> bool:
        """Defer step_index + 1, or complete the job when no steps remain."""
        job = self.jobs.get_job(int(job_id))
        if job is None:
            return False
        steps = EngineSnapshot(**job.engine_snapshot).ordered_flow_steps()
        next_index = step_index + 1
        if next_index < len(steps):
            self._dispatch_step(job.job_id, next_index)
            return True
        self.complete_job(job.job_id, JobStatus.COMPLETED)
        return False

    def _dispatch_step(self, job_id: int, step_index: int, timestamp: float | None = None) -> None:
        self.tasks.schedule_once(
            EXECUTE_STEP_ACTION,
            {"job_id": int(job_id), "step_index": int(step_index)},
            timestamp if timestamp is not None else self._clock(),
        )

    # ─── Action 4: run_later ────────────────────────────────────

    def run_later(self, flow_id: int, schedule: Any) -> dict[str, Any]:
        """Register future run_now invocations per the schedule (manual, interval, timestamp, cron)."""
        saved = self.scheduler.apply(int(flow_id), schedule)
        return saved.model_dump(mode="json", exclude_none=True)

    # ─── Terminal transitions ───────────────────────────────────

    def complete_job(self, job_id: int, status: JobStatus, reason: str = "") -> bool:
        job = self.jobs.get_job(int(job_id))
        if job is None:
            return False
        if not self.jobs.complete_job(job.job_id, status, reason):
            logger.info("Job %d already terminal; %s ignored", job.job_id, compose_status(status, reason))
            return False

        if not job.is_direct:
            self._record_flow_run(int(job.flow_id), status)
        if status == JobStatus.FAILED and self.settings.cleanup_job_data_on_failure:
            self.jobs.clear_packets(job.job_id)

        obs = self.observability.for_job(job.flow_id, job.job_id)
        obs.log_event(
            "job_failed" if status == JobStatus.FAILED else "job_completed",
            {"status": status.value, "reason": reason},
            level="ERROR" if status == JobStatus.FAILED else "INFO",
        )
        return True

    def fail_job(self, job_id: int, reason: str, context: dict[str, Any] | None = None) -> bool:
        """Mark failed, requeue a popped prompt and forget items fetched by this job."""
        job = self.jobs.get_job(int(job_id))
        if job is None:
            return False
        snapshot = EngineSnapshot(**job.engine_snapshot) if job.engine_snapshot else EngineSnapshot()
        if context:
            snapshot = snapshot.merge({"failure": {"reason": reason, **context}})
            self.jobs.store_snapshot(job.job_id, snapshot.model_dump(mode="json"))

        if not self.complete_job(job.job_id, JobStatus.FAILED, reason):
            return False

        backup = snapshot.queued_prompt_backup
        if backup and not job.is_direct:
            self.flow_queue.requeue(int(job.flow_id), backup["flow_step_id"], backup["prompt"])
        removed = self.ledger.clear(job_id=job.job_id)
        logger.warning("Job %d failed: %s (processed items released: %d)", job.job_id, reason, removed)
        return True

    def _record_flow_run(self, flow_id: int, status: JobStatus) -> None:
        def _update(flow: Flow) -> tuple[Flow, None]:
            schedule = flow.scheduling
            failures = schedule.consecutive_failures
            no_items = schedule.consecutive_no_items
            if status == JobStatus.FAILED:
                failures += 1
            elif status == JobStatus.COMPLETED_NO_ITEMS:
                no_items += 1
            else:
                failures = 0
                no_items = 0
            updated = schedule.model_copy(
                update={
                    "consecutive_failures": failures,
                    "consecutive_no_items": no_items,
                    "last_run_at": datetime.now(timezone.utc).isoformat(),
                    "last_run_status": status.value,
                }
            )
            return flow.model_copy(update={"scheduling": updated}), None

        try:
            self.db.update_flow_atomic(flow_id, _update)
        except LookupError:
            logger.info("Flow %d no longer exists; run counters not updated", flow_id)

    # ─── Recovery & retry ───────────────────────────────────────

    def recover_stuck_jobs(
        self,
        timeout_hours: float | None = None,
        flow_id: int | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        timeout = float(timeout_hours if timeout_hours is not None else self.settings.stuck_job_timeout_hours)
        cutoff = self._clock() - timeout * 3600
        report: dict[str, Any] = {
            "recovered": 0,
            "timed_out": 0,
            "requeued": 0,
            "orphaned": 0,
            "skipped": 0,
            "dry_run": dry_run,
            "jobs": [],
        }

        for job in self.jobs.running_jobs(flow_id=flow_id):
            snapshot = EngineSnapshot(**job.engine_snapshot) if job.engine_snapshot else EngineSnapshot()
            override = snapshot.job_status_override
            if override is not None:
                status, reason = override
                if not dry_run:
                    self.complete_job(job.job_id, status, reason)
                report["recovered"] += 1
                report["jobs"].append(
                    {"job_id": job.job_id, "action": "recovered", "status": compose_status(status, reason)}
                )
                continue

            started = datetime.fromisoformat(job.started_at or job.created_at).timestamp()
            if started > cutoff:
                report["skipped"] += 1
                continue

            will_requeue = snapshot.queued_prompt_backup is not None and not job.is_direct
            if not dry_run:
                self.fail_job(job.job_id, "stuck_recovered", {"timeout_hours": timeout})
            report["timed_out"] += 1
            if will_requeue:
                report["requeued"] += 1
            report["jobs"].append(
                {"job_id": job.job_id, "action": "timed_out", "status": "failed - stuck_recovered"}
            )

        # Pending jobs only start from a run_flow_now task; without one they never will.
        for job in self.jobs.pending_jobs(flow_id=flow_id):
            if job.is_direct:
                continue
            created = datetime.fromisoformat(job.created_at).timestamp()
            trigger = {"flow_id": int(job.flow_id), "job_id": job.job_id}
            if created > cutoff or self.tasks.has_scheduled(RUN_FLOW_ACTION, trigger):
                report["skipped"] += 1
                continue
            if not dry_run:
                self.fail_job(job.job_id, "trigger_lost", {"timeout_hours": timeout})
            report["orphaned"] += 1
            report["jobs"].append(
                {"job_id": job.job_id, "action": "orphaned", "status": "failed - trigger_lost"}
            )

        self.observability.log_event(
            "stuck_jobs_recovered",
            {key: report[key] for key in ("recovered", "timed_out", "requeued", "orphaned", "skipped", "dry_run")},
        )
        return report

    def retry_job(self, job_id: int, force: bool = False) -> dict[str, Any]:
        job = self.jobs.get_job(int(job_id))
        if job is None:
            raise job_not_found(job_id)
        if job.is_direct:
            raise ValidationError("Direct executions cannot be retried; run the workflow again")
        if not force and job.status not in (JobStatus.FAILED, JobStatus.RUNNING):
            raise ValidationError(
                f'Job {job.job_id} has status "{job.display_status}"; use force to retry non-failed jobs.',
                diagnostic={"job_id": job.job_id, "status": job.display_status},
            )

        previous_status = job.display_status
        prompt_requeued = False
        if job.status == JobStatus.RUNNING:
            snapshot = EngineSnapshot(**job.engine_snapshot) if job.engine_snapshot else EngineSnapshot()
            prompt_requeued = snapshot.queued_prompt_backup is not None
            self.fail_job(job.job_id, "manual_retry")

        new_job = self.run_now(int(job.flow_id), source="api")
        logger.info("Job %d retried as job %d", job.job_id, new_job.job_id)
        return {
            "success": True,
            "job_id": new_job.job_id,
            "previous_job_id": job.job_id,
            "previous_status": previous_status,
            "prompt_requeued": prompt_requeued,
        }

    # ─── Flow health ────────────────────────────────────────────

    def get_problem_flows(self, threshold: int | None = None) -> list[dict[str, Any]]:
        limit = int(threshold if threshold is not None else self.settings.problem_flow_threshold)
        problems: list[dict[str, Any]] = []
        for flow in self.db.list_flows():
            schedule = flow.scheduling
            if schedule.consecutive_failures < limit and schedule.consecutive_no_items < limit:
                continue
            problems.append(
                {
                    "flow_id": flow.flow_id,
                    "flow_name": flow.name,
                    "pipeline_id": flow.pipeline_id,
                    "consecutive_failures": schedule.consecutive_failures,
                    "consecutive_no_items": schedule.consecutive_no_items,
                    "last_run_at": schedule.last_run_at,
                    "last_run_status": schedule.last_run_status,
                }
            )
        problems.sort(key=lambda p: (p["consecutive_failures"], p["consecutive_no_items"]), reverse=True)
        return problems
