"""Job commands: triggering, inspection, retry and recovery."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from commands.flows import load_flow
from commands.registry import as_bool, optional_int, require_int
from execution.scheduler import RUN_FLOW_ACTION
from shared.errors import ValidationError, job_not_found
from shared.models import Job, JobStatus

if TYPE_CHECKING:
    from main import Runtime

logger = logging.getLogger(__name__)

MAX_RUN_COUNT = 10


def job_summary(job: Job) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "flow_id": job.flow_id,
        "pipeline_id": job.pipeline_id,
        "status": job.display_status,
        "source": job.source,
        "label": job.label,
        "created_at": job.created_at,
        "completed_at": job.completed_at,
    }


def _load_job(runtime: "Runtime", job_id: int) -> Job:
    job = runtime.jobs.get_job(job_id)
    if job is None:
        raise job_not_found(job_id)
    return job


def run_flow(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    flow = load_flow(runtime, require_int(params, "flow_id"))
    count = optional_int(params, "count") or 1
    timestamp = optional_int(params, "timestamp")
    if not 1 <= count <= MAX_RUN_COUNT:
        raise ValidationError(
            f"count must be between 1 and {MAX_RUN_COUNT}",
            diagnostic={"count": count},
        )
    if count > 1 and timestamp is not None:
        raise ValidationError(
            "count > 1 cannot be combined with timestamp; schedule one run at a time",
            diagnostic={"count": count, "timestamp": timestamp},
        )

    now = runtime.tasks.now()
    if timestamp is not None:
        if timestamp <= now:
            raise ValidationError("timestamp must be in the future", diagnostic={"timestamp": timestamp})
        job = runtime.jobs.create_job(flow.flow_id, flow.pipeline_id, source="api", label=flow.name)
        runtime.tasks.schedule_once(RUN_FLOW_ACTION, {"flow_id": flow.flow_id, "job_id": job.job_id}, timestamp)
        return {
            "success": True,
            "flow_id": flow.flow_id,
            "job_ids": [job.job_id],
            "scheduled_for": timestamp,
            "message": f"Flow {flow.flow_id} scheduled",
        }

    if count == 1:
        job = runtime.engine.run_now(flow.flow_id, source="api")
        return {
            "success": True,
            "flow_id": flow.flow_id,
            "job_ids": [job.job_id],
            "status": job.display_status,
            "message": f"Flow {flow.flow_id} started",
        }

    job_ids: list[int] = []
    for _ in range(count):
        job = runtime.jobs.create_job(flow.flow_id, flow.pipeline_id, source="api", label=flow.name)
        runtime.tasks.schedule_once(RUN_FLOW_ACTION, {"flow_id": flow.flow_id, "job_id": job.job_id}, now)
        job_ids.append(job.job_id)
    logger.info("Queued %d run(s) of flow %d", count, flow.flow_id)
    return {
        "success": True,
        "flow_id": flow.flow_id,
        "job_ids": job_ids,
        "message": f"{count} runs of flow {flow.flow_id} queued",
    }


def get_jobs(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    status = None
    if params.get("status"):
        try:
            status, _ = JobStatus.parse(str(params["status"]))
        except ValueError:
            raise ValidationError(
                f"Invalid status '{params['status']}'",
                diagnostic={"valid_statuses": [s.value for s in JobStatus]},
            ) from None
    jobs = runtime.jobs.list_jobs(
        flow_id=optional_int(params, "flow_id"),
        status=status,
        limit=optional_int(params, "limit") or 50,
    )
    return {
        "success": True,
        "jobs": [job_summary(job) for job in jobs],
        "count": len(jobs),
        "status_counts": runtime.jobs.count_by_status(),
    }


def get_job(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    job = _load_job(runtime, require_int(params, "job_id"))
    return {
        "success": True,
        **job_summary(job),
        "data_packets": [packet.model_dump(mode="json") for packet in job.data_packets],
        "engine_data": job.engine_snapshot.get("data", {}),
    }


def retry_job(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    return runtime.engine.retry_job(require_int(params, "job_id"), force=as_bool(params.get("force")))


def fail_job(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    job = _load_job(runtime, require_int(params, "job_id"))
    if job.status.is_terminal:
        raise ValidationError(
            f"Job {job.job_id} is already {job.display_status}",
            diagnostic={"job_id": job.job_id, "status": job.display_status},
        )
    reason = str(params.get("reason") or "manual").strip()
    runtime.engine.fail_job(job.job_id, reason, {"source": "command"})
    return {"success": True, **job_summary(_load_job(runtime, job.job_id))}


def recover_stuck_jobs(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    timeout = params.get("timeout_hours")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ValidationError("timeout_hours must be a number") from None
        if timeout <= 0:
            raise ValidationError("timeout_hours must be positive")
    report = runtime.engine.recover_stuck_jobs(
        timeout_hours=timeout,
        flow_id=optional_int(params, "flow_id"),
        dry_run=as_bool(params.get("dry_run")),
    )
    return {"success": True, **report}


def execute_workflow(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    workflow = params.get("workflow")
    if workflow is None and "steps" in params:
        workflow = {"steps": params["steps"]}
    if not isinstance(workflow, dict):
        raise ValidationError("workflow must be an object with a steps list")
    initial_data = params.get("initial_data") or {}
    if not isinstance(initial_data, dict):
        raise ValidationError("initial_data must be an object")
    job = runtime.engine.run_direct(
        workflow,
        initial_data=initial_data,
        dry_run=as_bool(params.get("dry_run")),
        timestamp=optional_int(params, "timestamp"),
    )
    return {"success": True, **job_summary(job), "execution_mode": "direct"}


COMMANDS = {
    "run_flow": (run_flow, "Run a flow now, N times (1-10) or once at a future timestamp"),
    "get_jobs": (get_jobs, "List recent jobs, optionally by flow or status"),
    "get_job": (get_job, "Show one job with its data packets and engine data"),
    "retry_job": (retry_job, "Retry a failed (or, with force, any) job as a new job"),
    "fail_job": (fail_job, "Mark a running job failed and requeue its prompt"),
    "recover_stuck_jobs": (recover_stuck_jobs, "Fail or finalize jobs stuck in running"),
    "execute_workflow": (execute_workflow, "Run an ephemeral workflow without creating a flow"),
}
