"""Flow commands: instances of pipelines with handlers, queues and schedules."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from commands.flow_steps import apply_step_changes
from commands.pipelines import load_pipeline
from commands.registry import optional_int, require_int, require_str
from shared.errors import ValidationError, flow_not_found
from shared.models import Flow, FlowStepConfig

if TYPE_CHECKING:
    from main import Runtime

logger = logging.getLogger(__name__)


def load_flow(runtime: "Runtime", flow_id: int) -> Flow:
    flow = runtime.db.get_flow(flow_id)
    if flow is None:
        raise flow_not_found(flow_id)
    return flow


def flow_summary(runtime: "Runtime", flow: Flow) -> dict[str, Any]:
    latest = runtime.jobs.list_jobs(flow_id=flow.flow_id, limit=1)
    return {
        "flow_id": flow.flow_id,
        "flow_name": flow.name,
        "pipeline_id": flow.pipeline_id,
        "scheduling": flow.scheduling.model_dump(mode="json", exclude_none=True),
        "steps": [
            {
                "flow_step_id": step.flow_step_id,
                "pipeline_step_id": step.pipeline_step_id,
                "step_type": step.step_type.value,
                "execution_order": step.execution_order,
                "handler_slug": step.handler_slug,
                "handler_config": step.handler_config,
                "user_message": step.user_message,
                "queue_enabled": step.queue_enabled,
                "queue_count": len(step.prompt_queue),
            }
            for step in flow.ordered_steps()
        ],
        "last_job": (
            {"job_id": latest[0].job_id, "status": latest[0].display_status, "created_at": latest[0].created_at}
            if latest
            else None
        ),
    }


def _apply_step_configs(runtime: "Runtime", flow_id: int, step_configs: dict[str, Any]) -> list[str]:
    """Apply {pipeline_step_id | flow_step_id: changes} to one flow atomically."""
    if not isinstance(step_configs, dict):
        raise ValidationError("step_configs must be an object keyed by pipeline_step_id")

    def _mutate(flow: Flow) -> tuple[Flow, list[str]]:
        config = dict(flow.flow_config)
        updated: list[str] = []
        for key, changes in step_configs.items():
            step = config.get(key) or next(
                (s for s in config.values() if s.pipeline_step_id == key),
                None,
            )
            if step is None:
                raise ValidationError(
                    f"Step '{key}' is not part of flow {flow.flow_id}",
                    diagnostic={"available_steps": sorted(s.pipeline_step_id for s in config.values())},
                )
            config[step.flow_step_id] = apply_step_changes(runtime, step, dict(changes or {}))
            updated.append(step.flow_step_id)
        return flow.model_copy(update={"flow_config": config}), updated

    return runtime.db.update_flow_atomic(flow_id, _mutate)


# ─── Commands ──────────────────────────────────────────────────

def create_flow(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    pipeline = load_pipeline(runtime, require_int(params, "pipeline_id"))
    name = require_str(params, "flow_name")
    schedule = params.get("scheduling_config")
    if schedule is not None:
        runtime.scheduler.normalize(schedule)

    flow = runtime.db.create_flow(pipeline, name)
    configured: list[str] = []
    try:
        if params.get("step_configs"):
            configured = _apply_step_configs(runtime, flow.flow_id, params["step_configs"])
        if schedule is not None:
            runtime.engine.run_later(flow.flow_id, schedule)
    except Exception:
        runtime.db.delete_flow(flow.flow_id)
        raise
    return {
        "success": True,
        **flow_summary(runtime, load_flow(runtime, flow.flow_id)),
        "configured_steps": configured,
    }


def get_flows(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    flow_id = optional_int(params, "flow_id")
    if flow_id is not None:
        flows = [load_flow(runtime, flow_id)]
    else:
        flows = runtime.db.list_flows(pipeline_id=optional_int(params, "pipeline_id"))
    return {"success": True, "flows": [flow_summary(runtime, f) for f in flows], "count": len(flows)}


def update_flow(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    flow = load_flow(runtime, require_int(params, "flow_id"))
    name = str(params.get("flow_name") or "").strip()
    schedule = params.get("scheduling_config")
    if not name and schedule is None:
        raise ValidationError("Provide flow_name and/or scheduling_config to update")

    if name:
        runtime.db.update_flow_atomic(flow.flow_id, lambda f: (f.model_copy(update={"name": name}), None))
    if schedule is not None:
        runtime.engine.run_later(flow.flow_id, schedule)
    return {"success": True, **flow_summary(runtime, load_flow(runtime, flow.flow_id))}


def delete_flow(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    flow = load_flow(runtime, require_int(params, "flow_id"))
    unscheduled = runtime.scheduler.unschedule_flow(flow.flow_id)
    cleared = runtime.ledger.clear(flow_id=flow.flow_id)
    runtime.db.delete_flow(flow.flow_id)
    logger.info("Deleted flow %d (unscheduled=%d, processed items=%d)", flow.flow_id, unscheduled, cleared)
    return {
        "success": True,
        "flow_id": flow.flow_id,
        "unscheduled_tasks": unscheduled,
        "processed_items_cleared": cleared,
    }


def duplicate_flow(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    source = load_flow(runtime, require_int(params, "source_flow_id"))
    target_pipeline_id = optional_int(params, "target_pipeline_id") or source.pipeline_id
    target_pipeline = load_pipeline(runtime, target_pipeline_id)

    source_steps = source.ordered_steps()
    target_steps = target_pipeline.ordered_steps()
    source_types = [step.step_type.value for step in source_steps]
    target_types = [step.step_type.value for step in target_steps]
    if source_types != target_types:
        raise ValidationError(
            "Target pipeline step types do not match the source flow",
            diagnostic={"source_step_types": source_types, "target_step_types": target_types},
        )

    if params.get("scheduling_config") is not None:
        schedule: Any = params["scheduling_config"]
    elif source.scheduling.interval == "one_time":
        schedule = "manual"
    else:
        schedule = source.scheduling.timing_only()
    runtime.scheduler.normalize(schedule)

    overrides = params.get("step_config_overrides") or {}
    if not isinstance(overrides, dict):
        raise ValidationError("step_config_overrides must be an object keyed by pipeline_step_id or position")

    name = str(params.get("flow_name") or "").strip() or f"Copy of {source.name}"
    copy = runtime.db.create_flow(target_pipeline, name)

    def _copy(flow: Flow) -> tuple[Flow, int]:
        config: dict[str, FlowStepConfig] = dict(flow.flow_config)
        by_pipeline_step = {step.pipeline_step_id: step for step in config.values()}
        for position, (src, tgt) in enumerate(zip(source_steps, target_steps)):
            step = by_pipeline_step[tgt.pipeline_step_id].model_copy(
                update={
                    "handler_slug": src.handler_slug,
                    "handler_config": dict(src.handler_config),
                    "user_message": src.user_message,
                    "queue_enabled": src.queue_enabled,
                }
            )
            override = overrides.get(tgt.pipeline_step_id) or overrides.get(str(position))
            if override:
                step = apply_step_changes(runtime, step, dict(override))
            config[step.flow_step_id] = step
        return flow.model_copy(update={"flow_config": config}), len(config)

    try:
        copied_steps = runtime.db.update_flow_atomic(copy.flow_id, _copy)
        runtime.engine.run_later(copy.flow_id, schedule)
    except Exception:
        runtime.db.delete_flow(copy.flow_id)
        raise
    return {
        "success": True,
        "source_flow_id": source.flow_id,
        "flow_id": copy.flow_id,
        "flow_name": name,
        "pipeline_id": target_pipeline.pipeline_id,
        "steps_copied": copied_steps,
    }


def get_problem_flows(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    threshold = optional_int(params, "threshold")
    if threshold is not None and threshold < 1:
        raise ValidationError("threshold must be at least 1")
    problems = runtime.engine.get_problem_flows(threshold)
    return {
        "success": True,
        "threshold": threshold or runtime.settings.problem_flow_threshold,
        "problem_flows": problems,
        "count": len(problems),
    }


COMMANDS = {
    "create_flow": (create_flow, "Create a flow from a pipeline, optionally configuring steps and schedule"),
    "get_flows": (get_flows, "List flows (by pipeline) or show one flow"),
    "update_flow": (update_flow, "Rename a flow or change its schedule"),
    "delete_flow": (delete_flow, "Delete a flow, its scheduled runs and processed-item history"),
    "duplicate_flow": (duplicate_flow, "Copy a flow's step configuration, optionally onto another pipeline"),
    "get_problem_flows": (get_problem_flows, "Flows whose consecutive failures or empty runs reach a threshold"),
}
