"""Pipeline commands: templates and their ordered steps."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from commands.registry import optional_int, require_int, require_str
from registry.db import build_pipeline_steps
from shared.errors import NotFoundError, ValidationError, pipeline_not_found, remediation
from shared.models import Pipeline, PipelineStep, StepKind, make_flow_step_id

if TYPE_CHECKING:
    from main import Runtime

logger = logging.getLogger(__name__)

STEP_FIELDS = ("label", "provider", "model", "system_prompt", "disabled_tools", "max_turns")


def _validate_step_type(raw: Any) -> StepKind:
    try:
        return StepKind(str(raw or "").strip())
    except ValueError:
        raise ValidationError(
            f"Invalid step_type '{raw}'",
            diagnostic={"step_type": raw, "valid_types": [kind.value for kind in StepKind]},
        ) from None


def step_summary(step: PipelineStep) -> dict[str, Any]:
    return step.model_dump(mode="json", exclude_none=True)


def pipeline_summary(pipeline: Pipeline, flow_count: int | None = None) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "pipeline_id": pipeline.pipeline_id,
        "pipeline_name": pipeline.name,
        "steps": [step_summary(step) for step in pipeline.ordered_steps()],
        "created_at": pipeline.created_at,
        "updated_at": pipeline.updated_at,
    }
    if flow_count is not None:
        summary["flow_count"] = flow_count
    return summary


def load_pipeline(runtime: "Runtime", pipeline_id: int) -> Pipeline:
    pipeline = runtime.db.get_pipeline(pipeline_id)
    if pipeline is None:
        raise pipeline_not_found(pipeline_id)
    return pipeline


def find_pipeline_step(runtime: "Runtime", pipeline_step_id: str) -> tuple[Pipeline, PipelineStep]:
    for pipeline in runtime.db.list_pipelines():
        step = pipeline.pipeline_config.get(pipeline_step_id)
        if step is not None:
            return pipeline, step
    raise NotFoundError(
        f"Pipeline step '{pipeline_step_id}' not found",
        diagnostic={"pipeline_step_id": pipeline_step_id},
        remediation=remediation(
            "list_pipelines",
            "Use get_pipelines to find valid pipeline step IDs.",
            tool_hint="get_pipelines",
        ),
    )


def _renumbered(steps: list[PipelineStep]) -> dict[str, PipelineStep]:
    return {
        step.pipeline_step_id: step.model_copy(update={"execution_order": index})
        for index, step in enumerate(steps)
    }


def _save_and_sync(runtime: "Runtime", pipeline: Pipeline) -> tuple[Pipeline, int]:
    saved = runtime.db.save_pipeline(pipeline)
    return saved, runtime.db.sync_flows_with_pipeline(saved)


# ─── Commands ──────────────────────────────────────────────────

def create_pipeline(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    name = require_str(params, "pipeline_name")
    steps = params.get("steps") or []
    if not isinstance(steps, list):
        raise ValidationError("steps must be a list")
    for raw in steps:
        if not isinstance(raw, dict):
            raise ValidationError("Each step must be an object with a step_type")
        _validate_step_type(raw.get("step_type"))

    pipeline = runtime.db.create_pipeline(name, steps)
    result: dict[str, Any] = {"success": True, **pipeline_summary(pipeline)}
    flow_name = str(params.get("flow_name") or "").strip()
    if flow_name:
        flow = runtime.db.create_flow(pipeline, flow_name)
        result["flow_id"] = flow.flow_id
    return result


def get_pipelines(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    pipeline_id = optional_int(params, "pipeline_id")
    if pipeline_id is not None:
        pipelines = [load_pipeline(runtime, pipeline_id)]
    else:
        pipelines = runtime.db.list_pipelines()
    return {
        "success": True,
        "pipelines": [
            pipeline_summary(p, flow_count=len(runtime.db.list_flows(pipeline_id=p.pipeline_id)))
            for p in pipelines
        ],
        "count": len(pipelines),
    }


def update_pipeline(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    pipeline = load_pipeline(runtime, require_int(params, "pipeline_id"))
    name = require_str(params, "pipeline_name")
    saved = runtime.db.save_pipeline(pipeline.model_copy(update={"name": name}))
    return {"success": True, **pipeline_summary(saved)}


def delete_pipeline(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    pipeline = load_pipeline(runtime, require_int(params, "pipeline_id"))
    flows = runtime.db.list_flows(pipeline_id=pipeline.pipeline_id)
    for flow in flows:
        runtime.scheduler.unschedule_flow(flow.flow_id)
    cleared = runtime.ledger.clear(pipeline_id=pipeline.pipeline_id)
    deleted_flows = runtime.db.delete_pipeline(pipeline.pipeline_id)
    logger.info("Deleted pipeline %d with %d flow(s)", pipeline.pipeline_id, len(deleted_flows))
    return {
        "success": True,
        "pipeline_id": pipeline.pipeline_id,
        "deleted_flows": deleted_flows,
        "processed_items_cleared": cleared,
    }


def add_pipeline_step(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    pipeline = load_pipeline(runtime, require_int(params, "pipeline_id"))
    kind = _validate_step_type(params.get("step_type"))
    existing = pipeline.ordered_steps()
    next_order = existing[-1].execution_order + 1 if existing else 0
    raw = {key: params[key] for key in STEP_FIELDS if key in params}
    new_steps = build_pipeline_steps([{"step_type": kind.value, **raw}], start_order=next_order)

    config = dict(pipeline.pipeline_config)
    config.update(new_steps)
    saved, flows_updated = _save_and_sync(runtime, pipeline.model_copy(update={"pipeline_config": config}))
    step = next(iter(new_steps.values()))
    return {
        "success": True,
        "pipeline_id": saved.pipeline_id,
        "pipeline_step_id": step.pipeline_step_id,
        "execution_order": step.execution_order,
        "flows_updated": flows_updated,
    }


def update_pipeline_step(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    pipeline_step_id = require_str(params, "pipeline_step_id")
    pipeline, step = find_pipeline_step(runtime, pipeline_step_id)
    changes = {key: params[key] for key in STEP_FIELDS if key in params}
    if not changes:
        raise ValidationError(
            "No step fields to update",
            diagnostic={"updatable_fields": list(STEP_FIELDS)},
        )
    if "disabled_tools" in changes and not isinstance(changes["disabled_tools"], list):
        raise ValidationError("disabled_tools must be a list of tool names")
    updated = PipelineStep(**{**step.model_dump(), **changes})
    config = dict(pipeline.pipeline_config)
    config[pipeline_step_id] = updated
    runtime.db.save_pipeline(pipeline.model_copy(update={"pipeline_config": config}))
    return {
        "success": True,
        "pipeline_id": pipeline.pipeline_id,
        "pipeline_step_id": pipeline_step_id,
        "updated_fields": sorted(changes),
    }


def delete_pipeline_step(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    pipeline_step_id = require_str(params, "pipeline_step_id")
    pipeline, _ = find_pipeline_step(runtime, pipeline_step_id)
    remaining = [s for s in pipeline.ordered_steps() if s.pipeline_step_id != pipeline_step_id]
    saved, flows_updated = _save_and_sync(
        runtime, pipeline.model_copy(update={"pipeline_config": _renumbered(remaining)})
    )
    cleared = 0
    for flow in runtime.db.list_flows(pipeline_id=saved.pipeline_id):
        cleared += runtime.ledger.clear(flow_step_id=make_flow_step_id(pipeline_step_id, flow.flow_id))
    return {
        "success": True,
        "pipeline_id": saved.pipeline_id,
        "deleted_step_id": pipeline_step_id,
        "remaining_steps": len(remaining),
        "flows_updated": flows_updated,
        "processed_items_cleared": cleared,
    }


def reorder_pipeline_steps(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    pipeline = load_pipeline(runtime, require_int(params, "pipeline_id"))
    order = params.get("step_order")
    if not isinstance(order, list) or not order:
        raise ValidationError("step_order must be a non-empty list of pipeline_step_ids")
    current = set(pipeline.pipeline_config)
    if len(order) != len(set(order)) or set(order) != current:
        raise ValidationError(
            "step_order must list every pipeline step exactly once",
            diagnostic={"expected": sorted(current), "received": order},
        )
    steps = [pipeline.pipeline_config[step_id] for step_id in order]
    saved, flows_updated = _save_and_sync(runtime, pipeline.model_copy(update={"pipeline_config": _renumbered(steps)}))
    return {"success": True, **pipeline_summary(saved), "flows_updated": flows_updated}


COMMANDS = {
    "create_pipeline": (create_pipeline, "Create a pipeline template, optionally with steps and a first flow"),
    "get_pipelines": (get_pipelines, "List pipelines (or one pipeline) with their ordered steps"),
    "update_pipeline": (update_pipeline, "Rename a pipeline"),
    "delete_pipeline": (delete_pipeline, "Delete a pipeline together with its flows"),
    "add_pipeline_step": (add_pipeline_step, "Append a step to a pipeline and to every flow using it"),
    "update_pipeline_step": (update_pipeline_step, "Update a pipeline step's AI settings"),
    "delete_pipeline_step": (delete_pipeline_step, "Remove a step from a pipeline and every dependent flow"),
    "reorder_pipeline_steps": (reorder_pipeline_steps, "Set a new execution order for a pipeline's steps"),
}
