"""
Flow step configuration commands.

configure_flow_steps modes:
- single:        flow_step_id
- by pipeline:   pipeline_id + (handler_slug filter | all_flows=true), optional step_type
- global:        global_scope=true + handler_slug
- cross-pipeline: updates=[{flow_id, ...}] + shared_config (per-flow values win)

A bulk change scoped only by pipeline_id is rejected. validate_only reports
would_update and writes nothing.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from commands.pipelines import load_pipeline
from commands.registry import as_bool, optional_int, require_str
from shared.errors import ValidationError, WorkflowError, flow_not_found, remediation
from shared.models import Flow, FlowStepConfig, StepKind, split_flow_step_id

if TYPE_CHECKING:
    from main import Runtime

logger = logging.getLogger(__name__)

HANDLER_STEP_TYPES = (StepKind.FETCH, StepKind.PUBLISH, StepKind.UPDATE)
CHANGE_KEYS = ("handler_slug", "target_handler_slug", "field_map", "handler_config", "user_message", "queue_enabled")


def apply_step_changes(runtime: "Runtime", step: FlowStepConfig, changes: dict[str, Any]) -> FlowStepConfig:
    """Return the step with handler/config/message changes applied. Raises WorkflowError."""
    registry = runtime.handler_registry
    slug = step.handler_slug
    config = dict(step.handler_config)
    target = str(changes.get("target_handler_slug") or changes.get("handler_slug") or "").strip()

    if target and step.step_type not in HANDLER_STEP_TYPES:
        raise ValidationError(
            f"{step.step_type.value} steps do not use a handler",
            diagnostic={"flow_step_id": step.flow_step_id, "step_type": step.step_type.value},
        )

    if target and target != slug:
        handler = registry.require(target, step.step_type)
        if changes.get("target_handler_slug"):
            field_map = dict(changes.get("field_map") or {})
            config = {
                field_map.get(key, key): value
                for key, value in config.items()
                if field_map.get(key, key) in handler.config_schema
            }
        else:
            config = {}
        slug = target

    incoming = changes.get("handler_config")
    if incoming is not None:
        if not isinstance(incoming, dict):
            raise ValidationError("handler_config must be an object")
        config.update(incoming)

    if slug and step.step_type in HANDLER_STEP_TYPES:
        problems = registry.validate_config(slug, registry.apply_defaults(slug, config))
        if problems:
            raise ValidationError(
                f"Invalid handler_config for '{slug}'",
                diagnostic={"flow_step_id": step.flow_step_id, "errors": problems},
                remediation=remediation(
                    "fix_handler_config",
                    "Match the handler's config schema.",
                    tool_hint="get_handlers",
                ),
            )

    update: dict[str, Any] = {"handler_slug": slug, "handler_config": config}
    if "user_message" in changes:
        update["user_message"] = str(changes.get("user_message") or "")
    if "queue_enabled" in changes:
        update["queue_enabled"] = as_bool(changes["queue_enabled"])
    return step.model_copy(update=update)


def _changes_from(params: dict[str, Any], exclude: tuple[str, ...] = ()) -> dict[str, Any]:
    return {key: params[key] for key in CHANGE_KEYS if key in params and key not in exclude}


def _matches(step: FlowStepConfig, step_type: StepKind | None, handler_filter: str) -> bool:
    if step_type is not None and step.step_type != step_type:
        return False
    if handler_filter and step.handler_slug != handler_filter:
        return False
    return True


def _parse_step_type(raw: Any) -> StepKind | None:
    if raw in (None, ""):
        return None
    try:
        return StepKind(str(raw))
    except ValueError:
        raise ValidationError(
            f"Invalid step_type '{raw}'",
            diagnostic={"valid_types": [kind.value for kind in StepKind]},
        ) from None


# ─── Single step ───────────────────────────────────────────────

def _flow_id_of(flow_step_id: str) -> int:
    try:
        _, flow_id = split_flow_step_id(flow_step_id)
        return int(flow_id)
    except ValueError:
        raise ValidationError(
            f"Invalid flow_step_id '{flow_step_id}'",
            remediation=remediation(
                "use_valid_step",
                "flow_step_id has the form <pipeline_step_id>_<flow_id>; use get_flows to list them.",
                tool_hint="get_flows",
            ),
        ) from None


def update_flow_step(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    flow_step_id = require_str(params, "flow_step_id")
    flow_id_int = _flow_id_of(flow_step_id)

    changes = _changes_from(params)
    if not changes:
        raise ValidationError("Nothing to update", diagnostic={"updatable_fields": list(CHANGE_KEYS)})

    def _mutate(flow: Flow) -> tuple[Flow, FlowStepConfig]:
        step = flow.flow_config.get(flow_step_id)
        if step is None:
            raise ValidationError(
                f"Flow step '{flow_step_id}' not found in flow {flow.flow_id}",
                diagnostic={"available_steps": sorted(flow.flow_config)},
            )
        updated = apply_step_changes(runtime, step, changes)
        config = dict(flow.flow_config)
        config[flow_step_id] = updated
        return flow.model_copy(update={"flow_config": config}), updated

    try:
        updated = runtime.db.update_flow_atomic(flow_id_int, _mutate)
    except LookupError:
        raise flow_not_found(flow_id_int) from None
    return {
        "success": True,
        "flow_step_id": flow_step_id,
        "handler_slug": updated.handler_slug,
        "handler_config": updated.handler_config,
        "user_message": updated.user_message,
        "queue_enabled": updated.queue_enabled,
    }


# ─── Bulk configuration ────────────────────────────────────────

def _resolve_targets(
    runtime: "Runtime",
    params: dict[str, Any],
    errors: list[dict[str, Any]],
) -> tuple[list[tuple[Flow, dict[str, Any]]], str]:
    """Return [(flow, changes)] and the step-level handler filter for the requested mode."""
    handler_filter = str(params.get("handler_slug") or "").strip()
    bulk_changes = _changes_from(params, exclude=("handler_slug",))

    updates = params.get("updates")
    if updates is not None:
        if not isinstance(updates, list) or not updates:
            raise ValidationError("updates must be a non-empty list of {flow_id, ...} objects")
        shared = params.get("shared_config") or {}
        if not isinstance(shared, dict):
            raise ValidationError("shared_config must be an object")
        targets: list[tuple[Flow, dict[str, Any]]] = []
        for item in updates:
            if not isinstance(item, dict) or item.get("flow_id") in (None, ""):
                raise ValidationError("Each update needs a flow_id", diagnostic={"update": item})
            flow = runtime.db.get_flow(int(item["flow_id"]))
            if flow is None:
                errors.append({"flow_id": item["flow_id"], "error": f"Flow {item['flow_id']} not found"})
                continue
            changes = {**bulk_changes, **_changes_from(item, exclude=("handler_slug",))}
            merged_config = {
                **shared,
                **dict(bulk_changes.get("handler_config") or {}),
                **dict(item.get("handler_config") or {}),
            }
            if merged_config:
                changes["handler_config"] = merged_config
            targets.append((flow, changes))
        return targets, handler_filter

    if as_bool(params.get("global_scope")):
        if not handler_filter:
            raise ValidationError(
                "global_scope requires handler_slug",
                remediation=remediation("add_handler_filter", "Pass handler_slug to select the steps to change."),
            )
        return [(flow, bulk_changes) for flow in runtime.db.list_flows()], handler_filter

    pipeline_id = optional_int(params, "pipeline_id")
    if pipeline_id is not None:
        if not handler_filter and not as_bool(params.get("all_flows")):
            raise ValidationError(
                "Refusing to update every flow of a pipeline without an explicit target",
                diagnostic={"pipeline_id": pipeline_id},
                remediation=remediation(
                    "narrow_scope",
                    "Pass handler_slug to target steps using that handler, or all_flows=true to "
                    "update every flow of the pipeline.",
                ),
            )
        load_pipeline(runtime, pipeline_id)
        return [(flow, bulk_changes) for flow in runtime.db.list_flows(pipeline_id=pipeline_id)], handler_filter

    raise ValidationError(
        "No target given",
        remediation=remediation(
            "choose_mode",
            "Use flow_step_id, pipeline_id with handler_slug or all_flows, global_scope with handler_slug, "
            "or updates with per-flow entries.",
        ),
    )


def configure_flow_steps(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    validate_only = as_bool(params.get("validate_only"))
    step_type = _parse_step_type(params.get("step_type"))
    errors: list[dict[str, Any]] = []
    only_step = str(params.get("flow_step_id") or "").strip()
    if only_step:
        flow_id = _flow_id_of(only_step)
        flow = runtime.db.get_flow(flow_id)
        if flow is None:
            raise flow_not_found(flow_id)
        if only_step not in flow.flow_config:
            raise ValidationError(
                f"Flow step '{only_step}' not found in flow {flow_id}",
                diagnostic={"available_steps": sorted(flow.flow_config)},
            )
        targets, handler_filter = [(flow, _changes_from(params))], ""
    else:
        targets, handler_filter = _resolve_targets(runtime, params, errors)

    updated_steps: list[dict[str, Any]] = []
    would_update: list[dict[str, Any]] = []
    skipped: list[dict[str, Any]] = []
    flows_updated = 0

    for flow, changes in targets:
        if not any(key in changes for key in CHANGE_KEYS):
            skipped.append({"flow_id": flow.flow_id, "reason": "no changes requested"})
            continue

        def _mutate(current: Flow, changes: dict[str, Any] = changes) -> tuple[Flow, list[dict[str, Any]]]:
            config = dict(current.flow_config)
            changed: list[dict[str, Any]] = []
            for step in current.ordered_steps():
                if only_step and step.flow_step_id != only_step:
                    continue
                if not _matches(step, step_type, handler_filter):
                    continue
                try:
                    new_step = apply_step_changes(runtime, step, changes)
                except WorkflowError as e:
                    errors.append({"flow_id": current.flow_id, "flow_step_id": step.flow_step_id, "error": e.message})
                    continue
                config[step.flow_step_id] = new_step
                changed.append(
                    {
                        "flow_id": current.flow_id,
                        "flow_step_id": step.flow_step_id,
                        "step_type": step.step_type.value,
                        "handler_slug": new_step.handler_slug,
                        "changes": sorted(key for key in changes if key in CHANGE_KEYS),
                    }
                )
            if validate_only or not changed:
                return current, changed
            return current.model_copy(update={"flow_config": config}), changed

        try:
            changed = runtime.db.update_flow_atomic(flow.flow_id, _mutate)
        except LookupError:
            errors.append({"flow_id": flow.flow_id, "error": f"Flow {flow.flow_id} not found"})
            continue

        if not changed:
            skipped.append({"flow_id": flow.flow_id, "reason": "no matching steps"})
        elif validate_only:
            would_update.extend(changed)
        else:
            updated_steps.extend(changed)
            flows_updated += 1

    if validate_only:
        return {
            "success": not errors or bool(would_update),
            "validate_only": True,
            "would_update": would_update,
            "errors": errors,
            "skipped": skipped,
            "message": f"{len(would_update)} step(s) would be updated; no changes were made",
        }

    logger.info("configure_flow_steps: %d step(s) across %d flow(s)", len(updated_steps), flows_updated)
    result: dict[str, Any] = {
        "success": bool(updated_steps),
        "updated_steps": updated_steps,
        "flows_updated": flows_updated,
        "steps_modified": len(updated_steps),
        "errors": errors,
        "skipped": skipped,
        "message": f"Updated {len(updated_steps)} step(s) across {flows_updated} flow(s)",
    }
    if not updated_steps:
        result["error"] = "No flow steps were updated"
    return result


COMMANDS = {
    "update_flow_step": (update_flow_step, "Set handler, handler_config, user_message or queue_enabled on one flow step"),
    "configure_flow_steps": (
        configure_flow_steps,
        "Configure flow steps singly, by pipeline, globally by handler or across pipelines",
    ),
}
