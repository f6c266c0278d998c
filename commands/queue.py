"""Prompt queue commands."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from commands.registry import require_int

if TYPE_CHECKING:
    from main import Runtime


def _step_id(params: dict[str, Any]) -> str | None:
    return str(params.get("step_id") or params.get("flow_step_id") or "").strip() or None


def queue_add(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    result = runtime.flow_queue.add(require_int(params, "flow_id"), params.get("prompt", ""), step_id=_step_id(params))
    return {"success": True, **result}


def queue_list(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    return {"success": True, **runtime.flow_queue.list(require_int(params, "flow_id"), step_id=_step_id(params))}


def queue_clear(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    cleared = runtime.flow_queue.clear(require_int(params, "flow_id"), step_id=_step_id(params))
    return {"success": True, "cleared": cleared}


def queue_remove(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    entry = runtime.flow_queue.remove(
        require_int(params, "flow_id"),
        require_int(params, "index"),
        step_id=_step_id(params),
    )
    return {"success": True, "removed": entry.model_dump(mode="json")}


def queue_update(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    result = runtime.flow_queue.update(
        require_int(params, "flow_id"),
        require_int(params, "index"),
        params.get("prompt", ""),
        step_id=_step_id(params),
    )
    return {"success": True, **result}


def queue_move(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    result = runtime.flow_queue.move(
        require_int(params, "flow_id"),
        require_int(params, "from_index"),
        require_int(params, "to_index"),
        step_id=_step_id(params),
    )
    return {"success": True, **result}


COMMANDS = {
    "queue_add": (queue_add, "Append a prompt to a flow step's queue"),
    "queue_list": (queue_list, "List a flow step's queued prompts"),
    "queue_clear": (queue_clear, "Remove every prompt from a flow step's queue"),
    "queue_remove": (queue_remove, "Remove the prompt at an index"),
    "queue_update": (queue_update, "Replace the prompt at an index"),
    "queue_move": (queue_move, "Move a prompt from one index to another"),
}
