"""Processed-item (dedup ledger) commands."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from commands.registry import optional_int, require_str
from shared.errors import ValidationError

if TYPE_CHECKING:
    from main import Runtime


def clear_processed_items(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    pipeline_id = optional_int(params, "pipeline_id")
    flow_id = optional_int(params, "flow_id")
    if (pipeline_id is None) == (flow_id is None):
        raise ValidationError("Provide exactly one of pipeline_id or flow_id")
    if pipeline_id is not None:
        deleted = runtime.ledger.clear(pipeline_id=pipeline_id)
        scope = {"pipeline_id": pipeline_id}
    else:
        deleted = runtime.ledger.clear(flow_id=flow_id)
        scope = {"flow_id": flow_id}
    return {
        "success": True,
        **scope,
        "deleted": deleted,
        "message": f"Cleared {deleted} processed item(s); those items can be fetched again",
    }


def check_processed_item(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    flow_step_id = require_str(params, "flow_step_id")
    source_type = require_str(params, "source_type")
    identifier = require_str(params, "item_identifier")
    return {
        "success": True,
        "flow_step_id": flow_step_id,
        "item_identifier": identifier,
        "processed": runtime.ledger.has_processed(flow_step_id, source_type, identifier),
        "has_history": runtime.ledger.has_any_history(flow_step_id),
    }


COMMANDS = {
    "clear_processed_items": (clear_processed_items, "Forget processed items for a pipeline or flow"),
    "check_processed_item": (check_processed_item, "Check whether an item was already processed by a flow step"),
}
