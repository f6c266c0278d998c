"""
Built-in global tools that act on the running job.

- skip_item: agent decides the current item must not be processed
- queue_prompt: agent schedules a follow-up prompt for a later run (self-orchestration)
"""

from __future__ import annotations

import logging
from typing import Any

from memory.store import ProcessedItemsStore
from registry.flow_queue import FlowQueue
from shared.errors import WorkflowError
from shared.models import DIRECT_EXECUTION, JobStatus, ToolDefinition, ToolParameter
from skills.registry import ToolContext

logger = logging.getLogger(__name__)


SKIP_ITEM_TOOL = ToolDefinition(
    name="skip_item",
    label="Skip Item",
    description=(
        "Skip the current item when it should not be processed (duplicate, off-topic, low quality). "
        "The job ends as agent_skipped and no publish step runs."
    ),
    parameters={
        "reason": ToolParameter(
            type="string",
            required=True,
            description="Short reason, e.g. 'duplicate content'",
        ),
    },
)

QUEUE_PROMPT_TOOL = ToolDefinition(
    name="queue_prompt",
    label="Queue Prompt",
    description="Append a prompt to this step's queue; the next run of the flow will use it.",
    parameters={
        "prompt": ToolParameter(type="string", required=True, description="Prompt for a future run"),
    },
)


class SkipItemTool:
    """Sets the job_status override and marks the current item processed."""

    def __init__(self, ledger: ProcessedItemsStore):
        self.ledger = ledger

    def execute(self, parameters: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        reason = str(parameters.get("reason", "")).strip()
        snapshot = context.snapshot
        identifier = snapshot.get("item_identifier")
        source_type = snapshot.get("source_type")
        fetch_step_id = snapshot.get("fetch_flow_step_id")
        marked = False
        direct = context.flow_id == DIRECT_EXECUTION
        if identifier and source_type and fetch_step_id and not direct:
            self.ledger.mark_processed(
                fetch_step_id,
                source_type,
                identifier,
                job_id=context.job_id,
                pipeline_id=context.pipeline_id,
            )
            marked = True

        logger.info("Item skipped by agent (job=%s): %s", context.job_id, reason)
        return {
            "success": True,
            "data": {"skipped": True, "reason": reason, "item_marked_processed": marked},
            "engine_delta": {
                "job_status": {"status": JobStatus.AGENT_SKIPPED.value, "reason": reason},
            },
        }


class QueuePromptTool:
    def __init__(self, flow_queue: FlowQueue):
        self.flow_queue = flow_queue

    def execute(self, parameters: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        if context.flow_id in (None, DIRECT_EXECUTION):
            return {"success": False, "error": "Prompt queues are not available for direct executions"}
        try:
            result = self.flow_queue.add(int(context.flow_id), parameters.get("prompt", ""), step_id=context.flow_step_id)
        except WorkflowError as e:
            return {"success": False, "error": e.message}
        return {"success": True, "data": result}
