"""
Flow Queue — per flow-step FIFO prompt store.

Queues live inside flow_config (prompt_queue on each flow step). Every
operation is a single read-modify-write under WorkflowDB.update_flow_atomic,
so concurrent jobs of the same flow never pop the same entry.
"""

from __future__ import annotations

import logging
from typing import Any

from registry.db import WorkflowDB
from shared.errors import NotFoundError, PrerequisiteError, ValidationError, flow_not_found, remediation
from shared.models import Flow, FlowStepConfig, QueueEntry, StepKind

logger = logging.getLogger(__name__)

QUEUEABLE_STEP_TYPES = (StepKind.AI, StepKind.NOTIFY)


def _out_of_range(index: int, length: int) -> ValidationError:
    return ValidationError(
        f"Index {index} is out of range. Queue has {length} item(s).",
        diagnostic={"index": index, "queue_length": length},
        remediation=remediation("list_queue", "Use queue_list to see valid indexes.", tool_hint="queue_list"),
    )


def resolve_queue_step(flow: Flow, step_id: str | None = None) -> FlowStepConfig:
    """Resolve the flow step owning the queue.

    step_id may be a flow_step_id or a pipeline_step_id. Without one, the first
    AI step wins, then the first notify step.
    """
    if step_id:
        step = flow.flow_config.get(step_id)
        if step is None:
            step = next(
                (s for s in flow.flow_config.values() if s.pipeline_step_id == step_id),
                None,
            )
        if step is None:
            raise NotFoundError(
                f"Flow step '{step_id}' not found in flow {flow.flow_id}",
                diagnostic={"flow_id": flow.flow_id, "available_steps": sorted(flow.flow_config)},
                remediation=remediation(
                    "use_valid_step",
                    "Use get_flows to list the flow's step ids.",
                    tool_hint="get_flows",
                ),
            )
        return step

    for step_type in QUEUEABLE_STEP_TYPES:
        for step in flow.ordered_steps():
            if step.step_type == step_type:
                return step
    raise PrerequisiteError(
        f"Flow {flow.flow_id} has no step that consumes a prompt queue",
        diagnostic={"flow_id": flow.flow_id},
        remediation=remediation(
            "add_ai_step",
            "Add an AI or notify step to the pipeline before queueing prompts.",
            tool_hint="add_pipeline_step",
        ),
    )


class FlowQueue:
    """FIFO prompt queue operations against persisted flows."""

    def __init__(self, db: WorkflowDB):
        self.db = db

    def _mutate(self, flow_id: int, step_id: str | None, operation):
        """Run operation(queue: list[QueueEntry]) -> (new_queue | None, result) atomically."""

        def _apply(flow: Flow):
            step = resolve_queue_step(flow, step_id)
            new_queue, result = operation(list(step.prompt_queue), step)
            if new_queue is None:
                return flow, result
            updated_step = step.model_copy(update={"prompt_queue": new_queue})
            config = dict(flow.flow_config)
            config[step.flow_step_id] = updated_step
            return flow.model_copy(update={"flow_config": config}), result

        try:
            return self.db.update_flow_atomic(int(flow_id), _apply)
        except LookupError:
            raise flow_not_found(flow_id) from None

    def add(self, flow_id: int, prompt: str, step_id: str | None = None) -> dict[str, Any]:
        prompt = str(prompt or "").strip()
        if not prompt:
            raise ValidationError("prompt is required and cannot be empty")

        def _add(queue: list[QueueEntry], step: FlowStepConfig):
            queue.append(QueueEntry(prompt=prompt))
            return queue, {"flow_step_id": step.flow_step_id, "queue_length": len(queue)}

        result = self._mutate(flow_id, step_id, _add)
        logger.info("Prompt added to queue (flow=%s, length=%d)", flow_id, result["queue_length"])
        return result

    def pop(self, flow_id: int, step_id: str | None = None) -> QueueEntry | None:
        """Remove and return the front entry, or None when empty."""

        def _pop(queue: list[QueueEntry], step: FlowStepConfig):
            if not queue:
                return None, None
            entry = queue.pop(0)
            return queue, entry

        entry = self._mutate(flow_id, step_id, _pop)
        if entry is not None:
            logger.info("Prompt popped from queue (flow=%s)", flow_id)
        return entry

    def list(self, flow_id: int, step_id: str | None = None) -> dict[str, Any]:
        flow = self.db.get_flow(int(flow_id))
        if flow is None:
            raise flow_not_found(flow_id)
        step = resolve_queue_step(flow, step_id)
        return {
            "flow_id": flow.flow_id,
            "flow_step_id": step.flow_step_id,
            "queue_enabled": step.queue_enabled,
            "count": len(step.prompt_queue),
            "queue": [
                {"index": index, "prompt": entry.prompt, "added_at": entry.added_at}
                for index, entry in enumerate(step.prompt_queue)
            ],
        }

    def clear(self, flow_id: int, step_id: str | None = None) -> int:
        def _clear(queue: list[QueueEntry], step: FlowStepConfig):
            return [], len(queue)

        cleared = self._mutate(flow_id, step_id, _clear)
        logger.info("Queue cleared (flow=%s, removed=%d)", flow_id, cleared)
        return cleared

    def remove(self, flow_id: int, index: int, step_id: str | None = None) -> QueueEntry:
        def _remove(queue: list[QueueEntry], step: FlowStepConfig):
            if not 0 <= index < len(queue):
                raise _out_of_range(index, len(queue))
            removed = queue.pop(index)
            return queue, removed

        return self._mutate(flow_id, step_id, _remove)

    def update(self, flow_id: int, index: int, prompt: str, step_id: str | None = None) -> dict[str, Any]:
        prompt = str(prompt or "").strip()
        if not prompt:
            raise ValidationError("prompt is required and cannot be empty")

        def _update(queue: list[QueueEntry], step: FlowStepConfig):
            if not queue and index == 0:
                queue.append(QueueEntry(prompt=prompt))
                return queue, {"index": 0, "created": True, "queue_length": 1}
            if not 0 <= index < len(queue):
                raise _out_of_range(index, len(queue))
            queue[index] = queue[index].model_copy(update={"prompt": prompt})
            return queue, {"index": index, "created": False, "queue_length": len(queue)}

        return self._mutate(flow_id, step_id, _update)

    def move(self, flow_id: int, from_index: int, to_index: int, step_id: str | None = None) -> dict[str, Any]:
        def _move(queue: list[QueueEntry], step: FlowStepConfig):
            length = len(queue)
            if not (0 <= from_index < length and 0 <= to_index < length):
                raise ValidationError(
                    f"from_index/to_index out of range. Queue has {length} item(s).",
                    diagnostic={"from_index": from_index, "to_index": to_index, "queue_length": length},
                )
            if from_index == to_index:
                return None, {"from_index": from_index, "to_index": to_index, "moved": False}
            entry = queue.pop(from_index)
            queue.insert(to_index, entry)
            return queue, {"from_index": from_index, "to_index": to_index, "moved": True}

        return self._mutate(flow_id, step_id, _move)

    def requeue(self, flow_id: int, flow_step_id: str, prompt: str) -> bool:
        """Append a previously popped prompt back onto its step queue."""
        try:
            self.add(flow_id, prompt, step_id=flow_step_id)
        except (NotFoundError, PrerequisiteError, ValidationError):
            logger.warning("Could not requeue prompt for flow %s step %s", flow_id, flow_step_id)
            return False
        return True
