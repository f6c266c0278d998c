"""
Shared Pydantic models for all layers.
All records are immutable (frozen) after creation; use model_copy(update=...) to derive new ones.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


DIRECT_EXECUTION = "direct"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─── Step & Job Taxonomy ───────────────────────────────────────

class StepKind(str, Enum):
    """Closed set of step types a pipeline can contain."""
    FETCH = "fetch"
    AI = "ai"
    PUBLISH = "publish"
    UPDATE = "update"
    NOTIFY = "notify"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_NO_ITEMS = "completed_no_items"
    FAILED = "failed"
    AGENT_SKIPPED = "agent_skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)

    @classmethod
    def parse(cls, raw: str) -> tuple["JobStatus", str]:
        """Split a compound status string ("agent_skipped - low relevance") into enum + reason."""
        text = str(raw or "").strip()
        base, _, reason = text.partition(" - ")
        return cls(base.strip()), reason.strip()


JobSource = Literal["pipeline", "chat", "system", "api", "direct"]


def compose_status(status: JobStatus, reason: str = "") -> str:
    reason = str(reason or "").strip()
    return f"{status.value} - {reason}" if reason else status.value


# ─── Pipeline Layer ────────────────────────────────────────────

class PipelineStep(BaseModel):
    """Step definition inside a pipeline template."""
    model_config = {"frozen": True}

    pipeline_step_id: str
    step_type: StepKind
    execution_order: int = Field(..., ge=0)
    label: str = ""
    provider: str = ""
    model: str = ""
    system_prompt: str = ""
    disabled_tools: list[str] = Field(default_factory=list)
    max_turns: int | None = Field(default=None, ge=1)


class Pipeline(BaseModel):
    model_config = {"frozen": True}

    pipeline_id: int
    name: str
    pipeline_config: dict[str, PipelineStep] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    def ordered_steps(self) -> list[PipelineStep]:
        return sorted(self.pipeline_config.values(), key=lambda step: step.execution_order)


# ─── Flow Layer ────────────────────────────────────────────────

class QueueEntry(BaseModel):
    model_config = {"frozen": True}

    prompt: str
    added_at: str = Field(default_factory=utc_now_iso)


class FlowStepConfig(BaseModel):
    """Per-flow configuration of one pipeline step."""
    model_config = {"frozen": True}

    flow_step_id: str
    pipeline_step_id: str
    pipeline_id: int | str
    flow_id: int | str
    step_type: StepKind
    execution_order: int = 0
    handler_slug: str = ""
    handler_config: dict[str, Any] = Field(default_factory=dict)
    user_message: str = ""
    prompt_queue: list[QueueEntry] = Field(default_factory=list)
    queue_enabled: bool = True


class ScheduleConfig(BaseModel):
    """Flow schedule plus run-tracking counters."""
    model_config = {"frozen": True}

    interval: str = "manual"
    interval_seconds: int | None = None
    timestamp: int | None = None
    scheduled_time: str | None = None
    cron_expression: str | None = None
    first_run: str | None = None
    consecutive_failures: int = 0
    consecutive_no_items: int = 0
    last_run_at: str | None = None
    last_run_status: str | None = None

    @property
    def is_manual(self) -> bool:
        return self.interval == "manual"

    def timing_only(self) -> dict[str, Any]:
        """Schedule fields without run-tracking counters (used when copying flows)."""
        return self.model_dump(
            exclude={"consecutive_failures", "consecutive_no_items", "last_run_at", "last_run_status"},
            exclude_none=True,
        )


class Flow(BaseModel):
    model_config = {"frozen": True}

    flow_id: int
    pipeline_id: int
    name: str
    flow_config: dict[str, FlowStepConfig] = Field(default_factory=dict)
    scheduling: ScheduleConfig = Field(default_factory=ScheduleConfig)
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    def ordered_steps(self) -> list[FlowStepConfig]:
        return sorted(self.flow_config.values(), key=lambda step: step.execution_order)


def make_flow_step_id(pipeline_step_id: str, flow_id: int | str) -> str:
    return f"{pipeline_step_id}_{flow_id}"


def split_flow_step_id(flow_step_id: str) -> tuple[str, str]:
    """Return (pipeline_step_id, flow_id) for a flow step id."""
    pipeline_step_id, sep, flow_id = str(flow_step_id or "").rpartition("_")
    if not sep or not pipeline_step_id or not flow_id:
        raise ValueError(f"Invalid flow_step_id: {flow_step_id!r}")
    return pipeline_step_id, flow_id


# ─── Job Layer ─────────────────────────────────────────────────

class DataPacket(BaseModel):
    """One step output. Jobs keep these newest-first."""
    model_config = {"frozen": True}

    type: str
    handler: str = ""
    tool_name: str = ""
    content: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_now_iso)

    @property
    def failed(self) -> bool:
        return self.metadata.get("success") is False


class Job(BaseModel):
    model_config = {"frozen": True}

    job_id: int
    flow_id: int | str
    pipeline_id: int | str
    status: JobStatus = JobStatus.PENDING
    status_reason: str = ""
    source: JobSource = "pipeline"
    label: str = ""
    created_at: str = Field(default_factory=utc_now_iso)
    started_at: str | None = None
    completed_at: str | None = None
    engine_snapshot: dict[str, Any] = Field(default_factory=dict)
    data_packets: list[DataPacket] = Field(default_factory=list)

    @property
    def display_status(self) -> str:
        return compose_status(self.status, self.status_reason)

    @property
    def is_direct(self) -> bool:
        return self.flow_id == DIRECT_EXECUTION


# ─── Step Execution ────────────────────────────────────────────

class FetchedItem(BaseModel):
    """Single item emitted by a fetch handler."""
    model_config = {"frozen": True}

    identifier: str
    title: str = ""
    content: str = ""
    source_url: str = ""
    image_path: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class StepResult(BaseModel):
    model_config = {"frozen": True}

    success: bool
    packets: list[DataPacket] = Field(default_factory=list, description="New packets, oldest first")
    engine_delta: dict[str, Any] = Field(default_factory=dict)
    no_items: bool = False
    error: str = ""
    reason: str = ""


# ─── Tools & AI ────────────────────────────────────────────────

class ToolParameter(BaseModel):
    model_config = {"frozen": True}

    type: str = "string"
    description: str = ""
    required: bool = False
    engine_key: str | None = Field(
        default=None,
        description="Engine snapshot key that supplies this value when already known",
    )


class ToolDefinition(BaseModel):
    model_config = {"frozen": True}

    name: str
    description: str = ""
    label: str = ""
    parameters: dict[str, ToolParameter] = Field(default_factory=dict)
    handler: str | None = None
    requires_config: bool = False

    @property
    def display_name(self) -> str:
        return self.label or self.name.replace("_", " ").title()


class ToolCall(BaseModel):
    model_config = {"frozen": True}

    call_id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    model_config = {"frozen": True}

    success: bool
    tool_name: str
    data: Any = None
    error: str | None = None
    handler: str | None = None
    engine_delta: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "tool_name": self.tool_name}
        if self.data is not None:
            payload["data"] = self.data
        if self.error:
            payload["error"] = self.error
        return payload


class AIResponse(BaseModel):
    """Normalized response from the AI capability."""
    model_config = {"frozen": True}

    success: bool
    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    error: str | None = None


class ConversationResult(BaseModel):
    model_config = {"frozen": True}

    messages: list[dict[str, Any]] = Field(default_factory=list)
    final_content: str = ""
    tool_results: list[ToolResult] = Field(default_factory=list)
    handler_results: list[ToolResult] = Field(default_factory=list)
    turns: int = 0
    completed: bool = False
    warning: str | None = None
    error: str | None = None
    engine_delta: dict[str, Any] = Field(default_factory=dict)
