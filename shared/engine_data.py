"""
Engine snapshot — frozen per-job configuration plus the engine-parameter side-channel.

A snapshot is never mutated. Steps return a delta and the Job Engine derives the
next snapshot with merge(), bumping the version each time.
"""

from __future__ import annotations

import copy
from typing import Any

from pydantic import BaseModel, Field

from shared.models import Flow, Job, JobStatus, Pipeline


def merge_recursive(base: dict[str, Any], delta: dict[str, Any]) -> dict[str, Any]:
    """Recursive replace of delta into base. None values delete keys."""
    merged = copy.deepcopy(base)
    for key, value in delta.items():
        if value is None:
            merged.pop(key, None)
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_recursive(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class EngineSnapshot(BaseModel):
    model_config = {"frozen": True}

    version: int = 0
    data: dict[str, Any] = Field(default_factory=dict)

    def merge(self, delta: dict[str, Any] | None) -> "EngineSnapshot":
        if not delta:
            return self
        return EngineSnapshot(version=self.version + 1, data=merge_recursive(self.data, delta))

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.data:
            return self.data[key]
        metadata = self.data.get("metadata")
        if isinstance(metadata, dict) and key in metadata:
            return metadata[key]
        return default

    @property
    def job_context(self) -> dict[str, Any]:
        return dict(self.data.get("job") or {})

    @property
    def job_id(self) -> int | None:
        return self.job_context.get("job_id")

    @property
    def flow_config(self) -> dict[str, Any]:
        return dict(self.data.get("flow_config") or {})

    @property
    def pipeline_config(self) -> dict[str, Any]:
        return dict(self.data.get("pipeline_config") or {})

    def flow_step_config(self, flow_step_id: str) -> dict[str, Any]:
        return dict(self.flow_config.get(flow_step_id) or {})

    def pipeline_step_config(self, pipeline_step_id: str) -> dict[str, Any]:
        return dict(self.pipeline_config.get(pipeline_step_id) or {})

    def ordered_flow_steps(self) -> list[dict[str, Any]]:
        steps = [dict(step) for step in self.flow_config.values() if isinstance(step, dict)]
        return sorted(steps, key=lambda step: int(step.get("execution_order", 0)))

    @property
    def source_url(self) -> str:
        return str(self.get("source_url") or "")

    @property
    def image_path(self) -> str:
        return str(self.get("image_file_path") or "")

    @property
    def engine_params(self) -> dict[str, Any]:
        """Side-channel parameters handlers read back (never shown to the model)."""
        params: dict[str, Any] = {}
        if self.source_url:
            params["source_url"] = self.source_url
        if self.image_path:
            params["image_file_path"] = self.image_path
        item_identifier = self.get("item_identifier")
        if item_identifier:
            params["item_identifier"] = item_identifier
        return params

    @property
    def job_status_override(self) -> tuple[JobStatus, str] | None:
        raw = self.data.get("job_status")
        if not isinstance(raw, dict) or not raw.get("status"):
            return None
        return JobStatus(raw["status"]), str(raw.get("reason") or "")

    @property
    def queued_prompt_backup(self) -> dict[str, Any] | None:
        backup = self.data.get("queued_prompt_backup")
        if isinstance(backup, dict) and backup.get("prompt") and backup.get("flow_step_id"):
            return backup
        return None


def build_snapshot(job: Job, flow: Flow, pipeline: Pipeline) -> EngineSnapshot:
    """Freeze flow + pipeline configuration and job context at job start."""
    return EngineSnapshot(
        version=1,
        data={
            "job": {
                "job_id": job.job_id,
                "flow_id": job.flow_id,
                "pipeline_id": job.pipeline_id,
                "created_at": job.created_at,
            },
            "flow": {
                "name": flow.name,
                "scheduling": flow.scheduling.model_dump(mode="json"),
            },
            "pipeline": {"name": pipeline.name},
            "flow_config": {
                step_id: step.model_dump(mode="json", exclude={"prompt_queue"})
                for step_id, step in flow.flow_config.items()
            },
            "pipeline_config": {
                step_id: step.model_dump(mode="json")
                for step_id, step in pipeline.pipeline_config.items()
            },
        },
    )
