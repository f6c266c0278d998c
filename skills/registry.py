"""
Tool Registry — Maps tool name → definition + implementation.

Responsibility:
- Hold global tools registered at startup
- Build handler tools for the handlers adjacent to an AI step
- Resolve the enabled tool set: globally enabled − step.disabled_tools
- Expose model-facing schemas with engine-known parameters elided

No execution here (see skills.gateway).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from shared.engine_data import EngineSnapshot
from shared.models import StepKind, ToolDefinition
from shared.settings import Settings

if TYPE_CHECKING:
    from registry.handler_registry import HandlerRegistry

logger = logging.getLogger(__name__)


class ToolContext:
    """Execution context handed to tool implementations."""

    def __init__(
        self,
        job_id: int | None,
        flow_step_id: str,
        snapshot: EngineSnapshot,
        flow_id: int | str | None = None,
        pipeline_id: int | str | None = None,
    ):
        self.job_id = job_id
        self.flow_step_id = flow_step_id
        self.snapshot = snapshot
        self.flow_id = flow_id
        self.pipeline_id = pipeline_id

    def with_snapshot(self, snapshot: EngineSnapshot) -> "ToolContext":
        return ToolContext(
            job_id=self.job_id,
            flow_step_id=self.flow_step_id,
            snapshot=snapshot,
            flow_id=self.flow_id,
            pipeline_id=self.pipeline_id,
        )


class ToolImplementation(Protocol):
    """Protocol that all global tool implementations must follow."""

    def execute(self, parameters: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        """Execute the tool.
        Must return: {"success": bool, "data": ...} or {"success": False, "error": "..."}.
        May include "engine_delta" to update the job's engine snapshot.
        """
        ...


class ToolRegistry:
    """Registry of global tools plus handler-tool discovery."""

    def __init__(self, handler_registry: "HandlerRegistry", settings: Settings | None = None):
        self.handler_registry = handler_registry
        self.settings = settings or Settings()
        self._definitions: dict[str, ToolDefinition] = {}
        self._implementations: dict[str, ToolImplementation] = {}

    def apply_settings(self, settings: Settings) -> None:
        self.settings = settings

    def register_global(self, definition: ToolDefinition, implementation: ToolImplementation) -> None:
        logger.info("Registered tool: %s → %s", definition.name, type(implementation).__name__)
        self._definitions[definition.name] = definition
        self._implementations[definition.name] = implementation

    def resolve(self, name: str) -> tuple[ToolDefinition, ToolImplementation] | None:
        if name not in self._definitions:
            return None
        return self._definitions[name], self._implementations[name]

    @property
    def registered_tools(self) -> list[str]:
        return list(self._definitions.keys())

    def is_configured(self, definition: ToolDefinition) -> bool:
        if not definition.requires_config:
            return True
        return bool(self.settings.tool_configs.get(definition.name))

    def globally_enabled(self) -> set[str]:
        """Global tools switched on site-wide (explicit list, else every configured tool)."""
        configured = {
            name for name, definition in self._definitions.items() if self.is_configured(definition)
        }
        if self.settings.enabled_tools:
            return configured & set(self.settings.enabled_tools)
        return configured

    def handler_tools(self, adjacent_steps: list[dict[str, Any]]) -> dict[str, ToolDefinition]:
        """Tools contributed by publish/update handlers configured on adjacent steps."""
        tools: dict[str, ToolDefinition] = {}
        for step in adjacent_steps:
            if step.get("step_type") not in (StepKind.PUBLISH.value, StepKind.UPDATE.value):
                continue
            slug = str(step.get("handler_slug") or "")
            handler = self.handler_registry.resolve(slug)
            if handler is None:
                continue
            definition = handler.tool_definition(dict(step.get("handler_config") or {}))
            if definition is None:
                continue
            if definition.handler != slug:
                definition = definition.model_copy(update={"handler": slug})
            tools[definition.name] = definition
        return tools

    def available_tools(
        self,
        disabled_tools: list[str] | set[str] | None = None,
        adjacent_steps: list[dict[str, Any]] | None = None,
    ) -> dict[str, ToolDefinition]:
        """available = (globally enabled ∪ adjacent handler tools) − disabled_tools."""
        disabled = set(disabled_tools or [])
        tools: dict[str, ToolDefinition] = {
            name: self._definitions[name] for name in sorted(self.globally_enabled())
        }
        tools.update(self.handler_tools(adjacent_steps or []))
        return {name: definition for name, definition in tools.items() if name not in disabled}

    @staticmethod
    def to_model_schema(definition: ToolDefinition, snapshot: EngineSnapshot | None = None) -> dict[str, Any]:
        """JSON-schema function description; parameters already known to the engine are omitted."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for name, param in definition.parameters.items():
            if param.engine_key and snapshot is not None and snapshot.get(param.engine_key):
                continue
            properties[name] = {"type": param.type, "description": param.description}
            if param.required:
                required.append(name)
        return {
            "name": definition.name,
            "description": definition.description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        }
