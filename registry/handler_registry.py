"""
Handler Registry — Maps handler slug → handler capability.

Responsibility:
- Register fetch/publish/update handlers at startup
- Resolve handlers by slug and step type
- Validate handler_config against the handler's config schema and merge defaults

Prohibitions:
- No execution state
- No persistence
"""

from __future__ import annotations

import logging
from abc import ABC
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from shared.errors import ValidationError, handler_not_found
from shared.models import FetchedItem, StepKind, ToolDefinition

if TYPE_CHECKING:
    from memory.store import DedupContext

logger = logging.getLogger(__name__)

_TYPE_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "select": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


class HandlerDescriptor(BaseModel):
    """Capability declaration returned by registration."""
    model_config = {"frozen": True}

    slug: str
    label: str
    step_types: list[StepKind]
    config_schema: dict[str, dict[str, Any]] = Field(default_factory=dict)
    requires_auth: bool = False
    provides_tool: bool = False


class Handler(ABC):
    """Base class for fetch/publish/update handlers.

    Subclasses override only the operations their step types need.
    """

    slug: str = ""
    label: str = ""
    step_types: tuple[StepKind, ...] = ()
    requires_auth: bool = False
    config_schema: dict[str, dict[str, Any]] = {}

    def fetch(self, config: dict[str, Any], dedup: "DedupContext") -> list[FetchedItem]:
        raise NotImplementedError(f"Handler '{self.slug}' does not support fetch")

    def publish(
        self,
        payload: dict[str, Any],
        engine_params: dict[str, Any],
        config: dict[str, Any],
    ) -> dict[str, Any]:
        raise NotImplementedError(f"Handler '{self.slug}' does not support publish")

    def update(
        self,
        payload: dict[str, Any],
        engine_params: dict[str, Any],
        config: dict[str, Any],
    ) -> dict[str, Any]:
        raise NotImplementedError(f"Handler '{self.slug}' does not support update")

    def tool_definition(self, config: dict[str, Any]) -> ToolDefinition | None:
        """Tool exposed to an adjacent AI step, if any."""
        return None

    def handle_tool_call(
        self,
        parameters: dict[str, Any],
        engine_params: dict[str, Any],
        config: dict[str, Any],
    ) -> dict[str, Any]:
        """Execute this handler's tool. Publish handlers publish, update handlers update."""
        if StepKind.UPDATE in self.step_types and StepKind.PUBLISH not in self.step_types:
            return self.update(parameters, engine_params, config)
        return self.publish(parameters, engine_params, config)


class HandlerRegistry:
    """Registry mapping handler slugs to implementations."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}
        self._descriptors: dict[str, HandlerDescriptor] = {}

    def register(self, handler: Handler) -> HandlerDescriptor:
        slug = str(handler.slug or "").strip()
        if not slug:
            raise ValueError("Handler slug is required")
        if not handler.step_types:
            raise ValueError(f"Handler '{slug}' must declare at least one step type")
        descriptor = HandlerDescriptor(
            slug=slug,
            label=handler.label or slug,
            step_types=list(handler.step_types),
            config_schema=dict(handler.config_schema),
            requires_auth=handler.requires_auth,
            provides_tool=type(handler).tool_definition is not Handler.tool_definition,
        )
        self._handlers[slug] = handler
        self._descriptors[slug] = descriptor
        logger.info("Registered handler: %s → %s", slug, type(handler).__name__)
        return descriptor

    def resolve(self, slug: str) -> Handler | None:
        return self._handlers.get(str(slug or "").strip())

    def require(self, slug: str, step_type: StepKind | None = None) -> Handler:
        handler = self.resolve(slug)
        if handler is None:
            raise handler_not_found(slug, list(self._handlers))
        if step_type is not None and step_type not in handler.step_types:
            raise ValidationError(
                f"Handler '{slug}' does not support {step_type.value} steps",
                diagnostic={
                    "handler_slug": slug,
                    "step_type": step_type.value,
                    "supported_step_types": [kind.value for kind in handler.step_types],
                },
            )
        return handler

    def describe(self, slug: str) -> HandlerDescriptor | None:
        return self._descriptors.get(slug)

    def for_step_type(self, step_type: StepKind) -> list[HandlerDescriptor]:
        return [d for d in self._descriptors.values() if step_type in d.step_types]

    @property
    def registered_handlers(self) -> list[str]:
        return list(self._handlers.keys())

    # ─── Config Schema ──────────────────────────────────────────

    def validate_config(self, slug: str, config: dict[str, Any]) -> list[str]:
        """Return a list of validation problems (empty when valid)."""
        handler = self.require(slug)
        errors: list[str] = []
        for field, spec in handler.config_schema.items():
            value = config.get(field)
            if value is None or value == "":
                if spec.get("required") and spec.get("default") in (None, ""):
                    errors.append(f"Missing required field '{field}'")
                continue
            expected = _TYPE_CHECKS.get(str(spec.get("type", "string")))
            if expected and not isinstance(value, expected):
                errors.append(f"Field '{field}' must be of type {spec.get('type')}")
                continue
            if isinstance(value, bool) and spec.get("type") in {"integer", "number"}:
                errors.append(f"Field '{field}' must be of type {spec.get('type')}")
                continue
            options = spec.get("options")
            if options and value not in options:
                errors.append(f"Field '{field}' must be one of: {', '.join(map(str, options))}")
        unknown = sorted(set(config) - set(handler.config_schema))
        for field in unknown:
            errors.append(f"Unknown field '{field}' for handler '{slug}'")
        return errors

    def apply_defaults(
        self,
        slug: str,
        config: dict[str, Any] | None,
        overrides: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Schema defaults < flow handler_config < per-call overrides."""
        handler = self.require(slug)
        merged: dict[str, Any] = {
            field: spec["default"]
            for field, spec in handler.config_schema.items()
            if "default" in spec
        }
        for layer in (config or {}, overrides or {}):
            for key, value in layer.items():
                if value is None:
                    continue
                merged[key] = value
        return merged
