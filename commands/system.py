"""System commands: settings reload and capability discovery."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from shared.models import StepKind
from shared.settings import reload_settings as load_fresh_settings

if TYPE_CHECKING:
    from main import Runtime


def reload_settings(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    settings = load_fresh_settings()
    runtime.apply_settings(settings)
    return {
        "success": True,
        "default_provider": settings.default_provider,
        "default_model": settings.default_model,
        "max_turns": settings.max_turns,
        "enabled_tools": sorted(runtime.tool_registry.globally_enabled()),
    }


def get_handlers(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    step_type = str(params.get("step_type") or "").strip()
    registry = runtime.handler_registry
    if step_type:
        descriptors = registry.for_step_type(StepKind(step_type))
    else:
        descriptors = [registry.describe(slug) for slug in registry.registered_handlers]
    return {
        "success": True,
        "handlers": [d.model_dump(mode="json") for d in descriptors if d is not None],
    }


def get_tools(runtime: "Runtime", params: dict[str, Any]) -> dict[str, Any]:
    registry = runtime.tool_registry
    enabled = registry.globally_enabled()
    tools = []
    for name in registry.registered_tools:
        definition, _ = registry.resolve(name)
        tools.append(
            {
                "name": name,
                "label": definition.display_name,
                "description": definition.description,
                "enabled": name in enabled,
                "configured": registry.is_configured(definition),
            }
        )
    return {"success": True, "tools": tools}


COMMANDS = {
    "reload_settings": (reload_settings, "Re-read settings from the environment and apply them"),
    "get_handlers": (get_handlers, "List registered handlers and their config schemas"),
    "get_tools": (get_tools, "List global AI tools and whether they are enabled"),
}
