"""
Tool Executor — Controls access to tools.

Responsibility:
- Reject tools that are not available to the current step
- Inject engine-known parameters and validate required ones
- Execute handler tools and global tools
- Normalize every outcome to {success, data?, error?, tool_name}

Prohibitions:
- Never raise into the conversation loop
"""

import logging
from typing import Any

from registry.handler_registry import HandlerRegistry
from shared.models import ToolCall, ToolDefinition, ToolResult
from skills.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Controlled access layer to tool implementations."""

    def __init__(self, tool_registry: ToolRegistry, handler_registry: HandlerRegistry):
        self.tool_registry = tool_registry
        self.handler_registry = handler_registry

    def execute(
        self,
        call: ToolCall,
        available_tools: dict[str, ToolDefinition],
        context: ToolContext,
    ) -> ToolResult:
        definition = available_tools.get(call.name)
        if definition is None:
            logger.warning("Tool not found: %s", call.name)
            return ToolResult(success=False, tool_name=call.name, error=f"Tool '{call.name}' not found")

        parameters = self._with_engine_parameters(definition, dict(call.arguments or {}), context)
        missing = self.missing_required(definition, parameters)
        if missing:
            return ToolResult(
                success=False,
                tool_name=call.name,
                handler=definition.handler,
                error=(
                    f"{definition.display_name} requires the following parameters: "
                    f"{', '.join(missing)}. Please provide these parameters and try again."
                ),
            )

        try:
            if definition.handler:
                raw = self._execute_handler_tool(definition, parameters, context)
            else:
                resolved = self.tool_registry.resolve(call.name)
                if resolved is None:
                    return ToolResult(success=False, tool_name=call.name, error=f"Tool '{call.name}' not found")
                _, implementation = resolved
                raw = implementation.execute(parameters, context)
        except Exception as e:
            logger.exception("Tool '%s' execution failed", call.name)
            return ToolResult(
                success=False,
                tool_name=call.name,
                handler=definition.handler,
                error=f"Tool execution error: {e}",
            )

        result = self.normalize(call.name, raw, handler=definition.handler)
        logger.info("Tool '%s' executed (success=%s)", call.name, result.success)
        return result

    @staticmethod
    def missing_required(definition: ToolDefinition, parameters: dict[str, Any]) -> list[str]:
        return [
            name
            for name, param in definition.parameters.items()
            if param.required and (parameters.get(name) is None or parameters.get(name) == "")
        ]

    @staticmethod
    def _with_engine_parameters(
        definition: ToolDefinition,
        parameters: dict[str, Any],
        context: ToolContext,
    ) -> dict[str, Any]:
        for name, param in definition.parameters.items():
            if not param.engine_key or parameters.get(name):
                continue
            value = context.snapshot.get(param.engine_key)
            if value:
                parameters[name] = value
        return parameters

    def _execute_handler_tool(
        self,
        definition: ToolDefinition,
        parameters: dict[str, Any],
        context: ToolContext,
    ) -> Any:
        handler = self.handler_registry.resolve(definition.handler or "")
        if handler is None:
            return {"success": False, "error": f"Handler '{definition.handler}' not registered"}
        handler_config: dict[str, Any] = {}
        for step in context.snapshot.ordered_flow_steps():
            if step.get("handler_slug") == definition.handler:
                handler_config = dict(step.get("handler_config") or {})
                break
        config = self.handler_registry.apply_defaults(definition.handler, handler_config)
        return handler.handle_tool_call(parameters, context.snapshot.engine_params, config)

    @staticmethod
    def normalize(tool_name: str, raw: Any, handler: str | None = None) -> ToolResult:
        if not isinstance(raw, dict):
            return ToolResult(success=True, tool_name=tool_name, data=raw, handler=handler)
        success = bool(raw.get("success", False))
        data = raw.get("data")
        if data is None:
            leftovers = {
                key: value
                for key, value in raw.items()
                if key not in {"success", "error", "engine_delta", "tool_name"}
            }
            data = leftovers or None
        error = raw.get("error")
        if not success and not error:
            error = f"Tool '{tool_name}' reported failure"
        return ToolResult(
            success=success,
            tool_name=tool_name,
            data=data,
            error=str(error) if error else None,
            handler=handler,
            engine_delta=dict(raw.get("engine_delta") or {}),
        )
