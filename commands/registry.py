"""
Command Registry — Maps command name → callable on the runtime.

Responsibility:
- Register control-surface commands at startup
- Execute a command with a plain-dict input
- Render every failure as a structured object {success: false, error, error_type, ...}

Prohibitions:
- No business logic (commands delegate to the engine, stores and queue)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from shared.errors import ErrorType, ValidationError, WorkflowError, error_result, remediation

if TYPE_CHECKING:
    from main import Runtime

logger = logging.getLogger(__name__)

CommandFunc = Callable[["Runtime", dict[str, Any]], dict[str, Any]]


# ─── Input helpers ─────────────────────────────────────────────

def require_int(params: dict[str, Any], key: str) -> int:
    value = params.get(key)
    if value is None or value == "":
        raise ValidationError(f"{key} is required", diagnostic={"missing": key})
    return coerce_int(value, key)


def optional_int(params: dict[str, Any], key: str) -> int | None:
    value = params.get(key)
    if value is None or value == "":
        return None
    return coerce_int(value, key)


def coerce_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer", diagnostic={key: value})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer", diagnostic={key: value}) from None


def require_str(params: dict[str, Any], key: str) -> str:
    value = str(params.get(key) or "").strip()
    if not value:
        raise ValidationError(f"{key} is required and cannot be empty", diagnostic={"missing": key})
    return value


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class Command:
    name: str
    func: CommandFunc
    description: str = ""


class CommandRegistry:
    """Dispatch table for the command-style control surface."""

    def __init__(self, runtime: "Runtime"):
        self.runtime = runtime
        self._commands: dict[str, Command] = {}

    def register(self, name: str, func: CommandFunc, description: str = "") -> None:
        logger.info("Registered command: %s → %s", name, func.__name__)
        self._commands[name] = Command(name=name, func=func, description=description)

    def register_all(self, commands: dict[str, tuple[CommandFunc, str]]) -> None:
        for name, (func, description) in commands.items():
            self.register(name, func, description)

    @property
    def names(self) -> list[str]:
        return sorted(self._commands)

    def describe(self) -> list[dict[str, str]]:
        return [
            {"name": command.name, "description": command.description}
            for command in sorted(self._commands.values(), key=lambda c: c.name)
        ]

    def execute(self, name: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        command = self._commands.get(name)
        if command is None:
            return error_result(
                f"Unknown command '{name}'",
                error_type=ErrorType.NOT_FOUND,
                diagnostic={"command": name, "available_commands": self.names},
                remediation=remediation("list_commands", "Use one of the registered command names."),
            )
        if params is not None and not isinstance(params, dict):
            return error_result("Command input must be a JSON object", error_type=ErrorType.VALIDATION)

        try:
            return command.func(self.runtime, dict(params or {}))
        except WorkflowError as e:
            logger.warning("Command '%s' failed: %s", name, e.message)
            return e.to_dict()
        except ValueError as e:
            logger.warning("Command '%s' rejected input: %s", name, e)
            return error_result(str(e), error_type=ErrorType.VALIDATION)
        except Exception as e:
            logger.exception("Command '%s' crashed", name)
            return error_result(f"Command '{name}' failed: {e}", error_type=ErrorType.INFRASTRUCTURE)


def build_command_registry(runtime: "Runtime") -> CommandRegistry:
    from commands import flow_steps, flows, jobs, pipelines, processed_items, queue, system

    registry = CommandRegistry(runtime)
    for module in (pipelines, flows, jobs, queue, flow_steps, processed_items, system):
        registry.register_all(module.COMMANDS)
    return registry
