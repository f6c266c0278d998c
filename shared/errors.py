"""
Structured errors shared by the engine and the command surface.

Callers are frequently automated agents, so every failure carries enough
context (error_type, diagnostic, remediation) to self-correct.
"""

from __future__ import annotations

from typing import Any


class ErrorType:
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PREREQUISITE_MISSING = "prerequisite_missing"
    HANDLER_ERROR = "handler_error"
    INFRASTRUCTURE = "infrastructure"


def remediation(action: str, message: str, tool_hint: str | None = None) -> dict[str, Any]:
    payload = {"action": action, "message": message}
    if tool_hint:
        payload["tool_hint"] = tool_hint
    return payload


def error_result(
    error: str,
    error_type: str | None = None,
    diagnostic: dict[str, Any] | None = None,
    remediation: dict[str, Any] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    result: dict[str, Any] = {"success": False, "error": error}
    if error_type:
        result["error_type"] = error_type
    if diagnostic:
        result["diagnostic"] = diagnostic
    if remediation:
        result["remediation"] = remediation
    result.update(extra)
    return result


class WorkflowError(Exception):
    """Base error rendered as a structured failure object."""

    error_type = ErrorType.INFRASTRUCTURE

    def __init__(
        self,
        message: str,
        diagnostic: dict[str, Any] | None = None,
        remediation: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.diagnostic = diagnostic or {}
        self.remediation = remediation

    def to_dict(self) -> dict[str, Any]:
        return error_result(
            self.message,
            error_type=self.error_type,
            diagnostic=self.diagnostic,
            remediation=self.remediation,
        )


class ValidationError(WorkflowError):
    error_type = ErrorType.VALIDATION


class NotFoundError(WorkflowError):
    error_type = ErrorType.NOT_FOUND


class PrerequisiteError(WorkflowError):
    error_type = ErrorType.PREREQUISITE_MISSING


class HandlerError(WorkflowError):
    error_type = ErrorType.HANDLER_ERROR


class InfrastructureError(WorkflowError):
    error_type = ErrorType.INFRASTRUCTURE


def flow_not_found(flow_id: Any) -> NotFoundError:
    return NotFoundError(
        f"Flow {flow_id} not found",
        diagnostic={"flow_id": flow_id},
        remediation=remediation(
            "list_flows",
            "Use get_flows to find valid flow IDs.",
            tool_hint="get_flows",
        ),
    )


def pipeline_not_found(pipeline_id: Any) -> NotFoundError:
    return NotFoundError(
        f"Pipeline {pipeline_id} not found",
        diagnostic={"pipeline_id": pipeline_id},
        remediation=remediation(
            "list_pipelines",
            "Use get_pipelines to find valid pipeline IDs.",
            tool_hint="get_pipelines",
        ),
    )


def job_not_found(job_id: Any) -> NotFoundError:
    return NotFoundError(
        f"Job {job_id} not found",
        diagnostic={"job_id": job_id},
        remediation=remediation("list_jobs", "Use get_jobs to find valid job IDs.", tool_hint="get_jobs"),
    )


def handler_not_found(handler_slug: str, available: list[str]) -> NotFoundError:
    return NotFoundError(
        f"Handler '{handler_slug}' not found",
        diagnostic={"handler_slug": handler_slug, "available_handlers": sorted(available)},
        remediation=remediation(
            "use_valid_handler",
            "Choose one of the registered handler slugs.",
            tool_hint="get_handlers",
        ),
    )
