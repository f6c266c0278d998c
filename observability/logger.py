"""
Observability Layer — Structured job event logging & timing.

Responsibility:
- Log job lifecycle events as single-line JSON
- Time step executions and model calls
- Carry job context (flow_id, job_id as trace_id) across layers

Engine modules still use module loggers for diagnostics; this is for
events an operator would filter on.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger("observability")


class Observability:
    """Structured logger for workflow events."""

    def __init__(self, flow_id: int | str | None = None, job_id: int | str | None = None):
        self.flow_id = flow_id
        self.job_id = job_id
        self.trace_id = f"job-{job_id}" if job_id is not None else str(uuid.uuid4())

    def log_event(self, event_type: str, payload: dict[str, Any], level: str = "INFO") -> None:
        """Log a structured event."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "trace_id": self.trace_id,
            "flow_id": self.flow_id,
            "job_id": self.job_id,
            "event": event_type,
            "level": level,
            **payload,
        }
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(json.dumps(entry, default=str, ensure_ascii=False))

    @contextmanager
    def measure(self, operation: str, metadata: dict[str, Any] | None = None):
        """Context manager to measure execution time of an operation."""
        start_time = time.perf_counter()
        meta = metadata or {}
        success = True
        error = None
        try:
            yield
        except Exception as e:
            success = False
            error = str(e)
            raise
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.log_event(
                "execution_metric",
                {
                    "operation": operation,
                    "duration_ms": round(duration_ms, 2),
                    "success": success,
                    "error": error,
                    **meta,
                },
            )

    def for_job(self, flow_id: int | str | None, job_id: int | str) -> "Observability":
        """Create a logger bound to one job (job id becomes the trace id)."""
        return Observability(flow_id=flow_id, job_id=job_id)
