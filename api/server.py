"""
HTTP API — exposes the command registry and the deferred-task runner.

Endpoints:
- GET  /health
- GET  /v1/commands
- POST /v1/commands/{name}
- POST /v1/scheduler/run-due
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from main import Runtime, build_runtime
from shared.errors import ErrorType

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR_TYPE = {
    ErrorType.VALIDATION: 400,
    ErrorType.PREREQUISITE_MISSING: 400,
    ErrorType.NOT_FOUND: 404,
    ErrorType.HANDLER_ERROR: 500,
    ErrorType.INFRASTRUCTURE: 500,
}


def status_code_for(result: dict[str, Any]) -> int:
    if result.get("success", True):
        return 200
    return _STATUS_BY_ERROR_TYPE.get(str(result.get("error_type") or ""), 400)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the app. A prebuilt runtime is used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        owned = runtime is None
        _app.state.runtime = runtime or build_runtime()
        logger.info("API ready (%d commands)", len(_app.state.runtime.commands.names))
        try:
            yield
        finally:
            if owned:
                _app.state.runtime.close()

    app = FastAPI(title="Flowmachine", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, Any]:
        rt: Runtime = app.state.runtime
        return {
            "status": "ok",
            "pending_tasks": len(rt.tasks.pending()),
            "jobs": rt.jobs.count_by_status(),
        }

    @app.get("/v1/commands")
    def list_commands() -> dict[str, Any]:
        return {"commands": app.state.runtime.commands.describe()}

    @app.post("/v1/commands/{name}")
    def run_command(name: str, payload: dict[str, Any] | None = Body(default=None)) -> JSONResponse:
        result = app.state.runtime.commands.execute(name, payload or {})
        return JSONResponse(status_code=status_code_for(result), content=result)

    @app.post("/v1/scheduler/run-due")
    def run_due() -> dict[str, Any]:
        executed = app.state.runtime.tasks.run_due()
        return {"success": True, "executed": executed}

    return app


app = create_app()
