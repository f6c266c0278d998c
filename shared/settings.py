"""
Runtime configuration.

One frozen Settings object is built at process start and passed explicitly to
every component. reload_settings() re-reads the environment and returns a new
object; the runtime pushes it through JobEngine.apply_settings().
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_TRUE_VALUES = ("1", "true", "yes", "on")
_UNSET = object()


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _parse_csv_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_json_dict(raw: str | None, name: str) -> dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring invalid JSON in %s", name)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class Settings(BaseModel):
    model_config = {"frozen": True}

    db_path: str = "flowmachine.db"
    model_provider: str = "auto"
    model_base_url: str = "http://localhost:11434"
    model_api_key: str = ""
    default_provider: str = ""
    default_model: str = ""
    model_timeout_seconds: float = 60.0
    model_max_retries: int = 2
    global_system_prompt: str = ""
    max_turns: int = Field(default=12, ge=1)
    enabled_tools: list[str] = Field(default_factory=list)
    tool_configs: dict[str, Any] = Field(default_factory=dict)
    cleanup_job_data_on_failure: bool = True
    stuck_job_timeout_hours: float = 2.0
    problem_flow_threshold: int = 3
    http_timeout_seconds: float = 30.0
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    worker_poll_seconds: float = 5.0


def load_settings(env: Mapping[str, str] | None = None, override_dotenv: bool = False) -> Settings:
    """Build Settings from the environment (after loading a local .env)."""
    if env is None:
        load_dotenv(override=override_dotenv)
        env = os.environ

    def get(name: str, default: str = "") -> str:
        return str(env.get(name, default) or default).strip()

    provider = get("MODEL_PROVIDER", "auto").lower()
    if provider not in {"auto", "ollama", "openai_compatible", "anthropic"}:
        provider = "auto"

    return Settings(
        db_path=get("DB_PATH", "flowmachine.db"),
        model_provider=provider,
        model_base_url=get("MODEL_BASE_URL", "http://localhost:11434"),
        model_api_key=get("MODEL_API_KEY"),
        default_provider=get("AI_DEFAULT_PROVIDER"),
        default_model=get("AI_DEFAULT_MODEL"),
        model_timeout_seconds=float(get("MODEL_TIMEOUT_SECONDS", "60")),
        model_max_retries=max(1, int(get("MODEL_MAX_RETRIES", "2"))),
        global_system_prompt=get("GLOBAL_SYSTEM_PROMPT"),
        max_turns=max(1, int(get("AI_MAX_TURNS", "12"))),
        enabled_tools=_parse_csv_list(env.get("ENABLED_TOOLS")),
        tool_configs=_parse_json_dict(env.get("TOOL_CONFIGS_JSON"), "TOOL_CONFIGS_JSON"),
        cleanup_job_data_on_failure=_parse_bool(env.get("CLEANUP_JOB_DATA_ON_FAILURE"), True),
        stuck_job_timeout_hours=float(get("STUCK_JOB_TIMEOUT_HOURS", "2")),
        problem_flow_threshold=max(1, int(get("PROBLEM_FLOW_THRESHOLD", "3"))),
        http_timeout_seconds=float(get("HTTP_TIMEOUT_SECONDS", "30")),
        log_level=get("LOG_LEVEL", "INFO").upper(),
        api_host=get("API_HOST", "127.0.0.1"),
        api_port=int(get("API_PORT", "8080")),
        worker_poll_seconds=float(get("WORKER_POLL_SECONDS", "5")),
    )


def reload_settings() -> Settings:
    """Re-read .env and the environment; .env values win over stale process values."""
    settings = load_settings(override_dotenv=True)
    logger.info("Settings reloaded")
    return settings


def resolve_setting(
    per_call: Any = _UNSET,
    per_flow: Any = _UNSET,
    site_default: Any = _UNSET,
    schema_default: Any = None,
) -> Any:
    """Precedence: explicit per-call > per-flow > site-wide default > schema default.

    Empty strings and None count as "not set" at every level.
    """
    for candidate in (per_call, per_flow, site_default):
        if candidate is _UNSET or candidate is None:
            continue
        if isinstance(candidate, str) and not candidate.strip():
            continue
        return candidate
    return schema_default
