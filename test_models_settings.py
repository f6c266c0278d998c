from __future__ import annotations

import pytest

from shared.engine_data import EngineSnapshot, merge_recursive
from shared.errors import ErrorType, NotFoundError, flow_not_found
from shared.models import (
    DataPacket,
    JobStatus,
    compose_status,
    make_flow_step_id,
    split_flow_step_id,
)
from shared.settings import load_settings, resolve_setting


def test_status_round_trips_through_display_string():
    status, reason = JobStatus.parse("agent_skipped - low relevance")

    assert status == JobStatus.AGENT_SKIPPED
    assert reason == "low relevance"
    assert compose_status(status, reason) == "agent_skipped - low relevance"
    assert compose_status(JobStatus.COMPLETED) == "completed"
    with pytest.raises(ValueError):
        JobStatus.parse("exploded")


def test_terminal_statuses():
    assert not JobStatus.PENDING.is_terminal
    assert not JobStatus.RUNNING.is_terminal
    assert JobStatus.COMPLETED_NO_ITEMS.is_terminal
    assert JobStatus.AGENT_SKIPPED.is_terminal


def test_flow_step_id_splits_on_last_underscore():
    flow_step_id = make_flow_step_id("ai_step_x", 42)

    assert flow_step_id == "ai_step_x_42"
    assert split_flow_step_id(flow_step_id) == ("ai_step_x", "42")
    with pytest.raises(ValueError):
        split_flow_step_id("nounderscore")


def test_merge_recursive_replaces_nested_and_deletes_on_none():
    base = {"metadata": {"a": 1, "b": 2}, "source_url": "x", "tags": [1]}

    merged = merge_recursive(base, {"metadata": {"b": 3, "c": 4}, "source_url": None, "tags": [2]})

    assert merged == {"metadata": {"a": 1, "b": 3, "c": 4}, "tags": [2]}
    assert base["metadata"] == {"a": 1, "b": 2}


def test_snapshot_merge_bumps_version_and_never_mutates():
    first = EngineSnapshot(version=1, data={"source_url": "https://a.example"})

    second = first.merge({"metadata": {"item_identifier": "guid-1"}})

    assert second.version == 2
    assert first.data == {"source_url": "https://a.example"}
    assert first.merge({}) is first
    assert second.get("item_identifier") == "guid-1"
    assert second.engine_params == {"source_url": "https://a.example", "item_identifier": "guid-1"}


def test_snapshot_status_override_and_backup():
    snapshot = EngineSnapshot(
        data={
            "job_status": {"status": "agent_skipped", "reason": "duplicate"},
            "queued_prompt_backup": {"prompt": "p", "flow_step_id": "write_1"},
        }
    )

    assert snapshot.job_status_override == (JobStatus.AGENT_SKIPPED, "duplicate")
    assert snapshot.queued_prompt_backup["flow_step_id"] == "write_1"
    assert EngineSnapshot().job_status_override is None
    assert EngineSnapshot(data={"queued_prompt_backup": {"prompt": ""}}).queued_prompt_backup is None


def test_failed_packet_flag():
    assert DataPacket(type="publish", metadata={"success": False}).failed
    assert not DataPacket(type="publish").failed


def test_resolve_setting_precedence():
    assert resolve_setting("call", "flow", "site", "schema") == "call"
    assert resolve_setting("", "flow", "site", "schema") == "flow"
    assert resolve_setting(None, None, "site", "schema") == "site"
    assert resolve_setting(per_flow="  ", schema_default=12) == 12


def test_load_settings_from_mapping():
    settings = load_settings(
        {
            "DB_PATH": "/tmp/x.db",
            "MODEL_PROVIDER": "bogus",
            "AI_MAX_TURNS": "0",
            "ENABLED_TOOLS": "skip_item, queue_prompt,",
            "TOOL_CONFIGS_JSON": "{not json",
            "CLEANUP_JOB_DATA_ON_FAILURE": "no",
            "LOG_LEVEL": "debug",
        }
    )

    assert settings.db_path == "/tmp/x.db"
    assert settings.model_provider == "auto"
    assert settings.max_turns == 1
    assert settings.enabled_tools == ["skip_item", "queue_prompt"]
    assert settings.tool_configs == {}
    assert settings.cleanup_job_data_on_failure is False
    assert settings.log_level == "DEBUG"


def test_structured_error_payload():
    error = flow_not_found(99)

    assert isinstance(error, NotFoundError)
    assert error.to_dict() == {
        "success": False,
        "error": "Flow 99 not found",
        "error_type": ErrorType.NOT_FOUND,
        "diagnostic": {"flow_id": 99},
        "remediation": {
            "action": "list_flows",
            "message": "Use get_flows to find valid flow IDs.",
            "tool_hint": "get_flows",
        },
    }
