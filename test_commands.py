from __future__ import annotations

from shared.errors import ErrorType


def _flow(runtime, flow_id: int) -> dict:
    result = runtime.commands.execute("get_flows", {"flow_id": flow_id})
    assert result["success"], result
    return result["flows"][0]


def _step(flow: dict, pipeline_step_id: str) -> dict:
    return next(s for s in flow["steps"] if s["pipeline_step_id"] == pipeline_step_id)


def test_unknown_command_is_not_found(runtime):
    result = runtime.commands.execute("launch_rockets", {})

    assert result["success"] is False
    assert result["error_type"] == ErrorType.NOT_FOUND
    assert "get_flows" in result["diagnostic"]["available_commands"]


def test_missing_parameter_is_a_validation_error(runtime):
    result = runtime.commands.execute("run_flow", {})

    assert result["success"] is False
    assert result["error_type"] == ErrorType.VALIDATION
    assert result["error"] == "flow_id is required"
    assert result["diagnostic"] == {"missing": "flow_id"}


def test_unknown_flow_points_at_get_flows(runtime):
    result = runtime.commands.execute("run_flow", {"flow_id": 404})

    assert result["error_type"] == ErrorType.NOT_FOUND
    assert result["remediation"]["tool_hint"] == "get_flows"


def test_create_pipeline_with_flow_name_creates_first_flow(runtime):
    result = runtime.commands.execute(
        "create_pipeline",
        {"pipeline_name": "Solo", "steps": [{"step_type": "ai"}], "flow_name": "Solo flow"},
    )

    assert result["success"]
    assert result["flow_id"] > 0
    assert [s["step_type"] for s in result["steps"]] == ["ai"]


def test_create_pipeline_rejects_invalid_step_type(runtime):
    result = runtime.commands.execute("create_pipeline", {"pipeline_name": "Bad", "steps": [{"step_type": "email"}]})

    assert result["error_type"] == ErrorType.VALIDATION
    assert "fetch" in result["diagnostic"]["valid_types"]


def test_create_flow_rejects_bad_handler_config_without_leaving_a_flow(runtime, news_flow):
    before = runtime.commands.execute("get_flows", {})["count"]

    result = runtime.commands.execute(
        "create_flow",
        {
            "pipeline_id": news_flow["pipeline_id"],
            "flow_name": "Broken",
            "step_configs": {"publish": {"handler_slug": "webhook", "handler_config": {"method": "GET"}}},
        },
    )

    assert result["success"] is False
    assert result["error_type"] == ErrorType.VALIDATION
    assert runtime.commands.execute("get_flows", {})["count"] == before


def test_bulk_update_scoped_only_by_pipeline_is_refused(runtime, news_flow, web):
    result = runtime.commands.execute(
        "configure_flow_steps",
        {"pipeline_id": news_flow["pipeline_id"], "handler_config": {"method": "PUT"}},
    )

    assert result["success"] is False
    assert result["error_type"] == ErrorType.VALIDATION
    assert result["remediation"]["action"] == "narrow_scope"
    assert _step(_flow(runtime, news_flow["flow_id"]), "publish")["handler_config"] == {"url": web.hook_url}


def test_validate_only_reports_without_writing(runtime, news_flow, web):
    result = runtime.commands.execute(
        "configure_flow_steps",
        {
            "pipeline_id": news_flow["pipeline_id"],
            "handler_slug": "webhook",
            "handler_config": {"method": "PUT"},
            "validate_only": True,
        },
    )

    assert result["success"] is True
    assert result["validate_only"] is True
    assert [u["flow_step_id"] for u in result["would_update"]] == [f"publish_{news_flow['flow_id']}"]
    assert _step(_flow(runtime, news_flow["flow_id"]), "publish")["handler_config"] == {"url": web.hook_url}


def test_bulk_update_by_handler_filter_writes(runtime, news_flow, web):
    result = runtime.commands.execute(
        "configure_flow_steps",
        {"pipeline_id": news_flow["pipeline_id"], "handler_slug": "webhook", "handler_config": {"method": "PUT"}},
    )

    assert result["success"] is True
    assert result["steps_modified"] == 1
    assert _step(_flow(runtime, news_flow["flow_id"]), "publish")["handler_config"] == {
        "url": web.hook_url,
        "method": "PUT",
    }


def test_cross_pipeline_updates_report_partial_success(runtime, news_flow, web):
    result = runtime.commands.execute(
        "configure_flow_steps",
        {
            "handler_slug": "webhook",
            "shared_config": {"auth_token": "shared"},
            "updates": [
                {"flow_id": news_flow["flow_id"], "handler_config": {"auth_token": "mine"}},
                {"flow_id": 999},
            ],
        },
    )

    assert result["success"] is True
    assert result["flows_updated"] == 1
    assert result["errors"] == [{"flow_id": 999, "error": "Flow 999 not found"}]
    assert _step(_flow(runtime, news_flow["flow_id"]), "publish")["handler_config"]["auth_token"] == "mine"


def test_update_flow_step_switches_message_and_queue(runtime, news_flow):
    flow_step_id = f"write_{news_flow['flow_id']}"

    result = runtime.commands.execute(
        "update_flow_step",
        {"flow_step_id": flow_step_id, "user_message": "Summarise in French", "queue_enabled": "false"},
    )

    assert result["success"]
    step = _step(_flow(runtime, news_flow["flow_id"]), "write")
    assert step["user_message"] == "Summarise in French"
    assert step["queue_enabled"] is False
    assert runtime.commands.execute("update_flow_step", {"flow_step_id": "nounderscore", "user_message": "x"})[
        "error_type"
    ] == ErrorType.VALIDATION


def test_run_flow_count_queues_independent_jobs(runtime, web):
    created = runtime.commands.execute(
        "create_pipeline",
        {"pipeline_name": "Ping", "steps": [{"pipeline_step_id": "ping", "step_type": "notify"}], "flow_name": "P"},
    )
    runtime.commands.execute(
        "update_flow_step",
        {
            "flow_step_id": f"ping_{created['flow_id']}",
            "handler_config": {"webhook_url": web.agent_url},
            "user_message": "Check the dashboard",
        },
    )

    result = runtime.commands.execute("run_flow", {"flow_id": created["flow_id"], "count": 3})
    assert result["success"]
    assert len(result["job_ids"]) == 3

    runtime.tasks.run_due()

    statuses = [runtime.jobs.get_job(job_id).display_status for job_id in result["job_ids"]]
    assert statuses == ["completed", "completed", "completed"]
    pings = web.posted(web.agent_url)
    assert len(pings) == 3
    assert {p["prompt"] for p in pings} == {"Check the dashboard"}


def test_run_flow_rejects_count_with_timestamp(runtime, news_flow, clock):
    result = runtime.commands.execute(
        "run_flow",
        {"flow_id": news_flow["flow_id"], "count": 2, "timestamp": int(clock()) + 60},
    )

    assert result["error_type"] == ErrorType.VALIDATION
    assert runtime.commands.execute("get_jobs", {})["count"] == 0


def test_run_flow_at_timestamp_waits_for_the_clock(runtime, news_flow, clock):
    result = runtime.commands.execute("run_flow", {"flow_id": news_flow["flow_id"], "timestamp": int(clock()) + 60})
    job_id = result["job_ids"][0]

    runtime.tasks.run_due()
    assert runtime.jobs.get_job(job_id).display_status == "pending"

    clock.advance(61)
    runtime.tasks.run_due()
    assert runtime.jobs.get_job(job_id).display_status == "completed_no_items"


def test_get_flows_reports_the_newest_job(runtime, news_flow):
    assert _flow(runtime, news_flow["flow_id"])["last_job"] is None

    first = runtime.engine.run_now(news_flow["flow_id"])
    runtime.tasks.run_due()
    second = runtime.jobs.create_job(news_flow["flow_id"], news_flow["pipeline_id"])

    last_job = _flow(runtime, news_flow["flow_id"])["last_job"]
    assert first.job_id < second.job_id
    assert last_job["job_id"] == second.job_id
    assert last_job["status"] == "pending"


def test_queue_commands(runtime, news_flow):
    flow_id = news_flow["flow_id"]
    for prompt in ("first", "second", "third"):
        assert runtime.commands.execute("queue_add", {"flow_id": flow_id, "prompt": prompt})["success"]

    assert runtime.commands.execute("queue_move", {"flow_id": flow_id, "from_index": 2, "to_index": 0})["success"]
    assert runtime.commands.execute("queue_remove", {"flow_id": flow_id, "index": 1})["removed"]["prompt"] == "first"
    listed = runtime.commands.execute("queue_list", {"flow_id": flow_id})
    assert [e["prompt"] for e in listed["queue"]] == ["third", "second"]

    bad = runtime.commands.execute("queue_remove", {"flow_id": flow_id, "index": 9})
    assert bad["error_type"] == ErrorType.VALIDATION
    assert runtime.commands.execute("queue_clear", {"flow_id": flow_id})["cleared"] == 2


def test_duplicate_flow_copies_configuration_and_resets_counters(runtime, news_flow, web):
    source_id = news_flow["flow_id"]
    runtime.engine.run_now(source_id)
    runtime.tasks.run_due()

    result = runtime.commands.execute(
        "duplicate_flow",
        {"source_flow_id": source_id, "step_config_overrides": {"write": {"user_message": "Shorter"}}},
    )

    assert result["success"]
    assert result["flow_name"] == "Copy of Daily news"
    copy = _flow(runtime, result["flow_id"])
    assert _step(copy, "publish")["handler_config"] == {"url": web.hook_url}
    assert _step(copy, "fetch")["handler_slug"] == "rss"
    assert _step(copy, "write")["user_message"] == "Shorter"
    assert copy["scheduling"].get("consecutive_no_items", 0) == 0
    assert runtime.db.get_flow(source_id).scheduling.consecutive_no_items == 1


def test_duplicate_flow_with_bad_override_leaves_no_copy(runtime, news_flow):
    before = runtime.commands.execute("get_flows", {})["count"]

    result = runtime.commands.execute(
        "duplicate_flow",
        {"source_flow_id": news_flow["flow_id"], "step_config_overrides": ["not", "a", "mapping"]},
    )

    assert result["error_type"] == ErrorType.VALIDATION
    assert runtime.commands.execute("get_flows", {})["count"] == before


def test_pipeline_step_changes_sync_to_flows(runtime, news_flow):
    pipeline_id = news_flow["pipeline_id"]

    added = runtime.commands.execute("add_pipeline_step", {"pipeline_id": pipeline_id, "step_type": "notify"})
    assert added["flows_updated"] == 1
    assert added["execution_order"] == 3
    assert len(_flow(runtime, news_flow["flow_id"])["steps"]) == 4

    removed = runtime.commands.execute("delete_pipeline_step", {"pipeline_step_id": "write"})
    assert removed["remaining_steps"] == 3
    steps = _flow(runtime, news_flow["flow_id"])["steps"]
    assert [s["step_type"] for s in steps] == ["fetch", "publish", "notify"]
    assert [s["execution_order"] for s in steps] == [0, 1, 2]


def test_clear_processed_items_needs_exactly_one_scope(runtime, news_flow):
    runtime.ledger.mark_processed(
        f"fetch_{news_flow['flow_id']}", "rss", "guid-1", job_id=1, pipeline_id=news_flow["pipeline_id"]
    )

    both = runtime.commands.execute(
        "clear_processed_items", {"flow_id": news_flow["flow_id"], "pipeline_id": news_flow["pipeline_id"]}
    )
    assert both["error_type"] == ErrorType.VALIDATION
    assert runtime.commands.execute("clear_processed_items", {})["error_type"] == ErrorType.VALIDATION

    cleared = runtime.commands.execute("clear_processed_items", {"flow_id": news_flow["flow_id"]})
    assert cleared["deleted"] == 1


def test_get_handlers_filters_by_step_type(runtime):
    everything = runtime.commands.execute("get_handlers", {})
    updaters = runtime.commands.execute("get_handlers", {"step_type": "update"})

    assert {h["slug"] for h in everything["handlers"]} == {"rss", "webhook"}
    assert [h["slug"] for h in updaters["handlers"]] == ["webhook"]
    assert runtime.commands.execute("get_handlers", {"step_type": "teleport"})["error_type"] == ErrorType.VALIDATION


def test_get_problem_flows_validates_threshold(runtime):
    assert runtime.commands.execute("get_problem_flows", {"threshold": 0})["error_type"] == ErrorType.VALIDATION
    assert runtime.commands.execute("get_problem_flows", {})["problem_flows"] == []


def test_reload_settings_applies_environment(runtime, monkeypatch):
    monkeypatch.setenv("AI_DEFAULT_PROVIDER", "ollama")
    monkeypatch.setenv("AI_DEFAULT_MODEL", "fresh-model")
    monkeypatch.setenv("ENABLED_TOOLS", "skip_item")

    result = runtime.commands.execute("reload_settings", {})

    assert result["success"]
    assert result["default_model"] == "fresh-model"
    assert result["enabled_tools"] == ["skip_item"]
    assert runtime.settings.default_provider == "ollama"
    assert runtime.engine.settings.default_model == "fresh-model"
