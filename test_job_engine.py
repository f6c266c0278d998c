from __future__ import annotations

import threading
from datetime import datetime

from execution.engine import EXECUTE_STEP_ACTION
from execution.scheduler import RUN_FLOW_ACTION
from execution.steps import FetchStep, StepContext
from registry.handler_registry import Handler
from shared.engine_data import EngineSnapshot
from shared.models import FetchedItem, JobStatus, StepKind


def _ai_step_id(flow: dict) -> str:
    return next(step["flow_step_id"] for step in flow["steps"] if step["step_type"] == "ai")


def _fetch_step_id(flow: dict) -> str:
    return next(step["flow_step_id"] for step in flow["steps"] if step["step_type"] == "fetch")


def test_fetch_ai_publish_run_completes_with_three_packets(runtime, news_flow, web, ai):
    flow_id = news_flow["flow_id"]
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    runtime.flow_queue.add(flow_id, "Write a short post about the article.")
    ai.call_tool("webhook_publish", title="Rates fall", body="Rates fell today.")

    started = runtime.commands.execute("run_flow", {"flow_id": flow_id})
    assert started["success"] is True
    runtime.tasks.run_due()

    job = runtime.jobs.get_job(started["job_ids"][0])
    assert job.status == JobStatus.COMPLETED
    assert job.display_status == "completed"
    assert [packet.type for packet in job.data_packets] == ["publish", "ai_handler_complete", "fetch"]
    assert runtime.ledger.count(_fetch_step_id(news_flow)) == 1
    assert runtime.flow_queue.list(flow_id)["count"] == 0

    posted = web.posted(web.hook_url)
    assert len(posted) == 1
    assert posted[0]["title"] == "Rates fall"
    # source_url comes from the engine, not from the model
    assert posted[0]["source_url"] == "https://news.example.com/rates"
    publish_schema = next(s for s in ai.calls[0]["schemas"] if s["name"] == "webhook_publish")
    assert "source_url" not in publish_schema["parameters"]["properties"]
    assert publish_schema["parameters"]["required"] == ["title", "body"]

    schedule = runtime.db.get_flow(flow_id).scheduling
    assert schedule.consecutive_failures == 0
    assert schedule.consecutive_no_items == 0
    assert schedule.last_run_status == "completed"


def test_ai_sees_queued_prompt_and_fetched_packet(runtime, news_flow, web, ai):
    flow_id = news_flow["flow_id"]
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    runtime.flow_queue.add(flow_id, "Summarize in one line.")

    runtime.engine.run_now(flow_id)
    runtime.tasks.run_due()

    messages = ai.calls[0]["messages"]
    assert messages[0]["role"] == "system"
    assert "FETCH (rss) → AI ← YOU ARE HERE → PUBLISH (webhook)" in messages[0]["content"]
    assert "Rewrite the article." in messages[0]["content"]
    assert "Rates fall" in messages[1]["content"]
    assert "news.example.com/rates" not in messages[1]["content"]
    assert messages[-1] == {"role": "user", "content": "Summarize in one line."}
    assert set(ai.calls[0]["tools"]) == {"queue_prompt", "skip_item", "webhook_publish"}


def test_fetch_without_new_items_completes_no_items(runtime, news_flow, web, ai):
    flow_id = news_flow["flow_id"]

    def _two_failures(flow):
        schedule = flow.scheduling.model_copy(update={"consecutive_failures": 2})
        return flow.model_copy(update={"scheduling": schedule}), None

    runtime.db.update_flow_atomic(flow_id, _two_failures)
    web.set_items()

    job = runtime.engine.run_now(flow_id)
    runtime.tasks.run_due()

    finished = runtime.jobs.get_job(job.job_id)
    assert finished.status == JobStatus.COMPLETED_NO_ITEMS
    assert ai.calls == []
    schedule = runtime.db.get_flow(flow_id).scheduling
    assert schedule.consecutive_no_items == 1
    assert schedule.consecutive_failures == 2


def test_already_processed_items_count_as_no_items(runtime, news_flow, web):
    flow_id = news_flow["flow_id"]
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    runtime.ledger.mark_processed(_fetch_step_id(news_flow), "rss", "item-1")

    job = runtime.engine.run_now(flow_id)
    runtime.tasks.run_due()

    assert runtime.jobs.get_job(job.job_id).status == JobStatus.COMPLETED_NO_ITEMS


def test_skip_item_ends_job_as_agent_skipped_without_publishing(runtime, news_flow, web, ai):
    flow_id = news_flow["flow_id"]
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    ai.call_tool("skip_item", reason="duplicate content")
    ai.reply("Skipped the item.")

    job = runtime.engine.run_now(flow_id)
    runtime.tasks.run_due()

    finished = runtime.jobs.get_job(job.job_id)
    assert finished.status == JobStatus.AGENT_SKIPPED
    assert finished.display_status == "agent_skipped - duplicate content"
    assert web.posted(web.hook_url) == []
    assert "publish" not in [packet.type for packet in finished.data_packets]
    assert runtime.ledger.has_processed(_fetch_step_id(news_flow), "rss", "item-1")
    schedule = runtime.db.get_flow(flow_id).scheduling
    assert schedule.consecutive_failures == 0
    assert schedule.last_run_status == "agent_skipped"


def test_steps_are_dispatched_one_at_a_time(runtime, news_flow, web, ai):
    flow_id = news_flow["flow_id"]
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    ai.reply("Rates fell today.")

    job = runtime.engine.run_now(flow_id)
    pending = runtime.tasks.pending(EXECUTE_STEP_ACTION)
    assert [task.args for task in pending] == [{"job_id": job.job_id, "step_index": 0}]

    runtime.tasks.run_due(limit=1)
    pending = runtime.tasks.pending(EXECUTE_STEP_ACTION)
    assert [task.args["step_index"] for task in pending] == [1]
    assert ai.calls == []

    runtime.tasks.run_due()
    finished = runtime.jobs.get_job(job.job_id)
    assert finished.status == JobStatus.COMPLETED
    assert [packet.type for packet in finished.data_packets] == ["publish", "ai_response", "fetch"]
    assert web.posted(web.hook_url)[0]["body"] == "Rates fell today."


def test_execute_step_ignores_finished_jobs(runtime, news_flow, web, ai):
    web.set_items()
    job = runtime.engine.run_now(news_flow["flow_id"])
    runtime.tasks.run_due()
    assert runtime.jobs.get_job(job.job_id).status == JobStatus.COMPLETED_NO_ITEMS

    runtime.engine.execute_step(job.job_id, 1)
    assert runtime.jobs.get_job(job.job_id).status == JobStatus.COMPLETED_NO_ITEMS
    assert ai.calls == []


def test_failed_publish_requeues_prompt_at_end_and_releases_items(runtime, news_flow, web, ai):
    flow_id = news_flow["flow_id"]
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    web.hook_status = 500
    runtime.flow_queue.add(flow_id, "first prompt")
    runtime.flow_queue.add(flow_id, "second prompt")
    ai.reply("Rates fell today.")

    job = runtime.engine.run_now(flow_id)
    runtime.tasks.run_due()

    finished = runtime.jobs.get_job(job.job_id)
    assert finished.status == JobStatus.FAILED
    assert finished.display_status == "failed - publish_failed"
    assert finished.data_packets == []
    prompts = [entry["prompt"] for entry in runtime.flow_queue.list(flow_id)["queue"]]
    assert prompts == ["second prompt", "first prompt"]
    assert runtime.ledger.count(_fetch_step_id(news_flow)) == 0
    assert runtime.db.get_flow(flow_id).scheduling.consecutive_failures == 1
    failure = EngineSnapshot(**finished.engine_snapshot).get("failure")
    assert failure["reason"] == "publish_failed"


def test_ai_failure_fails_job(runtime, news_flow, web, ai):
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    ai.fail("connection refused")

    job = runtime.engine.run_now(news_flow["flow_id"])
    runtime.tasks.run_due()

    assert runtime.jobs.get_job(job.job_id).display_status == "failed - ai_request_failed"


def test_missing_ai_model_fails_with_reason(runtime, news_flow, web, settings):
    runtime.apply_settings(settings.model_copy(update={"default_model": ""}))
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))

    job = runtime.engine.run_now(news_flow["flow_id"])
    runtime.tasks.run_due()

    assert runtime.jobs.get_job(job.job_id).display_status == "failed - ai_model_missing"


def test_pipeline_model_overrides_site_default(runtime, news_flow, web, ai):
    update = runtime.commands.execute(
        "update_pipeline_step",
        {"pipeline_step_id": "write", "provider": "anthropic", "model": "flow-model"},
    )
    assert update["success"], update
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))

    runtime.engine.run_now(news_flow["flow_id"])
    runtime.tasks.run_due()

    assert ai.calls[0]["provider"] == "anthropic"
    assert ai.calls[0]["model"] == "flow-model"


def test_fetch_handler_error_fails_job(runtime, news_flow, web):
    web.feed_url = "https://news.example.com/other.xml"

    job = runtime.engine.run_now(news_flow["flow_id"])
    runtime.tasks.run_due()

    assert runtime.jobs.get_job(job.job_id).display_status == "failed - step_execution_exception"


def test_flow_without_steps_fails_immediately(runtime):
    created = runtime.commands.execute("create_pipeline", {"pipeline_name": "Empty", "flow_name": "Nothing"})

    job = runtime.engine.run_now(created["flow_id"])

    assert job.display_status == "failed - no_first_step"


def test_recover_stuck_jobs(runtime, news_flow, clock):
    flow_id = news_flow["flow_id"]
    ai_step = _ai_step_id(news_flow)
    runtime.flow_queue.add(flow_id, "still waiting")

    stuck = runtime.jobs.create_job(flow_id, news_flow["pipeline_id"])
    runtime.jobs.start_job(stuck.job_id)
    runtime.jobs.store_snapshot(
        stuck.job_id,
        EngineSnapshot(
            version=2,
            data={"queued_prompt_backup": {"prompt": "lost prompt", "flow_step_id": ai_step}},
        ).model_dump(mode="json"),
    )
    skipped = runtime.jobs.create_job(flow_id, news_flow["pipeline_id"])
    runtime.jobs.start_job(skipped.job_id)
    runtime.jobs.store_snapshot(
        skipped.job_id,
        EngineSnapshot(
            version=3,
            data={"job_status": {"status": "agent_skipped", "reason": "low relevance"}},
        ).model_dump(mode="json"),
    )
    clock.advance(3 * 3600)

    preview = runtime.commands.execute("recover_stuck_jobs", {"dry_run": True})
    assert preview["success"] is True
    assert (preview["recovered"], preview["timed_out"], preview["requeued"]) == (1, 1, 1)
    assert runtime.jobs.get_job(stuck.job_id).status == JobStatus.RUNNING

    report = runtime.commands.execute("recover_stuck_jobs", {})
    assert (report["recovered"], report["timed_out"], report["requeued"]) == (1, 1, 1)
    assert runtime.jobs.get_job(stuck.job_id).display_status == "failed - stuck_recovered"
    assert runtime.jobs.get_job(skipped.job_id).display_status == "agent_skipped - low relevance"
    prompts = [entry["prompt"] for entry in runtime.flow_queue.list(flow_id)["queue"]]
    assert prompts == ["still waiting", "lost prompt"]


def test_recent_running_job_is_not_recovered(runtime, news_flow):
    job = runtime.jobs.create_job(news_flow["flow_id"], news_flow["pipeline_id"])
    runtime.jobs.start_job(job.job_id)

    report = runtime.engine.recover_stuck_jobs(timeout_hours=2)

    assert report["skipped"] == 1
    assert runtime.jobs.get_job(job.job_id).status == JobStatus.RUNNING


def test_retry_failed_job_starts_new_job(runtime, news_flow, web, ai):
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    ai.fail()
    job = runtime.engine.run_now(news_flow["flow_id"])
    runtime.tasks.run_due()

    result = runtime.commands.execute("retry_job", {"job_id": job.job_id})
    assert result["success"] is True
    assert result["previous_job_id"] == job.job_id
    assert result["previous_status"] == "failed - ai_request_failed"
    assert result["job_id"] != job.job_id
    runtime.tasks.run_due()
    assert runtime.jobs.get_job(result["job_id"]).status == JobStatus.COMPLETED


def test_retry_completed_job_requires_force(runtime, news_flow, web):
    web.set_items()
    job = runtime.engine.run_now(news_flow["flow_id"])
    runtime.tasks.run_due()

    refused = runtime.commands.execute("retry_job", {"job_id": job.job_id})
    assert refused["success"] is False
    assert refused["error_type"] == "validation"

    forced = runtime.commands.execute("retry_job", {"job_id": job.job_id, "force": True})
    assert forced["success"] is True


def test_problem_flows_reported_after_repeated_failures(runtime, news_flow, web, ai):
    web.set_items(("a", "A", "https://news.example.com/a"), ("b", "B", "https://news.example.com/b"))
    for _ in range(3):
        ai.fail()
        runtime.engine.run_now(news_flow["flow_id"])
        runtime.tasks.run_due()

    result = runtime.commands.execute("get_problem_flows", {"threshold": 3})
    assert result["success"] is True
    assert [flow["flow_id"] for flow in result["problem_flows"]] == [news_flow["flow_id"]]
    assert result["problem_flows"][0]["consecutive_failures"] == 3


def test_direct_workflow_runs_without_flow(runtime, web, ai):
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    ai.reply("Short summary.")

    result = runtime.commands.execute(
        "execute_workflow",
        {
            "workflow": {
                "steps": [
                    {"type": "fetch", "handler_slug": "rss", "handler_config": {"feed_url": web.feed_url}},
                    {"type": "ai", "user_message": "Summarize."},
                ]
            }
        },
    )
    assert result["success"] is True
    assert result["execution_mode"] == "direct"
    runtime.tasks.run_due()

    job = runtime.jobs.get_job(result["job_id"])
    assert job.is_direct
    assert job.status == JobStatus.COMPLETED
    assert [packet.type for packet in job.data_packets] == ["ai_response", "fetch"]
    assert runtime.ledger.count() == 0
    assert runtime.db.list_flows() == []


def test_direct_dry_run_does_not_publish_or_mark_items(runtime, web, ai):
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))

    result = runtime.commands.execute(
        "execute_workflow",
        {
            "steps": [
                {"type": "fetch", "handler_slug": "rss", "handler_config": {"feed_url": web.feed_url}},
                {"type": "publish", "handler_slug": "webhook", "handler_config": {"url": web.hook_url}},
            ],
            "dry_run": True,
        },
    )
    runtime.tasks.run_due()

    job = runtime.jobs.get_job(result["job_id"])
    assert job.status == JobStatus.COMPLETED
    assert job.data_packets[0].metadata["dry_run"] is True
    assert web.posted(web.hook_url) == []
    assert not runtime.ledger.has_processed("ephemeral_step_0_direct", "rss", "item-1")


def test_direct_workflow_rejects_unknown_handler(runtime):
    result = runtime.commands.execute(
        "execute_workflow",
        {"steps": [{"type": "fetch", "handler_slug": "nope"}]},
    )
    assert result["success"] is False
    assert result["error_type"] == "not_found"
    assert runtime.jobs.list_jobs() == []


def test_direct_workflow_can_run_the_same_item_again(runtime, web, ai):
    web.set_items(("item-1", "Rates fall", "https://news.example.com/rates"))
    workflow = {
        "steps": [
            {"type": "fetch", "handler_slug": "rss", "handler_config": {"feed_url": web.feed_url}},
            {"type": "ai", "user_message": "Summarize."},
        ]
    }

    job_ids = []
    for _ in range(2):
        ai.reply("Short summary.")
        result = runtime.commands.execute("execute_workflow", {"workflow": workflow})
        runtime.tasks.run_due()
        job_ids.append(result["job_id"])

    for job_id in job_ids:
        job = runtime.jobs.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.data_packets[-1].metadata["item_identifier"] == "item-1"
    assert runtime.ledger.count() == 0


def test_duplicate_run_delivery_dispatches_first_step_once(runtime, news_flow, monkeypatch):
    flow_id = news_flow["flow_id"]
    job = runtime.jobs.create_job(flow_id, news_flow["pipeline_id"])
    stale = runtime.jobs.get_job(job.job_id)
    # both deliveries read the job before either one started it
    monkeypatch.setattr(runtime.jobs, "get_job", lambda job_id: stale)

    runtime.engine.run_now(flow_id, job_id=job.job_id)
    runtime.engine.run_now(flow_id, job_id=job.job_id)
    monkeypatch.undo()

    pending = runtime.tasks.pending(EXECUTE_STEP_ACTION)
    assert [task.args for task in pending] == [{"job_id": job.job_id, "step_index": 0}]
    assert runtime.jobs.get_job(job.job_id).status == JobStatus.RUNNING


class SharedFeed(Handler):
    """Hands the same item to every caller once all callers are inside fetch."""

    slug = "shared_feed"
    step_types = (StepKind.FETCH,)

    def __init__(self, parties: int):
        self.barrier = threading.Barrier(parties)

    def fetch(self, config, dedup):
        self.barrier.wait(timeout=5)
        return [FetchedItem(identifier="item-1", title="Rates fall")]


def test_concurrent_fetches_claim_an_item_once(runtime, news_flow):
    workers = 6
    runtime.handler_registry.register(SharedFeed(workers))
    step = FetchStep(runtime.engine.services)
    fetch_step_id = _fetch_step_id(news_flow)

    results = []
    lock = threading.Lock()

    def _worker(job_id: int):
        context = StepContext(
            job_id=job_id,
            flow_id=news_flow["flow_id"],
            pipeline_id=news_flow["pipeline_id"],
            flow_step_id=fetch_step_id,
            step_config={"handler_slug": "shared_feed", "handler_config": {}},
            snapshot=EngineSnapshot(),
            packets=[],
        )
        result = step.execute(context)
        with lock:
            results.append(result)

    threads = [threading.Thread(target=_worker, args=(job_id,)) for job_id in range(1, workers + 1)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == workers
    assert sum(1 for result in results if result.success) == 1
    assert sum(1 for result in results if result.no_items) == workers - 1
    assert runtime.ledger.count(fetch_step_id) == 1


def test_recovery_measures_from_start_not_creation(runtime, news_flow, clock):
    flow_id = news_flow["flow_id"]
    timestamp = int(clock()) + 3 * 3600
    scheduled = runtime.commands.execute("run_flow", {"flow_id": flow_id, "timestamp": timestamp})
    job_id = scheduled["job_ids"][0]

    clock.advance(3 * 3600 + 1)
    assert runtime.tasks.run_due(limit=1) == 1
    job = runtime.jobs.get_job(job_id)
    assert job.status == JobStatus.RUNNING
    started = datetime.fromisoformat(job.started_at)
    assert (started - datetime.fromisoformat(job.created_at)).total_seconds() > 3 * 3600

    report = runtime.engine.recover_stuck_jobs(timeout_hours=2)

    assert report["timed_out"] == 0
    assert report["skipped"] == 1
    assert runtime.jobs.get_job(job_id).status == JobStatus.RUNNING


def test_pending_job_with_lost_trigger_is_failed(runtime, news_flow, clock):
    flow_id = news_flow["flow_id"]
    lost = runtime.jobs.create_job(flow_id, news_flow["pipeline_id"])
    waiting = runtime.jobs.create_job(flow_id, news_flow["pipeline_id"])
    runtime.tasks.schedule_once(
        RUN_FLOW_ACTION, {"flow_id": flow_id, "job_id": waiting.job_id}, clock() + 24 * 3600
    )
    clock.advance(3 * 3600)

    preview = runtime.engine.recover_stuck_jobs(timeout_hours=2, dry_run=True)
    assert preview["orphaned"] == 1
    assert runtime.jobs.get_job(lost.job_id).status == JobStatus.PENDING

    report = runtime.engine.recover_stuck_jobs(timeout_hours=2)
    assert report["orphaned"] == 1
    assert report["skipped"] == 1
    assert runtime.jobs.get_job(lost.job_id).display_status == "failed - trigger_lost"
    assert runtime.jobs.get_job(waiting.job_id).status == JobStatus.PENDING
