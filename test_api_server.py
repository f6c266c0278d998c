from __future__ import annotations

from fastapi.testclient import TestClient

from api.server import create_app, status_code_for


def test_status_codes_follow_error_type():
    assert status_code_for({"success": True}) == 200
    assert status_code_for({"success": False, "error_type": "not_found"}) == 404
    assert status_code_for({"success": False, "error_type": "validation"}) == 400
    assert status_code_for({"success": False, "error_type": "infrastructure"}) == 500
    assert status_code_for({"success": False}) == 400


def test_command_endpoints(runtime, news_flow):
    with TestClient(create_app(runtime)) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "ok"

        names = {c["name"] for c in client.get("/v1/commands").json()["commands"]}
        assert {"run_flow", "configure_flow_steps", "queue_add"} <= names

        flows = client.post("/v1/commands/get_flows", json={})
        assert flows.status_code == 200
        assert flows.json()["flows"][0]["flow_name"] == "Daily news"

        assert client.post("/v1/commands/launch_rockets", json={}).status_code == 404
        assert client.post("/v1/commands/run_flow", json={}).status_code == 400


def test_run_due_endpoint_drains_tasks(runtime, news_flow):
    with TestClient(create_app(runtime)) as client:
        started = client.post("/v1/commands/run_flow", json={"flow_id": news_flow["flow_id"], "count": 2})
        assert started.status_code == 200

        drained = client.post("/v1/scheduler/run-due")
        assert drained.json()["success"] is True
        assert drained.json()["executed"] >= 4

        jobs = client.post("/v1/commands/get_jobs", json={"flow_id": news_flow["flow_id"]}).json()
        assert {j["status"] for j in jobs["jobs"]} == {"completed_no_items"}


def test_app_leaves_injected_runtime_open(runtime):
    with TestClient(create_app(runtime)) as client:
        client.get("/health")

    assert runtime.commands.execute("get_flows", {})["success"] is True
