from __future__ import annotations

import json
import time
from pathlib import Path

import httpx
import pytest

from main import build_runtime
from shared.models import AIResponse, ToolCall
from shared.settings import Settings


class ScriptedAI:
    """AI capability that replays queued responses and records every request."""

    def __init__(self):
        self.responses: list[AIResponse] = []
        self.calls: list[dict] = []

    def reply(self, content: str) -> None:
        self.responses.append(AIResponse(success=True, content=content))

    def call_tool(self, name: str, **arguments) -> None:
        call = ToolCall(call_id=f"call_{len(self.responses)}", name=name, arguments=arguments)
        self.responses.append(AIResponse(success=True, tool_calls=[call]))

    def fail(self, error: str = "model offline") -> None:
        self.responses.append(AIResponse(success=False, error=error))

    def complete(self, messages, tools, provider, model, job_id=None) -> AIResponse:
        self.calls.append(
            {
                "messages": list(messages),
                "tools": [tool["name"] for tool in tools],
                "schemas": list(tools),
                "provider": provider,
                "model": model,
                "job_id": job_id,
            }
        )
        if self.responses:
            return self.responses.pop(0)
        return AIResponse(success=True, content="done")


class FakeWeb:
    """httpx transport standing in for the feed, the publish webhook and the agent endpoint."""

    feed_url = "https://news.example.com/feed.xml"
    hook_url = "https://hooks.example.com/publish"
    agent_url = "https://agent.example.com/ping"

    def __init__(self):
        self.items: list[tuple[str, str, str]] = []
        self.hook_status = 200
        self.requests: list[httpx.Request] = []

    def set_items(self, *items: tuple[str, str, str]) -> None:
        self.items = list(items)

    def feed_xml(self) -> str:
        entries = "".join(
            f"<item><guid>{guid}</guid><title>{title}</title><link>{link}</link>"
            f"<description>About {title}</description></item>"
            for guid, title, link in self.items
        )
        return f'<?xml version="1.0"?><rss version="2.0"><channel><title>News</title>{entries}</channel></rss>'

    def posted(self, url: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if str(r.url) == url and r.method != "GET"]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == self.feed_url:
            return httpx.Response(200, text=self.feed_xml())
        if url == self.hook_url:
            if self.hook_status >= 400:
                return httpx.Response(self.hook_status, text="upstream error")
            return httpx.Response(self.hook_status, json={"id": len(self.posted(url))})
        if url == self.agent_url:
            return httpx.Response(202, json={"accepted": True})
        return httpx.Response(404, text="not found")


class FakeClock:
    def __init__(self, start: float | None = None):
        self.current = time.time() if start is None else start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def ai() -> ScriptedAI:
    return ScriptedAI()


@pytest.fixture
def web() -> FakeWeb:
    return FakeWeb()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "flowmachine_test.db"),
        default_provider="openai_compatible",
        default_model="test-model",
        max_turns=4,
    )


@pytest.fixture
def runtime(settings, ai, web, clock):
    client = httpx.Client(transport=httpx.MockTransport(web.handle))
    rt = build_runtime(settings, ai=ai, http_client=client, clock=clock)
    try:
        yield rt
    finally:
        rt.close()


@pytest.fixture
def news_flow(runtime, web):
    """fetch(rss) → ai → publish(webhook) flow; returns its flow dict from get_flows."""
    created = runtime.commands.execute(
        "create_pipeline",
        {
            "pipeline_name": "News",
            "steps": [
                {"pipeline_step_id": "fetch", "step_type": "fetch"},
                {"pipeline_step_id": "write", "step_type": "ai", "system_prompt": "Rewrite the article."},
                {"pipeline_step_id": "publish", "step_type": "publish"},
            ],
        },
    )
    assert created["success"], created
    flow = runtime.commands.execute(
        "create_flow",
        {
            "pipeline_id": created["pipeline_id"],
            "flow_name": "Daily news",
            "step_configs": {
                "fetch": {"handler_slug": "rss", "handler_config": {"feed_url": web.feed_url}},
                "publish": {"handler_slug": "webhook", "handler_config": {"url": web.hook_url}},
            },
        },
    )
    assert flow["success"], flow
    return flow
