from __future__ import annotations

from registry.handler_registry import Handler, HandlerRegistry
from shared.engine_data import EngineSnapshot
from shared.models import StepKind, ToolCall, ToolDefinition, ToolParameter
from shared.settings import Settings
from skills.gateway import ToolExecutor
from skills.registry import ToolContext, ToolRegistry


class EchoTool:
    def __init__(self):
        self.calls: list[dict] = []

    def execute(self, parameters, context):
        self.calls.append(dict(parameters))
        return {"success": True, "data": {"echo": parameters}}


class BrokenTool:
    def execute(self, parameters, context):
        raise RuntimeError("disk full")


class DummyPublisher(Handler):
    slug = "dummy"
    step_types = (StepKind.PUBLISH,)
    config_schema = {"channel": {"type": "string", "default": "general"}}

    def __init__(self):
        self.published: list[tuple[dict, dict, dict]] = []

    def tool_definition(self, config):
        return ToolDefinition(
            name="dummy_publish",
            parameters={
                "title": ToolParameter(required=True),
                "source_url": ToolParameter(required=True, engine_key="source_url"),
            },
        )

    def publish(self, payload, engine_params, config):
        self.published.append((payload, engine_params, config))
        return {"success": True, "data": {"channel": config["channel"]}}


def _definition(name: str, **kwargs) -> ToolDefinition:
    return ToolDefinition(name=name, description=f"{name} tool", **kwargs)


def _registry(settings: Settings | None = None) -> tuple[ToolRegistry, HandlerRegistry, DummyPublisher]:
    handlers = HandlerRegistry()
    publisher = DummyPublisher()
    handlers.register(publisher)
    tools = ToolRegistry(handlers, settings or Settings())
    for name in ("tool_a", "tool_b", "tool_c"):
        tools.register_global(_definition(name), EchoTool())
    return tools, handlers, publisher


def _context(data: dict | None = None) -> ToolContext:
    return ToolContext(job_id=7, flow_step_id="write_1", snapshot=EngineSnapshot(version=1, data=data or {}))


def test_available_tools_subtracts_disabled_tools():
    tools, _, _ = _registry()

    available = tools.available_tools(disabled_tools=["tool_b"])

    assert set(available) == {"tool_a", "tool_c"}


def test_site_enabled_list_limits_global_tools():
    tools, _, _ = _registry(Settings(enabled_tools=["tool_a", "tool_b"]))

    assert tools.globally_enabled() == {"tool_a", "tool_b"}
    assert set(tools.available_tools(disabled_tools=["tool_b"])) == {"tool_a"}


def test_tool_requiring_config_is_off_until_configured():
    tools, handlers, _ = _registry()
    tools.register_global(_definition("search", requires_config=True), EchoTool())
    assert "search" not in tools.globally_enabled()

    tools.apply_settings(Settings(tool_configs={"search": {"api_key": "k"}}))
    assert "search" in tools.globally_enabled()


def test_adjacent_publish_step_contributes_handler_tool():
    tools, _, _ = _registry()
    adjacent = [{"step_type": "publish", "handler_slug": "dummy", "handler_config": {}}]

    available = tools.available_tools(adjacent_steps=adjacent)

    assert available["dummy_publish"].handler == "dummy"
    assert "dummy_publish" not in tools.available_tools(adjacent_steps=adjacent, disabled_tools=["dummy_publish"])


def test_model_schema_elides_engine_known_parameters():
    tools, _, _ = _registry()
    definition = tools.handler_tools([{"step_type": "publish", "handler_slug": "dummy"}])["dummy_publish"]

    unknown = ToolRegistry.to_model_schema(definition, EngineSnapshot())
    known = ToolRegistry.to_model_schema(definition, EngineSnapshot(data={"source_url": "https://a.example/x"}))

    assert unknown["parameters"]["required"] == ["title", "source_url"]
    assert "source_url" not in known["parameters"]["properties"]
    assert known["parameters"]["required"] == ["title"]


def test_missing_required_parameter_names_every_missing_field():
    tools, handlers, _ = _registry()
    definition = tools.handler_tools([{"step_type": "publish", "handler_slug": "dummy"}])["dummy_publish"]
    executor = ToolExecutor(tools, handlers)

    result = executor.execute(ToolCall(call_id="1", name="dummy_publish"), {"dummy_publish": definition}, _context())

    assert result.success is False
    assert result.to_payload() == {
        "success": False,
        "tool_name": "dummy_publish",
        "error": (
            "Dummy Publish requires the following parameters: title, source_url. "
            "Please provide these parameters and try again."
        ),
    }


def test_handler_tool_receives_engine_parameters_and_step_config():
    tools, handlers, publisher = _registry()
    definition = tools.handler_tools([{"step_type": "publish", "handler_slug": "dummy"}])["dummy_publish"]
    executor = ToolExecutor(tools, handlers)
    context = _context(
        {
            "source_url": "https://a.example/x",
            "flow_config": {
                "publish_1": {
                    "flow_step_id": "publish_1",
                    "step_type": "publish",
                    "execution_order": 2,
                    "handler_slug": "dummy",
                    "handler_config": {"channel": "news"},
                }
            },
        }
    )

    result = executor.execute(
        ToolCall(call_id="1", name="dummy_publish", arguments={"title": "Hello"}),
        {"dummy_publish": definition},
        context,
    )

    assert result.success is True
    assert result.handler == "dummy"
    assert result.to_payload() == {"success": True, "tool_name": "dummy_publish", "data": {"channel": "news"}}
    payload, engine_params, config = publisher.published[0]
    assert payload == {"title": "Hello", "source_url": "https://a.example/x"}
    assert engine_params == {"source_url": "https://a.example/x"}
    assert config == {"channel": "news"}


def test_unavailable_tool_is_reported_not_raised():
    tools, handlers, _ = _registry()
    executor = ToolExecutor(tools, handlers)

    result = executor.execute(
        ToolCall(call_id="1", name="tool_b"),
        tools.available_tools(disabled_tools=["tool_b"]),
        _context(),
    )

    assert result.to_payload() == {"success": False, "tool_name": "tool_b", "error": "Tool 'tool_b' not found"}


def test_tool_exception_becomes_failed_result():
    tools, handlers, _ = _registry()
    tools.register_global(_definition("broken"), BrokenTool())
    executor = ToolExecutor(tools, handlers)

    result = executor.execute(ToolCall(call_id="1", name="broken"), tools.available_tools(), _context())

    assert result.success is False
    assert result.error == "Tool execution error: disk full"


def test_normalize_shapes_raw_results():
    ok = ToolExecutor.normalize("t", {"success": True, "items": [1, 2]})
    failed = ToolExecutor.normalize("t", {"success": False})
    plain = ToolExecutor.normalize("t", "text")

    assert ok.to_payload() == {"success": True, "tool_name": "t", "data": {"items": [1, 2]}}
    assert failed.to_payload() == {"success": False, "tool_name": "t", "error": "Tool 't' reported failure"}
    assert plain.to_payload() == {"success": True, "tool_name": "t", "data": "text"}
