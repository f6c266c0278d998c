"""
Step Executor — one step of one job.

Closed hierarchy: every StepKind maps to exactly one Step subclass in
STEP_TYPES. A step reads the frozen snapshot and the job's data packets and
returns a StepResult (new packets + engine delta). Steps never touch job
status; the Job Engine decides what a result means.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from conversation.directives import compose_messages, packets_for_model
from conversation.loop import ConversationLoop
from memory.store import DedupContext, ProcessedItemsStore
from registry.flow_queue import FlowQueue
from registry.handler_registry import HandlerRegistry
from shared.engine_data import EngineSnapshot
from shared.models import (
    DIRECT_EXECUTION,
    ConversationResult,
    DataPacket,
    StepKind,
    StepResult,
)
from shared.settings import Settings, resolve_setting
from skills.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 12


@dataclass
class StepServices:
    """Collaborators shared by all step types."""
    settings: Settings
    handler_registry: HandlerRegistry
    ledger: ProcessedItemsStore
    flow_queue: FlowQueue
    tool_registry: ToolRegistry
    conversation: ConversationLoop
    http_client: httpx.Client = field(default_factory=lambda: httpx.Client(timeout=30.0))


@dataclass
class StepContext:
    job_id: int
    flow_id: int | str
    pipeline_id: int | str
    flow_step_id: str
    step_config: dict[str, Any]
    snapshot: EngineSnapshot
    packets: list[DataPacket]
    dry_run: bool = False

    @property
    def is_direct(self) -> bool:
        return self.flow_id == DIRECT_EXECUTION


class Step(ABC):
    kind: StepKind
    queueable = False

    def __init__(self, services: StepServices):
        self.services = services

    @abstractmethod
    def execute(self, context: StepContext) -> StepResult:
        ...

    def handler_config(self, context: StepContext, step_type: StepKind) -> tuple[str, Any, dict[str, Any]]:
        slug = str(context.step_config.get("handler_slug") or "")
        if not slug:
            return "", None, {}
        registry = self.services.handler_registry
        handler = registry.require(slug, step_type)
        config = registry.apply_defaults(slug, dict(context.step_config.get("handler_config") or {}))
        return slug, handler, config

    def pop_prompt_if_empty(self, context: StepContext, configured: str) -> tuple[str, dict[str, Any]]:
        """Configured prompt wins; otherwise pop this step's queue (when enabled)."""
        configured = str(configured or "").strip()
        if configured or not self.queueable:
            return configured, {}
        if context.is_direct or context.step_config.get("queue_enabled") is False:
            return "", {}
        entry = self.services.flow_queue.pop(int(context.flow_id), context.flow_step_id)
        if entry is None:
            return "", {}
        return entry.prompt, {
            "queued_prompt_backup": {
                "prompt": entry.prompt,
                "flow_step_id": context.flow_step_id,
                "added_at": entry.added_at,
            }
        }


def latest_content_payload(packets: list[DataPacket]) -> dict[str, Any] | None:
    """Newest packet that carries publishable content."""
    for packet in packets:
        if packet.type in ("ai_response", "fetch") and not packet.failed and packet.content:
            return dict(packet.content)
    return None


# ─── Fetch ─────────────────────────────────────────────────────

class FetchStep(Step):
    kind = StepKind.FETCH

    def execute(self, context: StepContext) -> StepResult:
        slug, handler, config = self.handler_config(context, StepKind.FETCH)
        if handler is None:
            return StepResult(success=False, reason="fetch_handler_missing", error="Fetch step has no handler")

        dedup = DedupContext(
            self.services.ledger,
            context.flow_step_id,
            slug,
            job_id=context.job_id,
            pipeline_id=context.pipeline_id,
        )
        items = handler.fetch(config, dedup)
        fresh = [item for item in items if not dedup.has_processed(item.identifier)]
        if not fresh:
            logger.info(
                "Fetch returned no new items (job=%s, handler=%s, history=%s)",
                context.job_id,
                slug,
                dedup.has_any_history(),
            )
            return StepResult(success=False, no_items=True)

        if context.dry_run or context.is_direct:
            item = fresh[0]
        else:
            # Another job of this flow may have claimed the same item since the read above.
            item = next((c for c in fresh if dedup.mark_processed(c.identifier)), None)
            if item is None:
                logger.info("Every new item was claimed by another job (job=%s, handler=%s)", context.job_id, slug)
                return StepResult(success=False, no_items=True)

        delta: dict[str, Any] = {
            "item_identifier": item.identifier,
            "source_type": slug,
            "fetch_flow_step_id": context.flow_step_id,
        }
        if item.source_url:
            delta["source_url"] = item.source_url
        if item.image_path:
            delta["image_file_path"] = item.image_path

        packet = DataPacket(
            type="fetch",
            handler=slug,
            content={"title": item.title, "body": item.content},
            metadata={"source_type": slug, "item_identifier": item.identifier, **item.metadata},
        )
        return StepResult(success=True, packets=[packet], engine_delta=delta)


# ─── AI ────────────────────────────────────────────────────────

class AIStep(Step):
    kind = StepKind.AI
    queueable = True

    def execute(self, context: StepContext) -> StepResult:
        settings = self.services.settings
        pipeline_step = context.snapshot.pipeline_step_config(str(context.step_config.get("pipeline_step_id", "")))
        overrides = context.snapshot.get("ai_overrides") or {}

        provider = resolve_setting(
            per_call=overrides.get("provider"),
            per_flow=pipeline_step.get("provider"),
            site_default=settings.default_provider,
        )
        if not provider:
            return StepResult(success=False, reason="ai_provider_missing", error="No AI provider configured")
        model = resolve_setting(
            per_call=overrides.get("model"),
            per_flow=pipeline_step.get("model"),
            site_default=settings.default_model,
        )
        if not model:
            return StepResult(success=False, reason="ai_model_missing", error="No AI model configured")
        max_turns = int(
            resolve_setting(
                per_call=overrides.get("max_turns"),
                per_flow=pipeline_step.get("max_turns"),
                site_default=settings.max_turns,
                schema_default=DEFAULT_MAX_TURNS,
            )
        )

        user_message, delta = self.pop_prompt_if_empty(context, context.step_config.get("user_message", ""))
        ordered = context.snapshot.ordered_flow_steps()
        messages = compose_messages(
            global_prompt=settings.global_system_prompt,
            pipeline_prompt=str(pipeline_step.get("system_prompt") or ""),
            ordered_steps=ordered,
            current_flow_step_id=context.flow_step_id,
            packets=context.packets,
            user_message=user_message,
            image_path=context.snapshot.image_path,
        )
        tools = self.services.tool_registry.available_tools(
            disabled_tools=pipeline_step.get("disabled_tools") or [],
            adjacent_steps=self._adjacent_steps(ordered, context.flow_step_id),
        )
        tool_context = ToolContext(
            job_id=context.job_id,
            flow_step_id=context.flow_step_id,
            snapshot=context.snapshot.merge(delta),
            flow_id=context.flow_id,
            pipeline_id=context.pipeline_id,
        )

        result = self.services.conversation.run(
            messages=messages,
            tools=tools,
            provider=str(provider),
            model=str(model),
            max_turns=max_turns,
            context=tool_context,
        )
        delta = {**delta, **result.engine_delta}
        if result.error:
            return StepResult(success=False, reason="ai_request_failed", error=result.error, engine_delta=delta)

        return StepResult(
            success=True,
            packets=self._packets_from(result, str(provider), str(model)),
            engine_delta=delta,
        )

    @staticmethod
    def _adjacent_steps(ordered: list[dict[str, Any]], flow_step_id: str) -> list[dict[str, Any]]:
        for index, step in enumerate(ordered):
            if step.get("flow_step_id") == flow_step_id:
                return ordered[max(0, index - 1):index] + ordered[index + 1:index + 2]
        return []

    @staticmethod
    def _packets_from(result: ConversationResult, provider: str, model: str) -> list[DataPacket]:
        packets: list[DataPacket] = []
        for tool_result in result.tool_results:
            if tool_result.handler and tool_result.success:
                packets.append(
                    DataPacket(
                        type="ai_handler_complete",
                        handler=tool_result.handler,
                        tool_name=tool_result.tool_name,
                        content={"title": f"Handler Tool Executed: {tool_result.tool_name}", "body": ""},
                        metadata={"success": True, "result": tool_result.data},
                    )
                )
            else:
                packets.append(
                    DataPacket(
                        type="tool_result",
                        tool_name=tool_result.tool_name,
                        content={
                            "title": f"{tool_result.tool_name.replace('_', ' ').title()} Result",
                            "body": tool_result.error or "",
                        },
                        metadata={"tool_success": tool_result.success, "result": tool_result.data},
                    )
                )

        if result.final_content or result.warning or not packets:
            content = result.final_content
            first_line = content.strip().split("\n", 1)[0] if content.strip() else ""
            title = first_line if first_line and len(first_line) <= 100 else f"AI Response - Turn {result.turns}"
            metadata: dict[str, Any] = {
                "provider": provider,
                "model": model,
                "turns": result.turns,
                "completed": result.completed,
            }
            if result.warning:
                metadata["warning"] = result.warning
            packets.append(
                DataPacket(
                    type="ai_response",
                    content={"title": title, "body": content},
                    metadata=metadata,
                )
            )
        return packets


# ─── Publish / Update ──────────────────────────────────────────

class _HandlerOutputStep(Step):
    """Shared logic for publish and update steps."""

    packet_type = ""

    def _call_handler(self, handler, payload, engine_params, config) -> dict[str, Any]:
        raise NotImplementedError

    def execute(self, context: StepContext) -> StepResult:
        slug, handler, config = self.handler_config(context, self.kind)
        if handler is None:
            return StepResult(
                success=False,
                reason=f"{self.kind.value}_handler_missing",
                error=f"{self.kind.value.title()} step has no handler",
            )

        for packet in context.packets:
            if packet.type == "ai_handler_complete" and packet.handler == slug and not packet.failed:
                return StepResult(
                    success=True,
                    packets=[
                        DataPacket(
                            type=self.packet_type,
                            handler=slug,
                            content=dict(packet.content),
                            metadata={"success": True, "result": packet.metadata.get("result"), "via": "ai_tool"},
                        )
                    ],
                )

        payload = latest_content_payload(context.packets)
        if payload is None:
            return StepResult(
                success=False,
                reason="no_content_to_publish",
                error=f"No content available for {self.kind.value} handler '{slug}'",
            )

        if context.dry_run:
            return StepResult(
                success=True,
                packets=[
                    DataPacket(
                        type=self.packet_type,
                        handler=slug,
                        content=payload,
                        metadata={"success": True, "dry_run": True},
                    )
                ],
            )

        result = self._call_handler(handler, payload, context.snapshot.engine_params, config)
        if not result.get("success"):
            return StepResult(
                success=False,
                reason=str(result.get("reason") or f"{self.kind.value}_failed"),
                error=str(result.get("error") or f"Handler '{slug}' reported failure"),
            )
        return StepResult(
            success=True,
            packets=[
                DataPacket(
                    type=self.packet_type,
                    handler=slug,
                    content=payload,
                    metadata={"success": True, "result": result.get("result")},
                )
            ],
        )


class PublishStep(_HandlerOutputStep):
    kind = StepKind.PUBLISH
    packet_type = "publish"

    def _call_handler(self, handler, payload, engine_params, config) -> dict[str, Any]:
        return handler.publish(payload, engine_params, config)


class UpdateStep(_HandlerOutputStep):
    kind = StepKind.UPDATE
    packet_type = "update"

    def _call_handler(self, handler, payload, engine_params, config) -> dict[str, Any]:
        return handler.update(payload, engine_params, config)


# ─── Notify ────────────────────────────────────────────────────

class NotifyStep(Step):
    """Pings an external agent webhook with the job's packets and a prompt."""

    kind = StepKind.NOTIFY
    queueable = True

    def execute(self, context: StepContext) -> StepResult:
        config = dict(context.step_config.get("handler_config") or {})
        webhook_url = str(config.get("webhook_url") or "").strip()
        if not webhook_url:
            return StepResult(success=False, reason="agent_ping_url_missing", error="webhook_url is required")

        prompt, delta = self.pop_prompt_if_empty(context, context.step_config.get("user_message", ""))
        body = {
            "prompt": prompt,
            "job_id": context.job_id,
            "flow_id": context.flow_id,
            "pipeline_id": context.pipeline_id,
            "packets": packets_for_model(context.packets),
        }

        if context.dry_run:
            status_code = None
        else:
            try:
                response = self.services.http_client.post(
                    webhook_url,
                    json=body,
                    timeout=self.services.settings.http_timeout_seconds,
                )
                response.raise_for_status()
                status_code = response.status_code
            except httpx.HTTPError as e:
                logger.warning("Agent ping failed (job=%s): %s", context.job_id, e)
                return StepResult(
                    success=False,
                    reason="agent_ping_failed",
                    error=str(e),
                    engine_delta=delta,
                )

        packet = DataPacket(
            type="agent_ping_result",
            handler="agent_ping",
            content={"title": "Agent Ping", "body": prompt},
            metadata={"success": True, "status_code": status_code, "dry_run": context.dry_run},
        )
        return StepResult(success=True, packets=[packet], engine_delta=delta)


STEP_TYPES: dict[StepKind, type[Step]] = {
    StepKind.FETCH: FetchStep,
    StepKind.AI: AIStep,
    StepKind.PUBLISH: PublishStep,
    StepKind.UPDATE: UpdateStep,
    StepKind.NOTIFY: NotifyStep,
}
