"""
Conversation Loop — bounded multi-turn AI exchange with tool calling.

Responsibility:
- Send messages + tools to the AI capability, one request per turn
- Execute requested tools in call order and append one result message per call
- Treat repeated identical calls (same name + args) as failed tool results
- Stop on plain completion, successful handler tool, AI failure or turn ceiling

Prohibitions:
- No job status decisions (the AI step and engine own those)
- Tool errors never escape; they become tool-result messages
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from shared.engine_data import merge_recursive
from shared.models import AIResponse, ConversationResult, ToolCall, ToolDefinition, ToolResult
from skills.gateway import ToolExecutor
from skills.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

TURN_LIMIT_WARNING = "turn_limit_reached"


class AICapability(Protocol):
    def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        provider: str,
        model: str,
        job_id: int | None = None,
    ) -> AIResponse:
        ...


def call_signature(call: ToolCall) -> str:
    return f"{call.name}:{json.dumps(call.arguments, sort_keys=True, default=str)}"


class ConversationLoop:
    """Drives one AI step's conversation to completion or the turn ceiling."""

    def __init__(self, ai: AICapability, tool_executor: ToolExecutor):
        self.ai = ai
        self.tool_executor = tool_executor

    def run(
        self,
        messages: list[dict[str, Any]],
        tools: dict[str, ToolDefinition],
        provider: str,
        model: str,
        max_turns: int,
        context: ToolContext,
    ) -> ConversationResult:
        conversation = list(messages)
        tool_results: list[ToolResult] = []
        handler_results: list[ToolResult] = []
        seen_calls: set[str] = set()
        engine_delta: dict[str, Any] = {}
        last_content = ""
        max_turns = max(1, int(max_turns))

        for turn in range(1, max_turns + 1):
            schemas = [ToolRegistry.to_model_schema(tool, context.snapshot) for tool in tools.values()]
            response = self.ai.complete(conversation, schemas, provider, model, job_id=context.job_id)

            if not response.success:
                logger.warning("AI request failed on turn %d: %s", turn, response.error)
                return ConversationResult(
                    messages=conversation,
                    final_content=last_content,
                    tool_results=tool_results,
                    handler_results=handler_results,
                    turns=turn,
                    completed=False,
                    error=response.error or "AI request failed",
                    engine_delta=engine_delta,
                )

            if not response.tool_calls:
                content = str(response.content or "")
                conversation.append({"role": "assistant", "content": content})
                return ConversationResult(
                    messages=conversation,
                    final_content=content,
                    tool_results=tool_results,
                    handler_results=handler_results,
                    turns=turn,
                    completed=True,
                    engine_delta=engine_delta,
                )

            if response.content:
                last_content = response.content
            conversation.append(
                {
                    "role": "assistant",
                    "content": response.content or "",
                    "tool_calls": [
                        {"id": call.call_id, "name": call.name, "arguments": call.arguments}
                        for call in response.tool_calls
                    ],
                }
            )

            handler_completed = False
            for call in response.tool_calls:
                signature = call_signature(call)
                if signature in seen_calls:
                    result = ToolResult(
                        success=False,
                        tool_name=call.name,
                        error=(
                            f"Duplicate tool call: '{call.name}' was already executed with identical "
                            "parameters. Use the earlier result or change the parameters."
                        ),
                    )
                else:
                    seen_calls.add(signature)
                    result = self.tool_executor.execute(call, tools, context)

                if result.engine_delta:
                    engine_delta = merge_recursive(engine_delta, result.engine_delta)
                    context = context.with_snapshot(context.snapshot.merge(result.engine_delta))

                tool_results.append(result)
                if result.handler and result.success:
                    handler_results.append(result)
                    handler_completed = True

                conversation.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.call_id,
                        "name": call.name,
                        "content": json.dumps(result.to_payload(), ensure_ascii=False, default=str),
                    }
                )

            if handler_completed:
                logger.info("Handler tool completed on turn %d; ending conversation", turn)
                return ConversationResult(
                    messages=conversation,
                    final_content=last_content,
                    tool_results=tool_results,
                    handler_results=handler_results,
                    turns=turn,
                    completed=True,
                    engine_delta=engine_delta,
                )

        logger.warning("Conversation reached the turn ceiling (%d) without completing", max_turns)
        return ConversationResult(
            messages=conversation,
            final_content=last_content,
            tool_results=tool_results,
            handler_results=handler_results,
            turns=max_turns,
            completed=False,
            warning=TURN_LIMIT_WARNING,
            engine_delta=engine_delta,
        )
