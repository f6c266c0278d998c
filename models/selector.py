"""
Model Layer — AI capability with tool calling.

Responsibility:
- Abstract specific LLM client details (Ollama, OpenAI-compatible, Anthropic)
- Translate the internal message/tool format to each provider and back
- Enforce timeouts and retries
- Return a normalized AIResponse: either content or tool calls, never an exception

This is the ONLY place where LLMs are called.
"""

import json
import logging
import uuid
from typing import Any

import httpx

from observability.logger import Observability
from shared.models import AIResponse, ToolCall
from shared.settings import Settings

logger = logging.getLogger(__name__)

_PROVIDER_ALIASES = {
    "openai": "openai_compatible",
    "openai_compatible": "openai_compatible",
    "anthropic": "anthropic",
    "ollama": "ollama",
}


class ModelSelector:
    """Manages LLM calls with reliability policies."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_url = settings.model_base_url.rstrip("/")
        self.provider = self._resolve_provider(settings.model_provider, self.base_url)
        self.api_key = settings.model_api_key

        base_headers: dict[str, str] = {}
        if self.provider == "openai_compatible" and self.api_key:
            base_headers["Authorization"] = f"Bearer {self.api_key}"

        # Persistent client with connection pooling
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=settings.model_timeout_seconds,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers=base_headers,
        )

    def complete(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        provider: str,
        model: str,
        job_id: int | None = None,
    ) -> AIResponse:
        """Send one request; return content or tool calls."""
        obs = Observability(job_id=job_id)
        transport = _PROVIDER_ALIASES.get(str(provider or "").strip().lower(), self.provider)
        max_retries = max(1, self.settings.model_max_retries)

        attempt = 0
        last_error: Exception | None = None
        while attempt < max_retries:
            attempt += 1
            try:
                with obs.measure(
                    "model_call",
                    {"model": model, "attempt": attempt, "provider": transport, "tools": len(tools)},
                ):
                    return self._call_model(transport, messages, tools, model)
            except (httpx.HTTPError, ValueError, KeyError) as e:
                last_error = e
                logger.warning("Model call failed (attempt %d/%d): %s", attempt, max_retries, e)

        obs.log_event(
            "model_failure",
            {"error": str(last_error), "model": model, "provider": transport},
            level="ERROR",
        )
        return AIResponse(success=False, error=f"AI request failed: {last_error}")

    def _resolve_provider(self, provider_raw: str, base_url: str) -> str:
        if provider_raw != "auto":
            return provider_raw

        lowered = (base_url or "").strip().lower()
        if "anthropic.com" in lowered:
            return "anthropic"
        if "openai.com" in lowered or lowered.endswith("/v1"):
            return "openai_compatible"
        return "ollama"

    def _call_model(
        self,
        transport: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
    ) -> AIResponse:
        """Low-level model API call dispatching by provider."""
        if transport == "anthropic":
            return self._call_anthropic_messages(messages, tools, model)
        if transport == "openai_compatible":
            return self._call_openai_chat(messages, tools, model)
        return self._call_ollama_chat(messages, tools, model)

    # ─── Anthropic ──────────────────────────────────────────────

    def _call_anthropic_messages(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
    ) -> AIResponse:
        if not self.api_key:
            raise ValueError("MODEL_API_KEY is required for the anthropic provider.")

        system_parts: list[str] = []
        payload_messages: list[dict[str, Any]] = []
        for message in messages:
            role = str(message.get("role", "user"))
            if role == "system":
                text = str(message.get("content") or "").strip()
                if text:
                    system_parts.append(text)
                continue
            if role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": message.get("tool_call_id", ""),
                    "content": str(message.get("content") or ""),
                }
                previous = payload_messages[-1] if payload_messages else None
                if previous and previous["role"] == "user" and isinstance(previous["content"], list):
                    previous["content"].append(block)
                else:
                    payload_messages.append({"role": "user", "content": [block]})
                continue
            if role == "assistant" and message.get("tool_calls"):
                blocks: list[dict[str, Any]] = []
                if message.get("content"):
                    blocks.append({"type": "text", "text": str(message["content"])})
                for call in message["tool_calls"]:
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": call["id"],
                            "name": call["name"],
                            "input": call.get("arguments") or {},
                        }
                    )
                payload_messages.append({"role": "assistant", "content": blocks})
                continue
            text = str(message.get("content") or "").strip()
            if text:
                payload_messages.append({"role": "assistant" if role == "assistant" else "user", "content": text})

        if not payload_messages:
            payload_messages = [{"role": "user", "content": "Hello"}]

        payload: dict[str, Any] = {
            "model": model,
            "messages": payload_messages,
            "max_tokens": 4096,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if tools:
            payload["tools"] = [
                {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "input_schema": tool.get("parameters") or {"type": "object", "properties": {}},
                }
                for tool in tools
            ]

        response = self._client.post(
            "/v1/messages",
            json=payload,
            headers={"x-api-key": self.api_key, "anthropic-version": "2023-06-01"},
        )
        response.raise_for_status()
        data = response.json()
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and str(block.get("text", "")).strip():
                text_parts.append(str(block["text"]).strip())
            elif block.get("type") == "tool_use":
                calls.append(
                    ToolCall(
                        call_id=str(block.get("id") or uuid.uuid4().hex),
                        name=str(block.get("name", "")),
                        arguments=dict(block.get("input") or {}),
                    )
                )
        return self._normalize(text_parts, calls)

    # ─── OpenAI-compatible ──────────────────────────────────────

    def _call_openai_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
    ) -> AIResponse:
        payload_messages: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role", "user")
            if role == "assistant" and message.get("tool_calls"):
                payload_messages.append(
                    {
                        "role": "assistant",
                        "content": message.get("content"),
                        "tool_calls": [
                            {
                                "id": call["id"],
                                "type": "function",
                                "function": {
                                    "name": call["name"],
                                    "arguments": json.dumps(call.get("arguments") or {}),
                                },
                            }
                            for call in message["tool_calls"]
                        ],
                    }
                )
            elif role == "tool":
                payload_messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.get("tool_call_id", ""),
                        "content": str(message.get("content") or ""),
                    }
                )
            else:
                payload_messages.append({"role": role, "content": str(message.get("content") or "")})

        payload: dict[str, Any] = {"model": model, "messages": payload_messages, "stream": False}
        if tools:
            payload["tools"] = [{"type": "function", "function": tool} for tool in tools]

        response = self._client.post("/v1/chat/completions", json=payload)
        response.raise_for_status()
        data = response.json()
        choices = data.get("choices") or []
        if not choices:
            raise ValueError("OpenAI-compatible response missing choices")
        message = choices[0].get("message") or {}
        calls = [
            ToolCall(
                call_id=str(call.get("id") or uuid.uuid4().hex),
                name=str((call.get("function") or {}).get("name", "")),
                arguments=self._parse_arguments((call.get("function") or {}).get("arguments")),
            )
            for call in message.get("tool_calls") or []
        ]
        content = str(message.get("content") or "").strip()
        return self._normalize([content] if content else [], calls)

    # ─── Ollama ─────────────────────────────────────────────────

    def _call_ollama_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        model: str,
    ) -> AIResponse:
        payload_messages: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role", "user")
            if role == "assistant" and message.get("tool_calls"):
                payload_messages.append(
                    {
                        "role": "assistant",
                        "content": str(message.get("content") or ""),
                        "tool_calls": [
                            {"function": {"name": call["name"], "arguments": call.get("arguments") or {}}}
                            for call in message["tool_calls"]
                        ],
                    }
                )
            elif role == "tool":
                payload_messages.append({"role": "tool", "content": str(message.get("content") or "")})
            else:
                payload_messages.append({"role": role, "content": str(message.get("content") or "")})

        payload: dict[str, Any] = {
            "model": model,
            "messages": payload_messages,
            "stream": False,
            "keep_alive": "10m",
        }
        if tools:
            payload["tools"] = [{"type": "function", "function": tool} for tool in tools]

        response = self._client.post("/api/chat", json=payload)
        response.raise_for_status()
        message = response.json().get("message") or {}
        calls = [
            ToolCall(
                call_id=uuid.uuid4().hex,
                name=str((call.get("function") or {}).get("name", "")),
                arguments=self._parse_arguments((call.get("function") or {}).get("arguments")),
            )
            for call in message.get("tool_calls") or []
        ]
        content = str(message.get("content") or "").strip()
        return self._normalize([content] if content else [], calls)

    # ─── Helpers ────────────────────────────────────────────────

    @staticmethod
    def _normalize(text_parts: list[str], calls: list[ToolCall]) -> AIResponse:
        if calls:
            return AIResponse(success=True, tool_calls=calls)
        if not text_parts:
            raise ValueError("Model response contained neither content nor tool calls")
        return AIResponse(success=True, content="\n".join(text_parts))

    @staticmethod
    def _parse_arguments(raw: Any) -> dict[str, Any]:
        """Tool arguments arrive as dicts (Ollama) or JSON strings (OpenAI)."""
        if isinstance(raw, dict):
            return raw
        clean_text = str(raw or "").strip()
        if not clean_text:
            return {}
        if clean_text.startswith("```"):
            clean_text = clean_text.split("\n", 1)[1].rsplit("\n", 1)[0]
        try:
            parsed = json.loads(clean_text)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid tool arguments from model: {e}") from e
        return parsed if isinstance(parsed, dict) else {}

    def close(self):
        """Close persistent connections."""
        self._client.close()
