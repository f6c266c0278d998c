"""
Webhook publish/update handler.

Posts content to a configured endpoint. Also exposes a handler tool so an AI
step adjacent to the publish step can publish directly; the source URL known to
the engine is injected instead of asked from the model.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from registry.handler_registry import Handler
from shared.models import StepKind, ToolDefinition, ToolParameter

logger = logging.getLogger(__name__)


class WebhookHandler(Handler):
    slug = "webhook"
    label = "Webhook"
    step_types = (StepKind.PUBLISH, StepKind.UPDATE)
    config_schema = {
        "url": {"type": "string", "required": True, "label": "Endpoint URL"},
        "method": {"type": "select", "default": "POST", "options": ["POST", "PUT", "PATCH"]},
        "auth_token": {"type": "string", "default": "", "label": "Bearer token"},
        "include_source": {"type": "boolean", "default": True},
    }

    def __init__(self, client: httpx.Client | None = None, timeout: float = 30.0):
        self.client = client or httpx.Client(timeout=timeout)

    def tool_definition(self, config: dict[str, Any]) -> ToolDefinition | None:
        return ToolDefinition(
            name="webhook_publish",
            label="Webhook Publish",
            description="Publish the final content to the configured webhook endpoint.",
            handler=self.slug,
            parameters={
                "title": ToolParameter(type="string", required=True, description="Content title"),
                "body": ToolParameter(type="string", required=True, description="Content body"),
                "source_url": ToolParameter(
                    type="string",
                    description="Original source URL",
                    engine_key="source_url",
                ),
            },
        )

    def publish(
        self,
        payload: dict[str, Any],
        engine_params: dict[str, Any],
        config: dict[str, Any],
    ) -> dict[str, Any]:
        return self._send("publish", payload, engine_params, config)

    def update(
        self,
        payload: dict[str, Any],
        engine_params: dict[str, Any],
        config: dict[str, Any],
    ) -> dict[str, Any]:
        return self._send("update", payload, engine_params, config)

    def _send(
        self,
        action: str,
        payload: dict[str, Any],
        engine_params: dict[str, Any],
        config: dict[str, Any],
    ) -> dict[str, Any]:
        url = str(config.get("url") or "").strip()
        if not url:
            return {"success": False, "error": "Webhook handler requires url", "reason": "webhook_url_missing"}

        body: dict[str, Any] = {"action": action, **payload}
        if config.get("include_source", True):
            for key in ("source_url", "item_identifier"):
                if engine_params.get(key) and not body.get(key):
                    body[key] = engine_params[key]

        headers = {"Content-Type": "application/json"}
        if config.get("auth_token"):
            headers["Authorization"] = f"Bearer {config['auth_token']}"

        try:
            logger.info("Webhook %s → %s", action, url)
            response = self.client.request(str(config.get("method") or "POST"), url, json=body, headers=headers)
        except httpx.RequestError as e:
            logger.error("Network error calling webhook '%s': %r", url, e)
            return {"success": False, "error": f"Network error: {e}", "reason": f"{action}_failed"}

        if response.status_code >= 400:
            logger.error("Webhook error %s: %s", response.status_code, response.text)
            return {
                "success": False,
                "error": f"Webhook returned status {response.status_code}",
                "reason": f"{action}_failed",
            }
        try:
            result: Any = response.json()
        except ValueError:
            result = response.text
        return {"success": True, "data": {"status_code": response.status_code, "response": result}, "result": result}
