"""
Directive composition for AI steps.

Layers, always in this order:
1. global system prompt (site-wide setting)
2. pipeline-step system prompt, prefixed with a workflow outline
3. data packets from earlier steps (content only, oldest first)
4. user message (configured or popped from the queue)
"""

from __future__ import annotations

import json
from typing import Any

from shared.models import DataPacket


def workflow_outline(ordered_steps: list[dict[str, Any]], current_flow_step_id: str) -> str:
    parts: list[str] = []
    for step in ordered_steps:
        label = str(step.get("step_type", "")).upper()
        handler = step.get("handler_slug")
        if handler:
            label = f"{label} ({handler})"
        if step.get("flow_step_id") == current_flow_step_id:
            label = f"{label} ← YOU ARE HERE"
        parts.append(label)
    return " → ".join(parts)


def packets_for_model(packets: list[DataPacket]) -> list[dict[str, Any]]:
    """Oldest-first, content-only view of the data packet (engine parameters never leak)."""
    view: list[dict[str, Any]] = []
    for packet in reversed(packets):
        entry: dict[str, Any] = {"type": packet.type, "content": packet.content}
        if packet.handler:
            entry["handler"] = packet.handler
        if packet.tool_name:
            entry["tool_name"] = packet.tool_name
        view.append(entry)
    return view


def compose_messages(
    global_prompt: str,
    pipeline_prompt: str,
    ordered_steps: list[dict[str, Any]],
    current_flow_step_id: str,
    packets: list[DataPacket],
    user_message: str = "",
    image_path: str = "",
) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if global_prompt.strip():
        messages.append({"role": "system", "content": global_prompt.strip()})

    outline = workflow_outline(ordered_steps, current_flow_step_id)
    pipeline_parts: list[str] = []
    if outline:
        pipeline_parts.append(f"WORKFLOW: {outline}")
    if pipeline_prompt.strip():
        pipeline_parts.append(f"PIPELINE GOALS:\n{pipeline_prompt.strip()}")
    if pipeline_parts:
        messages.append({"role": "system", "content": "\n\n".join(pipeline_parts)})

    if packets:
        payload = {"data_packets": packets_for_model(packets)}
        if image_path:
            payload["attached_image"] = image_path
        messages.append({"role": "user", "content": json.dumps(payload, ensure_ascii=False, default=str)})

    if user_message.strip():
        messages.append({"role": "user", "content": user_message.strip()})

    if not any(message["role"] == "user" for message in messages):
        messages.append({"role": "user", "content": "Continue the workflow."})
    return messages
