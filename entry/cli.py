"""
CLI Entry Adapter.

Responsibility:
- Normalize terminal input (command name + JSON arguments) to a command call
- Render command results and listings with rich
- NO business logic, NO persistence access
"""

from __future__ import annotations

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from shared.errors import ValidationError

_STATUS_STYLES = {
    "completed": "green",
    "completed_no_items": "cyan",
    "agent_skipped": "yellow",
    "failed": "red",
    "running": "magenta",
    "pending": "dim",
}


class CLIAdapter:
    """Command-line entry adapter."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    @staticmethod
    def parse_arguments(raw: str | None) -> dict[str, Any]:
        """JSON object from the command line (empty input → {})."""
        text = str(raw or "").strip()
        if not text:
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Arguments must be a JSON object: {e}") from None
        if not isinstance(parsed, dict):
            raise ValidationError("Arguments must be a JSON object")
        return parsed

    def render_result(self, name: str, result: dict[str, Any]) -> None:
        ok = bool(result.get("success"))
        body = json.dumps(result, ensure_ascii=False, indent=2, default=str)
        self.console.print(
            Panel(
                body,
                title=f"{'✅' if ok else '❌'} {name}",
                border_style="green" if ok else "red",
                box=box.ROUNDED,
            )
        )

    def render_flows(self, flows: list[dict[str, Any]]) -> None:
        if not flows:
            self.console.print("[bold yellow]No flows configured.[/]")
            return
        table = Table(title="Flows", box=box.SIMPLE_HEAVY)
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("Name", style="bold white")
        table.add_column("Pipeline", style="magenta", justify="right")
        table.add_column("Schedule", style="white")
        table.add_column("Steps", style="white")
        table.add_column("Failures / Empty", style="dim", justify="right")
        table.add_column("Last Job", style="white")
        for flow in flows:
            schedule = flow.get("scheduling") or {}
            last_job = flow.get("last_job") or {}
            steps = " → ".join(
                f"{s['step_type']}({s['handler_slug']})" if s.get("handler_slug") else s["step_type"]
                for s in flow.get("steps", [])
            )
            table.add_row(
                str(flow.get("flow_id")),
                str(flow.get("flow_name", "")),
                str(flow.get("pipeline_id")),
                str(schedule.get("cron_expression") or schedule.get("interval", "manual")),
                steps,
                f"{schedule.get('consecutive_failures', 0)} / {schedule.get('consecutive_no_items', 0)}",
                self._status_text(str(last_job.get("status", ""))) if last_job else "-",
            )
        self.console.print(table)

    def render_jobs(self, jobs: list[dict[str, Any]]) -> None:
        if not jobs:
            self.console.print("[bold yellow]No jobs found.[/]")
            return
        table = Table(title="Jobs", box=box.SIMPLE_HEAVY)
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("Flow", style="magenta", justify="right")
        table.add_column("Status", style="white")
        table.add_column("Source", style="dim")
        table.add_column("Created", style="dim")
        table.add_column("Completed", style="dim")
        for job in jobs:
            table.add_row(
                str(job.get("job_id")),
                str(job.get("flow_id")),
                self._status_text(str(job.get("status", ""))),
                str(job.get("source", "")),
                str(job.get("created_at", "")),
                str(job.get("completed_at") or "-"),
            )
        self.console.print(table)

    @staticmethod
    def _status_text(status: str) -> str:
        base = status.partition(" - ")[0]
        style = _STATUS_STYLES.get(base, "white")
        return f"[{style}]{status}[/]"
