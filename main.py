"""
Flowmachine — content-automation workflow engine.

Wiring for every layer plus the command-line entrypoint:
  serve | run-due | worker | recover | command <name> [json] | flows | jobs
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx
from rich.console import Console

from commands.registry import CommandRegistry, build_command_registry
from conversation.loop import AICapability, ConversationLoop
from entry.cli import CLIAdapter
from execution.engine import JobEngine
from execution.job_store import JobStore
from execution.scheduler import PersistentTaskService, SchedulerAdapter
from handlers import register_default_handlers
from memory.store import ProcessedItemsStore
from models.selector import ModelSelector
from registry.db import WorkflowDB
from registry.flow_queue import FlowQueue
from registry.handler_registry import HandlerRegistry
from shared.errors import WorkflowError
from shared.settings import Settings, load_settings
from skills.gateway import ToolExecutor
from skills.implementations.job_tools import (
    QUEUE_PROMPT_TOOL,
    SKIP_ITEM_TOOL,
    QueuePromptTool,
    SkipItemTool,
)
from skills.registry import ToolRegistry

logger = logging.getLogger(__name__)

console = Console()


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


# ─── Runtime ───────────────────────────────────────────────────

@dataclass
class Runtime:
    """Every wired component of one process."""
    settings: Settings
    db: WorkflowDB
    jobs: JobStore
    ledger: ProcessedItemsStore
    flow_queue: FlowQueue
    handler_registry: HandlerRegistry
    tool_registry: ToolRegistry
    ai: AICapability
    conversation: ConversationLoop
    tasks: PersistentTaskService
    scheduler: SchedulerAdapter
    engine: JobEngine
    commands: CommandRegistry = field(init=False)

    def apply_settings(self, settings: Settings) -> None:
        self.settings = settings
        self.engine.apply_settings(settings)
        if isinstance(self.ai, ModelSelector):
            self.ai.settings = settings

    def close(self) -> None:
        close_ai = getattr(self.ai, "close", None)
        if callable(close_ai):
            close_ai()
        self.engine.services.http_client.close()
        self.db.close()
        self.jobs.close()
        self.ledger.close()
        self.tasks.close()


def build_runtime(
    settings: Settings | None = None,
    ai: AICapability | None = None,
    http_client: httpx.Client | None = None,
    clock: Callable[[], float] = time.time,
) -> Runtime:
    """Wire all layers together. Passing ai/http_client replaces the network-facing parts."""
    settings = settings or load_settings()
    db = WorkflowDB(settings.db_path)
    jobs = JobStore(settings.db_path, clock=clock)
    ledger = ProcessedItemsStore(settings.db_path)
    flow_queue = FlowQueue(db)

    handler_registry = register_default_handlers(HandlerRegistry(), client=http_client)
    tool_registry = ToolRegistry(handler_registry, settings)
    tool_registry.register_global(SKIP_ITEM_TOOL, SkipItemTool(ledger))
    tool_registry.register_global(QUEUE_PROMPT_TOOL, QueuePromptTool(flow_queue))

    ai = ai or ModelSelector(settings)
    conversation = ConversationLoop(ai, ToolExecutor(tool_registry, handler_registry))

    tasks = PersistentTaskService(settings.db_path, clock=clock)
    scheduler = SchedulerAdapter(db, tasks, clock=clock)
    engine = JobEngine(
        settings=settings,
        db=db,
        jobs=jobs,
        ledger=ledger,
        handler_registry=handler_registry,
        tool_registry=tool_registry,
        conversation=conversation,
        tasks=tasks,
        flow_queue=flow_queue,
        scheduler=scheduler,
        http_client=http_client,
        clock=clock,
    )
    scheduler.reregister_all()

    runtime = Runtime(
        settings=settings,
        db=db,
        jobs=jobs,
        ledger=ledger,
        flow_queue=flow_queue,
        handler_registry=handler_registry,
        tool_registry=tool_registry,
        ai=ai,
        conversation=conversation,
        tasks=tasks,
        scheduler=scheduler,
        engine=engine,
    )
    runtime.commands = build_command_registry(runtime)
    return runtime


# ─── CLI Commands ──────────────────────────────────────────────

def run_worker(runtime: Runtime, once: bool = False) -> None:
    """Run due deferred tasks in a loop."""
    poll = max(0.5, runtime.settings.worker_poll_seconds)
    console.print(f"[bold green]Worker started[/] (poll every {poll:.1f}s, Ctrl+C to stop)")
    while True:
        executed = runtime.tasks.run_due()
        if executed:
            logger.info("Worker ran %d task(s)", executed)
        if once:
            return
        time.sleep(poll)


def run_command(runtime: Runtime, cli: CLIAdapter, name: str, raw_args: str | None, drain: bool) -> int:
    try:
        params = cli.parse_arguments(raw_args)
    except WorkflowError as e:
        cli.render_result(name, e.to_dict())
        return 2
    result = runtime.commands.execute(name, params)
    if drain and result.get("success"):
        # Tasks live in process memory; drain them so the run finishes before exit.
        runtime.tasks.run_due()
    cli.render_result(name, result)
    return 0 if result.get("success") else 1


def main() -> None:
    """Entrypoint with CLI args."""
    parser = argparse.ArgumentParser(description="Flowmachine workflow engine")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Bind host (default: API_HOST)")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port (default: API_PORT)")

    subparsers.add_parser("run-due", help="Run deferred tasks that are due now")

    worker_parser = subparsers.add_parser("worker", help="Run due tasks in a polling loop")
    worker_parser.add_argument("--once", action="store_true", help="Run a single pass and exit")

    recover_parser = subparsers.add_parser("recover", help="Recover jobs stuck in running")
    recover_parser.add_argument("--timeout-hours", type=float, default=None)
    recover_parser.add_argument("--flow-id", type=int, default=None)
    recover_parser.add_argument("--dry-run", action="store_true")

    command_parser = subparsers.add_parser("command", help="Execute a control-surface command")
    command_parser.add_argument("name", help="Command name (e.g. run_flow)")
    command_parser.add_argument("arguments", nargs="?", default="", help="JSON object with the command input")
    command_parser.add_argument("--no-drain", action="store_true", help="Do not run due tasks afterwards")

    flows_parser = subparsers.add_parser("flows", help="List flows")
    flows_parser.add_argument("--pipeline-id", type=int, default=None)

    jobs_parser = subparsers.add_parser("jobs", help="List recent jobs")
    jobs_parser.add_argument("--flow-id", type=int, default=None)
    jobs_parser.add_argument("--status", default=None)
    jobs_parser.add_argument("--limit", type=int, default=20)

    args = parser.parse_args()
    settings = load_settings()
    setup_logging(settings.log_level)

    if args.command == "serve":
        import uvicorn

        uvicorn.run(
            "api.server:app",
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            log_level=settings.log_level.lower(),
        )
        return
    if args.command is None:
        parser.print_help()
        return

    runtime = build_runtime(settings)
    cli = CLIAdapter(console)
    exit_code = 0
    try:
        if args.command == "run-due":
            executed = runtime.tasks.run_due()
            console.print(f"[bold green]Executed {executed} task(s)[/]")
        elif args.command == "worker":
            try:
                run_worker(runtime, once=args.once)
            except KeyboardInterrupt:
                pass
        elif args.command == "recover":
            params: dict[str, Any] = {"dry_run": args.dry_run}
            if args.timeout_hours is not None:
                params["timeout_hours"] = args.timeout_hours
            if args.flow_id is not None:
                params["flow_id"] = args.flow_id
            result = runtime.commands.execute("recover_stuck_jobs", params)
            cli.render_result("recover_stuck_jobs", result)
            exit_code = 0 if result.get("success") else 1
        elif args.command == "command":
            exit_code = run_command(runtime, cli, args.name, args.arguments, drain=not args.no_drain)
        elif args.command == "flows":
            params = {"pipeline_id": args.pipeline_id} if args.pipeline_id is not None else {}
            result = runtime.commands.execute("get_flows", params)
            if result.get("success"):
                cli.render_flows(result["flows"])
            else:
                cli.render_result("get_flows", result)
                exit_code = 1
        elif args.command == "jobs":
            params = {"limit": args.limit}
            if args.flow_id is not None:
                params["flow_id"] = args.flow_id
            if args.status:
                params["status"] = args.status
            result = runtime.commands.execute("get_jobs", params)
            if result.get("success"):
                cli.render_jobs(result["jobs"])
            else:
                cli.render_result("get_jobs", result)
                exit_code = 1
        else:
            parser.print_help()
    finally:
        runtime.close()
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
