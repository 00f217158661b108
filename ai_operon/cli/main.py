#!/usr/bin/env python3
"""
AI Operon - Task Orchestrator CLI
Run a task end to end, inspect configured tool servers, dump effective config
"""

import argparse
import asyncio
import logging
import sys

import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ai_operon import __version__
from ai_operon.core.config import DEFAULT_CONFIG_PATH, config
from ai_operon.core.llm_provider import LLMService
from ai_operon.memory.reasoning_store import JsonlReasoningStore
from ai_operon.monitoring.logging_setup import setup_logging
from ai_operon.orchestration.orchestrator import PlanExecutor, TaskReport
from ai_operon.orchestration.plan import PlanningError
from ai_operon.sandbox.docker_executor import SandboxManager
from ai_operon.tools.mcp_client import McpClient

console = Console()
logger = logging.getLogger("ai_operon.cli")


def print_banner():
    """Print startup banner"""
    console.print(Panel.fit(
        f"[bold cyan]AI OPERON[/bold cyan] [white]v{__version__}[/white]\n"
        "[white]Plan, execute in a sandbox, reflect, answer[/white]",
        border_style="cyan"
    ))


def print_success(message):
    console.print(f"[green][OK][/green] {message}")


def print_error(message):
    console.print(f"[red][ERROR][/red] {message}")


def print_info(message):
    console.print(f"[blue]i[/blue] {message}")


def print_report(report: TaskReport):
    """Render the answer and whatever the task left behind"""
    title = "Direct answer" if report.direct else f"Answer ({len(report.trace)} steps, {report.replans} replans)"
    console.print(Panel(report.answer or "(empty)", title=title, border_style="green"))

    failed = [r for r in report.trace if not r.ok]
    if failed:
        print_info(f"{len(failed)} step(s) reported errors")

    if report.artifacts:
        table = Table(title="Artifacts")
        table.add_column("Location", style="cyan")
        table.add_column("Path", style="white")
        for artifact in report.artifacts:
            table.add_row(artifact.location, artifact.path)
        console.print(table)


async def _run_task(args) -> TaskReport:
    llm = LLMService.from_config(config.get_section("llm"))
    sandbox_manager = SandboxManager()
    mcp_client = McpClient()
    store = JsonlReasoningStore()

    started = await mcp_client.start_all()
    for name, ok in started.items():
        if not ok:
            logger.warning("Tool server '%s' did not start", name)

    executor = PlanExecutor(
        llm,
        sandbox_manager=sandbox_manager,
        mcp_client=mcp_client,
        reasoning_store=store
    )
    try:
        return await executor.execute(args.task, args.user, args.session)
    finally:
        await mcp_client.stop_all()
        await sandbox_manager.destroy_all()


def cmd_run(args):
    """Run one task to completion"""
    print_banner()
    print_info(f"Task: {args.task}")

    try:
        with console.status("[bold green]Working..."):
            report = asyncio.run(_run_task(args))
    except PlanningError as e:
        print_error(f"Could not plan the task: {e}")
        return 1

    print_report(report)
    print_success(f"Task {report.task_id} finished")
    return 0


async def _discover_servers():
    client = McpClient()
    try:
        results = await client.start_all()
        return results, client.all_capabilities()
    finally:
        await client.stop_all()


def cmd_servers(args):
    """Start configured tool servers and list their capabilities"""
    servers = config.get("mcp.servers", {}) or {}
    if not servers:
        print_info("No tool servers configured (mcp.servers)")
        return 0

    results, capabilities = asyncio.run(_discover_servers())

    table = Table(title="Tool Servers")
    table.add_column("Server", style="cyan")
    table.add_column("Status")
    table.add_column("Capabilities", style="white")
    for name, ok in results.items():
        status = "[green]running[/green]" if ok else "[red]failed[/red]"
        names = ", ".join(c.name for c in capabilities.get(name, [])) or "-"
        table.add_row(name, status, names)
    console.print(table)
    return 0 if all(results.values()) else 1


def cmd_config(args):
    """Print the effective configuration"""
    console.print(yaml.dump(config.all, default_flow_style=False, sort_keys=False), markup=False, highlight=False)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai-operon",
        description="AI Operon - plan-and-execute task orchestrator"
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help=f"Config file path (default: $AI_OPERON_CONFIG or {DEFAULT_CONFIG_PATH})"
    )
    parser.add_argument("--log-level", type=str, help="Override logging.level")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run a task")
    run.add_argument("task", help="Task text")
    run.add_argument("--user", type=str, default="default", help="User id")
    run.add_argument("--session", type=str, default="default", help="Session id")
    run.set_defaults(func=cmd_run)

    servers = subparsers.add_parser("servers", help="List configured tool servers and their capabilities")
    servers.set_defaults(func=cmd_servers)

    show = subparsers.add_parser("config", help="Print effective configuration")
    show.set_defaults(func=cmd_config)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "func", None):
        parser.print_help()
        return 0

    config.reload(args.config)
    setup_logging(level=args.log_level)

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print_error("Interrupted by user")
        return 130
    except Exception as e:
        logger.exception("Command failed")
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
