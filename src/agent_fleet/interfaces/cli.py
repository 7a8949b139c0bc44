"""Command line interface for agent-fleet."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agent_fleet.config import FleetConfig, load_config
from agent_fleet.core.context import FleetContext
from agent_fleet.detection.classifier import ErrorClassifier
from agent_fleet.detection.sequence import analyze_message_sequence, get_recovery_prompt_for_analysis
from agent_fleet.monitoring.logging import get_logger, setup_logging
from agent_fleet.sync.engine import SyncResult

logger = get_logger(__name__)

STATUS_STYLES = {
    "todo": "white",
    "draft": "dim",
    "inprogress": "cyan",
    "inreview": "yellow",
    "done": "green",
    "cancelled": "dim",
    "blocked": "red",
}


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def command_classify(console: Console, text: str, as_json: bool = False) -> int:
    """Classify a piece of agent output and show the result."""
    classification = ErrorClassifier().classify(text)
    if as_json:
        _print_json(classification.to_dict())
        return 0

    table = Table(title="Classification", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Pattern", classification.pattern.value)
    table.add_row("Confidence", f"{classification.confidence:.2f}")
    table.add_row("Severity", classification.severity.value)
    table.add_row("Details", classification.details)
    if classification.raw_match:
        table.add_row("Match", classification.raw_match)
    if classification.remediation:
        table.add_row("Remediation", classification.remediation)
    console.print(table)
    return 0


def _load_messages(path: Path) -> List[Any]:
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of messages")
    return data


def command_analyze(console: Console, path: Path, title: str, as_json: bool = False) -> int:
    """Run sequence analysis over a JSON message log."""
    try:
        messages = _load_messages(path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot read {path}: {e}[/red]")
        return 1

    analysis = analyze_message_sequence(messages)
    prompt = get_recovery_prompt_for_analysis(title, analysis)
    if as_json:
        data = analysis.to_dict()
        data["recovery_prompt"] = prompt
        _print_json(data)
        return 0

    if not analysis.patterns:
        console.print("[green]No problematic patterns detected.[/green]")
        return 0

    table = Table(title=f"Sequence analysis ({len(messages)} messages)")
    table.add_column("Pattern", style="cyan")
    table.add_column("Primary", style="yellow")
    table.add_column("Details", style="white")
    for pattern in analysis.patterns:
        table.add_row(
            pattern.value,
            "*" if pattern == analysis.primary else "",
            analysis.details.get(pattern, ""),
        )
    console.print(table)
    if prompt:
        console.print(Panel(prompt, title="Recovery prompt", border_style="blue"))
    return 0


def _render_sync_result(console: Console, result: SyncResult) -> None:
    style = {"ok": "green", "partial": "yellow"}.get(result.status, "red")
    table = Table(title=f"Sync cycle: [{style}]{result.status}[/{style}]", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Pulled", str(result.pulled))
    table.add_row("Pushed", str(result.pushed))
    table.add_row("Created", str(result.created))
    table.add_row("Removed", str(result.removed))
    table.add_row("Conflicts", str(len(result.conflicts)))
    table.add_row("Project mismatches", str(len(result.project_mismatches)))
    if result.retry_after:
        table.add_row("Retry after", f"{result.retry_after:.0f}s")
    table.add_row("Duration", f"{result.duration_seconds:.2f}s")
    console.print(table)
    for conflict in result.conflicts:
        console.print(
            f"[yellow]conflict[/yellow] {conflict.task_id} (#{conflict.external_id}): "
            f"local={conflict.local_owner} remote={conflict.remote_owner}"
        )
    for error in result.errors:
        console.print(f"[red]✗ {error}[/red]")


async def _run_forever(ctx: FleetContext) -> None:
    await ctx.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await ctx.stop()


def command_sync(console: Console, config: FleetConfig, once: bool, as_json: bool = False) -> int:
    ctx = FleetContext(config)
    if ctx.sync_engine is None:
        console.print("[red]No repository configured. Set GITHUB_REPOSITORY or sync.repository.[/red]")
        return 1

    if not once:
        console.print(
            f"[cyan]Syncing every {config.sync.poll_interval_seconds:.0f}s "
            f"({ctx.sync_engine.mode} mode). Ctrl+C to stop.[/cyan]"
        )
        try:
            asyncio.run(_run_forever(ctx))
        except KeyboardInterrupt:
            console.print("[dim]Stopped.[/dim]")
        return 0

    result = asyncio.run(ctx.sync_once())
    if as_json:
        _print_json(result.to_dict())
    else:
        _render_sync_result(console, result)
    return 0 if result.status in ("ok", "partial") else 2


def command_status(console: Console, config: FleetConfig, as_json: bool = False) -> int:
    ctx = FleetContext(config)
    status = ctx.get_status()
    tasks = ctx.store.get_all_tasks()
    if as_json:
        status["task_list"] = [task.to_dict() for task in tasks]
        _print_json(status)
        return 0

    sync = status["sync"]
    summary = Table(title="agent-fleet", show_header=False)
    summary.add_column("Key", style="cyan")
    summary.add_column("Value", style="white")
    summary.add_row("Database", str(config.resolved_db_path))
    summary.add_row("Tasks", f"{status['tasks']} ({status['dirty_tasks']} unsynced)")
    summary.add_row("Board", config.sync.repository or "[dim]not configured[/dim]")
    if sync["enabled"]:
        summary.add_row("Mode", f"{sync['mode']} {sync['board_id'] or ''}".strip())
    remaining = sync["rate_limit_remaining_seconds"]
    summary.add_row("Rate limit", f"[red]{remaining:.0f}s remaining[/red]" if remaining else "[green]clear[/green]")
    console.print(summary)

    if not tasks:
        console.print("[dim]No tasks tracked yet.[/dim]")
        return 0

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Owner", style="magenta")
    table.add_column("Issue", style="blue")
    table.add_column("Title", style="white")
    for task in tasks:
        style = STATUS_STYLES.get(task.status, "white")
        table.add_row(
            task.id,
            f"[{style}]{task.status}[/{style}]" + (" *" if task.dirty else ""),
            task.shared_state_owner_id or task.claimed_by or "",
            f"#{task.external_id}" if task.external_id else "",
            (task.title or "")[:60],
        )
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Construct the CLI argument parser."""
    parser = argparse.ArgumentParser(description="agent-fleet command line interface")
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    classify_parser = subparsers.add_parser("classify", help="Classify agent output text")
    classify_parser.add_argument("text", nargs="+", help="Output or error text (use '-' to read stdin)")
    classify_parser.add_argument("--json", action="store_true", help="Output as JSON")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze a JSON message log for behavior patterns")
    analyze_parser.add_argument("file", help="JSON file with a list of messages")
    analyze_parser.add_argument("--title", default="this task", help="Task title used in the recovery prompt")
    analyze_parser.add_argument("--json", action="store_true", help="Output as JSON")

    sync_parser = subparsers.add_parser("sync", help="Reconcile local tasks with the GitHub board")
    sync_parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    sync_parser.add_argument("--json", action="store_true", help="Output as JSON (with --once)")

    status_parser = subparsers.add_parser("status", help="Show local tasks and sync state")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    console = Console()
    setup_logging(debug=args.debug)

    if args.command == "classify":
        text = sys.stdin.read() if args.text == ["-"] else " ".join(args.text)
        return command_classify(console, text, args.json)

    if args.command == "analyze":
        return command_analyze(console, Path(args.file), args.title, args.json)

    try:
        config = load_config(Path(args.config) if args.config else None)
    except (ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        return 1

    if args.command == "sync":
        return command_sync(console, config, args.once, args.json)

    if args.command == "status":
        return command_status(console, config, args.json)

    parser.error(f"Unknown command: {args.command}")
    return 1


if __name__ == "__main__":  # pragma: no cover - manual execution
    sys.exit(main())
