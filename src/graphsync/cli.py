"""CLI entry point for graphsync."""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import (
    CONFIG_FILE_NAME,
    STATE_DIR_NAME,
    SyncConfig,
    config_value,
    default_config_toml,
    load_config,
    reset_config,
    set_config_value,
)
from .errors import (
    ConfigValidationError,
    FatalTrackerError,
    GraphsyncError,
    GraphValidationError,
)
from .graph import graph_summary, load_graph, validate_graph
from .snapshot import SnapshotStore
from .sync import RunReport, SyncRunner, discover_documents
from .util import find_repo_root

EXIT_OK = 0
EXIT_NODE_FAILURES = 1
EXIT_INVALID_GRAPH = 2
EXIT_FATAL_TRACKER = 3


def _emit_json(payload: Any) -> None:
    json.dump(payload, sys.stdout, indent=2, default=str)
    print()


def _status_style(status: str) -> str:
    return {
        "completed": "green",
        "running": "cyan",
        "aborted": "yellow",
        "failed": "red",
    }.get(status, "dim")


def _load(args: argparse.Namespace) -> SyncConfig:
    config = load_config(find_repo_root())
    if getattr(args, "dry_run", False):
        config = replace(config, dry_run=True)
    repo = getattr(args, "repo", None)
    if repo:
        config = replace(config, tracker=replace(config.tracker, repository=repo))
    return config


def _progress_console(args: argparse.Namespace, console: Console) -> Console:
    # --json keeps stdout clean for the summary.
    return Console(stderr=True) if getattr(args, "json", False) else console


def _print_report(report: RunReport, console: Console) -> None:
    counts = report.reconcile.counts()
    table = Table(title=f"Run {report.run_id}", expand=False, show_edge=False, pad_edge=False)
    table.add_column("Outcome", style="bold")
    table.add_column("Tasks", justify="right")
    for status, n in counts.items():
        if n:
            table.add_row(status, str(n))
    if report.sweep is not None:
        blocked = sum(1 for ev in report.sweep.evaluations if ev.blocked)
        table.add_row("blocked", str(blocked))
    linked = sum(len(link.linked) for link in report.links)
    if linked:
        table.add_row("linked", str(linked))
    console.print(table)

    for outcome in report.reconcile.outcomes:
        if outcome.error:
            console.print(Text(f"  {outcome.node_id} [{outcome.status}]: {outcome.error}", style="red"))
    for warning in report.warnings:
        console.print(Text(f"  warning: {warning}", style="yellow"))

    style = "green" if report.ok else "red"
    title = "dry run" if report.dry_run else report.status
    console.print(Panel(
        f"[bold]{report.run_id}[/bold] {title}",
        style=style,
        expand=False,
    ))


def _finish(report: RunReport, args: argparse.Namespace, console: Console) -> int:
    if args.json:
        _emit_json(report.to_dict())
    else:
        _print_report(report, console)
    return report.exit_code


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="graphsync init", add_help=False)
    p.add_argument("--force", action="store_true")
    args = p.parse_args(argv)

    root = find_repo_root()
    raw = os.environ.get("GRAPHSYNC_STATE_DIR", "").strip()
    state = Path(raw).expanduser() if raw else root / STATE_DIR_NAME
    state.mkdir(parents=True, exist_ok=True)
    (state / "snapshots").mkdir(exist_ok=True)
    (state / "bin").mkdir(exist_ok=True)

    config_path = state / CONFIG_FILE_NAME
    if not config_path.exists() or args.force:
        config_path.write_text(default_config_toml(), encoding="utf-8")

    console.print(Panel(
        f"Initialized [bold]{state.name}/[/bold] in {state.parent}",
        style="green",
        expand=False,
    ))
    return EXIT_OK


def cmd_sync(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="graphsync sync", add_help=False)
    p.add_argument("graph")
    p.add_argument("--repo", default=None)
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--json", action="store_true")
    args = p.parse_args(argv)

    graph = load_graph(Path(args.graph))
    runner = SyncRunner(_load(args), console=_progress_console(args, console))
    report = runner.sync(graph)
    return _finish(report, args, console)


def cmd_parse(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="graphsync parse", add_help=False)
    p.add_argument("documents", nargs="*")
    p.add_argument("--output", default=None)
    p.add_argument("--repo", default=None)
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--json", action="store_true")
    args = p.parse_args(argv)

    config = _load(args)
    documents = [Path(d) for d in args.documents] or discover_documents(config)
    if not documents:
        console.print(Text(f"No documents match {config.prd_path_glob}", style="yellow"))
        return EXIT_OK
    if args.output and len(documents) > 1:
        console.print(Text("--output needs exactly one document", style="red"))
        return EXIT_NODE_FAILURES

    runner = SyncRunner(config, console=_progress_console(args, console))
    code = EXIT_OK
    reports = []
    for doc in documents:
        report = runner.parse(doc, output=Path(args.output) if args.output else None)
        reports.append(report)
        if not args.json:
            _print_report(report, console)
        code = max(code, report.exit_code)
    if args.json:
        _emit_json([r.to_dict() for r in reports])
    return code


def cmd_resume(argv: list[str], console: Console) -> int:
    if not argv or argv[0] in ("-h", "--help"):
        console.print("[bold]graphsync resume[/bold] - finish an interrupted run\n")
        console.print("  graphsync resume [dim]<run-id>[/dim] [dim][--json][/dim]\n")
        store = SnapshotStore(load_config(find_repo_root()).snapshot_dir)
        _print_runs([s.brief() for s in store.list()][-10:], console)
        return EXIT_OK

    p = argparse.ArgumentParser(prog="graphsync resume", add_help=False)
    p.add_argument("run_id")
    p.add_argument("--json", action="store_true")
    args = p.parse_args(argv)

    runner = SyncRunner(_load(args), console=_progress_console(args, console))
    report = runner.resume(args.run_id)
    return _finish(report, args, console)


def cmd_sweep(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="graphsync sweep", add_help=False)
    p.add_argument("--run-id", default=None)
    p.add_argument("--json", action="store_true")
    args = p.parse_args(argv)

    runner = SyncRunner(_load(args), console=_progress_console(args, console))
    result = runner.sweep(args.run_id)
    if args.json:
        _emit_json(result.to_dict())
    else:
        console.print(Panel(
            f"{len(result.labelled)} newly blocked, {len(result.unlabelled)} unblocked, "
            f"{len(result.unchanged)} unchanged",
            title="sweep",
            style="red" if result.failed else "green",
            expand=False,
        ))
    return EXIT_NODE_FAILURES if result.failed else EXIT_OK


def cmd_breakdown(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="graphsync breakdown", add_help=False)
    p.add_argument("node_id")
    p.add_argument("--depth", type=int, default=None)
    p.add_argument("--threshold", type=int, default=None)
    p.add_argument("--document", default=None, help="Source document when the task id exists in several")
    p.add_argument("--force", action="store_true")
    p.add_argument("--json", action="store_true")
    args = p.parse_args(argv)

    runner = SyncRunner(_load(args), console=_progress_console(args, console))
    report = runner.breakdown(
        args.node_id,
        depth=args.depth,
        threshold=args.threshold,
        force=args.force,
        document=args.document,
    )
    if report.breakdown is not None and report.breakdown.noop:
        if args.json:
            _emit_json(report.to_dict())
        else:
            console.print(Text(f"{args.node_id} is already broken down; nothing to do", style="dim"))
        return EXIT_OK
    return _finish(report, args, console)


def cmd_validate(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="graphsync validate", add_help=False)
    p.add_argument("graph")
    p.add_argument("--json", action="store_true")
    args = p.parse_args(argv)

    graph = load_graph(Path(args.graph))
    validate_graph(graph)
    summary = graph_summary(graph)
    summary["warnings"] = list(graph.warnings)
    if args.json:
        _emit_json(summary)
        return EXIT_OK

    table = Table(title="Task graph", expand=False, show_edge=False, pad_edge=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("version", summary["version"])
    table.add_row("tasks", str(summary["total_tasks"]))
    for name, n in summary["complexity_distribution"].items():
        table.add_row(f"complexity {name}", str(n))
    for name, n in summary["priority_distribution"].items():
        table.add_row(f"priority {name}", str(n))
    console.print(table)
    for warning in graph.warnings:
        console.print(Text(f"  warning: {warning}", style="yellow"))
    console.print(Panel("Task graph is valid", style="green", expand=False))
    return EXIT_OK


def _print_runs(runs: list[dict[str, Any]], console: Console) -> None:
    if not runs:
        console.print(Text("No runs recorded yet.", style="dim"))
        return
    table = Table(title="Runs", expand=False, show_edge=False, pad_edge=False)
    table.add_column("Run", style="bold")
    table.add_column("Kind")
    table.add_column("Document")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Source", style="dim")
    table.add_column("Updated", style="dim")
    for run in runs:
        table.add_row(
            run["run_id"],
            run["kind"],
            run.get("document") or "-",
            Text(run["status"], style=_status_style(run["status"])),
            f"{run['processed']}/{run['nodes']}",
            (run["source_hash"] or "")[:12],
            run["updated_at"],
        )
    console.print(table)


def cmd_runs(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="graphsync runs", add_help=False)
    p.add_argument("--json", action="store_true")
    args = p.parse_args(argv)

    runs = [s.brief() for s in SnapshotStore(_load(args).snapshot_dir).list()]
    if args.json:
        _emit_json(runs)
    else:
        _print_runs(runs, console)
    return EXIT_OK


def cmd_config(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="graphsync config", add_help=False)
    p.add_argument("action", nargs="?", default="show", choices=("show", "get", "set", "reset"))
    p.add_argument("key", nargs="?")
    p.add_argument("value", nargs="?")
    p.add_argument("--json", action="store_true")
    args = p.parse_args(argv)

    config = _load(args)
    if args.action in ("get", "set") and not args.key:
        raise ConfigValidationError(f"graphsync config {args.action} needs a key")
    if args.action == "set" and args.value is None:
        raise ConfigValidationError("graphsync config set needs a value")

    if args.action == "get":
        value = config_value(config, args.key)
        if args.json:
            _emit_json({args.key: value})
        else:
            console.print(str(value))
        return EXIT_OK
    if args.action == "set":
        updated = set_config_value(config, args.key, args.value)
        console.print(Text(f"{args.key} = {config_value(updated, args.key)}", style="green"))
        return EXIT_OK
    if args.action == "reset":
        reset_config(config, args.key)
        what = args.key or "all settings"
        console.print(Text(f"Reset {what} to the default", style="green"))
        return EXIT_OK

    data = config.as_dict()
    if args.json:
        _emit_json(data)
        return EXIT_OK

    table = Table(title="Effective configuration", expand=False, show_edge=False, pad_edge=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for section, values in data.items():
        if isinstance(values, dict):
            for key, value in values.items():
                table.add_row(f"{section}.{key}", str(value))
        else:
            table.add_row(section, str(values))
    console.print(table)
    return EXIT_OK


def cmd_serve(argv: list[str], console: Console) -> int:
    p = argparse.ArgumentParser(prog="graphsync serve", add_help=False)
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8430)
    p.add_argument("--reload", action="store_true")
    args = p.parse_args(argv)

    import uvicorn

    console.print(
        Panel(
            f"Starting webhook service at [bold]http://{args.host}:{args.port}[/bold]",
            title="graphsync serve",
            style="cyan",
            expand=False,
        )
    )
    uvicorn.run(
        "graphsync.web:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )
    return EXIT_OK


COMMANDS: dict[str, tuple[Callable[[list[str], Console], int], str]] = {
    "init": (cmd_init, "Scaffold .graphsync/ with a default config.toml"),
    "sync": (cmd_sync, "Reconcile a task graph file into the tracker"),
    "parse": (cmd_parse, "Run the graph producer on documents, then sync"),
    "resume": (cmd_resume, "Finish an interrupted run from its snapshot"),
    "sweep": (cmd_sweep, "Re-evaluate blocked labels for the latest run"),
    "breakdown": (cmd_breakdown, "Split one task into subtasks"),
    "validate": (cmd_validate, "Validate a task graph file without writing"),
    "runs": (cmd_runs, "List recorded runs"),
    "config": (cmd_config, "Show, get, set or reset configuration"),
    "serve": (cmd_serve, "Run the webhook service"),
}


def _print_help(console: Console) -> None:
    help_text = Text()
    help_text.append("graphsync", style="bold")
    help_text.append(f" {__version__}", style="dim")
    help_text.append(" - reconcile task graphs into an issue tracker")
    console.print(help_text)
    console.print()

    cmds = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    cmds.add_column("Command", style="bold cyan")
    cmds.add_column("Description")
    for name, (_, about) in COMMANDS.items():
        cmds.add_row(f"graphsync {name}", about)
    console.print(cmds)
    console.print()

    opts = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    opts.add_column("Option", style="bold")
    opts.add_column("Description", style="dim")
    opts.add_row("--dry-run", "Run against a scratch tracker; write nothing")
    opts.add_row("--repo OWNER/NAME", "Target repository")
    opts.add_row("--json", "JSON output")
    opts.add_row("--version", "Show version")
    console.print(opts)


def run(argv: list[str], console: Console) -> int:
    name, rest = argv[0], argv[1:]
    entry = COMMANDS.get(name)
    if entry is None:
        console.print(Text(f"Unknown command: {name}", style="red"))
        _print_help(console)
        return EXIT_NODE_FAILURES

    try:
        return entry[0](rest, console)
    except GraphValidationError as exc:
        console.print(Text("Task graph is invalid:", style="red bold"))
        for problem in exc.problems:
            console.print(Text(f"  - {problem}", style="red"))
        return EXIT_INVALID_GRAPH
    except FatalTrackerError as exc:
        console.print(Panel(f"Tracker error: {exc}", style="red", expand=False))
        return EXIT_FATAL_TRACKER
    except ConfigValidationError as exc:
        console.print(Text(f"Configuration error: {exc}", style="red"))
        return EXIT_NODE_FAILURES
    except GraphsyncError as exc:
        console.print(Text(str(exc), style="red"))
        return EXIT_NODE_FAILURES
    except KeyboardInterrupt:
        console.print(Text("Interrupted.", style="yellow"))
        return 130


def main(argv: list[str] | None = None) -> None:
    raw = argv if argv is not None else sys.argv[1:]
    console = Console()

    if "--version" in raw:
        console.print(Text(f"graphsync {__version__}", style="bold"))
        sys.exit(0)
    if not raw or raw == ["--help"] or raw == ["-h"]:
        _print_help(console)
        sys.exit(0)

    sys.exit(run(raw, console))


if __name__ == "__main__":
    main()
