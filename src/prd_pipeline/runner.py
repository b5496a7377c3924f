#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for PRD Pipeline.

Moves items from idea to merged review request by running an agent for each
phase and advancing state only on observed evidence.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .config import PipelineConfig, load_config, write_default_config
from .constants import EXIT_CODE_INTERRUPTED, PLAN_FILE, PROGRESS_LOG_FILE, RESEARCH_FILE, STATE_DIR_NAME
from .doctor import diagnose, fix
from .errors import Interrupted, PipelineError, StorageError
from .git_utils import GitClient
from .ideas import ingest_ideas, parse_ideas
from .models import Item, parse_state
from .orchestrator import ItemRunResult, Orchestrator, Phase, PhaseOutcome, RunOptions, next_phase, selection_key
from .states import WORKFLOW_STATES
from .storage import FileItemStore, find_repo_root


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


_PHASE_COMMANDS: dict[str, Phase] = {
    "research": Phase.RESEARCH,
    "plan": Phase.PLAN,
    "implement": Phase.IMPLEMENT,
    "pr": Phase.REVIEW,
    "complete": Phase.COMPLETE,
}


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", default=argparse.SUPPRESS, help="Enable debug logging")
    common.add_argument("-q", "--quiet", action="store_true", default=argparse.SUPPRESS, help="Only log warnings and errors")
    common.add_argument(
        "--dry-run",
        action="store_true",
        default=argparse.SUPPRESS,
        help="Preview operations without running the agent, git, or writing state",
    )
    common.add_argument(
        "--cwd",
        type=Path,
        default=argparse.SUPPRESS,
        help="Working directory (default: current directory)",
    )

    parser = argparse.ArgumentParser(
        prog="prd-pipeline",
        description="PRD Pipeline - drive work items from idea to merged review request",
        parents=[common],
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    init_p = sub.add_parser("init", parents=[common], help=f"Create {STATE_DIR_NAME}/ in this repository")
    init_p.add_argument("--force", action="store_true", help="Overwrite an existing config file")

    status_p = sub.add_parser("status", parents=[common], help="Summarize items by state")
    status_p.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    list_p = sub.add_parser("list", parents=[common], help="List items")
    list_p.add_argument("--state", type=str, default=None, help="Only show items in this state")
    list_p.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    show_p = sub.add_parser("show", parents=[common], help="Show one item")
    show_p.add_argument("id", help="Item ID")
    show_p.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    for name, phase in _PHASE_COMMANDS.items():
        phase_p = sub.add_parser(name, parents=[common], help=f"Run the {phase.value} phase for an item")
        phase_p.add_argument("id", help="Item ID")
        phase_p.add_argument("--force", action="store_true", help="Run the agent even if artifacts exist")

    run_p = sub.add_parser("run", parents=[common], help="Run an item through every remaining phase")
    run_p.add_argument("id", help="Item ID")
    run_p.add_argument("--force", action="store_true", help="Run the agent even if artifacts exist")
    run_p.add_argument("--max-iterations", type=int, default=None, help="Phase-run budget")

    sub.add_parser("next", parents=[common], help="Run one phase on the highest-priority item")

    all_p = sub.add_parser("all", parents=[common], help="Run every unfinished item to completion")
    all_p.add_argument("--max-workers", type=int, default=None, help="Items processed concurrently")
    all_p.add_argument("--max-iterations", type=int, default=None, help="Phase-run budget per item")
    all_p.add_argument("--json", action="store_true", help="Print machine-readable JSON")

    ideas_p = sub.add_parser("ideas", parents=[common], help="Create items from a list of ideas")
    ideas_p.add_argument("-f", "--file", type=Path, default=None, help="Ideas file (default: stdin)")

    doctor_p = sub.add_parser("doctor", parents=[common], help="Check items against their artifacts")
    doctor_p.add_argument("--fix", action="store_true", help="Repair fixable issues")
    doctor_p.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    return parser


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _open_project(args: argparse.Namespace) -> tuple[Path, FileItemStore, PipelineConfig]:
    start = getattr(args, "cwd", None) or Path(".")
    root = find_repo_root(start)
    return root, FileItemStore(root), load_config(root)


def _build_orchestrator(args: argparse.Namespace, root: Path, store: FileItemStore, config: PipelineConfig) -> Orchestrator:
    return Orchestrator(store, config, root, git=GitClient(root, dry_run=_flag(args, "dry_run")))


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")


def _items_table(items: list[Item], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("State")
    table.add_column("Priority")
    table.add_column("Title")
    table.add_column("Last error", style="red")
    for item in items:
        table.add_row(
            item.id,
            item.state.value,
            item.priority_hint.value if item.priority_hint else "-",
            item.title,
            item.last_error or "",
        )
    return table


# -- commands ---------------------------------------------------------------


def _init_command(args: argparse.Namespace) -> int:
    start = getattr(args, "cwd", None) or Path(".")
    root = find_repo_root(start, require_state_dir=False)
    store = FileItemStore(root)
    store.ensure_layout()
    path = write_default_config(root, overwrite=bool(args.force))
    store.refresh_index()
    Console().print(f"Initialized [bold]{store.state_dir}[/bold] (config: {path.name})")
    return 0


def _status_command(args: argparse.Namespace) -> int:
    root, store, _ = _open_project(args)
    items = store.list_items()
    counts = {state.value: 0 for state in WORKFLOW_STATES}
    for item in items:
        counts[item.state.value] += 1
    pending = sorted((i for i in items if not i.is_done()), key=selection_key)
    if args.json:
        _write_json(
            {
                "project_dir": str(root),
                "total": len(items),
                "by_state": counts,
                "next_item": pending[0].id if pending else None,
            }
        )
        return 0
    console = Console()
    table = Table(title=f"Items in {root}")
    table.add_column("State")
    table.add_column("Count", justify="right")
    for state, count in counts.items():
        table.add_row(state, str(count))
    console.print(table)
    if pending:
        phase = next_phase(pending[0])
        console.print(f"Next: [cyan]{pending[0].id}[/cyan] ({phase.value if phase else '-'})")
    return 0


def _list_command(args: argparse.Namespace) -> int:
    _, store, _ = _open_project(args)
    items = store.list_items()
    if args.state:
        wanted = parse_state(args.state)
        if wanted is None:
            choices = ", ".join(s.value for s in WORKFLOW_STATES)
            sys.stderr.write(f"Unknown state '{args.state}' (expected one of: {choices})\n")
            return 2
        items = [item for item in items if item.state == wanted]
    if args.json:
        _write_json([item.to_dict() for item in items])
        return 0
    Console().print(_items_table(items, "Items"))
    return 0


def _show_command(args: argparse.Namespace) -> int:
    _, store, _ = _open_project(args)
    item = store.read_item(args.id)
    doc = store.read_requirements_doc(item.id)
    artifacts = {name: store.artifact_exists(item.id, name) for name in (RESEARCH_FILE, PLAN_FILE, PROGRESS_LOG_FILE)}
    if args.json:
        _write_json(
            {
                "item": item.to_dict(),
                "artifacts": artifacts,
                "requirements_doc": doc.to_dict() if doc else None,
            }
        )
        return 0
    console = Console()
    console.print(f"[bold cyan]{item.id}[/bold cyan] {item.title}")
    console.print(f"State:  {item.state.value}")
    if item.branch:
        console.print(f"Branch: {item.branch}")
    if item.review_url:
        console.print(f"Review: {item.review_url}")
    if item.last_error:
        console.print(f"[red]Last error: {item.last_error}[/red]")
    for name, present in artifacts.items():
        console.print(f"{name}: {'yes' if present else 'no'}")
    if doc is not None:
        table = Table(title="Sub-tasks")
        table.add_column("ID", style="cyan")
        table.add_column("Status")
        table.add_column("Title")
        for subtask in doc.subtasks:
            table.add_row(subtask.id, subtask.status.value, subtask.title)
        console.print(table)
    return 0


def _report_outcome(outcome: PhaseOutcome) -> int:
    console = Console()
    if outcome.error is not None:
        console.print(f"[red]{outcome.item_id}: {outcome.error}[/red]")
        return outcome.error.to_exit_code()
    state = outcome.item.state.value if outcome.item else "?"
    console.print(f"[green]{outcome.item_id} -> {state}[/green]")
    return 0


def _phase_command(args: argparse.Namespace) -> int:
    root, store, config = _open_project(args)
    orchestrator = _build_orchestrator(args, root, store, config)
    options = RunOptions(force=_flag(args, "force"), dry_run=_flag(args, "dry_run"))
    outcome = orchestrator.run_phase(args.id, options, expected_phase=_PHASE_COMMANDS[args.command])
    return _report_outcome(outcome)


def _report_item(result: ItemRunResult) -> int:
    console = Console()
    state = result.final_state.value if result.final_state else "?"
    if result.error is not None:
        console.print(f"[red]{result.item_id} stopped at {state}: {result.error}[/red]")
        return result.error.to_exit_code()
    console.print(f"[green]{result.item_id} is {state} after {result.phases_run} phase(s)[/green]")
    return 0


def _run_command(args: argparse.Namespace) -> int:
    root, store, config = _open_project(args)
    orchestrator = _build_orchestrator(args, root, store, config)
    options = RunOptions(
        force=_flag(args, "force"),
        dry_run=_flag(args, "dry_run"),
        max_iterations=args.max_iterations,
    )
    return _report_item(orchestrator.run_item(args.id, options))


def _next_command(args: argparse.Namespace) -> int:
    root, store, config = _open_project(args)
    orchestrator = _build_orchestrator(args, root, store, config)
    outcome = orchestrator.orchestrate_next(RunOptions(dry_run=_flag(args, "dry_run")))
    if outcome is None:
        Console().print("All items are done.")
        return 0
    return _report_outcome(outcome)


def _all_command(args: argparse.Namespace) -> int:
    root, store, config = _open_project(args)
    orchestrator = _build_orchestrator(args, root, store, config)
    options = RunOptions(
        dry_run=_flag(args, "dry_run"),
        max_iterations=args.max_iterations,
        max_workers=args.max_workers,
    )
    summary = orchestrator.orchestrate_all(options)
    if args.json:
        _write_json(
            {
                "completed": summary.completed,
                "failed": summary.failed,
                "remaining": summary.remaining,
                "errors": summary.errors,
            }
        )
    else:
        console = Console()
        console.print(f"Completed: {len(summary.completed)}  Failed: {len(summary.failed)}  Remaining: {len(summary.remaining)}")
        for item_id in summary.failed:
            console.print(f"[red]- {item_id}: {summary.errors.get(item_id, '')}[/red]")
    return 1 if summary.failed else 0


def _ideas_command(args: argparse.Namespace) -> int:
    _, store, _ = _open_project(args)
    if args.file is not None:
        try:
            text = args.file.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Unable to read {args.file}: {exc}") from exc
    else:
        text = sys.stdin.read()
    if _flag(args, "dry_run"):
        for title in parse_ideas(text):
            Console().print(f"[dry-run] would create: {title}")
        return 0
    created = ingest_ideas(store, text)
    Console().print(f"Created {len(created)} item(s)")
    return 0


def _doctor_command(args: argparse.Namespace) -> int:
    _, store, _ = _open_project(args)
    findings = diagnose(store)
    fixed = 0
    if args.fix and not _flag(args, "dry_run"):
        fixed = fix(store, findings)
    if args.json:
        _write_json(
            {
                "findings": [
                    {"item_id": f.item_id, "code": f.code, "message": f.message, "fixable": f.fixable}
                    for f in findings
                ],
                "fixed": fixed,
            }
        )
    else:
        console = Console()
        if not findings:
            console.print("[green]No issues found[/green]")
        for finding in findings:
            marker = " (fixable)" if finding.fixable else ""
            console.print(f"- {finding.code}: {finding.message}{marker}")
        if fixed:
            console.print(f"Fixed {fixed} issue(s)")
    remaining = [f for f in findings if not (args.fix and f.fixable)]
    return 1 if remaining else 0


_COMMANDS: dict[str, Callable[[argparse.Namespace], int]] = {
    "init": _init_command,
    "status": _status_command,
    "list": _list_command,
    "show": _show_command,
    "run": _run_command,
    "next": _next_command,
    "all": _all_command,
    "ideas": _ideas_command,
    "doctor": _doctor_command,
    **{name: _phase_command for name in _PHASE_COMMANDS},
}


def main(argv: Optional[list[str]] = None) -> None:
    """Run the `prd-pipeline` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Always, carrying the command's exit code.
    """
    args = _build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    if _flag(args, "verbose"):
        _configure_logging("DEBUG")
    elif _flag(args, "quiet"):
        _configure_logging("WARNING")
    else:
        _configure_logging("INFO")

    try:
        code = _COMMANDS[args.command](args)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        raise SystemExit(EXIT_CODE_INTERRUPTED) from None
    except Interrupted as exc:
        logger.warning("{}", exc)
        raise SystemExit(exc.to_exit_code()) from None
    except PipelineError as exc:
        logger.error("{}", exc)
        raise SystemExit(exc.to_exit_code()) from None
    raise SystemExit(code)


if __name__ == "__main__":
    main()
