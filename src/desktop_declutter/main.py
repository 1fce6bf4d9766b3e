"""Main entry point for the desktop declutter daemon."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from .classifier import Act
from .config import DeclutterConfig
from .errors import ConfigError, UndoError, UndoStale
from .executor import ActionExecutor
from .ledger import Ledger
from .orchestrator import Orchestrator


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        argv: Arguments to parse. Uses ``sys.argv`` if None.

    Returns:
        Parsed arguments.

    """
    parser = argparse.ArgumentParser(
        prog="desktop-declutter",
        description="Daemon that keeps your desktop tidy by filing away new files",
    )

    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help="Path to configuration file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command (default)
    run_parser = subparsers.add_parser("run", help="Run the daemon")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Tidy once and exit instead of watching continuously",
    )

    # Scan command
    scan_parser = subparsers.add_parser("scan", help="Show what would happen without touching files")
    scan_parser.add_argument(
        "--dir",
        "-d",
        type=Path,
        default=None,
        help="Specific directory to scan",
    )

    # Config command
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.add_argument(
        "--init",
        action="store_true",
        help="Create default configuration file",
    )
    config_parser.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )

    # History and undo
    history_parser = subparsers.add_parser("history", help="Show recent actions")
    history_parser.add_argument(
        "--limit",
        "-n",
        type=int,
        default=20,
        help="Number of entries to show",
    )

    undo_parser = subparsers.add_parser("undo", help="Undo an action from the history")
    undo_parser.add_argument("entry_id", type=int, help="Ledger id shown by 'history'")

    # Trash command
    trash_parser = subparsers.add_parser("trash", help="Manage deleted files")
    trash_parser.add_argument(
        "--list",
        action="store_true",
        dest="list_files",
        help="List files in the trash",
    )
    trash_parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Remove trash older than the retention period",
    )

    subparsers.add_parser("recover", help="Finish or roll back moves interrupted by a crash")

    return parser.parse_args(argv)


def _cli_logger() -> logging.Logger:
    return logging.getLogger("desktop-declutter")


def cmd_scan(config: DeclutterConfig, args: argparse.Namespace) -> int:
    """Execute scan command.

    Args:
        config: Declutter configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    console = Console()
    orchestrator = Orchestrator(config, logger=_cli_logger())
    results = orchestrator.preview([args.dir] if args.dir else None)
    planned = [(record, decision) for record, decision in results if isinstance(decision, Act)]

    if not planned:
        console.print(f"[green]Nothing to tidy ({len(results)} files checked)[/green]")
        return 0

    table = Table(title=f"{len(planned)} of {len(results)} files would be tidied")
    table.add_column("File", style="cyan")
    table.add_column("Rule", style="magenta")
    table.add_column("Action", style="green")
    table.add_column("Location", style="dim")

    for record, decision in planned:
        table.add_row(
            record.name,
            decision.rule.name,
            _describe(decision.action),
            str(record.path.parent),
        )

    console.print(table)
    return 0


def _describe(action: object) -> str:
    kind = getattr(action, "kind", type(action).__name__.lower())
    for attr in ("destination", "label"):
        value = getattr(action, attr, None)
        if value is not None:
            return f"{kind} -> {value}"
    return kind


def cmd_config(config: DeclutterConfig, args: argparse.Namespace) -> int:
    """Execute config command.

    Args:
        config: Declutter configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    console = Console()

    if args.init:
        config_path = args.config or DeclutterConfig.get_config_path()
        if config_path.exists():
            console.print(f"[yellow]Config already exists: {config_path}[/yellow]")
            return 1
        config.save(config_path)
        console.print(f"[green]Created config: {config_path}[/green]")
        return 0

    if args.show:
        table = Table(title="Current Configuration")
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Watch directories", "\n".join(str(d) for d in config.watch_directories))
        table.add_row("Recursive", str(config.recursive))
        table.add_row("Rules", "\n".join(r.name for r in config.build_ruleset().rules) or "(none)")
        table.add_row("Unmatched files", config.default_action)
        table.add_row("Debounce", f"{config.debounce_ms}ms (max {config.debounce_max_ms}ms)")
        table.add_row("Workers", str(config.workers))
        table.add_row("Conflict policy", config.conflict_policy)
        table.add_row("Trash enabled", str(config.enable_trash))
        table.add_row("Trash directory", str(config.trash_dir))
        table.add_row("Retention days", str(config.trash_retention_days))
        table.add_row("State directory", str(config.state_dir))
        table.add_row("Log file", str(config.log_file))
        table.add_row("Log level", config.log_level)

        console.print(table)
        return 0

    console.print("[yellow]Use --init or --show[/yellow]")
    return 1


def cmd_history(config: DeclutterConfig, args: argparse.Namespace) -> int:
    """Execute history command.

    Args:
        config: Declutter configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    console = Console()
    ledger = Ledger(config.ledger_path)
    entries = ledger.recent(args.limit)

    if not entries:
        console.print("[green]No actions recorded yet[/green]")
        return 0

    table = Table(title=f"Recent actions ({len(entries)} of {len(ledger)})")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("When", style="dim")
    table.add_column("Action", style="green")
    table.add_column("Rule", style="magenta")
    table.add_column("File")
    table.add_column("Result", style="dim")
    table.add_column("Status")

    for entry in entries:
        status = entry.status
        if entry.entry_id is not None and ledger.is_reverted(entry.entry_id):
            status = "reverted"
        table.add_row(
            str(entry.entry_id),
            entry.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S"),
            entry.action if entry.label is None else f"{entry.action} {entry.label!r}",
            entry.rule or "",
            entry.original.name,
            str(entry.result) if entry.result is not None else "(gone)",
            status,
        )

    console.print(table)
    return 0


def cmd_undo(config: DeclutterConfig, args: argparse.Namespace) -> int:
    """Execute undo command.

    Args:
        config: Declutter configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    console = Console()
    orchestrator = Orchestrator(config, logger=_cli_logger())

    try:
        entry = asyncio.run(orchestrator.undo(args.entry_id))
    except UndoStale as e:
        console.print(f"[yellow]Cannot undo, file changed since: {e}[/yellow]")
        return 1
    except UndoError as e:
        console.print(f"[red]Cannot undo: {e}[/red]")
        return 1

    console.print(f"[green]Restored: {entry.result}[/green]")
    return 0


def cmd_trash(config: DeclutterConfig, args: argparse.Namespace) -> int:
    """Execute trash command.

    Args:
        config: Declutter configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    console = Console()
    executor = ActionExecutor(config, _cli_logger())

    if args.list_files:
        files = executor.list_trash()
        if not files:
            console.print("[green]Trash is empty[/green]")
            return 0

        table = Table(title=f"Files in trash ({len(files)})")
        table.add_column("File", style="cyan")
        table.add_column("Deleted", style="dim")
        table.add_column("Path", style="dim")

        for path, date in files:
            table.add_row(
                path.name,
                date.strftime("%Y-%m-%d"),
                str(path),
            )

        console.print(table)
        return 0

    if args.cleanup:
        cleaned = executor.cleanup_trash()
        console.print(f"[green]Cleaned {cleaned} expired directories[/green]")
        return 0

    console.print("[yellow]Use --list or --cleanup[/yellow]")
    return 1


def cmd_recover(config: DeclutterConfig, args: argparse.Namespace) -> int:
    """Execute recover command.

    Args:
        config: Declutter configuration.
        args: Parsed arguments.

    Returns:
        Exit code. Non-zero if any file could not be recovered.

    """
    console = Console()
    ledger = Ledger(config.ledger_path)
    executor = ActionExecutor(config, _cli_logger(), ledger)
    results = executor.recover()

    if not results:
        console.print("[green]No interrupted moves found[/green]")
        return 0

    table = Table(title=f"Interrupted moves ({len(results)})")
    table.add_column("File", style="cyan")
    table.add_column("Destination", style="dim")
    table.add_column("Outcome")

    for result in results:
        if result.entry is not None:
            ledger.record(result.entry)
        style = "red" if result.outcome == "unrecoverable" else "green"
        table.add_row(result.source.name, str(result.destination), f"[{style}]{result.outcome}[/{style}]")

    console.print(table)
    return 1 if any(r.outcome == "unrecoverable" for r in results) else 0


def cmd_run(config: DeclutterConfig, args: argparse.Namespace) -> int:
    """Execute run command.

    Args:
        config: Declutter configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    orchestrator = Orchestrator(config)

    if getattr(args, "once", False):
        entries = asyncio.run(orchestrator.run_once())
        print(f"Tidied {len(entries)} files, {orchestrator.stats.errors} errors")
        return 1 if orchestrator.stats.errors else 0

    asyncio.run(orchestrator.run_daemon())
    return 0


COMMANDS = {
    "run": cmd_run,
    "scan": cmd_scan,
    "config": cmd_config,
    "history": cmd_history,
    "undo": cmd_undo,
    "trash": cmd_trash,
    "recover": cmd_recover,
}


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Exit code.

    """
    args = parse_args(argv)

    try:
        config = DeclutterConfig.load(args.config)
    except ConfigError as e:
        Console(stderr=True).print(f"[red]Configuration error: {e}[/red]")
        return 2

    # Default to run command
    command = args.command or "run"
    handler = COMMANDS.get(command)
    if handler is None:
        print(f"Unknown command: {command}")
        return 1
    return handler(config, args)


if __name__ == "__main__":
    sys.exit(main())
