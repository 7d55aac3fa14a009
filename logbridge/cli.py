"""
Command line for logbridge.

Usage:
    # Wrap a command; its output is logged to a new session
    logbridge run -- npm run dev

    # Serve a page connection on stdin/stdout
    logbridge page-host --project /work/app

    # Read recent lines of the current project's live sessions
    logbridge read --lines 200

    # Error-looking lines only
    logbridge errors --archived

    # List live sessions, sweep stale ones
    logbridge sessions
    logbridge sweep --page
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from .config import BridgeConfig
from .decoder import LENGTH_PREFIXED, NEWLINE
from .errors import StorageUnavailableError
from .page_host import PageConnectionHost, open_stdin_reader
from .reader import DEFAULT_LINE_BUDGET, DEFAULT_MAX_FILES, LogAggregator, detect_errors
from .session_schema import SessionKind
from .sweeper import RetentionSweeper
from .wrapper import run_command


def configure_logging() -> None:
    """Diagnostics go to stderr; stdout may carry protocol frames."""
    level_name = os.getenv("LOGBRIDGE_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _kind(args: argparse.Namespace) -> SessionKind:
    return SessionKind.PAGE_CONNECTION if getattr(args, "page", False) else SessionKind.PROCESS_OUTPUT


# =============================================================================
# Commands
# =============================================================================


def cmd_run(config: BridgeConfig, args: argparse.Namespace) -> int:
    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("Error: no command given", file=sys.stderr)
        return 2
    return run_command(config, command, project_dir=args.project)


async def _serve_page(config: BridgeConfig, args: argparse.Namespace) -> None:
    sweeper = RetentionSweeper.from_config(config, kind=SessionKind.PAGE_CONNECTION)
    await asyncio.to_thread(sweeper.run)
    if config.sweep_interval_seconds > 0:
        sweeper.start_periodic(config.sweep_interval_seconds)

    host = PageConnectionHost.from_config(
        config,
        project_dir=args.project,
        framing=args.framing,
        output=sys.stdout.buffer,
        guess_project=args.guess_project,
    )
    try:
        reader = await open_stdin_reader()
        await host.run(reader)
    finally:
        sweeper.stop()


def cmd_page_host(config: BridgeConfig, args: argparse.Namespace) -> int:
    asyncio.run(_serve_page(config, args))
    return 0


def cmd_read(config: BridgeConfig, args: argparse.Namespace) -> int:
    aggregator = LogAggregator.from_config(config, _kind(args))
    print(
        aggregator.read_recent(
            line_budget=args.lines,
            max_files=args.max_files,
            project_dir=args.project,
            live_only=not args.archived,
        )
    )
    return 0


def cmd_errors(config: BridgeConfig, args: argparse.Namespace) -> int:
    aggregator = LogAggregator.from_config(config, _kind(args))
    text = aggregator.read_recent(
        line_budget=args.lines,
        max_files=args.max_files,
        project_dir=args.project,
        live_only=not args.archived,
    )
    errors = detect_errors(text)
    if not errors:
        print("No errors detected in the recent logs.")
        return 0
    for error in errors:
        print(f"{error.kind}: {error.line.strip()}")
    return 0


def cmd_sessions(config: BridgeConfig, args: argparse.Namespace) -> int:
    aggregator = LogAggregator.from_config(config, _kind(args))
    for session_id in aggregator.list_active_sessions(args.project):
        print(session_id)
    return 0


def cmd_sweep(config: BridgeConfig, args: argparse.Namespace) -> int:
    report = RetentionSweeper.from_config(config, kind=_kind(args)).run()
    print(report.summary())
    return 1 if report.errors else 0


# =============================================================================
# Parser
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="logbridge",
        description="Capture process and page activity into per-session, redacted logs",
    )
    parser.add_argument(
        "--root",
        type=Path,
        help="Storage root (default: $LOGBRIDGE_HOME or ~/.mcp-logs)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Config file (default: ~/.mcp-logs/bridge-config.json)",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Run a command and log its output")
    p_run.add_argument("--project", help="Project directory (default: cwd)")
    p_run.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments")
    p_run.set_defaults(func=cmd_run)

    p_host = sub.add_parser("page-host", help="Serve a page connection on stdin/stdout")
    p_host.add_argument("--project", help="Project used when the page names none")
    p_host.add_argument(
        "--framing",
        choices=[LENGTH_PREFIXED, NEWLINE],
        default=LENGTH_PREFIXED,
        help="Input framing (default: length-prefixed)",
    )
    p_host.add_argument(
        "--guess-project",
        action="store_true",
        help="Fall back to the project of the most recent live process session",
    )
    p_host.set_defaults(func=cmd_page_host)

    for name, func, help_text in (
        ("read", cmd_read, "Print recent session log lines"),
        ("errors", cmd_errors, "Print error-looking lines from recent logs"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--lines", type=int, default=DEFAULT_LINE_BUDGET, help="Line budget")
        p.add_argument("--max-files", type=int, default=DEFAULT_MAX_FILES, help="Most session files to read")
        p.add_argument("--project", help="Project directory (default: most recent)")
        p.add_argument("--archived", action="store_true", help="Read archived instead of live sessions")
        p.add_argument("--page", action="store_true", help="Page-connection sessions")
        p.set_defaults(func=func)

    p_sessions = sub.add_parser("sessions", help="List live session ids")
    p_sessions.add_argument("--project", help="Only this project")
    p_sessions.add_argument("--page", action="store_true", help="Page-connection sessions")
    p_sessions.set_defaults(func=cmd_sessions)

    p_sweep = sub.add_parser("sweep", help="Reclaim stale sessions and expired archives")
    p_sweep.add_argument("--page", action="store_true", help="Page-connection sessions")
    p_sweep.set_defaults(func=cmd_sweep)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    configure_logging()
    args = build_parser().parse_args(argv)

    config = BridgeConfig.load(args.config)
    if args.root:
        config.root = str(args.root)

    try:
        return args.func(config, args)
    except StorageUnavailableError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
