#!/usr/bin/env python3
"""Agent Monitor - live view and control of a coding agent session.

Entry point for the CLI application.
"""

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

from .config import MonitorConfig, load_config
from .errors import ConfigValidationError, MonitorError

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(config: MonitorConfig, level: str = "INFO", log_file: str = None):
    """Send log records to a file; the TUI owns the terminal.

    ``log_file`` of ``-`` logs to stderr instead.
    """
    handler: logging.Handler
    if log_file == "-":
        handler = logging.StreamHandler(sys.stderr)
    else:
        path = Path(log_file).expanduser() if log_file else config.data_dir / "monitor.log"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(path)
        except OSError as e:
            print(f"Cannot write log file {path}: {e}; logging to stderr", file=sys.stderr)
            handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def build_overrides(args) -> dict:
    """Settings given on the command line, shaped like a settings file."""
    overrides: dict = {"process": {}, "display": {}}
    if getattr(args, "file", None):
        overrides["process"]["log_path"] = str(Path(args.file).expanduser().resolve())
    if getattr(args, "no_sidebar", False):
        overrides["display"]["show_sidebar"] = False
    if getattr(args, "tab", None):
        overrides["display"]["default_tab"] = args.tab
    return overrides


def make_rotator(config: MonitorConfig):
    from .rotation import LogRotator

    return LogRotator(
        config.process.log_path,
        archive_dir=config.archive_dir,
        max_bytes=config.rotation.max_bytes,
        retention_days=config.rotation.retention_days,
        compress=config.rotation.compress,
    )


def make_coordinator(config: MonitorConfig):
    from .lock import LockCoordinator

    return LockCoordinator.from_config(config)


def cmd_watch(args, config: MonitorConfig):
    """Launch the TUI."""
    from .app import MonitorApp

    MonitorApp(config).run()


async def _run_foreground(coordinator, launch) -> int:
    """Run the agent until it exits or this process is asked to stop."""
    record = await launch()
    print(f"Agent running (PID {record.pid}), output in {coordinator.log_path}")
    print("Press Ctrl+C to stop it.")

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    exited = asyncio.ensure_future(coordinator.wait())
    stopper = asyncio.ensure_future(stop_requested.wait())
    try:
        done, _ = await asyncio.wait({exited, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if exited in done:
            return exited.result() or 0
        print("Stopping agent...")
        await coordinator.stop()
        await exited
        return 0
    finally:
        stopper.cancel()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def exit_status(code: int) -> int:
    """Map an agent exit code onto this command's exit status."""
    from .lock import NORMAL_EXIT_CODES

    if code in NORMAL_EXIT_CODES:
        return 0
    return code if code > 0 else 1


def cmd_start(args, config: MonitorConfig):
    """Start the agent in the foreground under the project lock."""
    rotator = make_rotator(config)
    rotator.rotate_if_needed()
    rotator.prune()

    coordinator = make_coordinator(config)
    code = asyncio.run(_run_foreground(coordinator, coordinator.start))
    print(f"Agent exited with code {code}")
    return exit_status(code)


def cmd_resume(args, config: MonitorConfig):
    """Resume a session with feedback, in the foreground."""
    coordinator = make_coordinator(config)

    async def launch():
        if coordinator.is_locked():
            print("Stopping running agent first...")
            await coordinator.stop()
        make_rotator(config).rotate_if_needed()
        return await coordinator.resume(args.session_id, args.feedback)

    code = asyncio.run(_run_foreground(coordinator, launch))
    print(f"Agent exited with code {code}")
    return exit_status(code)


def cmd_stop(args, config: MonitorConfig):
    """Stop whichever process holds the project lock."""
    coordinator = make_coordinator(config)
    if asyncio.run(coordinator.stop()):
        print("Agent stopped.")
    else:
        print("No agent running.")


def cmd_interrupt(args, config: MonitorConfig):
    """Write feedback and interrupt the running agent."""
    record = make_coordinator(config).interrupt(args.feedback)
    print(f"Interrupted agent (PID {record.pid}); feedback written to {config.process.feedback_path}")


def cmd_status(args, config: MonitorConfig):
    """Show lock, log and archive state for the project."""
    from .lock import is_alive

    coordinator = make_coordinator(config)
    process = config.process

    print("Agent Monitor Status")
    print("-" * 60)
    print(f"Project:  {config.project_root}")

    record = coordinator.read()
    if record is None:
        print("Agent:    not running")
    elif is_alive(record.pid):
        print(f"Agent:    running (PID {record.pid})")
        if record.created_at:
            print(f"  Since:   {record.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
        if record.session_id:
            print(f"  Session: {record.session_id}")
        if record.command:
            print(f"  Command: {' '.join(record.command)}")
    else:
        print(f"Agent:    not running (stale lock for PID {record.pid})")

    if process.log_path.exists():
        size = process.log_path.stat().st_size
        print(f"Log:      {process.log_path} ({size / 1024:.1f} KB)")
    else:
        print(f"Log:      {process.log_path} (not created yet)")

    archives = make_rotator(config).list_archives()
    print(f"Archives: {len(archives)} in {config.archive_dir}")


def cmd_rotate(args, config: MonitorConfig):
    """Archive the active log and prune old archives."""
    rotator = make_rotator(config)
    result = rotator.rotate() if args.force else rotator.rotate_if_needed()
    if result.error:
        print(f"Rotation failed: {result.error}", file=sys.stderr)
        return 1
    if result.archived:
        final = result.wait()
        print(f"Archived log to {final}")
    else:
        print("Log does not need rotation.")

    removed = rotator.prune()
    if removed:
        print(f"Pruned {len(removed)} archives older than {config.rotation.retention_days} days:")
        for path in removed:
            print(f"  {path.name}")


def cmd_archives(args, config: MonitorConfig):
    """List archived logs, newest first."""
    archives = make_rotator(config).list_archives()
    if not archives:
        print(f"No archives in {config.archive_dir}")
        return

    print(f"Archives in {config.archive_dir}:")
    print()
    print(f"{'Name':<50} {'Size':<12} {'Modified':<20}")
    print("-" * 82)
    for path in archives:
        try:
            st = path.stat()
        except FileNotFoundError:
            continue
        modified = datetime.fromtimestamp(st.st_mtime).strftime("%Y-%m-%d %H:%M")
        print(f"{path.name:<50} {st.st_size / 1024:>8.1f} KB  {modified:<20}")


def cmd_summary(args, config: MonitorConfig):
    """Print statistics for a log or archive."""
    from rich.console import Console

    from .monitor import load_session
    from .ui.widgets import build_stats_text

    path = Path(args.path).expanduser() if args.path else config.process.log_path
    if not path.is_file():
        print(f"No such log file: {path}", file=sys.stderr)
        return 1

    session = load_session(path, require_timestamp=config.process.require_timestamp)
    Console().print(build_stats_text(session))


def add_target_arguments(parser: argparse.ArgumentParser, default=None):
    parser.add_argument("--project", "-p", default=default, help="Project directory (default: nearest with .agent-monitor)")
    parser.add_argument("--file", "-f", default=default, help="Agent log file to follow")


def main():
    """Main entry point for agent-monitor CLI."""
    parser = argparse.ArgumentParser(
        description="Watch and control a coding agent session in real time",
        prog="agent-monitor",
    )
    parser.add_argument(
        "--version", "-v",
        action="store_true",
        help="Show version"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Monitor log level"
    )
    parser.add_argument(
        "--log-file",
        help="Monitor log file, '-' for stderr (default: .agent-monitor/monitor.log)"
    )
    add_target_arguments(parser)

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    watch_parser = subparsers.add_parser("watch", help="Launch the TUI (default)")
    add_target_arguments(watch_parser, default=argparse.SUPPRESS)
    watch_parser.add_argument("--no-sidebar", action="store_true", help="Hide the sidebar")
    watch_parser.add_argument("--tab", choices=["messages", "subagents", "errors", "stats"], help="Initial tab")

    start_parser = subparsers.add_parser("start", help="Run the agent in the foreground")
    add_target_arguments(start_parser, default=argparse.SUPPRESS)

    stop_parser = subparsers.add_parser("stop", help="Stop the running agent")
    add_target_arguments(stop_parser, default=argparse.SUPPRESS)

    interrupt_parser = subparsers.add_parser("interrupt", help="Interrupt the agent with feedback")
    add_target_arguments(interrupt_parser, default=argparse.SUPPRESS)
    interrupt_parser.add_argument("feedback", help="Feedback text for the agent")

    resume_parser = subparsers.add_parser("resume", help="Resume a session with feedback")
    add_target_arguments(resume_parser, default=argparse.SUPPRESS)
    resume_parser.add_argument("session_id", help="Session to resume")
    resume_parser.add_argument("feedback", help="Feedback text for the agent")

    status_parser = subparsers.add_parser("status", help="Show agent and log status")
    add_target_arguments(status_parser, default=argparse.SUPPRESS)

    rotate_parser = subparsers.add_parser("rotate", help="Archive the log if it is too large")
    add_target_arguments(rotate_parser, default=argparse.SUPPRESS)
    rotate_parser.add_argument("--force", action="store_true", help="Archive regardless of size")

    archives_parser = subparsers.add_parser("archives", help="List archived logs")
    add_target_arguments(archives_parser, default=argparse.SUPPRESS)

    summary_parser = subparsers.add_parser("summary", help="Print statistics for a log or archive")
    add_target_arguments(summary_parser, default=argparse.SUPPRESS)
    summary_parser.add_argument("path", nargs="?", help="Log or archive (default: active log)")

    args = parser.parse_args()

    if args.version:
        from . import __version__
        print(f"agent-monitor {__version__}")
        return

    try:
        config = load_config(
            project_root=Path(args.project) if args.project else None,
            cli_overrides=build_overrides(args),
        )
    except ConfigValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config, args.log_level, args.log_file)
    logger.debug(f"Running '{args.command or 'watch'}' for {config.project_root}")

    commands = {
        "start": cmd_start,
        "stop": cmd_stop,
        "interrupt": cmd_interrupt,
        "resume": cmd_resume,
        "status": cmd_status,
        "rotate": cmd_rotate,
        "archives": cmd_archives,
        "summary": cmd_summary,
    }
    if args.command in commands:
        try:
            code = commands[args.command](args, config)
        except MonitorError as e:
            logger.error(f"{args.command} failed: {e}")
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        if code:
            sys.exit(code)
    else:
        cmd_watch(args, config)


if __name__ == "__main__":
    main()
