"""
Session lifecycle subcommands: start, stop, status and cleanup.
"""

import argparse
from typing import Any, Dict, List, Optional

from ..exceptions import CommandError, DaemonNotRunningError
from ..exit_codes import ExitCode
from ..ipc.client import client_for, ensure_daemon, is_daemon_running
from ..ipc.protocol import validate_response
from ..session.cleanup import cleanup_stale_files, force_cleanup
from ..session.paths import SessionPaths
from .output import emit, run_handler

STOP_GRACE_SECONDS = 15.0


def split_list(value: Optional[str]) -> Optional[List[str]]:
    """Comma-separated flag value to a list (None when the flag is absent)."""
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def start_options(args: argparse.Namespace) -> Dict[str, Any]:
    config = args.config
    options: Dict[str, Any] = {
        "url": args.url,
        "target_id": args.target,
        "telemetry": split_list(args.telemetry),
        "network_include": split_list(args.include),
        "network_exclude": split_list(args.exclude),
        "fetch_bodies_include": split_list(args.fetch_bodies_include),
        "fetch_bodies_exclude": split_list(args.fetch_bodies_exclude),
        "console_level": args.console_level,
    }
    if args.all_bodies:
        options["fetch_all_bodies"] = True
    if args.include_all:
        options["include_all"] = True
    options["chrome_host"] = config.chrome_host
    options["chrome_port"] = config.chrome_port
    return {key: value for key, value in options.items() if value is not None}


def format_start(data: Dict[str, Any]) -> str:
    target = data.get("target") or {}
    lines = [
        f"Session started (worker PID {data.get('workerPid')}, port {data.get('port')})",
        f"  Target: {target.get('title', '')} {target.get('url', '')}".rstrip(),
        "",
        "  bdg peek     preview captured data",
        "  bdg status   session activity",
        "  bdg stop     stop and write session.json",
    ]
    return "\n".join(lines)


async def start_handler_async(args: argparse.Namespace) -> int:
    config = args.config
    client = await ensure_daemon(config)
    response = await client.start_session(start_options(args), timeout=config.ready_timeout + 5.0)
    data = validate_response(response)
    emit(args, data, format_start)
    return 0


async def stop_handler_async(args: argparse.Namespace) -> int:
    config = args.config
    client = client_for(config)
    response = await client.stop_session(timeout=config.command_timeout + STOP_GRACE_SECONDS)
    data = validate_response(response)
    emit(
        args,
        data,
        lambda d: f"Session stopped (worker exit code {d.get('workerExitCode')})"
        + (f"\n  Output: {d['outputPath']}" if d.get("outputPath") else ""),
    )
    return 0


def format_status(data: Dict[str, Any]) -> str:
    if not data.get("daemonRunning", True):
        return "Daemon not running"

    lines = [f"Daemon PID: {data.get('daemonPid')}"]
    if not data.get("sessionPid"):
        lines.append("No active session")
        return "\n".join(lines)

    lines.append(f"Session PID: {data['sessionPid']}")
    page = data.get("pageState") or {}
    if page:
        lines.append(f"Page: {page.get('title', '')} {page.get('url', '')}".rstrip())
    activity = data.get("activity") or {}
    if activity:
        lines.append(f"Network requests: {activity.get('networkRequestsCaptured', 0)}")
        lines.append(f"Console messages: {activity.get('consoleMessagesCaptured', 0)}")
        lines.append(f"WebSocket connections: {activity.get('websocketConnectionsCaptured', 0)}")
    return "\n".join(lines)


async def status_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    try:
        response = await client.status()
    except DaemonNotRunningError:
        emit(args, {"daemonRunning": False}, format_status)
        return 0

    # A failed worker query still carries the daemon's own status
    if response.get("status") == "error" and response.get("data"):
        data = dict(response["data"])
        data["workerError"] = response.get("error")
    else:
        data = validate_response(response)
    data.setdefault("daemonRunning", True)
    emit(args, data, format_status)
    return 0


async def cleanup_handler_async(args: argparse.Namespace) -> int:
    config = args.config
    paths = SessionPaths.from_dir(config.session_dir)

    if args.force:
        report = force_cleanup(paths)
    else:
        if await is_daemon_running(client_for(config)):
            raise CommandError(
                "Session daemon is still running",
                suggestion='Stop it with "bdg stop", or use "bdg cleanup --force"',
                exit_code=ExitCode.RESOURCE_BUSY,
            )
        report = cleanup_stale_files(paths)

    emit(
        args,
        report.to_dict(),
        lambda d: "\n".join(
            [f"Removed {len(d['removed'])} file(s)"]
            + [f"  {name}" for name in d["removed"]]
            + ([f"Killed PIDs: {', '.join(map(str, d['killed']))}"] if d["killed"] else [])
        ),
    )
    return 0


def start_handler(args: argparse.Namespace) -> int:
    return run_handler(args, start_handler_async)


def stop_handler(args: argparse.Namespace) -> int:
    return run_handler(args, stop_handler_async)


def status_handler(args: argparse.Namespace) -> int:
    return run_handler(args, status_handler_async)


def cleanup_handler(args: argparse.Namespace) -> int:
    return run_handler(args, cleanup_handler_async)


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    """
    Register 'start', 'stop', 'status' and 'cleanup'.

    Args:
        subparsers: Subparsers from main parser
        parent: Parent parser with global options
    """
    start_parser = subparsers.add_parser(
        "start",
        parents=[parent],
        help="Start a capture session",
        description="Attach to a Chrome tab and start collecting telemetry",
        epilog="""
Examples:
  bdg start https://example.com
  bdg start localhost:3000 --telemetry network,console
  bdg start --target <target-id> --exclude "*analytics*,*tracking*"
  bdg start https://example.com --fetch-bodies-include "*/api/*"
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    start_parser.add_argument(
        "url", nargs="?", help="URL to open, or a substring of an open tab's URL"
    )
    start_parser.add_argument("--target", help="Attach to this target ID instead of matching a URL")
    start_parser.add_argument(
        "--telemetry",
        help="Comma-separated collectors: network,console,websocket,dom (default: all)",
    )
    start_parser.add_argument("--include", help="Comma-separated URL patterns to capture")
    start_parser.add_argument("--exclude", help="Comma-separated URL patterns to skip")
    start_parser.add_argument(
        "--fetch-bodies-include", help="Comma-separated URL patterns whose bodies are fetched"
    )
    start_parser.add_argument(
        "--fetch-bodies-exclude", help="Comma-separated URL patterns whose bodies are skipped"
    )
    start_parser.add_argument(
        "--all-bodies", action="store_true", help="Fetch every response body (no MIME filtering)"
    )
    start_parser.add_argument(
        "--include-all", action="store_true", help="Disable the default tracking/analytics filter"
    )
    start_parser.add_argument(
        "--console-level",
        choices=["debug", "log", "info", "warning", "error"],
        help="Drop console messages below this level",
    )
    start_parser.set_defaults(func=start_handler)

    stop_parser = subparsers.add_parser(
        "stop",
        parents=[parent],
        help="Stop the session and write session.json",
    )
    stop_parser.set_defaults(func=stop_handler)

    status_parser = subparsers.add_parser(
        "status",
        parents=[parent],
        help="Show daemon, session and page activity",
    )
    status_parser.set_defaults(func=status_handler)

    cleanup_parser = subparsers.add_parser(
        "cleanup",
        parents=[parent],
        help="Remove stale session files",
        description="Remove session files left behind by dead processes",
    )
    cleanup_parser.add_argument(
        "--force",
        action="store_true",
        help="Kill the recorded daemon/worker and orphaned workers, then remove all session files",
    )
    cleanup_parser.set_defaults(func=cleanup_handler)
