"""
Console subcommand: query console messages captured by the live session.
"""

import argparse
from datetime import datetime, timezone
from typing import Any, Dict

from ..ipc.client import client_for
from ..ipc.protocol import validate_response
from .output import emit, run_handler

CONSOLE_LEVELS = ["log", "info", "warning", "warn", "error", "debug"]


def _clock(timestamp_ms: float) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime("%H:%M:%S.%f")[:-3]


def format_console(data: Dict[str, Any]) -> str:
    messages = data.get("messages") or []
    level = data.get("level")
    if not messages:
        return f"No {level} console messages" if level else "No console messages"

    header = f"Console messages ({len(messages)} of {data.get('matchedCount', len(messages))}"
    header += f", level: {level})" if level else ")"
    lines = [header]
    for message in messages:
        lines.append(
            f"  [{message.get('index')}] {_clock(message.get('timestamp', 0))} "
            f"{message.get('type', 'log'):<7} {message.get('text', '')}"
        )
    return "\n".join(lines)


async def console_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    data = validate_response(await client.console(level=args.level, last_n=args.last))
    emit(args, data, format_console)
    return 0


def console_handler(args: argparse.Namespace) -> int:
    return run_handler(args, console_handler_async)


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    console_parser = subparsers.add_parser(
        "console",
        parents=[parent],
        help="Query captured console messages",
        epilog="""
Examples:
  bdg console
  bdg console --level error --last 20
  bdg details console 3    # full record, index from the listing
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    console_parser.add_argument(
        "--level", choices=CONSOLE_LEVELS, help="Only messages of this type"
    )
    console_parser.add_argument(
        "--last", type=int, default=0, help="Number of most recent messages, 0 for all (default: 0)"
    )
    console_parser.set_defaults(func=console_handler)
