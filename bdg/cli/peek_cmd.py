"""
Peek and details subcommands: read captured telemetry from the live session
without stopping it.
"""

import argparse
from typing import Any, Dict, List

from ..ipc.client import client_for
from ..ipc.protocol import validate_response
from ..telemetry.store import DEFAULT_PEEK_ITEMS
from .output import emit, run_handler


def format_network_line(request: Dict[str, Any]) -> str:
    status = request.get("status", "...")
    return f"  [{request['requestId']}] {status} {request.get('method', 'GET')} {request.get('url', '')}"


def format_console_line(message: Dict[str, Any]) -> str:
    return f"  [{message.get('type', 'log')}] {message.get('text', '')}"


def format_peek(data: Dict[str, Any]) -> str:
    preview = data.get("preview") or {}
    captured = preview.get("data") or {}
    network: List[Dict[str, Any]] = captured.get("network") or []
    console: List[Dict[str, Any]] = captured.get("console") or []
    target = preview.get("target") or {}

    lines = [f"Target: {target.get('title', '')} {target.get('url', '')}".rstrip()]
    lines.append(f"Network ({len(network)} of {preview.get('totalNetwork', len(network))}):")
    lines.extend(format_network_line(request) for request in network)
    lines.append(f"Console ({len(console)} of {preview.get('totalConsole', len(console))}):")
    lines.extend(format_console_line(message) for message in console)
    if preview.get("hasMoreNetwork") or preview.get("hasMoreConsole"):
        lines.append("")
        lines.append("More items available: use --last or --offset")
    return "\n".join(lines)


async def peek_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    data = validate_response(await client.peek(last_n=args.last, offset=args.offset))

    if args.network or args.console:
        captured = (data.get("preview") or {}).get("data") or {}
        if not args.network:
            captured["network"] = []
        if not args.console:
            captured["console"] = []

    emit(args, data, format_peek)
    return 0


async def details_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    data = validate_response(await client.details(args.item_type, args.id))
    emit(args, data.get("item", data))
    return 0


def peek_handler(args: argparse.Namespace) -> int:
    return run_handler(args, peek_handler_async)


def details_handler(args: argparse.Namespace) -> int:
    return run_handler(args, details_handler_async)


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    peek_parser = subparsers.add_parser(
        "peek",
        parents=[parent],
        help="Preview captured network and console data",
        epilog="""
Examples:
  bdg peek
  bdg peek --last 50 --network
  bdg peek --last 20 --offset 20 --format text
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    peek_parser.add_argument(
        "--last",
        type=int,
        default=DEFAULT_PEEK_ITEMS,
        help=f"Number of most recent items per list, 0 for all (default: {DEFAULT_PEEK_ITEMS})",
    )
    peek_parser.add_argument(
        "--offset", type=int, default=0, help="Skip this many of the most recent items (default: 0)"
    )
    peek_parser.add_argument("--network", action="store_true", help="Only show network requests")
    peek_parser.add_argument("--console", action="store_true", help="Only show console messages")
    peek_parser.set_defaults(func=peek_handler)

    details_parser = subparsers.add_parser(
        "details",
        parents=[parent],
        help="Full record for one network request or console message",
        epilog="""
Examples:
  bdg details network 1234.56
  bdg details console 0
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    details_parser.add_argument("item_type", choices=["network", "console"], help="Item type")
    details_parser.add_argument("id", help="Request ID (network) or message index (console)")
    details_parser.set_defaults(func=details_handler)
