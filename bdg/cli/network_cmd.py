"""
Network subcommands: filtered listing, headers, HAR export and cookies for
the live session.
"""

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict

from .. import __version__
from ..ipc.client import client_for
from ..ipc.protocol import require_data, validate_response
from ..telemetry.filter_dsl import FILTER_HELP, FILTER_PRESETS
from ..telemetry.har import build_har
from .output import emit, run_handler

logger = logging.getLogger(__name__)


def format_list(data: Dict[str, Any]) -> str:
    requests = data.get("requests") or []
    header = (
        f"Network requests ({len(requests)} shown, "
        f"{data.get('matchedCount', 0)} matched of {data.get('totalCount', 0)})"
    )
    if data.get("filter"):
        header += f" [{data['filter']}]"
    lines = [header]
    for request in requests:
        fields = [
            f"[{request['requestId']}]",
            str(request.get("status", "...")),
            request.get("method", "GET"),
            request.get("resourceType", "-"),
            request.get("url", ""),
        ]
        lines.append("  " + " ".join(fields))
    return "\n".join(lines)


async def list_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    response = await client.network_list(
        filter_text=args.filter, preset=args.preset, resource_type=args.type, last_n=args.last
    )
    emit(args, validate_response(response), format_list)
    return 0


def format_headers(data: Dict[str, Any]) -> str:
    lines = [f"{data.get('url', '')} ({data.get('requestId', '')})", "Request headers:"]
    lines.extend(f"  {name}: {value}" for name, value in (data.get("requestHeaders") or {}).items())
    lines.append("Response headers:")
    lines.extend(f"  {name}: {value}" for name, value in (data.get("responseHeaders") or {}).items())
    return "\n".join(lines)


async def headers_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    data = validate_response(await client.network_headers(args.id, args.header))
    emit(args, data, format_headers)
    return 0


async def har_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    data = validate_response(await client.har_data())
    har = build_har(data.get("requests") or [], __version__, data.get("browser"))

    if args.output:
        path = Path(args.output).expanduser()
        path.write_text(json.dumps(har, indent=2), encoding="utf-8")
        logger.info(f"Wrote {len(har['log']['entries'])} HAR entries to {path}")
        emit(
            args,
            {"path": str(path), "entries": len(har["log"]["entries"])},
            lambda d: f"Wrote {d['entries']} entries to {d['path']}",
        )
    else:
        print(json.dumps(har, indent=2))
    return 0


def format_cookies(cookies: Any) -> str:
    return "\n".join(
        f"{cookie.get('name')}={cookie.get('value')}  ({cookie.get('domain')}{cookie.get('path', '')})"
        for cookie in cookies
    )


async def cookies_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    params: Dict[str, Any] = {}
    if args.url:
        params["urls"] = [args.url]
    result = require_data(await client.cdp_call("Network.getCookies", params), "result", "CDP result")
    emit(args, result.get("cookies", []), format_cookies)
    return 0


def list_handler(args: argparse.Namespace) -> int:
    return run_handler(args, list_handler_async)


def headers_handler(args: argparse.Namespace) -> int:
    return run_handler(args, headers_handler_async)


def har_handler(args: argparse.Namespace) -> int:
    return run_handler(args, har_handler_async)


def cookies_handler(args: argparse.Namespace) -> int:
    return run_handler(args, cookies_handler_async)


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    network_parser = subparsers.add_parser(
        "network",
        help="Inspect captured network traffic",
        epilog="""
Examples:
  # Failed API calls, then the built-in presets
  bdg network list --filter "status-code:>=400 domain:api.*"
  bdg network list --preset errors --last 20

  # Headers of the main document (or a specific request)
  bdg network headers
  bdg network headers 1234.56 --header content-type

  # Export a HAR 1.2 file
  bdg network har --output capture.har

  # Cookies visible to the page
  bdg network cookies
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    network_subparsers = network_parser.add_subparsers(
        dest="network_command", title="network commands", required=True
    )

    preset_lines = "\n".join(
        f"  {name:<12} {preset['description']}" for name, preset in FILTER_PRESETS.items()
    )
    list_parser = network_subparsers.add_parser(
        "list",
        parents=[parent],
        help="List captured requests with DevTools-style filters",
        epilog=f"{FILTER_HELP}\n\nPresets:\n{preset_lines}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    list_parser.add_argument("--filter", help='Filter expression, e.g. "status-code:>=400 !domain:cdn.*"')
    list_parser.add_argument("--preset", help="Named filter, combined with --filter")
    list_parser.add_argument("--type", help="Resource types, comma-separated (Document,XHR,Fetch,...)")
    list_parser.add_argument(
        "--last", type=int, default=100, help="Number of most recent matches, 0 for all (default: 100)"
    )
    list_parser.set_defaults(func=list_handler)

    headers_parser = network_subparsers.add_parser(
        "headers", parents=[parent], help="Request and response headers"
    )
    headers_parser.add_argument(
        "id", nargs="?", help="Request ID (default: the current page's main document)"
    )
    headers_parser.add_argument("--header", help="Only show this header (case-insensitive)")
    headers_parser.set_defaults(func=headers_handler)

    har_parser = network_subparsers.add_parser(
        "har", parents=[parent], help="Export captured requests as HAR 1.2"
    )
    har_parser.add_argument("--output", "-o", help="Write to this file instead of stdout")
    har_parser.set_defaults(func=har_handler)

    cookies_parser = network_subparsers.add_parser(
        "cookies", parents=[parent], help="Cookies for the current page"
    )
    cookies_parser.add_argument("--url", help="Only cookies that apply to this URL")
    cookies_parser.set_defaults(func=cookies_handler)
