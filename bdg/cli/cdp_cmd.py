"""
'cdp' subcommand: call any CDP method through the session's connection.
"""

import argparse
import sys

from ..ipc.client import client_for
from ..ipc.protocol import validate_response
from .output import emit, parse_json_arg, run_handler


async def cdp_handler_async(args: argparse.Namespace) -> int:
    params = parse_json_arg(args.params, "params")
    client = client_for(args.config)
    data = validate_response(await client.cdp_call(args.method, params))

    emit(args, data.get("result", {}))
    # Hints go to stderr so stdout stays parseable
    if data.get("hint"):
        print(data["hint"], file=sys.stderr)
    return 0


def cdp_handler(args: argparse.Namespace) -> int:
    return run_handler(args, cdp_handler_async)


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    cdp_parser = subparsers.add_parser(
        "cdp",
        parents=[parent],
        help="Execute an arbitrary CDP method",
        description="Execute any CDP method in the session's target",
        epilog="""
Examples:
  bdg cdp Runtime.evaluate --params '{"expression":"document.title","returnByValue":true}'
  bdg cdp Page.reload
  bdg cdp Emulation.setDeviceMetricsOverride --params '{"width":375,"height":667,"deviceScaleFactor":2,"mobile":true}'
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    cdp_parser.add_argument("method", help="CDP method (e.g., Runtime.evaluate, Page.navigate)")
    cdp_parser.add_argument("--params", help="JSON-encoded parameters for the CDP method")
    cdp_parser.set_defaults(func=cdp_handler)
