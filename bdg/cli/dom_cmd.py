"""
DOM subcommands: query, get, eval and screenshot against the session's page.

``dom query`` caches its matches so later commands can address them by
index (``bdg dom get 0``); the resolver re-runs the query when the page has
navigated since.
"""

import argparse
import base64
from pathlib import Path
from typing import Any, Dict, List

from ..exceptions import CommandError
from ..exit_codes import ExitCode
from ..ipc.client import IPCClient, client_for
from ..session.dom_query import call_cdp, query_dom_elements
from ..session.paths import SessionPaths
from ..session.query_cache import NavigationIdMemo, QueryCacheManager, status_navigation_fetcher
from ..session.resolver import DomElementResolver, is_numeric_index
from .output import emit, run_handler


def cache_manager_for(args: argparse.Namespace, client: IPCClient) -> QueryCacheManager:
    paths = SessionPaths.from_dir(args.config.session_dir)
    return QueryCacheManager(paths, NavigationIdMemo(status_navigation_fetcher(client)))


def resolver_for(client: IPCClient, manager: QueryCacheManager) -> DomElementResolver:
    async def refresh(selector: str):
        return await query_dom_elements(client, selector)

    return DomElementResolver(manager, refresh)


def format_query(data: Dict[str, Any]) -> str:
    lines = [f"Found {data['count']} element(s) for {data['selector']!r}:"]
    for node in data["nodes"]:
        classes = "." + ".".join(node["classes"]) if node.get("classes") else ""
        lines.append(f"  [{node['index']}] <{node.get('tag', '?')}{classes}> {node.get('preview', '')}".rstrip())
    if data["count"]:
        lines.append("")
        lines.append('Use "bdg dom get <index>" to inspect an element')
    return "\n".join(lines)


async def query_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    manager = cache_manager_for(args, client)

    entry = await query_dom_elements(client, args.selector)
    navigation_id = await manager.current_navigation_id()
    if navigation_id is not None:
        entry["navigationId"] = navigation_id
    manager.set(entry)

    emit(args, entry, format_query)
    return 0


async def outer_html(client: IPCClient, node_id: int) -> str:
    result = await call_cdp(client, "DOM.getOuterHTML", {"nodeId": node_id})
    return result.get("outerHTML", "")


async def get_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    manager = cache_manager_for(args, client)
    resolver = resolver_for(client, manager)

    if is_numeric_index(args.target):
        node = await resolver.get_node_for_index(int(args.target))
        nodes: List[Dict[str, Any]] = [node]
    else:
        target = await resolver.resolve(args.target, args.index)
        entry = await query_dom_elements(client, target.selector)
        nodes = entry["nodes"]
        if target.index is not None:
            if not 0 <= target.index < len(nodes):
                raise CommandError(
                    f"Index {target.index} out of range (found {len(nodes)} nodes for \"{target.selector}\")",
                    suggestion=f"Use an index between 0 and {len(nodes) - 1}" if nodes else None,
                    exit_code=ExitCode.RESOURCE_NOT_FOUND,
                )
            nodes = [nodes[target.index]]
        elif not args.all:
            nodes = nodes[:1]

    if not nodes:
        raise CommandError(
            f"No elements match {args.target!r}",
            suggestion="Check the selector with \"bdg dom query <selector>\"",
            exit_code=ExitCode.RESOURCE_NOT_FOUND,
        )

    results = []
    for node in nodes:
        item = dict(node)
        item["outerHTML"] = await outer_html(client, node["nodeId"])
        results.append(item)

    output: Any = results if args.all else results[0]
    emit(args, output, lambda d: "\n\n".join(r["outerHTML"] for r in (d if isinstance(d, list) else [d])))
    return 0


async def eval_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    result = await call_cdp(
        client,
        "Runtime.evaluate",
        {"expression": args.expression, "returnByValue": True, "awaitPromise": True},
    )

    exception = result.get("exceptionDetails")
    if exception:
        description = (exception.get("exception") or {}).get("description") or exception.get("text")
        raise CommandError(
            f"JavaScript error: {description}",
            suggestion="Check the expression in the browser console",
            exit_code=ExitCode.INVALID_ARGUMENTS,
        )

    value = (result.get("result") or {}).get("value")
    emit(args, {"result": value}, lambda d: str(d["result"]))
    return 0


async def screenshot_handler_async(args: argparse.Namespace) -> int:
    client = client_for(args.config)
    path = Path(args.path).expanduser()
    image_format = "jpeg" if path.suffix.lower() in (".jpg", ".jpeg") else "png"

    params: Dict[str, Any] = {"format": image_format}
    if image_format == "jpeg":
        params["quality"] = args.quality
    if args.full_page:
        params["captureBeyondViewport"] = True

    result = await call_cdp(client, "Page.captureScreenshot", params)
    image = base64.b64decode(result.get("data", ""))
    path.write_bytes(image)

    emit(
        args,
        {"path": str(path), "format": image_format, "size": len(image)},
        lambda d: f"Screenshot saved to {d['path']} ({d['size']} bytes)",
    )
    return 0


def query_handler(args: argparse.Namespace) -> int:
    return run_handler(args, query_handler_async)


def get_handler(args: argparse.Namespace) -> int:
    return run_handler(args, get_handler_async)


def eval_handler(args: argparse.Namespace) -> int:
    return run_handler(args, eval_handler_async)


def screenshot_handler(args: argparse.Namespace) -> int:
    return run_handler(args, screenshot_handler_async)


def register_subcommand(
    subparsers: argparse._SubParsersAction, parent: argparse.ArgumentParser
) -> None:
    """
    Register 'dom' and its subcommands.

    Args:
        subparsers: Subparsers from main parser
        parent: Parent parser with global options
    """
    dom_parser = subparsers.add_parser(
        "dom",
        help="Query and inspect the page DOM",
        epilog="""
Examples:
  # Find elements and cache the matches
  bdg dom query "a.nav-link"

  # Inspect the first match by index
  bdg dom get 0

  # Inspect by selector (third match)
  bdg dom get "a.nav-link" --index 2

  # Evaluate JavaScript
  bdg dom eval "document.title"

  # Capture the viewport
  bdg dom screenshot page.png
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    dom_subparsers = dom_parser.add_subparsers(dest="dom_command", title="dom commands", required=True)

    query_parser = dom_subparsers.add_parser(
        "query", parents=[parent], help="Find elements matching a CSS selector"
    )
    query_parser.add_argument("selector", help="CSS selector")
    query_parser.set_defaults(func=query_handler)

    get_parser = dom_subparsers.add_parser(
        "get", parents=[parent], help="Outer HTML of an element by selector or cached index"
    )
    get_parser.add_argument("target", help="CSS selector, or an index from the last 'dom query'")
    get_parser.add_argument("--index", type=int, help="0-based match to use with a selector")
    get_parser.add_argument("--all", action="store_true", help="Every match of the selector")
    get_parser.set_defaults(func=get_handler)

    eval_parser = dom_subparsers.add_parser(
        "eval", parents=[parent], help="Evaluate a JavaScript expression in the page"
    )
    eval_parser.add_argument("expression", help="JavaScript expression")
    eval_parser.set_defaults(func=eval_handler)

    screenshot_parser = dom_subparsers.add_parser(
        "screenshot", parents=[parent], help="Capture a screenshot of the page"
    )
    screenshot_parser.add_argument(
        "path", nargs="?", default="screenshot.png", help="Output file (.png or .jpg, default: screenshot.png)"
    )
    screenshot_parser.add_argument("--full-page", action="store_true", help="Capture beyond the viewport")
    screenshot_parser.add_argument("--quality", type=int, default=90, help="JPEG quality (default: 90)")
    screenshot_parser.set_defaults(func=screenshot_handler)
