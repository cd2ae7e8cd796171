"""
Worker command registry.

Maps each WorkerCommand to a handler that reads the telemetry store or
proxies to CDP. Handlers receive an explicit CommandContext instead of
reaching for module globals, so tests can pass fakes.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .. import __version__
from ..collectors.network import NetworkCollector
from ..exceptions import CommandError
from ..exit_codes import ExitCode
from ..ipc.protocol import WorkerCommand
from ..telemetry.filter_dsl import apply_filters, build_filter_string, parse_filter_string
from ..telemetry.store import (
    ConsoleMessageRecord,
    NetworkRequestRecord,
    TelemetryStore,
    calculate_last_n,
    calculate_slice_bounds,
)
from .patterns import PatternDetector

logger = logging.getLogger(__name__)

NETWORK_PREVIEW_FIELDS = ("requestId", "timestamp", "method", "url", "status", "mimeType", "resourceType")
DEFAULT_LIST_ITEMS = 100
CONSOLE_LEVEL_ALIASES = {"warn": "warning"}


@dataclass
class CommandContext:
    """Everything a handler may touch.

    Attributes:
        connection: Object exposing ``async send(method, params)``
        store: Telemetry store of the running session
        patterns: Pattern detector for cdp_call hints
        network: Running network collector, source of in-flight requests
        version: bdg version reported in previews
    """

    connection: Any
    store: TelemetryStore
    patterns: PatternDetector = field(default_factory=PatternDetector)
    network: Optional[NetworkCollector] = None
    version: str = __version__


Handler = Callable[[CommandContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]


def network_preview(record: NetworkRequestRecord) -> Dict[str, Any]:
    return {key: record[key] for key in NETWORK_PREVIEW_FIELDS if record.get(key) is not None}


def console_preview(message: ConsoleMessageRecord) -> Dict[str, Any]:
    preview: Dict[str, Any] = {
        "timestamp": message["timestamp"],
        "type": message["type"],
        "text": message["text"],
    }
    if message.get("stackTrace"):
        preview["stackTrace"] = message["stackTrace"]
    if message.get("navigationId") is not None:
        preview["navigationId"] = message["navigationId"]
    return preview


def _target(store: TelemetryStore) -> Dict[str, str]:
    return {
        "url": store.target_info.get("url", ""),
        "title": store.target_info.get("title", ""),
    }


def _int_param(params: Dict[str, Any], name: str, default: Optional[int] = None) -> Optional[int]:
    value = params.get(name, default)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise CommandError(
            f"Invalid {name}: {value!r} (expected an integer)",
            exit_code=ExitCode.INVALID_ARGUMENTS,
        )


async def handle_peek(ctx: CommandContext, params: Dict[str, Any]) -> Dict[str, Any]:
    store = ctx.store
    last_n = calculate_last_n(_int_param(params, "lastN"))
    offset = max(0, _int_param(params, "offset", 0) or 0)

    total_network = len(store.network_requests)
    total_console = len(store.console_messages)
    network_bounds = calculate_slice_bounds(total_network, last_n, offset)
    console_bounds = calculate_slice_bounds(total_console, last_n, offset)

    return {
        "version": ctx.version,
        "startTime": store.session_start_time,
        "duration": store.duration_ms(),
        "target": _target(store),
        "activeTelemetry": list(store.active_telemetry),
        "network": [
            network_preview(r)
            for r in store.network_requests[network_bounds["start"]:network_bounds["end"]]
        ],
        "console": [
            console_preview(m)
            for m in store.console_messages[console_bounds["start"]:console_bounds["end"]]
        ],
        "totalNetwork": total_network,
        "totalConsole": total_console,
        "hasMoreNetwork": network_bounds["start"] > 0,
        "hasMoreConsole": console_bounds["start"] > 0,
    }


async def handle_status(ctx: CommandContext, params: Dict[str, Any]) -> Dict[str, Any]:
    store = ctx.store
    activity: Dict[str, Any] = {
        "networkRequestsCaptured": len(store.network_requests),
        "consoleMessagesCaptured": len(store.console_messages),
        "websocketConnectionsCaptured": len(store.websocket_connections),
    }
    if store.network_requests:
        activity["lastNetworkRequestAt"] = store.network_requests[-1]["timestamp"]
    if store.console_messages:
        activity["lastConsoleMessageAt"] = store.console_messages[-1]["timestamp"]

    return {
        "startTime": store.session_start_time,
        "duration": store.duration_ms(),
        "target": _target(store),
        "activeTelemetry": list(store.active_telemetry),
        "activity": activity,
        "navigationId": store.current_navigation_id(),
    }


def _find_network_request(store: TelemetryStore, request_id: str) -> NetworkRequestRecord:
    for record in store.network_requests:
        if record["requestId"] == request_id:
            return record
    raise CommandError(
        f"Network request not found: {request_id}",
        suggestion='List captured requests with "bdg peek"',
        exit_code=ExitCode.RESOURCE_NOT_FOUND,
    )


def _find_console_message(store: TelemetryStore, index_token: str) -> ConsoleMessageRecord:
    total = len(store.console_messages)
    available = f"0-{total - 1}" if total else "none captured"
    try:
        index = int(index_token)
    except (TypeError, ValueError):
        index = -1
    if index < 0 or index >= total:
        raise CommandError(
            f"Console message not found at index: {index_token} (available: {available})",
            suggestion='List captured messages with "bdg peek"',
            exit_code=ExitCode.RESOURCE_NOT_FOUND,
        )
    return store.console_messages[index]


async def handle_details(ctx: CommandContext, params: Dict[str, Any]) -> Dict[str, Any]:
    item_type = params.get("itemType")
    item_id = params.get("id")
    if item_id is None:
        raise CommandError("Missing required parameter: id")

    if item_type == "network":
        return {"item": _find_network_request(ctx.store, str(item_id))}
    if item_type == "console":
        return {"item": _find_console_message(ctx.store, str(item_id))}

    raise CommandError(
        f"Unknown itemType: {item_type}. Expected 'network' or 'console'.",
        exit_code=ExitCode.INVALID_ARGUMENTS,
    )


async def handle_har_data(ctx: CommandContext, params: Dict[str, Any]) -> Dict[str, Any]:
    data: Dict[str, Any] = {"requests": list(ctx.store.network_requests)}
    if ctx.store.browser_version:
        data["browserVersion"] = ctx.store.browser_version
    return data


def find_request_for_headers(store: TelemetryStore, request_id: Optional[str]) -> NetworkRequestRecord:
    """Pick the request whose headers to show.

    Explicit id, else the latest main-document request of the current
    navigation, else the latest HTML response, else the latest response that
    carries any headers.
    """
    if request_id:
        return _find_network_request(store, request_id)

    current = store.current_navigation_id()
    requests = store.network_requests

    for record in reversed(requests):
        if record.get("navigationId") == current and record.get("resourceType") == "Document":
            return record

    for record in reversed(requests):
        if "html" in (record.get("mimeType") or ""):
            return record

    for record in reversed(requests):
        if record.get("responseHeaders"):
            return record

    raise CommandError(
        "No network requests with headers found",
        suggestion="Load a page in the attached tab, then retry",
        exit_code=ExitCode.RESOURCE_NOT_FOUND,
    )


def filter_headers(headers: Dict[str, str], header_name: str) -> Dict[str, str]:
    wanted = header_name.lower()
    return {name: value for name, value in headers.items() if name.lower() == wanted}


async def handle_network_headers(ctx: CommandContext, params: Dict[str, Any]) -> Dict[str, Any]:
    record = find_request_for_headers(ctx.store, params.get("id"))

    request_headers = dict(record.get("requestHeaders") or {})
    response_headers = dict(record.get("responseHeaders") or {})

    header_name = params.get("headerName")
    if header_name:
        request_headers = filter_headers(request_headers, header_name)
        response_headers = filter_headers(response_headers, header_name)

    return {
        "url": record["url"],
        "requestId": record["requestId"],
        "requestHeaders": request_headers,
        "responseHeaders": response_headers,
    }


def _last_n_param(params: Dict[str, Any], default: int) -> int:
    last_n = _int_param(params, "lastN", default)
    if last_n is None or last_n < 0:
        raise CommandError(
            f"Invalid lastN: {last_n} (expected 0 for all, or a positive count)",
            exit_code=ExitCode.INVALID_ARGUMENTS,
        )
    return last_n


async def handle_network_list(ctx: CommandContext, params: Dict[str, Any]) -> Dict[str, Any]:
    """Captured requests (plus in-flight ones) matching a filter string and/or preset."""
    filter_text = build_filter_string(params.get("filter"), params.get("preset"))
    if params.get("type"):
        filter_text = f"{filter_text} resource-type:{params['type']}".strip()
    filters = parse_filter_string(filter_text)
    last_n = _last_n_param(params, DEFAULT_LIST_ITEMS)

    records = list(ctx.store.network_requests)
    if ctx.network is not None:
        records.extend(ctx.network.in_flight_requests())
        records.sort(key=lambda record: record["timestamp"])

    matched = apply_filters(records, filters)
    shown = matched[-last_n:] if last_n else matched

    requests = []
    for record in shown:
        entry = network_preview(record)
        if record.get("encodedDataLength") is not None:
            entry["encodedDataLength"] = record["encodedDataLength"]
        requests.append(entry)

    return {
        "requests": requests,
        "totalCount": len(records),
        "matchedCount": len(matched),
        "filter": filter_text,
    }


async def handle_console(ctx: CommandContext, params: Dict[str, Any]) -> Dict[str, Any]:
    """Console messages, optionally of one level, tagged with their details index."""
    messages = ctx.store.console_messages
    indexed = list(enumerate(messages))

    level = params.get("level")
    if level:
        wanted = CONSOLE_LEVEL_ALIASES.get(str(level).lower(), str(level).lower())
        indexed = [(index, message) for index, message in indexed if message["type"] == wanted]

    last_n = _last_n_param(params, 0)
    shown = indexed[-last_n:] if last_n else indexed

    data: Dict[str, Any] = {
        "messages": [dict(console_preview(message), index=index) for index, message in shown],
        "totalCount": len(messages),
        "matchedCount": len(indexed),
    }
    if level:
        data["level"] = level
    return data


async def handle_cdp_call(ctx: CommandContext, params: Dict[str, Any]) -> Dict[str, Any]:
    method = params.get("method")
    if not method or not isinstance(method, str):
        raise CommandError("Missing required parameter: method")

    result = await ctx.connection.send(method, params.get("params") or {})

    data: Dict[str, Any] = {"result": result}
    hint = ctx.patterns.track(method).hint
    if hint:
        data["hint"] = hint
    return data


HANDLERS: Dict[WorkerCommand, Handler] = {
    WorkerCommand.PEEK: handle_peek,
    WorkerCommand.STATUS: handle_status,
    WorkerCommand.DETAILS: handle_details,
    WorkerCommand.HAR_DATA: handle_har_data,
    WorkerCommand.NETWORK_HEADERS: handle_network_headers,
    WorkerCommand.NETWORK_LIST: handle_network_list,
    WorkerCommand.CONSOLE: handle_console,
    WorkerCommand.CDP_CALL: handle_cdp_call,
}


def command_names() -> List[str]:
    return [command.value for command in HANDLERS]


async def execute(ctx: CommandContext, command: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Run one worker command.

    Raises:
        CommandError: For unknown commands and user errors from handlers
        CDPError: If a CDP passthrough fails
    """
    parsed = WorkerCommand.parse(command)
    if parsed is None:
        raise CommandError(
            f"Unknown command: {command}",
            suggestion=f"Known commands: {', '.join(command_names())}",
            exit_code=ExitCode.INVALID_ARGUMENTS,
        )
    if params is not None and not isinstance(params, dict):
        raise CommandError(
            f"Invalid params for {parsed.value}: expected an object",
            exit_code=ExitCode.INVALID_ARGUMENTS,
        )
    logger.debug(f"Executing {parsed.value}")
    return await HANDLERS[parsed](ctx, params or {})
