"""
Console collector for CDP - captures console API calls and uncaught exceptions.

Listens to Runtime.consoleAPICalled and Runtime.exceptionThrown and appends
ConsoleMessageRecord entries to the telemetry store.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from ..connection import CDPConnection
from ..telemetry.store import ConsoleMessageRecord, StackFrame, TelemetryStore
from .filters import should_exclude_console_message

logger = logging.getLogger(__name__)

MAX_CONSOLE_MESSAGES = 10_000


def _format_preview_property(prop: Dict[str, Any]) -> str:
    if prop.get("type") == "string":
        return f'"{prop.get("value", "")}"'
    if prop.get("type") == "undefined":
        return "undefined"
    if prop.get("value") == "null":
        return "null"
    return prop.get("value") or prop.get("type", "")


def _format_object_preview(preview: Dict[str, Any]) -> str:
    props = preview.get("properties", [])
    suffix = ", …" if preview.get("overflow") else ""

    if preview.get("subtype") == "array":
        indexed = [p for p in props if p.get("name", "").isdigit()]
        indexed.sort(key=lambda p: int(p["name"]))
        values = ", ".join(_format_preview_property(p) for p in indexed)
        return f"[{values}{suffix}]"

    pairs = ", ".join(f"{p.get('name')}: {_format_preview_property(p)}" for p in props)
    return f"{{{pairs}{suffix}}}"


def format_remote_object(arg: Dict[str, Any]) -> str:
    """Render a Runtime.RemoteObject the way the DevTools console shows it."""
    if "value" in arg:
        value = arg["value"]
        if isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        if value is None:
            return "null"
        return json.dumps(value)

    if arg.get("type") == "undefined":
        return "undefined"

    if arg.get("subtype") == "error" and arg.get("description"):
        return arg["description"]

    if arg.get("type") == "object" and arg.get("preview"):
        return _format_object_preview(arg["preview"])

    return arg.get("description") or f"[{arg.get('type', 'unknown')}]"


def format_console_args(args: List[Dict[str, Any]]) -> str:
    return " ".join(format_remote_object(arg) for arg in args)


def convert_stack_trace(stack_trace: Optional[Dict[str, Any]]) -> Optional[List[StackFrame]]:
    if not stack_trace or not stack_trace.get("callFrames"):
        return None

    frames: List[StackFrame] = []
    for call_frame in stack_trace["callFrames"]:
        frame: StackFrame = {
            "url": call_frame.get("url", ""),
            "lineNumber": call_frame.get("lineNumber", 0),
            "columnNumber": call_frame.get("columnNumber", 0),
            "scriptId": call_frame.get("scriptId", ""),
        }
        if call_frame.get("functionName"):
            frame["functionName"] = call_frame["functionName"]
        frames.append(frame)
    return frames


class ConsoleCollector:
    """
    Captures console messages (log, info, warn, error, debug) and exceptions.

    Usage:
        async with CDPConnection(ws_url) as conn:
            store = TelemetryStore()
            async with ConsoleCollector(conn, store, level_filter="warn"):
                await asyncio.sleep(10)

    Attributes:
        connection: Active CDP connection
        store: Telemetry store receiving messages
        level_filter: Minimum log level to capture ("log", "info", "warn", "error")
        include_all: Keep framework/dev-server noise
        max_messages: Hard cap, later messages are dropped
    """

    # Log level hierarchy (ascending severity)
    LOG_LEVELS = {
        "verbose": 0,
        "debug": 0,
        "log": 1,
        "info": 2,
        "warn": 3,
        "warning": 3,
        "error": 4,
    }

    def __init__(
        self,
        connection: CDPConnection,
        store: TelemetryStore,
        *,
        level_filter: Optional[str] = None,
        include_all: bool = False,
        max_messages: int = MAX_CONSOLE_MESSAGES,
        get_navigation_id: Optional[Callable[[], int]] = None,
    ):
        self.connection = connection
        self.store = store
        self.level_filter = level_filter
        self.include_all = include_all
        self.max_messages = max_messages
        self.get_navigation_id = get_navigation_id or store.current_navigation_id
        self._limit_logged = False

    async def start(self):
        """
        Enable the Runtime domain and subscribe to console events.

        Raises:
            CDPError: If Runtime.enable fails
        """
        await self.connection.send("Runtime.enable")
        self.connection.subscribe("Runtime.consoleAPICalled", self._on_console_api_called)
        self.connection.subscribe("Runtime.exceptionThrown", self._on_exception_thrown)

    async def stop(self):
        self.connection.unsubscribe("Runtime.consoleAPICalled", self._on_console_api_called)
        self.connection.unsubscribe("Runtime.exceptionThrown", self._on_exception_thrown)

    def _should_capture(self, level: str) -> bool:
        """True if ``level`` is at or above level_filter."""
        if not self.level_filter:
            return True
        filter_idx = self.LOG_LEVELS.get(self.level_filter.lower(), 0)
        level_idx = self.LOG_LEVELS.get(level.lower(), 1)
        return level_idx >= filter_idx

    def _append(
        self,
        message_type: str,
        text: str,
        timestamp: float,
        stack_trace: Optional[List[StackFrame]],
        args: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        if len(self.store.console_messages) >= self.max_messages:
            if not self._limit_logged:
                logger.debug(f"Console message limit reached ({self.max_messages})")
                self._limit_logged = True
            return

        record: ConsoleMessageRecord = {
            "type": message_type,
            "text": text,
            "timestamp": timestamp,
        }
        navigation_id = self.get_navigation_id()
        if navigation_id is not None:
            record["navigationId"] = navigation_id
        if stack_trace:
            record["stackTrace"] = stack_trace
        if args:
            record["args"] = args
        self.store.console_messages.append(record)

    async def _on_console_api_called(self, params: dict):
        message_type = params.get("type", "log")
        if not self._should_capture(message_type):
            return

        args = params.get("args", [])
        text = format_console_args(args)
        if should_exclude_console_message(text, message_type, self.include_all):
            return

        self._append(
            message_type,
            text,
            params.get("timestamp", 0),
            convert_stack_trace(params.get("stackTrace")),
            args,
        )

    async def _on_exception_thrown(self, params: dict):
        details = params.get("exceptionDetails", {})
        exception = details.get("exception") or {}
        # "Uncaught" alone is not useful, prefer the exception description
        text = exception.get("description") or details.get("text") or "Unknown error"

        if should_exclude_console_message(text, "error", self.include_all):
            return

        self._append(
            "error",
            text,
            params.get("timestamp", 0),
            convert_stack_trace(details.get("stackTrace")),
        )

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
        return False
