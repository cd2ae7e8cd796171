"""
In-memory telemetry store owned by the worker.

Holds the completed network requests, console messages and WebSocket
connections appended by the collectors, plus the page navigation counter
used to detect stale DOM query caches. Also provides the pagination helpers
used by the peek and status handlers.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from typing_extensions import NotRequired, TypedDict

logger = logging.getLogger(__name__)

DEFAULT_PEEK_ITEMS = 10
MAX_PEEK_ITEMS = 10_000


class StackFrame(TypedDict):
    url: str
    lineNumber: int
    columnNumber: int
    scriptId: str
    functionName: NotRequired[str]


class NetworkRequestRecord(TypedDict):
    """A network request accumulated across its CDP lifecycle."""
    requestId: str
    url: str
    method: str
    timestamp: float  # ms since epoch when first seen
    requestHeaders: Dict[str, str]
    requestBody: NotRequired[str]
    resourceType: NotRequired[str]
    navigationId: NotRequired[int]
    status: NotRequired[int]
    mimeType: NotRequired[str]
    responseHeaders: NotRequired[Dict[str, str]]
    timing: NotRequired[Dict[str, float]]
    serverIPAddress: NotRequired[str]
    connection: NotRequired[str]
    encodedDataLength: NotRequired[float]
    loadingFinishedTime: NotRequired[float]  # CDP monotonic seconds
    responseBody: NotRequired[str]
    responseBodyBase64: NotRequired[bool]
    decodedBodyLength: NotRequired[int]
    errorText: NotRequired[str]
    canceled: NotRequired[bool]
    blocked: NotRequired[bool]
    blockedReason: NotRequired[str]


class ConsoleMessageRecord(TypedDict):
    type: str
    text: str
    timestamp: float
    navigationId: NotRequired[int]
    stackTrace: NotRequired[List[StackFrame]]
    args: NotRequired[List[Dict[str, Any]]]


class WebSocketFrameRecord(TypedDict):
    timestamp: float
    direction: str  # "sent" | "received"
    opcode: int
    payloadData: str


class WebSocketConnectionRecord(TypedDict):
    requestId: str
    url: str
    timestamp: float
    frames: List[WebSocketFrameRecord]
    initiatorUrl: NotRequired[str]
    status: NotRequired[int]
    responseHeaders: NotRequired[Dict[str, str]]
    closedTime: NotRequired[float]
    errorMessage: NotRequired[str]


def now_ms() -> float:
    return time.time() * 1000


@dataclass
class TelemetryStore:
    """
    Telemetry collected during one session.

    Collectors append to the lists; command handlers only read them.

    Attributes:
        network_requests: Completed (finished or failed) network requests
        console_messages: Console messages and uncaught exceptions
        websocket_connections: Closed WebSocket connections (open ones are flushed on stop)
        navigation_id: Incremented on every main-frame navigation
        session_start_time: ms since epoch when the worker started collecting
        target_info: Attached target ({id, title, url, type})
        active_telemetry: Names of the running collectors
        browser_version: Chrome "Browser" string, if known
    """

    network_requests: List[NetworkRequestRecord] = field(default_factory=list)
    console_messages: List[ConsoleMessageRecord] = field(default_factory=list)
    websocket_connections: List[WebSocketConnectionRecord] = field(default_factory=list)
    navigation_id: int = 0
    session_start_time: float = field(default_factory=now_ms)
    target_info: Dict[str, Any] = field(default_factory=dict)
    active_telemetry: List[str] = field(default_factory=list)
    browser_version: Optional[str] = None

    def current_navigation_id(self) -> int:
        return self.navigation_id

    def duration_ms(self) -> float:
        return now_ms() - self.session_start_time

    async def on_frame_navigated(self, params: dict) -> None:
        """Page.frameNavigated handler: bump the navigation id for the main frame."""
        frame = params.get("frame", {})
        if frame.get("parentId"):
            return
        self.navigation_id += 1
        if frame.get("url"):
            self.target_info["url"] = frame["url"]
        logger.debug(f"Main frame navigated to {frame.get('url')} (navigationId={self.navigation_id})")


def calculate_last_n(last_n: Optional[int], default: int = DEFAULT_PEEK_ITEMS) -> int:
    """Normalize a requested item count; 0 means all items, capped at MAX_PEEK_ITEMS."""
    if last_n is None:
        return default
    if last_n < 0:
        return default
    if last_n == 0:
        return MAX_PEEK_ITEMS
    return min(last_n, MAX_PEEK_ITEMS)


def calculate_slice_bounds(total: int, last_n: int, offset: int = 0) -> Dict[str, int]:
    """Window of the last ``last_n`` items, shifted ``offset`` items back from the end.

    Returns ``{"start": s, "end": e}`` suitable for ``items[s:e]``.
    """
    offset = max(0, offset)
    end = max(0, total - offset)
    start = max(0, end - last_n)
    return {"start": start, "end": end}
