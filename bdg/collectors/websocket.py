"""
WebSocket collector for CDP - tracks WebSocket connections and frames.

Uses the Network domain events, so NetworkCollector (which sends
Network.enable) must be started first.
"""

import logging
from typing import Dict

from ..connection import CDPConnection
from ..telemetry.store import (
    TelemetryStore,
    WebSocketConnectionRecord,
    WebSocketFrameRecord,
    now_ms,
)

logger = logging.getLogger(__name__)

MAX_WEBSOCKET_CONNECTIONS = 100
MAX_FRAMES_PER_CONNECTION = 1000
MAX_FRAME_PAYLOAD_SIZE = 100 * 1024


def truncate_payload(payload: str, limit: int = MAX_FRAME_PAYLOAD_SIZE) -> str:
    if len(payload) <= limit:
        return payload
    return payload[:limit] + f"... [truncated, {len(payload)} bytes total]"


class WebSocketCollector:
    """
    Captures WebSocket connections, their handshake and their frames.

    Open connections live in a dict keyed by request id; on close they move
    to ``store.websocket_connections``. Connections still open at stop() are
    flushed to the store as-is.

    Attributes:
        connection: Active CDP connection
        store: Telemetry store receiving finished connections
        max_connections: Cap on connections captured, open and closed together
        max_frames: Frames kept per connection, later frames are dropped
    """

    def __init__(
        self,
        connection: CDPConnection,
        store: TelemetryStore,
        *,
        max_connections: int = MAX_WEBSOCKET_CONNECTIONS,
        max_frames: int = MAX_FRAMES_PER_CONNECTION,
        max_payload: int = MAX_FRAME_PAYLOAD_SIZE,
    ):
        self.connection = connection
        self.store = store
        self.max_connections = max_connections
        self.max_frames = max_frames
        self.max_payload = max_payload
        self._open: Dict[str, WebSocketConnectionRecord] = {}

    @property
    def open_count(self) -> int:
        return len(self._open)

    def _handlers(self):
        return {
            "Network.webSocketCreated": self._on_created,
            "Network.webSocketHandshakeResponseReceived": self._on_handshake,
            "Network.webSocketFrameSent": self._on_frame_sent,
            "Network.webSocketFrameReceived": self._on_frame_received,
            "Network.webSocketFrameError": self._on_frame_error,
            "Network.webSocketClosed": self._on_closed,
        }

    async def start(self):
        for event, handler in self._handlers().items():
            self.connection.subscribe(event, handler)

    async def stop(self):
        """Unsubscribe and flush connections that are still open."""
        for event, handler in self._handlers().items():
            self.connection.unsubscribe(event, handler)

        self.store.websocket_connections.extend(self._open.values())
        self._open.clear()

        connections = self.store.websocket_connections
        if connections:
            total_frames = sum(len(c["frames"]) for c in connections)
            logger.debug(
                f"[PERF] WebSockets: {len(connections)} connections, {total_frames} frames captured"
            )

    @property
    def total_count(self) -> int:
        return len(self._open) + len(self.store.websocket_connections)

    async def _on_created(self, params: dict):
        if self.total_count >= self.max_connections:
            logger.debug(
                f"WebSocket connection limit reached ({self.max_connections}), skipping new connection"
            )
            return

        record: WebSocketConnectionRecord = {
            "requestId": params["requestId"],
            "url": params.get("url", ""),
            "timestamp": now_ms(),
            "frames": [],
        }
        initiator_url = (params.get("initiator") or {}).get("url")
        if initiator_url:
            record["initiatorUrl"] = initiator_url

        self._open[params["requestId"]] = record
        logger.debug(f"WebSocket created: {record['url']}")

    async def _on_handshake(self, params: dict):
        record = self._open.get(params.get("requestId"))
        if record is None:
            return
        response = params.get("response", {})
        record["status"] = response.get("status", 0)
        if response.get("headers"):
            record["responseHeaders"] = dict(response["headers"])

    def _add_frame(self, params: dict, direction: str) -> None:
        record = self._open.get(params.get("requestId"))
        if record is None or len(record["frames"]) >= self.max_frames:
            return
        response = params.get("response", {})
        frame: WebSocketFrameRecord = {
            "timestamp": now_ms(),
            "direction": direction,
            "opcode": response.get("opcode", 1),
            "payloadData": truncate_payload(response.get("payloadData", ""), self.max_payload),
        }
        record["frames"].append(frame)

    async def _on_frame_sent(self, params: dict):
        self._add_frame(params, "sent")

    async def _on_frame_received(self, params: dict):
        self._add_frame(params, "received")

    async def _on_frame_error(self, params: dict):
        record = self._open.get(params.get("requestId"))
        if record is None:
            return
        record["errorMessage"] = params.get("errorMessage", "")
        logger.debug(f"WebSocket frame error for {record['url']}: {record['errorMessage']}")

    async def _on_closed(self, params: dict):
        record = self._open.pop(params.get("requestId"), None)
        if record is None:
            return
        record["closedTime"] = now_ms()
        self.store.websocket_connections.append(record)
        logger.debug(f"WebSocket closed: {record['url']} ({len(record['frames'])} frames captured)")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
        return False
