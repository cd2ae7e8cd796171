"""CDP WebSocket connection management.

Provides CDPConnection, the worker's only path to the browser: an async
``send(method, params)`` that returns the command result and an event
subscription mechanism for CDP notifications.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Awaitable, Dict, List, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

from .exceptions import (
    ConnectionFailedError,
    ConnectionClosedError,
    CommandFailedError,
    CDPTimeoutError,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Awaitable[None]]


class CDPConnection:
    """Manages WebSocket connection to a Chrome DevTools Protocol endpoint.

    Handles:
    - Connection lifecycle (connect, disconnect, context manager)
    - Command execution with timeout handling
    - Event subscription and dispatching
    - Message routing between command responses and events

    Usage:
        async with CDPConnection(ws_url) as conn:
            result = await conn.send("Runtime.evaluate", {"expression": "1+1"})
            conn.subscribe("Network.requestWillBeSent", my_callback)

    Attributes:
        ws_url: WebSocket debugger URL
        timeout: Default command timeout in seconds
        max_size: Maximum WebSocket message size in bytes (for large DOMs)
        closed: Event set once the socket is gone, for whatever reason
    """

    def __init__(
        self,
        ws_url: str,
        *,
        timeout: float = 30.0,
        max_size: int = 10_485_760,
    ):
        if not ws_url.startswith(("ws://", "wss://")):
            raise ValueError(f"Invalid WebSocket URL: {ws_url}")

        self.ws_url = ws_url
        self.timeout = timeout
        self.max_size = max_size
        self.closed = asyncio.Event()

        self._ws: Any = None
        self._next_command_id: int = 1
        self._pending_commands: Dict[int, asyncio.Future] = {}
        self._event_handlers: Dict[str, List[EventHandler]] = {}
        self._handler_tasks: Set[asyncio.Task] = set()
        self._receive_task: Optional[asyncio.Task] = None
        self._is_connected: bool = False

    @property
    def is_connected(self) -> bool:
        """Check if WebSocket connection is active."""
        if not self._is_connected or self._ws is None:
            return False
        try:
            return self._ws.state.name == "OPEN"
        except AttributeError:
            return not getattr(self._ws, "closed", True)

    async def connect(self) -> None:
        """Establish WebSocket connection and start receive loop.

        Raises:
            ConnectionFailedError: If WebSocket connection fails
        """
        try:
            logger.info(f"Connecting to {self.ws_url}")
            self._ws = await websockets.connect(self.ws_url, max_size=self.max_size)
        except Exception as e:
            raise ConnectionFailedError(
                f"Failed to connect to {self.ws_url}: {e}",
                details={
                    "url": self.ws_url,
                    "error": str(e),
                    "recovery": "Ensure Chrome is running with --remote-debugging-port",
                },
            ) from e

        self._is_connected = True
        self.closed.clear()
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("CDP connection established")

    async def disconnect(self) -> None:
        """Close WebSocket connection gracefully."""
        logger.info("Disconnecting CDP connection")
        self._is_connected = False

        if self._receive_task and not self._receive_task.done():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        if self._ws is not None:
            try:
                if getattr(self._ws, "state", None) is None or self._ws.state.name != "CLOSED":
                    await self._ws.close()
            except Exception as e:
                logger.warning(f"Error closing WebSocket: {e}")

        self._fail_pending("Connection closed during command execution")
        self.closed.set()
        logger.info("CDP connection closed")

    async def __aenter__(self) -> "CDPConnection":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def send(
        self,
        method: str,
        params: Optional[dict] = None,
        *,
        timeout: Optional[float] = None,
    ) -> dict:
        """Execute CDP command and wait for response.

        Args:
            method: CDP method name (e.g., "Runtime.evaluate", "Network.enable")
            params: Method parameters (default: empty dict)
            timeout: Command timeout in seconds (default: self.timeout)

        Returns:
            Command result dict (contents of "result" field in response)

        Raises:
            ConnectionClosedError: If connection is not active
            CDPTimeoutError: If command times out
            CommandFailedError: If Chrome returns error response
        """
        if not self.is_connected:
            raise ConnectionClosedError("Cannot execute command: connection not active")

        cmd_id = self._next_command_id
        self._next_command_id += 1

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_commands[cmd_id] = future

        message = json.dumps({"id": cmd_id, "method": method, "params": params or {}})
        cmd_timeout = timeout if timeout is not None else self.timeout

        try:
            await self._ws.send(message)
            logger.debug(f"Sent command {cmd_id}: {method}")
            return await asyncio.wait_for(future, timeout=cmd_timeout)
        except asyncio.TimeoutError:
            raise CDPTimeoutError(
                "Command timed out", command_method=method, timeout=cmd_timeout
            )
        except CommandFailedError as e:
            e.method = method
            raise
        except ConnectionClosed as e:
            raise ConnectionClosedError(f"Connection closed: {e}") from e
        finally:
            self._pending_commands.pop(cmd_id, None)

    def subscribe(self, event_name: str, callback: EventHandler) -> None:
        """Register async callback for CDP event.

        Note:
            Remember to enable the corresponding CDP domain first.
            Example: await conn.send("Network.enable")
        """
        self._event_handlers.setdefault(event_name, []).append(callback)
        logger.debug(f"Subscribed to event: {event_name}")

    def unsubscribe(self, event_name: str, callback: EventHandler) -> None:
        """Remove event callback."""
        if event_name in self._event_handlers:
            try:
                self._event_handlers[event_name].remove(callback)
                logger.debug(f"Unsubscribed from event: {event_name}")
            except ValueError:
                logger.warning(f"Callback not found for event: {event_name}")

    def _dispatch_event(self, event_name: str, params: dict) -> None:
        for handler in list(self._event_handlers.get(event_name, [])):
            # Tasks start in creation order, so handlers for one request id
            # observe events in the order Chrome emitted them.
            task = asyncio.create_task(self._run_handler(event_name, handler, params))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    async def _run_handler(self, event_name: str, handler: EventHandler, params: dict) -> None:
        try:
            await handler(params)
        except Exception as e:
            logger.error(f"Event handler error for {event_name}: {e}", exc_info=True)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending_commands.values():
            if not future.done():
                future.set_exception(ConnectionClosedError(reason))
        self._pending_commands.clear()

    async def _receive_loop(self) -> None:
        """Background task to receive and route WebSocket messages.

        Routes messages to either command responses (matched by ID to pending
        futures) or event notifications (dispatched to registered callbacks).
        """
        try:
            async for message in self._ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError as e:
                    logger.error(f"Malformed CDP message: {e}")
                    continue

                if "id" in data:
                    future = self._pending_commands.get(data["id"])
                    if future is None or future.done():
                        continue
                    if "error" in data:
                        error = data["error"]
                        future.set_exception(
                            CommandFailedError(
                                error.get("message", "Unknown CDP error"),
                                error_code=error.get("code"),
                                details={"error": error},
                            )
                        )
                    else:
                        future.set_result(data.get("result", {}))

                elif "method" in data:
                    self._dispatch_event(data["method"], data.get("params", {}))

        except ConnectionClosed as e:
            logger.warning(f"WebSocket connection closed: {e}")
            self._fail_pending(f"Connection closed: {e}")
        except Exception as e:
            logger.error(f"Receive loop error: {e}", exc_info=True)
            self._fail_pending(f"Receive loop error: {e}")
        finally:
            self._is_connected = False
            self._fail_pending("Connection closed by browser")
            self.closed.set()
