"""
Session broker: correlates client requests with worker responses.

The broker owns the pending-request map. It never awaits a worker reply
inline; dispatch writes to the worker and returns, and the reply (or a
timeout, or the worker's exit) later resolves the request exactly once.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from ..ipc.protocol import WORKER_READY, WorkerCommand, make_request_id, strip_response_suffix
from .adapters import WORKER_EXITED_MESSAGE, adapt_worker_response, error_response

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TIMEOUT = 5.0
DEFAULT_COMMAND_TIMEOUT = 10.0

NO_WORKER_MESSAGE = "No active worker process"

# Read-only telemetry queries get the shorter timeout
QUERY_COMMANDS = frozenset(
    {
        WorkerCommand.PEEK,
        WorkerCommand.STATUS,
        WorkerCommand.HAR_DATA,
        WorkerCommand.NETWORK_LIST,
        WorkerCommand.CONSOLE,
    }
)


class WorkerChannel(Protocol):
    """What the broker needs from the worker process."""

    @property
    def is_alive(self) -> bool: ...

    def send(self, message: Dict[str, Any]) -> None: ...


ResponseSender = Callable[[Any, Dict[str, Any]], None]


@dataclass
class PendingRequest:
    """A client request forwarded to the worker and not yet answered.

    Attributes:
        request_id: Correlation id echoed back by the worker
        client: Opaque handle passed back to the response sender
        session_id: Client's session id, echoed in the response
        command_name: Worker command (selects the response adapter)
        created_at: time.monotonic() at dispatch
        carry_state: Daemon-side data merged into the eventual response
        timeout_handle: Armed timer that answers with a timeout error
    """

    request_id: str
    client: Any
    session_id: str
    command_name: str
    created_at: float
    carry_state: Optional[Dict[str, Any]] = None
    timeout_handle: Optional[asyncio.TimerHandle] = None


def format_timeout(seconds: float) -> str:
    return f"Worker response timeout ({seconds:g}s)"


class SessionBroker:
    """
    Forward client commands to the single worker and route replies back.

    Args:
        respond: Called as ``respond(client, response)`` to answer a client
        session_pid_reader: Returns the live worker PID for peek/HAR envelopes
        query_timeout: Seconds to wait for read-only query replies
        command_timeout: Seconds to wait for every other command

    Example:
        >>> broker = SessionBroker(server.send_response)
        >>> broker.attach_worker(worker)
        >>> broker.dispatch(writer, "s1", "worker_peek", {"lastN": 10})
    """

    def __init__(
        self,
        respond: ResponseSender,
        *,
        session_pid_reader: Callable[[], Optional[int]] = lambda: None,
        query_timeout: float = DEFAULT_QUERY_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.respond = respond
        self.session_pid_reader = session_pid_reader
        self.query_timeout = query_timeout
        self.command_timeout = command_timeout
        self._worker: Optional[WorkerChannel] = None
        self._pending: Dict[str, PendingRequest] = {}

    def attach_worker(self, worker: WorkerChannel) -> None:
        self._worker = worker

    @property
    def has_active_worker(self) -> bool:
        return self._worker is not None and self._worker.is_alive

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def timeout_for(self, command_name: str) -> float:
        if WorkerCommand.parse(command_name) in QUERY_COMMANDS:
            return self.query_timeout
        return self.command_timeout

    def dispatch(
        self,
        client: Any,
        session_id: str,
        command_name: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        carry_state: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[str]:
        """
        Forward one command to the worker.

        Returns:
            The request id, or None if the client was answered immediately
            (no worker, or the write to the worker failed)
        """
        if not self.has_active_worker:
            self.respond(client, error_response(command_name, session_id, NO_WORKER_MESSAGE, carry_state))
            logger.debug(f"{command_name} rejected: no worker")
            return None

        timeout = timeout if timeout is not None else self.timeout_for(command_name)
        request_id = make_request_id(command_name)
        pending = PendingRequest(
            request_id=request_id,
            client=client,
            session_id=session_id,
            command_name=command_name,
            created_at=time.monotonic(),
            carry_state=carry_state,
        )
        loop = asyncio.get_running_loop()
        pending.timeout_handle = loop.call_later(timeout, self._on_timeout, request_id, timeout)
        self._pending[request_id] = pending

        try:
            self._worker.send({"requestId": request_id, "type": command_name, "params": params or {}})
        except Exception as e:
            self._take(request_id)
            logger.warning(f"Failed to forward {command_name} to worker: {e}")
            self.respond(client, error_response(command_name, session_id, str(e), carry_state))
            return None

        logger.debug(f"Forwarded {command_name} to worker (requestId: {request_id})")
        return request_id

    def _take(self, request_id: str) -> Optional[PendingRequest]:
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        return pending

    def _on_timeout(self, request_id: str, timeout: float) -> None:
        pending = self._take(request_id)
        if pending is None:
            return
        logger.warning(f"{pending.command_name} timed out after {timeout:g}s (requestId: {request_id})")
        self.respond(
            pending.client,
            error_response(pending.command_name, pending.session_id, format_timeout(timeout), pending.carry_state),
        )

    def handle_worker_message(self, message: Dict[str, Any]) -> None:
        """Route one JSONL message read from the worker's stdout."""
        message_type = message.get("type", "")
        request_id = message.get("requestId")

        if message_type == WORKER_READY:
            logger.debug("Worker ready signal (already processed during launch)")
            return

        command_name = strip_response_suffix(message_type)
        if command_name is None:
            logger.warning(f"Ignoring unexpected worker message type: {message_type!r}")
            return

        pending = self._take(request_id) if request_id else None
        if pending is None:
            logger.info(f"No pending request for requestId {request_id!r} ({message_type}), discarding")
            return

        response = adapt_worker_response(
            pending.command_name,
            pending.session_id,
            message,
            session_pid=self.session_pid_reader(),
            carry_state=pending.carry_state,
        )
        self.respond(pending.client, response)
        logger.debug(f"Forwarded {response['type']} to client (requestId: {request_id})")

    def handle_worker_exit(self, code: Optional[int], signal_name: Optional[str] = None) -> int:
        """
        Answer every outstanding request with a shaped error.

        Returns:
            Number of requests that were failed
        """
        logger.info(f"Worker exit detected (code: {code}, signal: {signal_name})")
        self._worker = None

        failed = 0
        for request_id in list(self._pending):
            pending = self._take(request_id)
            if pending is None:
                continue
            self.respond(
                pending.client,
                error_response(pending.command_name, pending.session_id, WORKER_EXITED_MESSAGE, pending.carry_state),
            )
            failed += 1
        return failed

    def forget_client(self, client: Any) -> None:
        """Drop pending requests of a client that disconnected."""
        for request_id, pending in list(self._pending.items()):
            if pending.client is client:
                self._take(request_id)
