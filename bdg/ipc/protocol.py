"""
JSONL wire protocol shared by the CLI client, the daemon and the worker.

Three envelopes travel over newline-delimited JSON:

- client -> daemon (Unix socket):  ``{type, sessionId, params}``
- daemon -> worker (stdin):        ``{requestId, type, params}``
- worker -> daemon (stdout):       ``{requestId, type: "<command>_response",
                                     success, data?, error?, suggestion?, exitCode?}``
- daemon -> client:                ``{type: "<name>_response", sessionId,
                                     status: "ok"|"error", data?, error?, ...}``

The set of worker commands is closed (WorkerCommand).
"""

import json
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from ..exceptions import CommandError, IPCError, JSONLBufferOverflowError
from ..exit_codes import ExitCode

MAX_JSONL_BUFFER_SIZE = 10 * 1024 * 1024

WORKER_READY = "worker_ready"
READY_REQUEST_ID = "ready"


class WorkerCommand(str, Enum):
    """Commands the worker understands."""

    PEEK = "worker_peek"
    STATUS = "worker_status"
    DETAILS = "worker_details"
    HAR_DATA = "worker_har_data"
    NETWORK_HEADERS = "worker_network_headers"
    NETWORK_LIST = "worker_network_list"
    CONSOLE = "worker_console"
    CDP_CALL = "cdp_call"

    @classmethod
    def parse(cls, value: str) -> Optional["WorkerCommand"]:
        try:
            return cls(value)
        except ValueError:
            return None


class ClientRequest(str, Enum):
    """Request types a CLI client may send to the daemon."""

    HANDSHAKE = "handshake"
    STATUS = "status"
    PEEK = "peek"
    HAR_DATA = "har_data"
    START_SESSION = "start_session"
    STOP_SESSION = "stop_session"
    DETAILS = "worker_details"
    NETWORK_HEADERS = "worker_network_headers"
    NETWORK_LIST = "worker_network_list"
    CONSOLE = "worker_console"
    CDP_CALL = "cdp_call"


# Client request types forwarded to a worker command
CLIENT_TO_WORKER: Dict[str, WorkerCommand] = {
    ClientRequest.STATUS.value: WorkerCommand.STATUS,
    ClientRequest.PEEK.value: WorkerCommand.PEEK,
    ClientRequest.HAR_DATA.value: WorkerCommand.HAR_DATA,
    ClientRequest.DETAILS.value: WorkerCommand.DETAILS,
    ClientRequest.NETWORK_HEADERS.value: WorkerCommand.NETWORK_HEADERS,
    ClientRequest.NETWORK_LIST.value: WorkerCommand.NETWORK_LIST,
    ClientRequest.CONSOLE.value: WorkerCommand.CONSOLE,
    ClientRequest.CDP_CALL.value: WorkerCommand.CDP_CALL,
}


def response_type(command: str) -> str:
    """``"worker_peek"`` -> ``"worker_peek_response"``."""
    return f"{command}_response"


def strip_response_suffix(message_type: str) -> Optional[str]:
    suffix = "_response"
    if message_type.endswith(suffix):
        return message_type[: -len(suffix)]
    return None


def make_request_id(command: str) -> str:
    return f"{command}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def to_frame(message: Dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":"), default=str) + "\n").encode("utf-8")


def parse_frame(line: str) -> Dict[str, Any]:
    """Parse one JSONL line.

    Raises:
        IPCError: If the line is not a JSON object
    """
    try:
        message = json.loads(line)
    except json.JSONDecodeError as e:
        raise IPCError(f"Malformed JSONL frame: {e}", details={"frame": line[:200]}) from e
    if not isinstance(message, dict):
        raise IPCError("JSONL frame is not an object", details={"frame": line[:200]})
    return message


class JSONLBuffer:
    """Accumulates stream chunks and yields complete, non-blank lines.

    A partial line longer than ``max_size`` raises JSONLBufferOverflowError,
    which protects the daemon from a peer that never sends a newline.
    """

    def __init__(self, max_size: int = MAX_JSONL_BUFFER_SIZE):
        self.max_size = max_size
        self._buffer = ""

    def feed(self, chunk: str) -> List[str]:
        self._buffer += chunk
        if len(self._buffer) > self.max_size:
            size = len(self._buffer)
            self._buffer = ""
            raise JSONLBufferOverflowError(size, self.max_size)

        *lines, self._buffer = self._buffer.split("\n")
        return [line for line in lines if line.strip()]

    @property
    def pending(self) -> str:
        return self._buffer


def validate_response(response: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``response["data"]`` for a successful client response.

    Raises:
        CommandError: If the error carries an exit code (user error from a handler)
        IPCError: For any other ``status: "error"`` response
    """
    if response.get("status") != "error":
        return response.get("data") or {}

    message = response.get("error") or "Unknown IPC error"
    exit_code = response.get("exitCode")
    if exit_code is not None:
        try:
            code = ExitCode(exit_code)
        except ValueError:
            code = ExitCode.GENERIC_FAILURE
        raise CommandError(message, suggestion=response.get("suggestion"), exit_code=code)
    raise IPCError(message, details=_error_details(response))


def require_data(response: Dict[str, Any], field: str, description: str) -> Any:
    """validate_response plus a required field inside ``data``."""
    data = validate_response(response)
    value = data.get(field)
    if value is None:
        raise IPCError(f"No {description} in response")
    return value


def _error_details(response: Dict[str, Any]) -> Dict[str, Any]:
    details: Dict[str, Any] = {}
    if response.get("suggestion"):
        details["recovery"] = response["suggestion"]
    return details
