"""Exception hierarchy for bdg.

All bdg exceptions inherit from BdgError. CDP-related failures keep their own
CDPError branch; user-facing failures are CommandError, which carries a
suggestion and an exit code so it can cross the IPC boundary as data.
"""

from typing import Any, Dict, Optional

from .exit_codes import ExitCode


class BdgError(Exception):
    """Base exception for all bdg errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary with additional error context
    """

    exit_code: ExitCode = ExitCode.GENERIC_FAILURE

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(
                f"{k}={v}" for k, v in self.details.items() if k != "recovery"
            )
            if details_str:
                return f"{self.message} ({details_str})"
        return self.message


class CDPError(BdgError):
    """Base exception for all CDP-related errors."""

    exit_code = ExitCode.SOFTWARE_ERROR


class CDPConnectionError(CDPError):
    """WebSocket connection failures.

    Raised when establishing or maintaining CDP WebSocket connection fails.
    """

    exit_code = ExitCode.CDP_CONNECTION_FAILURE


class ConnectionFailedError(CDPConnectionError):
    """Initial connection failed.

    Common causes: wrong port, Chrome not running, network issues.
    """

    pass


class ConnectionClosedError(CDPConnectionError):
    """Connection closed unexpectedly.

    Common causes: Chrome crash, tab closed, manual closure.
    """

    pass


class CDPCommandError(CDPError):
    """Raised when a CDP command returns an error response."""

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        error_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.method = method
        self.error_code = error_code


class CommandFailedError(CDPCommandError):
    """Chrome returned an error response for the executed command.

    Example: unknown method, invalid selector in DOM.querySelectorAll
    """

    pass


class InvalidCommandError(CDPCommandError):
    """Command is invalid before it is sent to Chrome.

    Example: missing required parameters, malformed method name.
    """

    pass


class CDPTimeoutError(CDPError):
    """Command did not receive a response within the timeout period."""

    exit_code = ExitCode.CDP_TIMEOUT

    def __init__(
        self,
        message: str,
        command_method: Optional[str] = None,
        timeout: Optional[float] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.command_method = command_method
        self.timeout = timeout

    def __str__(self):
        if self.command_method and self.timeout:
            return f"Command '{self.command_method}' timed out after {self.timeout}s"
        return self.message


class CDPTargetNotFoundError(CDPError):
    """Requested Chrome target cannot be found."""

    exit_code = ExitCode.RESOURCE_NOT_FOUND

    def __init__(
        self,
        message: str,
        target_id: Optional[str] = None,
        url_pattern: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id
        self.url_pattern = url_pattern

    def __str__(self):
        if self.target_id:
            return f"Target not found: {self.target_id}"
        if self.url_pattern:
            return f"No target matching URL pattern: {self.url_pattern}"
        return self.message


class CommandError(BdgError):
    """User-facing command failure.

    Raised for invalid arguments, stale caches, out-of-range indexes and
    missing resources. Travels across IPC as ``{error, suggestion, exitCode}``.

    Attributes:
        suggestion: Optional next step shown to the user
        exit_code: Process exit code for the CLI
    """

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        exit_code: ExitCode = ExitCode.INVALID_ARGUMENTS,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.suggestion = suggestion
        self.exit_code = ExitCode(exit_code)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "exitCode": int(self.exit_code)}
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload


class IPCError(BdgError):
    """Failure talking to the daemon or the worker over the local sockets."""

    exit_code = ExitCode.SOFTWARE_ERROR


class JSONLBufferOverflowError(IPCError):
    """A partial JSONL frame grew past the buffer limit without a newline."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"JSONL buffer exceeded {limit} bytes without a complete frame",
            details={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class DaemonNotRunningError(IPCError):
    """No daemon is listening on the session socket."""

    exit_code = ExitCode.RESOURCE_NOT_FOUND

    def __init__(self, socket_path: str, details: Optional[dict] = None):
        merged = {"recovery": 'Start a session with "bdg start"'}
        merged.update(details or {})
        super().__init__(f"No daemon running (socket: {socket_path})", details=merged)
        self.socket_path = socket_path


class WorkerError(BdgError):
    """The worker process failed to start or exited unexpectedly."""

    exit_code = ExitCode.SOFTWARE_ERROR


class SessionFileError(BdgError):
    """A session file could not be read or written."""

    exit_code = ExitCode.SESSION_FILE_ERROR
