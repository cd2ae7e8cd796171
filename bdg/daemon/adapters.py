"""
Shape worker responses into the responses clients expect.

Worker commands form a closed set, and three families need reshaping at the
daemon boundary:

- ``worker_peek`` becomes ``peek_response`` with a ``preview`` envelope and
  the live session PID
- ``worker_status`` becomes ``status_response``, merged with the base status
  the daemon gathered itself (PIDs, socket path, metadata)
- ``worker_har_data`` becomes ``har_data_response`` with a ``requests``
  payload

Everything else passes through as ``<command>_response``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..ipc.protocol import WorkerCommand, response_type

WORKER_EXITED_MESSAGE = "Worker process exited before responding"

STATUS_RESPONSE = "status_response"
PEEK_RESPONSE = "peek_response"
HAR_DATA_RESPONSE = "har_data_response"


def _status(ok: bool) -> str:
    return "ok" if ok else "error"


def iso_timestamp(epoch_ms: Optional[float]) -> str:
    when = datetime.fromtimestamp((epoch_ms or 0) / 1000, tz=timezone.utc)
    return when.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def client_response_type(command_name: str) -> str:
    """Client-facing response type for a worker command."""
    family = WorkerCommand.parse(command_name)
    if family is WorkerCommand.STATUS:
        return STATUS_RESPONSE
    if family is WorkerCommand.PEEK:
        return PEEK_RESPONSE
    if family is WorkerCommand.HAR_DATA:
        return HAR_DATA_RESPONSE
    return response_type(command_name)


def _error_fields(message: Dict[str, Any]) -> Dict[str, Any]:
    fields = {}
    for key in ("error", "suggestion", "exitCode"):
        if message.get(key) is not None:
            fields[key] = message[key]
    return fields


def adapt_peek(session_id: str, message: Dict[str, Any], session_pid: Optional[int]) -> Dict[str, Any]:
    success = bool(message.get("success"))
    response: Dict[str, Any] = {
        "type": PEEK_RESPONSE,
        "sessionId": session_id,
        "status": _status(success),
    }
    data = message.get("data")
    if success and data:
        response["data"] = {
            "sessionPid": session_pid or 0,
            "preview": {
                "version": data.get("version"),
                "success": True,
                "timestamp": iso_timestamp(data.get("startTime")),
                "duration": data.get("duration"),
                "target": data.get("target"),
                "data": {
                    "network": data.get("network", []),
                    "console": data.get("console", []),
                },
                "partial": True,
                "totalNetwork": data.get("totalNetwork", 0),
                "totalConsole": data.get("totalConsole", 0),
                "hasMoreNetwork": data.get("hasMoreNetwork", False),
                "hasMoreConsole": data.get("hasMoreConsole", False),
            },
        }
    response.update(_error_fields(message))
    return response


def adapt_status(
    session_id: str, message: Dict[str, Any], base_status: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    """Merge the worker's live activity into the daemon's base status.

    A failed worker query still returns the base status when the daemon has
    one, so the client can at least show PIDs.
    """
    success = bool(message.get("success"))
    data = message.get("data")
    error = message.get("error")

    if success and data and base_status is not None:
        merged = dict(base_status)
        merged["activity"] = data.get("activity")
        merged["pageState"] = data.get("target")
        merged["navigationId"] = data.get("navigationId")
        return {"type": STATUS_RESPONSE, "sessionId": session_id, "status": "ok", "data": merged}

    if base_status is not None:
        response = {
            "type": STATUS_RESPONSE,
            "sessionId": session_id,
            "status": "error" if error else "ok",
            "data": dict(base_status),
        }
        if error:
            response["error"] = error
        return response

    return {
        "type": STATUS_RESPONSE,
        "sessionId": session_id,
        "status": "error",
        "error": error or "Failed to retrieve status data",
    }


def adapt_har_data(session_id: str, message: Dict[str, Any], session_pid: Optional[int]) -> Dict[str, Any]:
    success = bool(message.get("success"))
    response: Dict[str, Any] = {
        "type": HAR_DATA_RESPONSE,
        "sessionId": session_id,
        "status": _status(success),
    }
    data = message.get("data")
    if success and data:
        payload: Dict[str, Any] = {
            "sessionPid": session_pid or 0,
            "requests": data.get("requests", []),
        }
        if data.get("browserVersion"):
            payload["browser"] = data["browserVersion"]
        response["data"] = payload
    response.update(_error_fields(message))
    return response


def adapt_generic(session_id: str, command_name: str, message: Dict[str, Any]) -> Dict[str, Any]:
    response: Dict[str, Any] = {
        key: value
        for key, value in message.items()
        if key not in ("requestId", "success", "type")
    }
    response["type"] = response_type(command_name)
    response["sessionId"] = session_id
    response["status"] = _status(bool(message.get("success")))
    return response


def adapt_worker_response(
    command_name: str,
    session_id: str,
    message: Dict[str, Any],
    *,
    session_pid: Optional[int] = None,
    carry_state: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Dispatch to the adapter for ``command_name``'s family."""
    family = WorkerCommand.parse(command_name)
    if family is WorkerCommand.PEEK:
        return adapt_peek(session_id, message, session_pid)
    if family is WorkerCommand.STATUS:
        return adapt_status(session_id, message, carry_state)
    if family is WorkerCommand.HAR_DATA:
        return adapt_har_data(session_id, message, session_pid)
    return adapt_generic(session_id, command_name, message)


def error_response(
    command_name: str,
    session_id: str,
    error: str,
    carry_state: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Synthesized error for a request the worker never answered.

    Status-shaped errors keep the daemon's base status data.
    """
    response: Dict[str, Any] = {
        "type": client_response_type(command_name),
        "sessionId": session_id,
        "status": "error",
        "error": error,
    }
    if WorkerCommand.parse(command_name) is WorkerCommand.STATUS and carry_state is not None:
        response["data"] = dict(carry_state)
    return response
