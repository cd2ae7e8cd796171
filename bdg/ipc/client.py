"""
CLI side of the daemon socket.

One request per connection: connect, write one JSONL frame, read one JSONL
frame back, close.
"""

import asyncio
import json
import logging
import subprocess
import sys
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import Configuration
from ..exceptions import DaemonNotRunningError, IPCError
from ..session.paths import SessionPaths
from .protocol import MAX_JSONL_BUFFER_SIZE, ClientRequest, parse_frame, to_frame

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 15.0
DAEMON_STARTUP_TIMEOUT = 10.0


class IPCClient:
    """
    Talks to the daemon over its Unix socket.

    Usage:
        >>> client = IPCClient(paths.daemon_socket)
        >>> response = await client.request("peek", {"lastN": 20})
        >>> data = validate_response(response)

    Attributes:
        socket_path: Path of daemon.sock
        timeout: Default seconds to wait for a response
        session_id: Echoed by the daemon in every response
    """

    def __init__(
        self,
        socket_path: Path,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        session_id: Optional[str] = None,
    ):
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self.session_id = session_id or uuid.uuid4().hex

    async def request(
        self,
        request_type: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send one request and return the daemon's raw response.

        Raises:
            DaemonNotRunningError: If nothing listens on the socket
            IPCError: On timeout, a malformed reply or an early close
        """
        timeout = timeout if timeout is not None else self.timeout
        try:
            reader, writer = await asyncio.open_unix_connection(
                str(self.socket_path), limit=MAX_JSONL_BUFFER_SIZE
            )
        except (FileNotFoundError, ConnectionRefusedError) as e:
            raise DaemonNotRunningError(str(self.socket_path)) from e
        except OSError as e:
            raise IPCError(f"Cannot connect to daemon: {e}") from e

        message = {"type": request_type, "sessionId": self.session_id, "params": params or {}}
        try:
            writer.write(to_frame(message))
            await writer.drain()
            line = await asyncio.wait_for(reader.readline(), timeout=timeout)
        except asyncio.TimeoutError:
            raise IPCError(
                f"Request timeout: no {request_type} response within {timeout:g}s",
                details={"recovery": 'Check the daemon with "bdg status"'},
            )
        except ValueError as e:
            raise IPCError(f"Response exceeded {MAX_JSONL_BUFFER_SIZE} bytes: {e}") from e
        except ConnectionError as e:
            raise IPCError(f"Connection to daemon lost: {e}") from e
        finally:
            writer.close()

        if not line:
            raise IPCError(f"Daemon closed the connection before answering {request_type}")
        return parse_frame(line.decode("utf-8", errors="replace"))

    async def handshake(self) -> Dict[str, Any]:
        return await self.request(ClientRequest.HANDSHAKE.value, timeout=min(self.timeout, 5.0))

    async def status(self) -> Dict[str, Any]:
        return await self.request(ClientRequest.STATUS.value)

    async def peek(self, last_n: Optional[int] = None, offset: int = 0) -> Dict[str, Any]:
        params: Dict[str, Any] = {"offset": offset}
        if last_n is not None:
            params["lastN"] = last_n
        return await self.request(ClientRequest.PEEK.value, params)

    async def har_data(self) -> Dict[str, Any]:
        return await self.request(ClientRequest.HAR_DATA.value)

    async def details(self, item_type: str, item_id: str) -> Dict[str, Any]:
        return await self.request(ClientRequest.DETAILS.value, {"itemType": item_type, "id": item_id})

    async def network_headers(
        self, request_id: Optional[str] = None, header_name: Optional[str] = None
    ) -> Dict[str, Any]:
        params = {}
        if request_id:
            params["id"] = request_id
        if header_name:
            params["headerName"] = header_name
        return await self.request(ClientRequest.NETWORK_HEADERS.value, params)

    async def network_list(
        self,
        filter_text: Optional[str] = None,
        preset: Optional[str] = None,
        resource_type: Optional[str] = None,
        last_n: Optional[int] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if filter_text:
            params["filter"] = filter_text
        if preset:
            params["preset"] = preset
        if resource_type:
            params["type"] = resource_type
        if last_n is not None:
            params["lastN"] = last_n
        return await self.request(ClientRequest.NETWORK_LIST.value, params)

    async def console(self, level: Optional[str] = None, last_n: Optional[int] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if level:
            params["level"] = level
        if last_n is not None:
            params["lastN"] = last_n
        return await self.request(ClientRequest.CONSOLE.value, params)

    async def cdp_call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request(ClientRequest.CDP_CALL.value, {"method": method, "params": params or {}})

    async def start_session(self, options: Dict[str, Any], timeout: float) -> Dict[str, Any]:
        return await self.request(ClientRequest.START_SESSION.value, options, timeout=timeout)

    async def stop_session(self, timeout: float) -> Dict[str, Any]:
        return await self.request(ClientRequest.STOP_SESSION.value, timeout=timeout)


def client_for(config: Configuration) -> IPCClient:
    paths = SessionPaths.from_dir(config.session_dir)
    return IPCClient(paths.daemon_socket, timeout=config.command_timeout + 5.0)


async def is_daemon_running(client: IPCClient) -> bool:
    try:
        response = await client.handshake()
    except IPCError:
        return False
    return response.get("status") == "ok"


def spawn_daemon(config: Configuration, paths: SessionPaths) -> subprocess.Popen:
    """Start ``bdg.daemon.main`` detached, logging to daemon.log."""
    paths.ensure()
    with open(paths.daemon_log, "a", encoding="utf-8") as log_handle:
        return subprocess.Popen(
            [sys.executable, "-m", "bdg.daemon.main", "--config", json.dumps(config.to_dict())],
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=log_handle,
            start_new_session=True,
        )


async def ensure_daemon(config: Configuration, startup_timeout: float = DAEMON_STARTUP_TIMEOUT) -> IPCClient:
    """
    Return a client for a running daemon, spawning one if needed.

    Raises:
        IPCError: If the daemon does not answer a handshake in time
    """
    client = client_for(config)
    if await is_daemon_running(client):
        return client

    paths = SessionPaths.from_dir(config.session_dir)
    process = spawn_daemon(config, paths)
    logger.debug(f"Spawned daemon (PID {process.pid})")

    loop = asyncio.get_running_loop()
    deadline = loop.time() + startup_timeout
    while loop.time() < deadline:
        if await is_daemon_running(client):
            return client
        # A concurrent CLI may have won the daemon lock; the handshake above covers that
        if process.poll() is not None:
            raise IPCError(
                f"Daemon exited during startup (code {process.returncode})",
                details={"recovery": f"See {paths.daemon_log}"},
            )
        await asyncio.sleep(0.1)

    raise IPCError(
        f"Daemon did not start within {startup_timeout:g}s",
        details={"recovery": f"See {paths.daemon_log}"},
    )
