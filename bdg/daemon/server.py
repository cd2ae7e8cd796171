"""
Daemon IPC server.

Listens on ``<session_dir>/daemon.sock`` for JSONL requests from CLI
clients, supervises the worker process and routes commands through the
SessionBroker.
"""

import asyncio
import logging
import os
import signal
from asyncio import StreamReader, StreamWriter
from typing import IO, Any, Callable, Dict, Optional, Set

from ..config import Configuration
from ..exceptions import BdgError, IPCError
from ..exit_codes import ExitCode
from ..ipc.protocol import (
    CLIENT_TO_WORKER,
    MAX_JSONL_BUFFER_SIZE,
    ClientRequest,
    parse_frame,
    response_type,
    to_frame,
)
from ..session.cleanup import cleanup_stale_files
from ..session.files import is_process_alive, read_pid, read_session_metadata, remove_file, write_pid
from ..session.lock import FileLock
from ..session.paths import SessionPaths
from ..telemetry.store import DEFAULT_PEEK_ITEMS, now_ms
from .broker import SessionBroker
from .worker_process import WorkerProcess

logger = logging.getLogger(__name__)

NO_SESSION_MESSAGE = "No active session"

METADATA_FIELDS = ("bdgPid", "startTime", "port", "targetId", "webSocketDebuggerUrl", "activeTelemetry")

WorkerFactory = Callable[..., WorkerProcess]


class IPCServer:
    """
    Unix-socket server of the daemon.

    Args:
        config: Effective configuration (timeouts, Chrome endpoint)
        paths: Session directory layout
        lock: Daemon lock held for the server's lifetime, released on stop
        worker_factory: Builds the WorkerProcess (tests pass fakes)
        worker_stderr: File the worker's logs are appended to
    """

    def __init__(
        self,
        config: Configuration,
        paths: SessionPaths,
        *,
        lock: Optional[FileLock] = None,
        worker_factory: WorkerFactory = WorkerProcess,
        worker_stderr: Optional[IO[str]] = None,
    ):
        self.config = config
        self.paths = paths
        self.lock = lock
        self.worker_factory = worker_factory
        self.worker_stderr = worker_stderr
        self.start_time = now_ms()
        self.broker = SessionBroker(
            self.send_response,
            session_pid_reader=self._session_pid,
            query_timeout=config.worker_timeout,
            command_timeout=config.command_timeout,
        )
        self._server: Optional[asyncio.AbstractServer] = None
        self._clients: Set[StreamWriter] = set()
        self._worker: Optional[WorkerProcess] = None
        self._start_lock = asyncio.Lock()
        self._running = False
        self._stopped = asyncio.Event()

    @property
    def socket_path(self) -> str:
        return str(self.paths.daemon_socket)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self, install_signal_handlers: bool = True) -> None:
        """Bind the socket, write daemon.pid and start accepting clients."""
        self.paths.ensure()
        remove_file(self.paths.daemon_socket)

        self._server = await asyncio.start_unix_server(
            self._handle_client, path=self.socket_path, limit=MAX_JSONL_BUFFER_SIZE
        )
        self.paths.daemon_socket.chmod(0o600)
        write_pid(self.paths.daemon_pid)
        self._running = True

        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

        logger.info(f"Daemon listening on {self.socket_path} (PID {os.getpid()})")

    async def stop(self) -> None:
        """Stop the worker, close every client and remove daemon files.

        Safe to call more than once and with any daemon file already gone.
        """
        if not self._running:
            return
        self._running = False
        logger.info("Stopping daemon...")

        if self._worker is not None and self._worker.is_alive:
            await self._worker.terminate(timeout=self.config.timeout)

        for writer in list(self._clients):
            writer.close()
        self._clients.clear()

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        remove_file(self.paths.daemon_socket)
        remove_file(self.paths.daemon_pid)
        if self.lock is not None:
            self.lock.release(unlink=True)

        self._stopped.set()
        logger.info("Daemon stopped")

    async def run(self) -> None:
        """Start and serve until stopped."""
        await self.start()
        await self._stopped.wait()

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def send_response(self, writer: StreamWriter, response: Dict[str, Any]) -> None:
        if writer.is_closing():
            logger.debug(f"Client gone, dropping {response.get('type')}")
            return
        writer.write(to_frame(response))

    async def _handle_client(self, reader: StreamReader, writer: StreamWriter) -> None:
        self._clients.add(writer)
        logger.debug("Client connected")
        try:
            while True:
                try:
                    line = await reader.readline()
                except (ValueError, asyncio.LimitOverrunError) as e:
                    logger.warning(f"Client frame too large, disconnecting: {e}")
                    break
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if text:
                    await self.handle_line(writer, text)
                await writer.drain()
        except ConnectionError as e:
            logger.debug(f"Client connection error: {e}")
        finally:
            self.broker.forget_client(writer)
            self._clients.discard(writer)
            writer.close()
            logger.debug("Client disconnected")

    async def handle_line(self, writer: StreamWriter, line: str) -> None:
        try:
            message = parse_frame(line)
        except IPCError as e:
            logger.debug(f"Failed to parse IPC message: {e}")
            return

        message_type = message.get("type")
        session_id = message.get("sessionId")
        if not isinstance(message_type, str) or session_id is None:
            logger.debug("Invalid message structure: missing 'type' or 'sessionId'")
            return
        if message_type.endswith("_response"):
            logger.debug(f"Unexpected response message from client: {message_type}")
            return

        params = message.get("params") or {}
        logger.debug(f"{message_type} request received (sessionId: {session_id})")

        if not isinstance(params, dict):
            self.send_response(
                writer,
                {
                    "type": response_type(message_type),
                    "sessionId": session_id,
                    "status": "error",
                    "error": f"Invalid params for {message_type}: expected an object",
                    "exitCode": int(ExitCode.INVALID_ARGUMENTS),
                },
            )
            return

        if message_type == ClientRequest.HANDSHAKE.value:
            self._handle_handshake(writer, session_id)
        elif message_type == ClientRequest.STATUS.value:
            self._handle_status(writer, session_id)
        elif message_type == ClientRequest.PEEK.value:
            self._handle_peek(writer, session_id, params)
        elif message_type == ClientRequest.HAR_DATA.value:
            self._handle_har_data(writer, session_id)
        elif message_type == ClientRequest.START_SESSION.value:
            await self._handle_start_session(writer, session_id, params)
        elif message_type == ClientRequest.STOP_SESSION.value:
            await self._handle_stop_session(writer, session_id)
        elif message_type in CLIENT_TO_WORKER:
            self.broker.dispatch(writer, session_id, CLIENT_TO_WORKER[message_type].value, params)
        else:
            self.send_response(
                writer,
                {
                    "type": response_type(message_type),
                    "sessionId": session_id,
                    "status": "error",
                    "error": f"Unknown request type: {message_type}",
                    "exitCode": int(ExitCode.INVALID_ARGUMENTS),
                },
            )

    def _handle_handshake(self, writer: StreamWriter, session_id: str) -> None:
        self.send_response(
            writer,
            {
                "type": "handshake_response",
                "sessionId": session_id,
                "status": "ok",
                "message": "Handshake successful",
            },
        )

    def _session_pid(self) -> Optional[int]:
        if self._worker is not None and self._worker.is_alive:
            return self._worker.pid
        pid = read_pid(self.paths.session_pid)
        return pid if is_process_alive(pid) else None

    def base_status(self) -> Dict[str, Any]:
        """Status fields the daemon knows without asking the worker."""
        data: Dict[str, Any] = {
            "daemonPid": os.getpid(),
            "daemonStartTime": self.start_time,
            "socketPath": self.socket_path,
        }
        session_pid = self._session_pid()
        if session_pid:
            data["sessionPid"] = session_pid
            metadata = read_session_metadata(self.paths.session_meta)
            if metadata:
                data["sessionMetadata"] = {
                    key: metadata[key] for key in METADATA_FIELDS if metadata.get(key) is not None
                }
        return data

    def _handle_status(self, writer: StreamWriter, session_id: str) -> None:
        try:
            data = self.base_status()
        except (OSError, BdgError) as e:
            self.send_response(
                writer,
                {
                    "type": "status_response",
                    "sessionId": session_id,
                    "status": "error",
                    "error": f"Failed to gather status: {e}",
                },
            )
            return

        if "sessionPid" in data and self.broker.has_active_worker:
            self.broker.dispatch(writer, session_id, "worker_status", carry_state=data)
            return

        self.send_response(
            writer, {"type": "status_response", "sessionId": session_id, "status": "ok", "data": data}
        )

    def _no_session(self, writer: StreamWriter, session_id: str, request_type: str) -> None:
        self.send_response(
            writer,
            {
                "type": response_type(request_type),
                "sessionId": session_id,
                "status": "error",
                "error": NO_SESSION_MESSAGE,
                "suggestion": 'Start a session with "bdg start <url>"',
                "exitCode": int(ExitCode.RESOURCE_NOT_FOUND),
            },
        )

    def _handle_peek(self, writer: StreamWriter, session_id: str, params: Dict[str, Any]) -> None:
        if not self.broker.has_active_worker:
            self._no_session(writer, session_id, ClientRequest.PEEK.value)
            return
        worker_params = {
            "lastN": params.get("lastN", DEFAULT_PEEK_ITEMS),
            "offset": params.get("offset", 0),
        }
        self.broker.dispatch(writer, session_id, "worker_peek", worker_params)

    def _handle_har_data(self, writer: StreamWriter, session_id: str) -> None:
        if not self.broker.has_active_worker:
            self._no_session(writer, session_id, ClientRequest.HAR_DATA.value)
            return
        self.broker.dispatch(writer, session_id, "worker_har_data")

    def _on_worker_exit(self, code: Optional[int], signal_name: Optional[str]) -> None:
        self.broker.handle_worker_exit(code, signal_name)
        self._worker = None
        cleanup_stale_files(self.paths)

    def worker_config(self, params: Dict[str, Any]) -> Dict[str, Any]:
        worker_config = self.config.to_dict()
        worker_config.update({key: value for key, value in params.items() if value is not None})
        return worker_config

    async def _handle_start_session(self, writer: StreamWriter, session_id: str, params: Dict[str, Any]) -> None:
        response: Dict[str, Any] = {"type": "start_session_response", "sessionId": session_id}

        async with self._start_lock:
            if self.broker.has_active_worker:
                response.update(
                    status="error",
                    error="Session already running",
                    suggestion='Stop it with "bdg stop" first',
                    exitCode=int(ExitCode.RESOURCE_ALREADY_EXISTS),
                )
                self.send_response(writer, response)
                return

            worker = self.worker_factory(
                self.worker_config(params),
                on_message=self.broker.handle_worker_message,
                on_exit=self._on_worker_exit,
                stderr=self.worker_stderr,
            )
            try:
                ready = await worker.start(self.config.ready_timeout)
            except BdgError as e:
                logger.error(f"Worker failed to start: {e}")
                response.update(status="error", error=str(e), exitCode=int(e.exit_code))
                if e.details.get("recovery"):
                    response["suggestion"] = e.details["recovery"]
                self.send_response(writer, response)
                return

            self._worker = worker
            self.broker.attach_worker(worker)

        logger.info(f"Session started (worker PID {worker.pid})")
        response.update(
            status="ok",
            data={
                "workerPid": ready.get("workerPid", worker.pid),
                "port": ready.get("port"),
                "target": ready.get("target"),
            },
        )
        self.send_response(writer, response)

    async def _handle_stop_session(self, writer: StreamWriter, session_id: str) -> None:
        worker = self._worker
        if worker is None or not worker.is_alive:
            self._no_session(writer, session_id, ClientRequest.STOP_SESSION.value)
            return

        worker_pid = worker.pid
        code = await worker.terminate(timeout=self.config.timeout)
        data: Dict[str, Any] = {"stopped": True, "workerPid": worker_pid, "workerExitCode": code}
        if self.paths.output.exists():
            data["outputPath"] = str(self.paths.output)

        self.send_response(
            writer, {"type": "stop_session_response", "sessionId": session_id, "status": "ok", "data": data}
        )
        await writer.drain()
        # The daemon's lifetime ends with its session
        asyncio.create_task(self.stop())
