"""
Supervision of the worker subprocess from inside the daemon.

The worker is ``python -m bdg.daemon.worker``. It reads JSONL requests on
stdin, writes JSONL responses on stdout and logs to stderr.
"""

import asyncio
import json
import logging
import signal
import sys
from typing import IO, Any, Callable, Dict, List, Optional

from ..exceptions import IPCError, WorkerError
from ..ipc.protocol import WORKER_READY, JSONLBuffer, parse_frame, to_frame

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536

MessageHandler = Callable[[Dict[str, Any]], None]
ExitHandler = Callable[[Optional[int], Optional[str]], None]


def signal_name(returncode: Optional[int]) -> Optional[str]:
    """asyncio reports death-by-signal as a negative return code."""
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class WorkerProcess:
    """
    One worker subprocess and the tasks that pump its stdout.

    Args:
        worker_config: JSON-serializable options passed via ``--config``
        on_message: Called for every non-ready stdout message
        on_exit: Called once with ``(returncode, signal_name)``
        stderr: File the worker's log output is appended to (None inherits)
        command: Override the command line (tests)
    """

    def __init__(
        self,
        worker_config: Dict[str, Any],
        *,
        on_message: MessageHandler,
        on_exit: ExitHandler,
        stderr: Optional[IO[str]] = None,
        command: Optional[List[str]] = None,
    ):
        self.worker_config = worker_config
        self.on_message = on_message
        self.on_exit = on_exit
        self.stderr = stderr
        self.command = command or [sys.executable, "-m", "bdg.daemon.worker"]
        self._process: Optional[asyncio.subprocess.Process] = None
        self._ready: Optional[asyncio.Future] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._exited = asyncio.Event()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None and not self._exited.is_set()

    async def start(self, ready_timeout: float) -> Dict[str, Any]:
        """
        Spawn the worker and wait for its ``worker_ready`` message.

        Returns:
            The ready message (workerPid, port, target)

        Raises:
            WorkerError: If the worker exits or stays silent past ``ready_timeout``
        """
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()

        argv = self.command + ["--config", json.dumps(self.worker_config)]
        self._process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=self.stderr,
        )
        logger.info(f"Worker spawned (PID {self._process.pid})")

        self._reader_task = asyncio.create_task(self._read_stdout())
        self._exit_task = asyncio.create_task(self._wait_exit())

        try:
            return await asyncio.wait_for(asyncio.shield(self._ready), timeout=ready_timeout)
        except asyncio.TimeoutError:
            self._ready.cancel()
            await self.terminate()
            raise WorkerError(
                f"Worker did not become ready within {ready_timeout:g}s",
                details={"recovery": "Check daemon.log in the session directory"},
            )

    def send(self, message: Dict[str, Any]) -> None:
        if not self.is_alive or self._process.stdin is None or self._process.stdin.is_closing():
            raise WorkerError("Worker stdin is closed")
        self._process.stdin.write(to_frame(message))

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        buffer = JSONLBuffer()
        stdout = self._process.stdout
        while True:
            chunk = await stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            try:
                lines = buffer.feed(chunk.decode("utf-8", errors="replace"))
            except IPCError as e:
                logger.error(f"Dropping worker output: {e}")
                continue
            for line in lines:
                self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        try:
            message = parse_frame(line)
        except IPCError as e:
            logger.warning(f"Ignoring malformed worker output: {e}")
            return

        if message.get("type") == WORKER_READY:
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(message)
            return

        try:
            self.on_message(message)
        except Exception:
            logger.exception("Worker message handler failed")

    async def _wait_exit(self) -> None:
        assert self._process is not None
        code = await self._process.wait()
        if self._reader_task is not None:
            # Let buffered responses reach the broker before failing the rest
            await asyncio.gather(self._reader_task, return_exceptions=True)
        self._exited.set()

        name = signal_name(code)
        logger.info(f"Worker exited (code: {code}, signal: {name})")
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                WorkerError(
                    f"Worker exited during startup (code: {code})",
                    details={"recovery": "Check daemon.log in the session directory"},
                )
            )
        self.on_exit(code, name)

    async def wait_exit(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def terminate(self, timeout: float = 10.0) -> Optional[int]:
        """SIGTERM, then SIGKILL if the worker has not exited within ``timeout``."""
        process = self._process
        if process is None:
            return None
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            if not await self.wait_exit(timeout):
                logger.warning(f"Worker {process.pid} ignored SIGTERM, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await self.wait_exit(timeout)
        return process.returncode
