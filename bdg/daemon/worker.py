"""
Worker process: owns the CDP connection and the telemetry of one session.

Run by the daemon as ``python -m bdg.daemon.worker --config <json>``.

Protocol:
    stdin   JSONL requests ``{requestId, type, params}``
    stdout  JSONL responses and one ``worker_ready`` message
    stderr  logs (the daemon appends them to daemon.log)

On SIGTERM the worker stops its collectors, captures a DOM snapshot with a
timeout, writes ``session.json`` and exits.
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .. import __version__
from ..collectors.console import ConsoleCollector
from ..collectors.network import NetworkCollector
from ..collectors.websocket import WebSocketCollector
from ..config import Configuration
from ..connection import CDPConnection
from ..exceptions import BdgError, CommandError, IPCError
from ..exit_codes import ExitCode
from ..ipc.protocol import (
    MAX_JSONL_BUFFER_SIZE,
    READY_REQUEST_ID,
    WORKER_READY,
    parse_frame,
    response_type,
    to_frame,
)
from ..logging_setup import log_with_context, setup_logging
from ..session.files import atomic_write_json, remove_file, write_pid, write_session_metadata
from ..session.lock import FileLock
from ..session.paths import SessionPaths
from ..targets import TargetDiscovery
from ..telemetry.dom import CDP_TIMEOUT, prepare_dom_collection, try_collect_dom
from ..telemetry.store import TelemetryStore
from .adapters import iso_timestamp
from .patterns import PatternDetector
from .registry import CommandContext, execute

logger = logging.getLogger(__name__)

ALL_TELEMETRY = ("network", "console", "websocket", "dom")


@dataclass
class WorkerOptions:
    """Per-session options sent by the CLI in ``start_session``."""

    url: Optional[str] = None
    target_id: Optional[str] = None
    telemetry: List[str] = field(default_factory=lambda: list(ALL_TELEMETRY))
    network_include: List[str] = field(default_factory=list)
    network_exclude: List[str] = field(default_factory=list)
    fetch_bodies_include: List[str] = field(default_factory=list)
    fetch_bodies_exclude: List[str] = field(default_factory=list)
    console_level: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerOptions":
        known = {name: data[name] for name in cls.__dataclass_fields__ if data.get(name) is not None}
        options = cls(**known)
        unknown = [name for name in options.telemetry if name not in ALL_TELEMETRY]
        if unknown:
            raise CommandError(
                f"Unknown telemetry: {', '.join(unknown)}",
                suggestion=f"Choose from: {', '.join(ALL_TELEMETRY)}",
            )
        return options

    def wants(self, telemetry: str) -> bool:
        return telemetry in self.telemetry


def build_session_output(
    store: TelemetryStore, dom: Optional[Dict[str, Any]] = None, version: str = __version__
) -> Dict[str, Any]:
    """Final ``session.json`` document."""
    data: Dict[str, Any] = {
        "network": store.network_requests,
        "console": store.console_messages,
        "websockets": store.websocket_connections,
    }
    if dom is not None:
        data["dom"] = dom
    return {
        "version": version,
        "success": True,
        "timestamp": iso_timestamp(store.session_start_time),
        "duration": store.duration_ms(),
        "target": {
            "url": store.target_info.get("url", ""),
            "title": store.target_info.get("title", ""),
        },
        "data": data,
    }


class Worker:
    """
    One session's CDP attachment, collectors and command loop.

    Args:
        config: Effective configuration forwarded by the daemon
        options: Session options (target, telemetry, filters)
        paths: Session directory layout
    """

    def __init__(self, config: Configuration, options: WorkerOptions, paths: SessionPaths):
        self.config = config
        self.options = options
        self.paths = paths
        self.store = TelemetryStore()
        self.patterns = PatternDetector()
        self.connection: Optional[CDPConnection] = None
        self.collectors: List[Any] = []
        self.lock = FileLock(paths.session_lock)
        self._shutdown = asyncio.Event()
        self._command_tasks: set = set()

    def emit(self, message: Dict[str, Any]) -> None:
        """Write one JSONL message to stdout for the daemon."""
        sys.stdout.buffer.write(to_frame(message))
        sys.stdout.buffer.flush()

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def attach(self) -> None:
        """
        Find the target, connect and start the collectors.

        Raises:
            CDPError: If Chrome is unreachable or no target matches
            CommandError: If another worker owns this session directory
        """
        if not self.lock.try_acquire():
            raise CommandError(
                "Another session is already running in this session directory",
                suggestion='Stop it with "bdg stop" or run "bdg cleanup"',
                exit_code=ExitCode.RESOURCE_ALREADY_EXISTS,
            )
        write_pid(self.paths.session_pid)

        discovery = TargetDiscovery(self.config.chrome_host, self.config.chrome_port)
        target = discovery.select_target(self.options.target_id, self.options.url)
        self.store.target_info = target.to_dict()
        self.store.browser_version = discovery.browser_version()

        self.connection = discovery.connection_for(
            target, timeout=self.config.timeout, max_size=self.config.max_size
        )
        await self.connection.connect()

        await prepare_dom_collection(self.connection)
        self.connection.subscribe("Page.frameNavigated", self.store.on_frame_navigated)

        for collector in self._build_collectors():
            await collector.start()
            self.collectors.append(collector)

        if self.options.url and "://" in self.options.url and self.options.url not in target.url:
            await self.connection.send("Page.navigate", {"url": self.options.url})
            self.store.target_info["url"] = self.options.url

        write_session_metadata(
            self.paths.session_meta,
            {
                "bdgPid": os.getpid(),
                "startTime": self.store.session_start_time,
                "port": self.config.chrome_port,
                "targetId": target.id,
                "webSocketDebuggerUrl": target.webSocketDebuggerUrl,
                "activeTelemetry": self.store.active_telemetry,
            },
        )

    def _build_collectors(self) -> List[Any]:
        assert self.connection is not None
        collectors: List[Any] = []
        telemetry = self.store.active_telemetry

        if self.options.wants("network") or self.options.wants("websocket"):
            collectors.append(
                NetworkCollector(
                    self.connection,
                    self.store,
                    max_requests=self.config.max_network_requests,
                    stale_timeout=self.config.stale_request_timeout,
                    cleanup_interval=self.config.stale_cleanup_interval,
                    max_body_size=self.config.max_body_size,
                    fetch_all_bodies=self.config.fetch_all_bodies,
                    fetch_bodies_include=self.options.fetch_bodies_include,
                    fetch_bodies_exclude=self.options.fetch_bodies_exclude,
                    network_include=self.options.network_include,
                    network_exclude=self.options.network_exclude,
                    include_all=self.config.include_all,
                )
            )
            telemetry.append("network")
        if self.options.wants("websocket"):
            collectors.append(WebSocketCollector(self.connection, self.store))
            telemetry.append("websocket")
        if self.options.wants("console"):
            collectors.append(
                ConsoleCollector(
                    self.connection,
                    self.store,
                    level_filter=self.options.console_level,
                    include_all=self.config.include_all,
                    max_messages=self.config.max_console_messages,
                )
            )
            telemetry.append("console")
        if self.options.wants("dom"):
            telemetry.append("dom")
        return collectors

    def ready_message(self) -> Dict[str, Any]:
        return {
            "type": WORKER_READY,
            "requestId": READY_REQUEST_ID,
            "workerPid": os.getpid(),
            "port": self.config.chrome_port,
            "target": {
                "url": self.store.target_info.get("url", ""),
                "title": self.store.target_info.get("title", ""),
            },
        }

    async def handle_request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Run one daemon request and build its response (never raises)."""
        command = str(message.get("type", ""))
        response: Dict[str, Any] = {"requestId": message.get("requestId"), "type": response_type(command)}
        network = next((c for c in self.collectors if isinstance(c, NetworkCollector)), None)
        ctx = CommandContext(connection=self.connection, store=self.store, patterns=self.patterns, network=network)
        try:
            data = await execute(ctx, command, message.get("params"))
        except CommandError as e:
            response["success"] = False
            response.update(e.to_payload())
        except BdgError as e:
            response["success"] = False
            response["error"] = str(e)
            if e.details.get("recovery"):
                response["suggestion"] = e.details["recovery"]
        except Exception as e:
            logger.error(f"Unexpected error handling {command}: {e}", exc_info=True)
            response["success"] = False
            response["error"] = f"Internal worker error: {e}"
            response["exitCode"] = int(ExitCode.SOFTWARE_ERROR)
        else:
            response["success"] = True
            response["data"] = data
        return response

    async def _run_request(self, message: Dict[str, Any]) -> None:
        response = await self.handle_request(message)
        self.emit(response)

    async def _read_commands(self, reader: asyncio.StreamReader) -> None:
        while not self._shutdown.is_set():
            try:
                line = await reader.readline()
            except ValueError as e:
                logger.error(f"Dropping oversized request: {e}")
                continue
            if not line:
                logger.info("stdin closed, shutting down")
                self.request_shutdown()
                return
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                message = parse_frame(text)
            except IPCError as e:
                logger.warning(f"Ignoring malformed request: {e}")
                continue
            # Commands run concurrently; CDP events keep flowing meanwhile
            task = asyncio.create_task(self._run_request(message))
            self._command_tasks.add(task)
            task.add_done_callback(self._command_tasks.discard)

    async def _watch_connection(self) -> None:
        assert self.connection is not None
        await self.connection.closed.wait()
        if not self._shutdown.is_set():
            logger.warning("CDP connection closed, shutting down")
            self.request_shutdown()

    async def shutdown(self) -> None:
        """Stop collectors, snapshot the DOM and write the final output."""
        for collector in reversed(self.collectors):
            try:
                await collector.stop()
            except BdgError as e:
                logger.warning(f"Collector stop failed: {e}")

        if not self.lock.held:
            # Never attached; the session files belong to someone else
            return

        dom = None
        if self.options.wants("dom") and self.connection is not None and self.connection.is_connected:
            dom = await try_collect_dom(self.connection, CDP_TIMEOUT)

        if self.collectors or self.options.wants("dom"):
            atomic_write_json(self.paths.output, build_session_output(self.store, dom))
            logger.info(f"Session output written to {self.paths.output}")

        if self.connection is not None:
            await self.connection.disconnect()

        remove_file(self.paths.session_pid)
        remove_file(self.paths.session_meta)
        self.lock.release(unlink=True)

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        try:
            await self.attach()
        except BdgError as e:
            logger.error(f"Worker failed to start: {e}")
            await self.shutdown()
            return int(e.exit_code)

        reader = asyncio.StreamReader(limit=MAX_JSONL_BUFFER_SIZE)
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)

        self.emit(self.ready_message())
        log_with_context(
            logger,
            logging.INFO,
            "Worker ready",
            worker_pid=os.getpid(),
            target_url=self.store.target_info.get("url"),
            telemetry=self.store.active_telemetry,
        )

        background = [
            asyncio.create_task(self._read_commands(reader)),
            asyncio.create_task(self._watch_connection()),
        ]
        await self._shutdown.wait()
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        if self._command_tasks:
            await asyncio.gather(*self._command_tasks, return_exceptions=True)

        await self.shutdown()
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="bdg-worker", description="bdg session worker")
    parser.add_argument("--config", required=True, help="JSON configuration from the daemon")
    args = parser.parse_args(argv)

    raw = json.loads(args.config)
    config = Configuration.from_dict(raw)
    setup_logging(format_type=config.log_format, level=config.log_level, process_role="worker")

    try:
        options = WorkerOptions.from_dict(raw)
    except CommandError as e:
        logger.error(str(e))
        return int(e.exit_code)

    worker = Worker(config, options, SessionPaths.from_dir(config.session_dir))
    return asyncio.run(worker.run())


if __name__ == "__main__":
    sys.exit(main())
