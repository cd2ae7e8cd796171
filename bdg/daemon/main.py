"""
Daemon entry point: ``python -m bdg.daemon.main --config <json>``.

The CLI spawns this detached from its terminal with stdout/stderr pointing
at ``daemon.log``. Only one daemon runs per session directory; the daemon
lock enforces it.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from ..config import Configuration
from ..exit_codes import ExitCode
from ..logging_setup import setup_logging
from ..session.lock import FileLock
from ..session.paths import SessionPaths
from .server import IPCServer

logger = logging.getLogger(__name__)


async def serve(config: Configuration, paths: SessionPaths, lock: FileLock) -> None:
    log_handle = open(paths.daemon_log, "a", encoding="utf-8")
    try:
        server = IPCServer(config, paths, lock=lock, worker_stderr=log_handle)
        await server.run()
    finally:
        log_handle.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="bdg-daemon", description="bdg session daemon")
    parser.add_argument("--config", default="{}", help="JSON configuration from the CLI")
    args = parser.parse_args(argv)

    config = Configuration.from_dict(json.loads(args.config))
    paths = SessionPaths.from_dir(config.session_dir)
    paths.ensure()

    setup_logging(
        format_type=config.log_format,
        level=config.log_level,
        log_file=paths.daemon_log,
        process_role="daemon",
    )

    lock = FileLock(paths.daemon_lock)
    if not lock.try_acquire():
        logger.error(f"Another daemon holds {paths.daemon_lock}, exiting")
        return int(ExitCode.RESOURCE_ALREADY_EXISTS)

    try:
        asyncio.run(serve(config, paths, lock))
    finally:
        lock.release()
    return 0


if __name__ == "__main__":
    sys.exit(main())
