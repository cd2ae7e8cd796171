"""
Reading and writing session files: PID files, session metadata and
atomically replaced JSON documents.

Also the psutil-backed liveness checks used to tell a running daemon or
worker from a stale PID file.
"""

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

from ..exceptions import SessionFileError

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, data: Any) -> None:
    """
    Write ``data`` as JSON to ``path`` via a temp file and ``os.replace``.

    Readers never observe a half-written file.

    Raises:
        SessionFileError: If the directory is not writable
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp_name, path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise SessionFileError(f"Failed to write {path}: {e}", details={"path": str(path)}) from e


def read_json(path: Path) -> Optional[Any]:
    """Parsed JSON content, or None when the file is missing or corrupt."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable session file {path}: {e}")
        return None


def write_pid(path: Path, pid: Optional[int] = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid if pid is not None else os.getpid()}\n", encoding="utf-8")


def read_pid(path: Path) -> Optional[int]:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, OSError):
        return None
    try:
        pid = int(text)
    except ValueError:
        logger.debug(f"Malformed PID file {path}: {text!r}")
        return None
    return pid if pid > 0 else None


def remove_file(path: Path) -> bool:
    """Unlink ``path``; missing files are fine. Returns True if something was removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.debug(f"Could not remove {path}: {e}")
        return False


def is_process_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def kill_process(pid: Optional[int], timeout: float = 3.0) -> bool:
    """
    Terminate ``pid``, escalating to SIGKILL after ``timeout`` seconds.

    Already-dead processes are not an error. Returns True if the process is
    gone afterwards.
    """
    if not pid:
        return True
    try:
        process = psutil.Process(pid)
        process.terminate()
        try:
            process.wait(timeout=timeout)
        except psutil.TimeoutExpired:
            logger.debug(f"PID {pid} ignored SIGTERM, sending SIGKILL")
            process.kill()
            process.wait(timeout=timeout)
    except psutil.NoSuchProcess:
        return True
    except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
        logger.debug(f"Failed to kill PID {pid}: {e}")
        return False
    return True


def find_orphaned_workers(exclude: Optional[List[int]] = None) -> List[int]:
    """PIDs of ``bdg.daemon.worker`` processes, minus ``exclude``."""
    skip = set(exclude or [])
    found = []
    for process in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = process.info.get("cmdline") or []
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if "bdg.daemon.worker" in cmdline and process.info["pid"] not in skip:
            found.append(process.info["pid"])
    return found


def write_session_metadata(path: Path, metadata: Dict[str, Any]) -> None:
    atomic_write_json(path, metadata)


def read_session_metadata(path: Path) -> Optional[Dict[str, Any]]:
    data = read_json(path)
    return data if isinstance(data, dict) else None
