"""
Removal of stale session files left behind by crashed processes.

Every routine here is idempotent: it tolerates any subset of the session
files being present and never fails because one is already gone.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .files import find_orphaned_workers, is_process_alive, kill_process, read_pid, remove_file
from .lock import is_locked
from .paths import SessionPaths

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    removed: List[str] = field(default_factory=list)
    killed: List[int] = field(default_factory=list)
    session_active: bool = False
    daemon_active: bool = False

    def to_dict(self) -> dict:
        return {
            "removed": self.removed,
            "killed": self.killed,
            "sessionActive": self.session_active,
            "daemonActive": self.daemon_active,
        }


def _remove_all(files: List[Path], report: CleanupReport) -> None:
    for path in files:
        if remove_file(path):
            report.removed.append(path.name)


def session_is_active(paths: SessionPaths) -> bool:
    return is_process_alive(read_pid(paths.session_pid)) or is_locked(paths.session_lock)


def daemon_is_active(paths: SessionPaths) -> bool:
    return is_process_alive(read_pid(paths.daemon_pid)) or is_locked(paths.daemon_lock)


def cleanup_stale_files(paths: SessionPaths) -> CleanupReport:
    """Remove session / daemon files whose owner is no longer alive."""
    report = CleanupReport()

    report.session_active = session_is_active(paths)
    if not report.session_active:
        _remove_all(paths.session_files(), report)

    report.daemon_active = daemon_is_active(paths)
    if not report.daemon_active:
        _remove_all(paths.daemon_files(), report)

    if report.removed:
        logger.info(f"Removed stale session files: {', '.join(report.removed)}")
    return report


def force_cleanup(paths: SessionPaths, include_orphans: bool = True) -> CleanupReport:
    """
    Kill the recorded worker and daemon, then remove every session file.

    The final output (session.json) and the daemon log are kept.
    """
    report = CleanupReport()

    pids = [read_pid(paths.session_pid), read_pid(paths.daemon_pid)]
    for pid in pids:
        if pid and is_process_alive(pid) and kill_process(pid):
            report.killed.append(pid)

    if include_orphans:
        for pid in find_orphaned_workers(exclude=report.killed):
            if kill_process(pid):
                report.killed.append(pid)

    _remove_all(paths.session_files() + paths.daemon_files(), report)
    return report
