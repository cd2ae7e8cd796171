"""Locations of the files that make up one bdg session directory."""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Union


@dataclass(frozen=True)
class SessionPaths:
    """
    Every per-session file lives directly under ``root``.

    Each file is independently removable; nothing assumes the others exist.
    """

    root: Path

    @classmethod
    def from_dir(cls, session_dir: Union[str, Path]) -> "SessionPaths":
        return cls(Path(session_dir).expanduser())

    @property
    def session_pid(self) -> Path:
        return self.root / "session.pid"

    @property
    def session_lock(self) -> Path:
        return self.root / "session.lock"

    @property
    def session_meta(self) -> Path:
        return self.root / "session.meta.json"

    @property
    def daemon_pid(self) -> Path:
        return self.root / "daemon.pid"

    @property
    def daemon_socket(self) -> Path:
        return self.root / "daemon.sock"

    @property
    def daemon_lock(self) -> Path:
        return self.root / "daemon.lock"

    @property
    def daemon_log(self) -> Path:
        return self.root / "daemon.log"

    @property
    def query_cache(self) -> Path:
        return self.root / "query-cache.json"

    @property
    def query_cache_lock(self) -> Path:
        return self.root / "query-cache.lock"

    @property
    def output(self) -> Path:
        return self.root / "session.json"

    def ensure(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def session_files(self) -> List[Path]:
        """Files owned by the worker's session (removed when it ends)."""
        return [self.session_pid, self.session_lock, self.session_meta, self.query_cache, self.query_cache_lock]

    def daemon_files(self) -> List[Path]:
        """Files owned by the daemon (removed when it stops)."""
        return [self.daemon_pid, self.daemon_socket, self.daemon_lock]
