"""
Cached ``bdg dom query`` results and their staleness check.

A query stores its matches in ``query-cache.json`` together with the
navigation id that was current when it ran. Later commands address those
matches by index; if the page has navigated since, the indexes point at
nodes that no longer exist and the cache is stale.
"""

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from typing_extensions import NotRequired, TypedDict

from ..exceptions import IPCError
from .files import atomic_write_json, read_json, remove_file
from .lock import FileLock
from .paths import SessionPaths

logger = logging.getLogger(__name__)

NAVIGATION_ID_TTL = 0.5


class QueryNode(TypedDict):
    index: int
    nodeId: int
    tag: NotRequired[str]
    classes: NotRequired[List[str]]
    preview: NotRequired[str]


class QueryCacheEntry(TypedDict):
    selector: str
    count: int
    nodes: List[QueryNode]
    navigationId: NotRequired[int]


NavigationIdFetcher = Callable[[], Awaitable[Optional[int]]]


def status_navigation_fetcher(client) -> NavigationIdFetcher:
    """Build a fetcher that reads ``data.navigationId`` from the daemon's status."""

    async def fetch() -> Optional[int]:
        try:
            response = await client.status()
        except IPCError as e:
            logger.debug(f"Navigation id unavailable: {e}")
            return None
        if response.get("status") != "ok":
            return None
        value = (response.get("data") or {}).get("navigationId")
        return value if isinstance(value, int) else None

    return fetch


class NavigationIdMemo:
    """
    Short-lived memo of the worker's current navigation id.

    Resolving an index can validate the cache several times in a row; the
    memo keeps that to one status round trip per ``ttl`` seconds.
    """

    def __init__(
        self,
        fetcher: NavigationIdFetcher,
        ttl: float = NAVIGATION_ID_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetcher = fetcher
        self.ttl = ttl
        self.clock = clock
        self._value: Optional[int] = None
        self._fetched_at: Optional[float] = None

    async def get(self) -> Optional[int]:
        now = self.clock()
        if self._fetched_at is not None and now - self._fetched_at < self.ttl:
            return self._value
        self._value = await self.fetcher()
        self._fetched_at = self.clock()
        return self._value

    def invalidate(self) -> None:
        self._value = None
        self._fetched_at = None


@dataclass
class CacheValidation:
    valid: bool
    cache: Optional[QueryCacheEntry] = None
    error: Optional[str] = None
    suggestion: Optional[str] = None


class QueryCacheManager:
    """
    Reads and writes ``query-cache.json`` under ``query-cache.lock``.

    Args:
        paths: Session directory layout
        memo: Source of the current navigation id
    """

    def __init__(self, paths: SessionPaths, memo: NavigationIdMemo):
        self.paths = paths
        self.memo = memo

    def _lock(self) -> FileLock:
        return FileLock(self.paths.query_cache_lock, write_pid=False)

    def set(self, entry: QueryCacheEntry) -> None:
        with self._lock():
            atomic_write_json(self.paths.query_cache, entry)
        logger.debug(f"Cached {entry['count']} nodes for {entry['selector']!r}")

    def get_raw(self) -> Optional[QueryCacheEntry]:
        """The cached entry without any staleness check."""
        with self._lock():
            data = read_json(self.paths.query_cache)
        if not isinstance(data, dict) or "selector" not in data or "nodes" not in data:
            return None
        return data

    def exists(self) -> bool:
        return self.paths.query_cache.exists()

    def clear(self) -> None:
        with self._lock():
            remove_file(self.paths.query_cache)
        self.memo.invalidate()

    async def current_navigation_id(self) -> Optional[int]:
        return await self.memo.get()

    async def validate(self) -> CacheValidation:
        cache = self.get_raw()
        if cache is None:
            return CacheValidation(
                valid=False,
                error="No cached query results found",
                suggestion='Run "bdg dom query <selector>" first to generate indexed results',
            )

        cached_nav = cache.get("navigationId")
        if cached_nav is None:
            # Written before navigation tracking existed
            return CacheValidation(valid=True, cache=cache)

        current = await self.current_navigation_id()
        if current is None:
            return CacheValidation(valid=True, cache=cache)

        if current != cached_nav:
            logger.debug(f"Query cache stale: cached navigation {cached_nav}, current {current}")
            return CacheValidation(
                valid=False,
                cache=cache,
                error="Query cache is stale (page has navigated since query was run)",
                suggestion=f'Re-run "bdg dom query {cache["selector"]}" to refresh cached results',
            )

        return CacheValidation(valid=True, cache=cache)

    async def get(self) -> Optional[QueryCacheEntry]:
        """The cached entry if it is still valid for the current page."""
        result = await self.validate()
        return result.cache if result.valid else None

