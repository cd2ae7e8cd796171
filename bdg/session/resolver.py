"""Turn a ``selector-or-index`` argument into something a DOM command can target."""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..exceptions import CommandError
from ..exit_codes import ExitCode
from .query_cache import CacheValidation, QueryCacheEntry, QueryCacheManager, QueryNode

logger = logging.getLogger(__name__)

NUMERIC_INDEX = re.compile(r"[0-9]+")

Refresher = Callable[[str], Awaitable[QueryCacheEntry]]


@dataclass
class ElementTarget:
    """
    A CSS selector plus an optional 1-based ``:nth`` match.

    Index tokens resolve to the cached query's selector with ``index`` set;
    selector tokens pass through with whatever explicit index was given.
    """

    selector: str
    index: Optional[int] = None


def is_numeric_index(token: str) -> bool:
    return NUMERIC_INDEX.fullmatch(token) is not None


class DomElementResolver:
    """
    Resolves cache indexes, re-running the cached query once if the page
    navigated since it ran.

    Args:
        cache_manager: Query cache for the session
        refresher: Re-runs a selector and returns a fresh entry
    """

    def __init__(self, cache_manager: QueryCacheManager, refresher: Refresher):
        self.cache_manager = cache_manager
        self.refresher = refresher

    async def _refresh(self, selector: str) -> None:
        logger.debug(f'Cache stale, auto-refreshing query "{selector}"')
        entry = await self.refresher(selector)

        navigation_id = await self.cache_manager.current_navigation_id()
        if navigation_id is not None:
            entry["navigationId"] = navigation_id
        self.cache_manager.set(entry)
        self.cache_manager.memo.invalidate()
        logger.debug(f"Cache refreshed: found {entry['count']} elements")

    async def _valid_cache(self) -> QueryCacheEntry:
        validation: CacheValidation = await self.cache_manager.validate()
        if not validation.valid and validation.cache and validation.cache.get("selector"):
            await self._refresh(validation.cache["selector"])
            validation = await self.cache_manager.validate()

        if not validation.valid or validation.cache is None:
            raise CommandError(
                validation.error or "No cached query results found",
                suggestion=validation.suggestion,
                exit_code=ExitCode.INVALID_ARGUMENTS,
            )
        return validation.cache

    @staticmethod
    def _check_range(index: int, cache: QueryCacheEntry) -> None:
        count = len(cache["nodes"])
        if 0 <= index < count:
            return
        selector = cache["selector"]
        if count == 0:
            suggestion = (
                f'No elements found after refresh. The selector "{selector}" '
                "may no longer match any elements."
            )
        else:
            suggestion = f"Use an index between 0 and {count - 1}"
        raise CommandError(
            f'Index {index} out of range (found {count} nodes from query "{selector}")',
            suggestion=suggestion,
            exit_code=ExitCode.STALE_CACHE,
        )

    async def resolve(self, token: str, explicit_index: Optional[int] = None) -> ElementTarget:
        """
        Resolve a CSS selector or a 0-based index from the last ``dom query``.

        Raises:
            CommandError: No usable cache, or the index is out of range
        """
        if not is_numeric_index(token):
            return ElementTarget(selector=token, index=explicit_index)

        cache = await self._valid_cache()
        index = int(token)
        self._check_range(index, cache)
        return ElementTarget(selector=cache["selector"], index=index + 1)

    async def get_node_for_index(self, index: int) -> QueryNode:
        cache = await self._valid_cache()
        self._check_range(index, cache)
        node = cache["nodes"][index]
        if not node or node.get("nodeId") is None:
            raise CommandError(
                f"Element at index {index} not found",
                suggestion=f'Re-run "bdg dom query {cache["selector"]}" to refresh the cache',
                exit_code=ExitCode.RESOURCE_NOT_FOUND,
            )
        return node

    async def get_node_id_for_index(self, index: int) -> int:
        node = await self.get_node_for_index(index)
        return node["nodeId"]

    async def get_element_count(self) -> int:
        cache = await self._valid_cache()
        return len(cache["nodes"])

    def is_numeric_index(self, token: str) -> bool:
        return is_numeric_index(token)
