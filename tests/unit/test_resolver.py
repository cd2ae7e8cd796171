"""Unit tests for DomElementResolver: index resolution and auto-refresh of stale caches."""

import pytest

from bdg.exceptions import CommandError
from bdg.exit_codes import ExitCode
from bdg.session.paths import SessionPaths
from bdg.session.query_cache import NavigationIdMemo, QueryCacheManager
from bdg.session.resolver import DomElementResolver, ElementTarget, is_numeric_index


class Navigation:
    """Controllable navigation id source."""

    def __init__(self, value=1):
        self.value = value

    async def __call__(self):
        return self.value


class Refresher:
    def __init__(self, count=3):
        self.count = count
        self.selectors = []

    async def __call__(self, selector):
        self.selectors.append(selector)
        return {
            "selector": selector,
            "count": self.count,
            "nodes": [{"index": i, "nodeId": 500 + i} for i in range(self.count)],
        }


def cached(manager, count=2, navigation_id=1, selector="li.item"):
    manager.set(
        {
            "selector": selector,
            "count": count,
            "nodes": [{"index": i, "nodeId": 100 + i} for i in range(count)],
            "navigationId": navigation_id,
        }
    )


@pytest.fixture
def navigation():
    return Navigation()


@pytest.fixture
def manager(tmp_path, navigation):
    return QueryCacheManager(SessionPaths.from_dir(tmp_path), NavigationIdMemo(navigation, ttl=0))


@pytest.fixture
def refresher():
    return Refresher()


@pytest.fixture
def resolver(manager, refresher):
    return DomElementResolver(manager, refresher)


@pytest.mark.unit
def test_is_numeric_index():
    assert is_numeric_index("0")
    assert is_numeric_index("12")
    assert not is_numeric_index("-1")
    assert not is_numeric_index("div:nth-child(2)")
    assert not is_numeric_index("1.5")
    assert not is_numeric_index("2\n")
    assert not is_numeric_index("\u0663")
    assert not is_numeric_index("")


@pytest.mark.unit
@pytest.mark.asyncio
class TestResolve:
    async def test_selector_passes_through(self, resolver):
        assert await resolver.resolve("button.primary") == ElementTarget("button.primary")
        assert await resolver.resolve("button.primary", explicit_index=2) == ElementTarget("button.primary", 2)

    async def test_index_becomes_one_based_match(self, resolver, manager):
        cached(manager)

        assert await resolver.resolve("1") == ElementTarget("li.item", 2)

    async def test_index_without_cache(self, resolver):
        with pytest.raises(CommandError, match="No cached query results found") as exc_info:
            await resolver.resolve("0")

        assert exc_info.value.exit_code == ExitCode.INVALID_ARGUMENTS

    async def test_out_of_range(self, resolver, manager):
        cached(manager, count=2)

        with pytest.raises(CommandError, match=r'Index 5 out of range \(found 2 nodes from query "li.item"\)') as exc_info:
            await resolver.resolve("5")

        assert exc_info.value.exit_code == ExitCode.STALE_CACHE
        assert exc_info.value.suggestion == "Use an index between 0 and 1"


@pytest.mark.unit
@pytest.mark.asyncio
class TestAutoRefresh:
    async def test_stale_cache_refreshed_once(self, resolver, manager, navigation, refresher):
        cached(manager, count=2, navigation_id=1)
        navigation.value = 2

        node = await resolver.get_node_for_index(2)

        assert refresher.selectors == ["li.item"]
        assert node == {"index": 2, "nodeId": 502}
        assert manager.get_raw()["navigationId"] == 2

    async def test_refresh_with_no_matches(self, resolver, manager, navigation, refresher):
        cached(manager, count=2, navigation_id=1)
        navigation.value = 2
        refresher.count = 0

        with pytest.raises(CommandError) as exc_info:
            await resolver.get_node_id_for_index(0)

        assert exc_info.value.suggestion.startswith("No elements found after refresh")

    async def test_fresh_cache_not_refreshed(self, resolver, manager, refresher):
        cached(manager)

        assert await resolver.get_element_count() == 2
        assert refresher.selectors == []


@pytest.mark.unit
@pytest.mark.asyncio
class TestNodeLookup:
    async def test_node_id(self, resolver, manager):
        cached(manager)

        assert await resolver.get_node_id_for_index(1) == 101

    async def test_missing_node_id(self, resolver, manager):
        manager.set({"selector": "p", "count": 1, "nodes": [{"index": 0}], "navigationId": 1})

        with pytest.raises(CommandError, match="Element at index 0 not found") as exc_info:
            await resolver.get_node_for_index(0)

        assert exc_info.value.exit_code == ExitCode.RESOURCE_NOT_FOUND
