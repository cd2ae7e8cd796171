"""Unit tests for the telemetry store and pagination helpers."""

import pytest

from bdg.telemetry.store import (
    DEFAULT_PEEK_ITEMS,
    MAX_PEEK_ITEMS,
    TelemetryStore,
    calculate_last_n,
    calculate_slice_bounds,
)


@pytest.mark.unit
class TestCalculateLastN:
    def test_default_when_missing_or_negative(self):
        assert calculate_last_n(None) == DEFAULT_PEEK_ITEMS
        assert calculate_last_n(-3) == DEFAULT_PEEK_ITEMS

    def test_zero_means_all(self):
        assert calculate_last_n(0) == MAX_PEEK_ITEMS

    def test_capped(self):
        assert calculate_last_n(50) == 50
        assert calculate_last_n(MAX_PEEK_ITEMS + 1) == MAX_PEEK_ITEMS


@pytest.mark.unit
class TestSliceBounds:
    def test_last_items(self):
        assert calculate_slice_bounds(25, 10) == {"start": 15, "end": 25}

    def test_offset_shifts_window_back(self):
        assert calculate_slice_bounds(25, 10, offset=10) == {"start": 5, "end": 15}

    def test_offset_past_start(self):
        assert calculate_slice_bounds(5, 10, offset=20) == {"start": 0, "end": 0}

    def test_fewer_items_than_requested(self):
        items = list(range(3))
        bounds = calculate_slice_bounds(len(items), 10)
        assert items[bounds["start"]:bounds["end"]] == [0, 1, 2]


@pytest.mark.unit
@pytest.mark.asyncio
class TestNavigation:
    async def test_main_frame_bumps_navigation_id(self):
        store = TelemetryStore()

        await store.on_frame_navigated({"frame": {"id": "main", "url": "https://a.test/next"}})

        assert store.current_navigation_id() == 1
        assert store.target_info["url"] == "https://a.test/next"

    async def test_child_frame_ignored(self):
        store = TelemetryStore()

        await store.on_frame_navigated({"frame": {"id": "child", "parentId": "main", "url": "https://ads.test/"}})

        assert store.navigation_id == 0
        assert "url" not in store.target_info
