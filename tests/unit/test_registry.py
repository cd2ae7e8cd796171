"""
Unit tests for the worker command registry.

Handlers run against a real TelemetryStore and a mocked CDPConnection.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from bdg.collectors.network import NetworkCollector
from bdg.connection import CDPConnection
from bdg.exceptions import CommandError
from bdg.exit_codes import ExitCode
from bdg.daemon.registry import CommandContext, execute, filter_headers
from bdg.telemetry.store import TelemetryStore


def network_record(request_id, **extra):
    record = {
        "requestId": request_id,
        "url": f"https://a.test/{request_id}",
        "method": "GET",
        "timestamp": 1000.0 + int(request_id),
        "requestHeaders": {"Accept": "*/*"},
    }
    record.update(extra)
    return record


@pytest.fixture
def store():
    store = TelemetryStore()
    store.target_info = {"url": "https://a.test/", "title": "A"}
    store.active_telemetry = ["network", "console"]
    return store


@pytest.fixture
def ctx(store):
    conn = MagicMock(spec=CDPConnection)
    conn.send = AsyncMock(return_value={"result": {"type": "number", "value": 2}})
    return CommandContext(connection=conn, store=store, version="0.1.0")


@pytest.mark.unit
@pytest.mark.asyncio
class TestPeek:
    async def test_last_n_window(self, ctx, store):
        store.network_requests = [network_record(str(n), status=200) for n in range(1, 16)]

        data = await execute(ctx, "worker_peek", {"lastN": 5})

        assert [r["requestId"] for r in data["network"]] == ["11", "12", "13", "14", "15"]
        assert data["totalNetwork"] == 15
        assert data["hasMoreNetwork"] is True
        assert data["hasMoreConsole"] is False
        assert data["version"] == "0.1.0"
        assert data["target"] == {"url": "https://a.test/", "title": "A"}

    async def test_offset(self, ctx, store):
        store.network_requests = [network_record(str(n)) for n in range(1, 11)]

        data = await execute(ctx, "worker_peek", {"lastN": 3, "offset": 3})

        assert [r["requestId"] for r in data["network"]] == ["5", "6", "7"]

    async def test_preview_drops_heavy_fields(self, ctx, store):
        store.network_requests = [network_record("1", responseBody="x" * 1000, status=200)]
        store.console_messages = [{"type": "log", "text": "hi", "timestamp": 1.0, "args": [{"type": "string"}]}]

        data = await execute(ctx, "worker_peek", {})

        assert "responseBody" not in data["network"][0]
        assert "requestHeaders" not in data["network"][0]
        assert data["console"] == [{"timestamp": 1.0, "type": "log", "text": "hi"}]

    async def test_invalid_last_n(self, ctx):
        with pytest.raises(CommandError, match="Invalid lastN") as exc_info:
            await execute(ctx, "worker_peek", {"lastN": "many"})

        assert exc_info.value.exit_code == ExitCode.INVALID_ARGUMENTS


@pytest.mark.unit
@pytest.mark.asyncio
async def test_status(ctx, store):
    store.network_requests = [network_record("1"), network_record("2")]
    store.navigation_id = 4

    data = await execute(ctx, "worker_status")

    assert data["activity"]["networkRequestsCaptured"] == 2
    assert data["activity"]["lastNetworkRequestAt"] == 1002.0
    assert "lastConsoleMessageAt" not in data["activity"]
    assert data["navigationId"] == 4
    assert data["activeTelemetry"] == ["network", "console"]


@pytest.mark.unit
@pytest.mark.asyncio
class TestDetails:
    async def test_network(self, ctx, store):
        store.network_requests = [network_record("1", responseBody="full body")]

        data = await execute(ctx, "worker_details", {"itemType": "network", "id": "1"})

        assert data["item"]["responseBody"] == "full body"

    async def test_network_not_found(self, ctx):
        with pytest.raises(CommandError, match="Network request not found: 9") as exc_info:
            await execute(ctx, "worker_details", {"itemType": "network", "id": "9"})

        assert exc_info.value.exit_code == ExitCode.RESOURCE_NOT_FOUND

    async def test_console_by_index(self, ctx, store):
        store.console_messages = [
            {"type": "log", "text": "a", "timestamp": 1.0},
            {"type": "error", "text": "b", "timestamp": 2.0},
        ]

        data = await execute(ctx, "worker_details", {"itemType": "console", "id": "1"})

        assert data["item"]["text"] == "b"

    async def test_console_out_of_range(self, ctx, store):
        store.console_messages = [{"type": "log", "text": "a", "timestamp": 1.0}]

        with pytest.raises(CommandError, match=r"available: 0-0"):
            await execute(ctx, "worker_details", {"itemType": "console", "id": "5"})

    async def test_console_none_captured(self, ctx):
        with pytest.raises(CommandError, match="none captured"):
            await execute(ctx, "worker_details", {"itemType": "console", "id": "0"})

    async def test_unknown_item_type(self, ctx):
        with pytest.raises(CommandError, match="Unknown itemType: dom"):
            await execute(ctx, "worker_details", {"itemType": "dom", "id": "1"})

    async def test_missing_id(self, ctx):
        with pytest.raises(CommandError, match="Missing required parameter: id"):
            await execute(ctx, "worker_details", {"itemType": "network"})


@pytest.mark.unit
@pytest.mark.asyncio
async def test_har_data(ctx, store):
    store.network_requests = [network_record("1")]
    store.browser_version = "Chrome/131.0"

    data = await execute(ctx, "worker_har_data")

    assert data == {"requests": [network_record("1")], "browserVersion": "Chrome/131.0"}


@pytest.mark.unit
@pytest.mark.asyncio
class TestNetworkHeaders:
    async def test_prefers_document_of_current_navigation(self, ctx, store):
        store.navigation_id = 2
        store.network_requests = [
            network_record("1", navigationId=1, resourceType="Document", responseHeaders={"A": "old"}),
            network_record("2", navigationId=2, resourceType="Document", responseHeaders={"A": "new"}),
            network_record("3", navigationId=2, resourceType="XHR", responseHeaders={"A": "xhr"}),
        ]

        data = await execute(ctx, "worker_network_headers", {})

        assert data["requestId"] == "2"
        assert data["responseHeaders"] == {"A": "new"}

    async def test_falls_back_to_html(self, ctx, store):
        store.network_requests = [
            network_record("1", mimeType="text/html", responseHeaders={"A": "html"}),
            network_record("2", mimeType="application/json", responseHeaders={"A": "json"}),
        ]

        data = await execute(ctx, "worker_network_headers", {})

        assert data["requestId"] == "1"

    async def test_falls_back_to_any_headers(self, ctx, store):
        store.network_requests = [
            network_record("1", responseHeaders={"A": "1"}),
            network_record("2"),
        ]

        data = await execute(ctx, "worker_network_headers", {})

        assert data["requestId"] == "1"

    async def test_nothing_to_show(self, ctx):
        with pytest.raises(CommandError, match="No network requests with headers found"):
            await execute(ctx, "worker_network_headers", {})

    async def test_explicit_id_and_header_filter(self, ctx, store):
        store.network_requests = [
            network_record("1", responseHeaders={"Content-Type": "text/html", "ETag": "x"}),
        ]

        data = await execute(ctx, "worker_network_headers", {"id": "1", "headerName": "content-type"})

        assert data["responseHeaders"] == {"Content-Type": "text/html"}
        assert data["requestHeaders"] == {}


@pytest.mark.unit
def test_filter_headers_case_insensitive():
    assert filter_headers({"X-Trace": "1", "Other": "2"}, "x-TRACE") == {"X-Trace": "1"}


@pytest.mark.unit
@pytest.mark.asyncio
class TestCdpCall:
    async def test_passthrough(self, ctx):
        data = await execute(ctx, "cdp_call", {"method": "Runtime.evaluate", "params": {"expression": "1+1"}})

        ctx.connection.send.assert_awaited_once_with("Runtime.evaluate", {"expression": "1+1"})
        assert data == {"result": {"result": {"type": "number", "value": 2}}}

    async def test_hint_after_threshold(self, ctx):
        await execute(ctx, "cdp_call", {"method": "Runtime.evaluate"})
        data = await execute(ctx, "cdp_call", {"method": "Runtime.evaluate"})

        assert data["hint"] == "Tip: `bdg dom query <selector>` does this in one step"

    async def test_missing_method(self, ctx):
        with pytest.raises(CommandError, match="Missing required parameter: method"):
            await execute(ctx, "cdp_call", {})


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_command(ctx):
    with pytest.raises(CommandError, match="Unknown command: worker_dance") as exc_info:
        await execute(ctx, "worker_dance")

    assert "worker_peek" in exc_info.value.suggestion


@pytest.mark.unit
@pytest.mark.asyncio
class TestNetworkList:
    @pytest.fixture
    def traffic(self, store):
        store.network_requests = [
            network_record("1", status=200, resourceType="Document", mimeType="text/html"),
            network_record("2", status=404, resourceType="XHR", url="https://api.a.test/users"),
            network_record("3", status=500, resourceType="Fetch", url="https://api.a.test/orders", method="POST"),
            network_record("4", status=200, resourceType="Image", encodedDataLength=2048.0),
        ]
        return store

    async def test_no_filter_lists_everything(self, ctx, traffic):
        data = await execute(ctx, "worker_network_list", {})

        assert [r["requestId"] for r in data["requests"]] == ["1", "2", "3", "4"]
        assert data["totalCount"] == 4
        assert data["matchedCount"] == 4
        assert data["filter"] == ""
        assert data["requests"][3]["encodedDataLength"] == 2048.0

    async def test_filter_and_negation(self, ctx, traffic):
        data = await execute(ctx, "worker_network_list", {"filter": "status-code:>=400 !method:POST"})

        assert [r["requestId"] for r in data["requests"]] == ["2"]
        assert data["matchedCount"] == 1

    async def test_preset_combines_with_filter(self, ctx, traffic):
        data = await execute(ctx, "worker_network_list", {"preset": "api", "filter": "status-code:500"})

        assert [r["requestId"] for r in data["requests"]] == ["3"]
        assert data["filter"] == "resource-type:XHR,Fetch status-code:500"

    async def test_type_param(self, ctx, traffic):
        data = await execute(ctx, "worker_network_list", {"type": "Document,Image"})

        assert [r["requestId"] for r in data["requests"]] == ["1", "4"]

    async def test_last_n_keeps_most_recent_matches(self, ctx, traffic):
        data = await execute(ctx, "worker_network_list", {"lastN": 2})

        assert [r["requestId"] for r in data["requests"]] == ["3", "4"]
        assert data["matchedCount"] == 4

    async def test_in_flight_requests_included(self, ctx, traffic):
        network = MagicMock(spec=NetworkCollector)
        network.in_flight_requests.return_value = [network_record("9")]
        ctx.network = network

        data = await execute(ctx, "worker_network_list", {"preset": "pending"})

        assert [r["requestId"] for r in data["requests"]] == ["9"]
        assert data["totalCount"] == 5

    async def test_invalid_filter(self, ctx, traffic):
        with pytest.raises(CommandError, match='Unknown filter type: "stauts-code"') as exc_info:
            await execute(ctx, "worker_network_list", {"filter": "stauts-code:404"})

        assert exc_info.value.exit_code == ExitCode.INVALID_ARGUMENTS
        assert "status-code" in exc_info.value.suggestion

    async def test_unknown_preset(self, ctx, traffic):
        with pytest.raises(CommandError, match='Unknown preset: "erors"') as exc_info:
            await execute(ctx, "worker_network_list", {"preset": "erors"})

        assert exc_info.value.suggestion == 'Did you mean "errors"?'

    async def test_negative_last_n(self, ctx, traffic):
        with pytest.raises(CommandError, match="Invalid lastN"):
            await execute(ctx, "worker_network_list", {"lastN": -1})


@pytest.mark.unit
@pytest.mark.asyncio
class TestConsole:
    @pytest.fixture
    def messages(self, store):
        store.console_messages = [
            {"type": "log", "text": "boot", "timestamp": 1.0},
            {"type": "warning", "text": "deprecated", "timestamp": 2.0},
            {"type": "error", "text": "boom", "timestamp": 3.0},
            {"type": "error", "text": "again", "timestamp": 4.0, "navigationId": 2},
        ]
        return store

    async def test_all_messages_with_index(self, ctx, messages):
        data = await execute(ctx, "worker_console", {})

        assert [m["index"] for m in data["messages"]] == [0, 1, 2, 3]
        assert data["totalCount"] == 4
        assert "level" not in data

    async def test_level_keeps_store_indexes(self, ctx, messages):
        data = await execute(ctx, "worker_console", {"level": "error"})

        assert [(m["index"], m["text"]) for m in data["messages"]] == [(2, "boom"), (3, "again")]
        assert data["messages"][1]["navigationId"] == 2
        assert data["matchedCount"] == 2
        assert data["level"] == "error"

    async def test_warn_alias(self, ctx, messages):
        data = await execute(ctx, "worker_console", {"level": "warn"})

        assert [m["text"] for m in data["messages"]] == ["deprecated"]

    async def test_last_n(self, ctx, messages):
        data = await execute(ctx, "worker_console", {"lastN": 1})

        assert [m["text"] for m in data["messages"]] == ["again"]

    async def test_empty(self, ctx):
        data = await execute(ctx, "worker_console", {"level": "info"})

        assert data["messages"] == []
        assert data["totalCount"] == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_object_params(ctx):
    with pytest.raises(CommandError, match="expected an object") as exc_info:
        await execute(ctx, "worker_peek", ["lastN", 5])

    assert exc_info.value.exit_code == ExitCode.INVALID_ARGUMENTS
