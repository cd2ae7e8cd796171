"""
Unit tests for NetworkCollector with a mocked CDPConnection.

Events are fed straight into the collector's handlers; the collector clock
is a controllable fake so stale sweeps are deterministic.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from bdg.collectors.network import NetworkCollector
from bdg.connection import CDPConnection
from bdg.exceptions import CommandFailedError
from bdg.telemetry.store import TelemetryStore


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_connection(body_result=None):
    conn = MagicMock(spec=CDPConnection)
    conn.send = AsyncMock(return_value=body_result or {"body": "{}", "base64Encoded": False})
    conn.subscribe = MagicMock()
    conn.unsubscribe = MagicMock()
    return conn


def request_event(request_id, url="https://example.com/api", method="GET", **extra):
    event = {"requestId": request_id, "request": {"url": url, "method": method, "headers": {"Accept": "*/*"}}}
    event.update(extra)
    return event


def response_event(request_id, status=200, mime="application/json"):
    return {
        "requestId": request_id,
        "type": "XHR",
        "response": {
            "status": status,
            "mimeType": mime,
            "headers": {"Content-Type": mime},
            "timing": {"requestTime": 1.0, "dnsStart": 0.1, "dnsEnd": 0.2, "extra": 9},
            "remoteIPAddress": "93.184.216.34",
            "connectionId": 12,
        },
    }


async def complete(collector, request_id, **request_kwargs):
    await collector._on_request_will_be_sent(request_event(request_id, **request_kwargs))
    await collector._on_response_received(response_event(request_id))
    await collector._on_loading_finished({"requestId": request_id, "encodedDataLength": 120, "timestamp": 5.0})


@pytest.mark.unit
@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_enables_network_and_subscribes(self):
        conn = make_connection()
        collector = NetworkCollector(conn, TelemetryStore())

        await collector.start()
        try:
            assert conn.send.await_args_list[0].args[0] == "Network.enable"
            events = {call.args[0] for call in conn.subscribe.call_args_list}
            assert events == {
                "Network.requestWillBeSent",
                "Network.responseReceived",
                "Network.loadingFinished",
                "Network.loadingFailed",
            }
        finally:
            await collector.stop()

        assert conn.unsubscribe.call_count == 4

    async def test_falls_back_to_plain_enable(self):
        conn = make_connection()
        conn.send.side_effect = [CommandFailedError("bad params"), {}]
        collector = NetworkCollector(conn, TelemetryStore())

        await collector.start()
        await collector.stop()

        assert conn.send.await_args_list[1].args == ("Network.enable",)


@pytest.mark.unit
@pytest.mark.asyncio
class TestRequestLifecycle:
    async def test_finished_request_moves_to_store_once(self):
        store = TelemetryStore()
        collector = NetworkCollector(make_connection(), store)

        await complete(collector, "1")
        # A duplicate terminal event must not append again
        await collector._on_loading_finished({"requestId": "1"})
        await asyncio.sleep(0)

        assert len(store.network_requests) == 1
        record = store.network_requests[0]
        assert record["status"] == 200
        assert record["mimeType"] == "application/json"
        assert record["timing"] == {"requestTime": 1.0, "dnsStart": 0.1, "dnsEnd": 0.2}
        assert record["serverIPAddress"] == "93.184.216.34"
        assert record["connection"] == "12"
        assert record["encodedDataLength"] == 120
        assert not collector.is_in_flight("1")

    async def test_records_navigation_id(self):
        store = TelemetryStore()
        store.navigation_id = 3
        collector = NetworkCollector(make_connection(), store)

        await collector._on_request_will_be_sent(request_event("1"))

        assert collector._in_flight["1"].record["navigationId"] == 3

    async def test_in_flight_requests_listed_until_finished(self):
        collector = NetworkCollector(make_connection(), TelemetryStore())

        await collector._on_request_will_be_sent(request_event("1"))
        await collector._on_request_will_be_sent(request_event("2", url="https://example.com/slow"))
        await collector._on_response_received(response_event("1"))

        assert [r["requestId"] for r in collector.in_flight_requests()] == ["1", "2"]

        await collector._on_loading_finished({"requestId": "1", "encodedDataLength": 10})
        await asyncio.sleep(0)

        assert [r["url"] for r in collector.in_flight_requests()] == ["https://example.com/slow"]

    async def test_post_data_kept(self):
        collector = NetworkCollector(make_connection(), TelemetryStore())

        event = request_event("1", method="POST")
        event["request"]["postData"] = '{"a": 1}'
        await collector._on_request_will_be_sent(event)

        assert collector._in_flight["1"].record["requestBody"] == '{"a": 1}'

    async def test_failed_request(self):
        store = TelemetryStore()
        collector = NetworkCollector(make_connection(), store)

        await collector._on_request_will_be_sent(request_event("1"))
        await collector._on_loading_failed(
            {"requestId": "1", "errorText": "net::ERR_BLOCKED_BY_CLIENT", "blockedReason": "inspector", "type": "Script"}
        )

        record = store.network_requests[0]
        assert record["status"] == 0
        assert record["errorText"] == "net::ERR_BLOCKED_BY_CLIENT"
        assert record["blocked"] is True
        assert record["resourceType"] == "Script"

    async def test_events_for_unknown_requests_ignored(self):
        store = TelemetryStore()
        collector = NetworkCollector(make_connection(), store)

        await collector._on_response_received(response_event("ghost"))
        await collector._on_loading_finished({"requestId": "ghost"})
        await collector._on_loading_failed({"requestId": "ghost"})

        assert store.network_requests == []

    async def test_tracking_domain_dropped(self):
        store = TelemetryStore()
        collector = NetworkCollector(make_connection(), store)

        await complete(collector, "1", url="https://www.google-analytics.com/collect")

        assert store.network_requests == []

    async def test_include_all_keeps_tracking(self):
        store = TelemetryStore()
        collector = NetworkCollector(make_connection(), store, include_all=True)

        await complete(collector, "1", url="https://www.google-analytics.com/collect")

        assert len(store.network_requests) == 1

    async def test_exclude_pattern(self):
        store = TelemetryStore()
        collector = NetworkCollector(make_connection(), store, network_exclude=["*/api/*"])

        await complete(collector, "1", url="https://example.com/api/users")
        await complete(collector, "2", url="https://example.com/index.html")

        assert [r["requestId"] for r in store.network_requests] == ["2"]


@pytest.mark.unit
@pytest.mark.asyncio
class TestRedirects:
    async def test_redirect_replaces_and_moves_to_end(self):
        clock = FakeClock()
        collector = NetworkCollector(make_connection(), TelemetryStore(), clock=clock)

        await collector._on_request_will_be_sent(request_event("1", url="http://example.com/"))
        clock.now += 1
        await collector._on_request_will_be_sent(request_event("2"))
        clock.now += 1
        await collector._on_request_will_be_sent(request_event("1", url="https://example.com/"))

        assert list(collector._in_flight) == ["2", "1"]
        assert collector._in_flight["1"].record["url"] == "https://example.com/"
        assert collector.in_flight_count == 2

    async def test_redirect_allowed_at_cap(self):
        collector = NetworkCollector(make_connection(), TelemetryStore(), max_requests=1)

        await collector._on_request_will_be_sent(request_event("1", url="http://a.test/"))
        await collector._on_request_will_be_sent(request_event("1", url="https://a.test/"))

        assert collector._in_flight["1"].record["url"] == "https://a.test/"


@pytest.mark.unit
@pytest.mark.asyncio
class TestCaps:
    async def test_in_flight_cap_drops_new_requests(self):
        collector = NetworkCollector(make_connection(), TelemetryStore(), max_requests=2)

        for request_id in ("1", "2", "3"):
            await collector._on_request_will_be_sent(request_event(request_id))

        assert list(collector._in_flight) == ["1", "2"]

    async def test_completed_cap_drops_new_entries(self):
        store = TelemetryStore()
        collector = NetworkCollector(make_connection(), store, max_requests=2)

        for request_id in ("1", "2", "3"):
            await complete(collector, request_id)

        assert [r["requestId"] for r in store.network_requests] == ["1", "2"]


@pytest.mark.unit
@pytest.mark.asyncio
class TestStaleSweep:
    async def test_removes_only_old_entries(self):
        clock = FakeClock()
        store = TelemetryStore()
        collector = NetworkCollector(make_connection(), store, stale_timeout=60.0, clock=clock)

        await complete(collector, "done")
        await collector._on_request_will_be_sent(request_event("old"))
        clock.now += 50
        await collector._on_request_will_be_sent(request_event("fresh"))
        clock.now += 20

        removed = collector.cleanup_stale_requests()

        assert removed == 1
        assert list(collector._in_flight) == ["fresh"]
        assert [r["requestId"] for r in store.network_requests] == ["done"]

    async def test_nothing_stale(self):
        clock = FakeClock()
        collector = NetworkCollector(make_connection(), TelemetryStore(), clock=clock)

        await collector._on_request_will_be_sent(request_event("1"))

        assert collector.cleanup_stale_requests() == 0
        assert collector.is_in_flight("1")

    async def test_swept_request_never_reaches_output(self):
        clock = FakeClock()
        store = TelemetryStore()
        collector = NetworkCollector(make_connection(), store, stale_timeout=1.0, clock=clock)

        await collector._on_request_will_be_sent(request_event("1"))
        clock.now += 5
        collector.cleanup_stale_requests()
        await collector._on_loading_finished({"requestId": "1"})

        assert store.network_requests == []


@pytest.mark.unit
@pytest.mark.asyncio
class TestBodies:
    async def test_body_fetched_for_json(self):
        conn = make_connection({"body": '{"ok": true}', "base64Encoded": False})
        store = TelemetryStore()
        collector = NetworkCollector(conn, store)

        await complete(collector, "1")
        await asyncio.sleep(0)

        conn.send.assert_awaited_with("Network.getResponseBody", {"requestId": "1"})
        assert store.network_requests[0]["responseBody"] == '{"ok": true}'
        assert store.network_requests[0]["decodedBodyLength"] == 12
        assert collector.bodies_fetched == 1
        assert collector.pending_fetch_count == 0

    async def test_base64_body_flagged(self):
        conn = make_connection({"body": "aGVsbG8=", "base64Encoded": True})
        store = TelemetryStore()
        collector = NetworkCollector(conn, store)

        await complete(collector, "1")
        await asyncio.sleep(0)

        assert store.network_requests[0]["responseBodyBase64"] is True

    async def test_image_body_skipped_with_reason(self):
        conn = make_connection()
        store = TelemetryStore()
        collector = NetworkCollector(conn, store)

        await collector._on_request_will_be_sent(request_event("1", url="https://example.com/logo.png"))
        await collector._on_response_received(response_event("1", mime="image/png"))
        await collector._on_loading_finished({"requestId": "1"})

        assert store.network_requests[0]["responseBody"].startswith("[SKIPPED: ")
        assert collector.bodies_skipped == 1
        conn.send.assert_not_awaited()

    async def test_fetch_failure_leaves_record_without_body(self):
        conn = make_connection()
        conn.send.side_effect = CommandFailedError("No resource with given identifier found")
        store = TelemetryStore()
        collector = NetworkCollector(conn, store)

        await complete(collector, "1")
        await asyncio.sleep(0)

        assert "responseBody" not in store.network_requests[0]
        assert collector.pending_fetch_count == 0

    async def test_abandoned_fetch_does_not_mutate_record(self):
        release = asyncio.Event()

        async def slow_body(method, params=None, **kwargs):
            if method == "Network.getResponseBody":
                await release.wait()
                return {"body": "late"}
            return {}

        conn = make_connection()
        conn.send.side_effect = slow_body
        store = TelemetryStore()
        collector = NetworkCollector(conn, store)

        await collector.start()
        await complete(collector, "1")
        await asyncio.sleep(0)
        await collector.stop()
        release.set()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert "responseBody" not in store.network_requests[0]
