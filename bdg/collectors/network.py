"""
Network collector for CDP - tracks HTTP request lifecycles.

Each request moves through Started (requestWillBeSent) -> Enriched
(responseReceived) -> Finalized (loadingFinished) or Failed (loadingFailed).
In-flight requests live in an insertion-ordered dict; a terminal event moves
the record exactly once into ``store.network_requests``. Requests that never
reach a terminal event are swept after ``stale_timeout`` seconds and never
appear in output.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set

from ..connection import CDPConnection
from ..exceptions import CDPError
from ..telemetry.store import NetworkRequestRecord, TelemetryStore, now_ms
from .filters import should_exclude_domain, should_exclude_url, should_fetch_body

logger = logging.getLogger(__name__)

MAX_NETWORK_REQUESTS = 10_000
STALE_REQUEST_TIMEOUT = 60.0
STALE_REQUEST_CLEANUP_INTERVAL = 30.0
MAX_RESPONSE_SIZE = 5 * 1024 * 1024

# Network.enable buffer limits (Chrome rejects them on some versions)
CHROME_NETWORK_BUFFER_TOTAL = 50 * 1024 * 1024
CHROME_NETWORK_BUFFER_PER_RESOURCE = 10 * 1024 * 1024
CHROME_POST_DATA_LIMIT = 1024 * 1024

TIMING_FIELDS = (
    "requestTime",
    "proxyStart",
    "proxyEnd",
    "dnsStart",
    "dnsEnd",
    "connectStart",
    "connectEnd",
    "sslStart",
    "sslEnd",
    "sendStart",
    "sendEnd",
    "receiveHeadersEnd",
)


@dataclass
class _InFlight:
    record: NetworkRequestRecord
    inserted_at: float  # collector clock, not wall time


class NetworkCollector:
    """
    Captures network requests and responses into a TelemetryStore.

    Usage:
        async with CDPConnection(ws_url) as conn:
            store = TelemetryStore()
            async with NetworkCollector(conn, store) as collector:
                await asyncio.sleep(60)
            print(len(store.network_requests))

    Attributes:
        connection: Active CDP connection
        store: Telemetry store receiving completed requests
        max_requests: Cap for both in-flight and completed requests
        stale_timeout: Seconds after which an in-flight request is dropped
        cleanup_interval: Seconds between stale sweeps
        bodies_fetched / bodies_skipped: Body-fetch policy counters
    """

    def __init__(
        self,
        connection: CDPConnection,
        store: TelemetryStore,
        *,
        max_requests: int = MAX_NETWORK_REQUESTS,
        stale_timeout: float = STALE_REQUEST_TIMEOUT,
        cleanup_interval: float = STALE_REQUEST_CLEANUP_INTERVAL,
        max_body_size: int = MAX_RESPONSE_SIZE,
        fetch_all_bodies: bool = False,
        fetch_bodies_include: Sequence[str] = (),
        fetch_bodies_exclude: Sequence[str] = (),
        network_include: Sequence[str] = (),
        network_exclude: Sequence[str] = (),
        include_all: bool = False,
        get_navigation_id: Optional[Callable[[], int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connection = connection
        self.store = store
        self.max_requests = max_requests
        self.stale_timeout = stale_timeout
        self.cleanup_interval = cleanup_interval
        self.max_body_size = max_body_size
        self.fetch_all_bodies = fetch_all_bodies
        self.fetch_bodies_include = list(fetch_bodies_include)
        self.fetch_bodies_exclude = list(fetch_bodies_exclude)
        self.network_include = list(network_include)
        self.network_exclude = list(network_exclude)
        self.include_all = include_all
        self.get_navigation_id = get_navigation_id or store.current_navigation_id
        self._clock = clock

        self._in_flight: Dict[str, _InFlight] = {}
        self._pending_fetches: Set[str] = set()
        self._fetch_tasks: Set[asyncio.Task] = set()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

        self.bodies_fetched = 0
        self.bodies_skipped = 0

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def pending_fetch_count(self) -> int:
        return len(self._pending_fetches)

    def is_in_flight(self, request_id: str) -> bool:
        return request_id in self._in_flight

    def in_flight_requests(self) -> List[NetworkRequestRecord]:
        """Requests still waiting for a terminal event, oldest first."""
        return [entry.record for entry in self._in_flight.values()]

    async def start(self):
        """
        Enable the Network domain and subscribe to request lifecycle events.

        Raises:
            CDPError: If even the plain Network.enable fails
        """
        try:
            await self.connection.send(
                "Network.enable",
                {
                    "maxTotalBufferSize": CHROME_NETWORK_BUFFER_TOTAL,
                    "maxResourceBufferSize": CHROME_NETWORK_BUFFER_PER_RESOURCE,
                    "maxPostDataSize": CHROME_POST_DATA_LIMIT,
                },
            )
        except CDPError:
            logger.debug("Network buffer limits not supported, using default settings")
            await self.connection.send("Network.enable")

        for event, handler in self._handlers().items():
            self.connection.subscribe(event, handler)

        self._running = True
        self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

    async def stop(self):
        """
        Stop collecting.

        Cancels the sweep task, unsubscribes from events, abandons pending body
        fetches and drops in-flight requests (they never completed).
        """
        self._running = False

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        for event, handler in self._handlers().items():
            self.connection.unsubscribe(event, handler)

        total = self.bodies_fetched + self.bodies_skipped
        if total > 0:
            logger.debug(
                f"[PERF] Network bodies: {self.bodies_fetched} fetched, "
                f"{self.bodies_skipped} skipped "
                f"({self.bodies_skipped / total * 100:.1f}% reduction)"
            )
        if self._pending_fetches:
            logger.debug(f"[PERF] Abandoning {len(self._pending_fetches)} pending body fetches")

        self._pending_fetches.clear()
        self._in_flight.clear()

    def _handlers(self):
        return {
            "Network.requestWillBeSent": self._on_request_will_be_sent,
            "Network.responseReceived": self._on_response_received,
            "Network.loadingFinished": self._on_loading_finished,
            "Network.loadingFailed": self._on_loading_failed,
        }

    async def _on_request_will_be_sent(self, params: dict):
        request_id = params.get("requestId")
        if request_id is None:
            return

        # A redirect re-sends the same id; the new hop replaces the old one
        # and moves to the end so the dict stays ordered by insertion time.
        redirected = self._in_flight.pop(request_id, None) is not None

        if not redirected and len(self._in_flight) >= self.max_requests:
            logger.debug(
                f"Network request limit reached ({self.max_requests}), dropping new requests"
            )
            return

        request = params.get("request", {})
        record: NetworkRequestRecord = {
            "requestId": request_id,
            "url": request.get("url", ""),
            "method": request.get("method", "GET"),
            "timestamp": now_ms(),
            "requestHeaders": dict(request.get("headers", {})),
        }
        if request.get("postData") is not None:
            record["requestBody"] = request["postData"]
        if params.get("type") is not None:
            record["resourceType"] = params["type"]

        navigation_id = self.get_navigation_id()
        if navigation_id is not None:
            record["navigationId"] = navigation_id

        self._in_flight[request_id] = _InFlight(record=record, inserted_at=self._clock())

    async def _on_response_received(self, params: dict):
        entry = self._in_flight.get(params.get("requestId"))
        if entry is None:
            return

        record = entry.record
        response = params.get("response", {})

        record["status"] = response.get("status", 0)
        record["mimeType"] = response.get("mimeType", "")
        record["responseHeaders"] = dict(response.get("headers", {}))
        if params.get("type") is not None:
            record["resourceType"] = params["type"]

        timing = response.get("timing")
        if timing:
            record["timing"] = {key: timing[key] for key in TIMING_FIELDS if key in timing}

        if response.get("remoteIPAddress"):
            record["serverIPAddress"] = response["remoteIPAddress"]

        if response.get("connectionId") is not None:
            record["connection"] = str(response["connectionId"])

    def _is_filtered(self, url: str) -> bool:
        if should_exclude_domain(url, self.include_all):
            return True
        return should_exclude_url(url, self.network_include, self.network_exclude)

    async def _on_loading_finished(self, params: dict):
        request_id = params.get("requestId")
        entry = self._in_flight.pop(request_id, None)
        if entry is None:
            return

        if len(self.store.network_requests) >= self.max_requests:
            logger.debug(f"Network request limit reached ({self.max_requests})")
            return

        record = entry.record
        encoded_length = params.get("encodedDataLength")
        if encoded_length is not None:
            record["encodedDataLength"] = encoded_length
        if params.get("timestamp") is not None:
            record["loadingFinishedTime"] = params["timestamp"]

        if self._is_filtered(record["url"]):
            return

        decision = should_fetch_body(
            record["url"],
            record.get("mimeType"),
            encoded_length,
            fetch_all_bodies=self.fetch_all_bodies,
            include_patterns=self.fetch_bodies_include,
            exclude_patterns=self.fetch_bodies_exclude,
            max_body_size=self.max_body_size,
        )

        if decision.should:
            self.bodies_fetched += 1
            self._start_body_fetch(request_id, record)
        else:
            self.bodies_skipped += 1
            record["responseBody"] = f"[SKIPPED: {decision.reason}]"

        self.store.network_requests.append(record)

    async def _on_loading_failed(self, params: dict):
        request_id = params.get("requestId")
        entry = self._in_flight.pop(request_id, None)
        if entry is None:
            return

        if len(self.store.network_requests) >= self.max_requests:
            return

        record = entry.record
        if self._is_filtered(record["url"]):
            return

        record["status"] = 0
        if params.get("errorText"):
            record["errorText"] = params["errorText"]
        if params.get("canceled"):
            record["canceled"] = True
        if params.get("blockedReason"):
            record["blocked"] = True
            record["blockedReason"] = params["blockedReason"]
        if params.get("type"):
            record["resourceType"] = params["type"]

        self.store.network_requests.append(record)

    def _start_body_fetch(self, request_id: str, record: NetworkRequestRecord) -> None:
        self._pending_fetches.add(request_id)
        task = asyncio.create_task(self._fetch_body(request_id, record))
        self._fetch_tasks.add(task)
        task.add_done_callback(self._fetch_tasks.discard)

    async def _fetch_body(self, request_id: str, record: NetworkRequestRecord) -> None:
        try:
            result = await self.connection.send("Network.getResponseBody", {"requestId": request_id})
        except CDPError as e:
            logger.debug(f"Failed to fetch response body for request {request_id}: {e}")
            self._pending_fetches.discard(request_id)
            return

        # Abandoned by stop() while the fetch was in flight
        if request_id not in self._pending_fetches:
            return
        self._pending_fetches.discard(request_id)

        body = result.get("body")
        if body is None:
            return
        record["responseBody"] = body
        if result.get("base64Encoded"):
            record["responseBodyBase64"] = True
        if body:
            record["decodedBodyLength"] = len(body)

    def cleanup_stale_requests(self) -> int:
        """
        Drop in-flight requests older than stale_timeout.

        Walks the dict from the oldest insertion and stops at the first fresh
        entry. Insertion order matches inserted_at because redirects re-insert
        at the end and the collector clock is monotonic.

        Returns:
            Number of requests removed
        """
        now = self._clock()
        stale = []
        for request_id, entry in self._in_flight.items():
            if now - entry.inserted_at > self.stale_timeout:
                stale.append(request_id)
            else:
                break

        for request_id in stale:
            del self._in_flight[request_id]

        if stale:
            logger.debug(f"Cleaning up {len(stale)} stale network requests")
        return len(stale)

    async def _periodic_cleanup(self):
        while self._running:
            await asyncio.sleep(self.cleanup_interval)
            self.cleanup_stale_requests()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
        return False
