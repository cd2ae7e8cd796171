"""
HAR 1.2 export of collected network requests.

Timings come from the CDP ResourceTiming captured on responseReceived; any
phase that cannot be computed is reported as -1. Header sizes are computed
by rebuilding the literal request/status line and header lines.
"""

import base64
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import parse_qsl, urlsplit

from .store import NetworkRequestRecord

UNKNOWN_TIMING = -1
DEFAULT_HTTP_VERSION = "HTTP/1.1"
CREATOR_NAME = "bdg"
CREATOR_COMMENT = "Browser Debugger CLI"

BINARY_MIME_PREFIXES = ("image/", "video/", "audio/", "application/pdf", "application/zip")


def is_binary_mime_type(mime_type: Optional[str]) -> bool:
    return bool(mime_type) and mime_type.startswith(BINARY_MIME_PREFIXES)


def get_status_text(status: Optional[int]) -> str:
    if not status:
        return "Unknown"
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Unknown"


def _header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def _utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def _header_lines(headers: Optional[Mapping[str, str]]) -> str:
    if not headers:
        return ""
    return "".join(f"{name}: {value}\r\n" for name, value in headers.items())


def request_headers_size(method: str, url: str, headers: Optional[Mapping[str, str]]) -> int:
    """Byte length of ``METHOD path?query HTTP/1.1\\r\\n`` + header lines + ``\\r\\n``."""
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path += "?" + parts.query
    request_line = f"{method} {path} {DEFAULT_HTTP_VERSION}\r\n"
    return _utf8_len(request_line + _header_lines(headers) + "\r\n")


def response_headers_size(status: Optional[int], headers: Optional[Mapping[str, str]]) -> int:
    """Byte length of ``HTTP/1.1 STATUS Text\\r\\n`` + header lines + ``\\r\\n``."""
    status_line = f"{DEFAULT_HTTP_VERSION} {status or 0} {get_status_text(status)}\r\n"
    return _utf8_len(status_line + _header_lines(headers) + "\r\n")


def parse_cookies(cookie_header: str) -> List[Dict[str, str]]:
    cookies = []
    for pair in cookie_header.split(";"):
        name, _, value = pair.strip().partition("=")
        if name and value:
            cookies.append({"name": name.strip(), "value": value.strip()})
    return cookies


def extract_cookies(headers: Optional[Mapping[str, str]]) -> List[Dict[str, str]]:
    cookie_header = _header(headers, "cookie") or _header(headers, "set-cookie")
    if not cookie_header:
        return []
    return parse_cookies(cookie_header)


def convert_headers(headers: Optional[Mapping[str, str]]) -> List[Dict[str, str]]:
    if not headers:
        return []
    return [{"name": name, "value": value} for name, value in headers.items()]


def _phase(start: Optional[float], end: Optional[float]) -> float:
    if start is None or end is None or start < 0 or end < 0 or end <= start:
        return UNKNOWN_TIMING
    return end - start


def build_timings(record: NetworkRequestRecord) -> Dict[str, float]:
    """HAR timings from CDP ResourceTiming (ms offsets relative to requestTime)."""
    timing = record.get("timing")
    if not timing:
        return {
            "blocked": UNKNOWN_TIMING,
            "dns": UNKNOWN_TIMING,
            "connect": UNKNOWN_TIMING,
            "send": UNKNOWN_TIMING,
            "wait": UNKNOWN_TIMING,
            "receive": UNKNOWN_TIMING,
            "ssl": UNKNOWN_TIMING,
        }

    dns_start = timing.get("dnsStart")
    blocked = dns_start if dns_start is not None and dns_start >= 0 else UNKNOWN_TIMING

    receive: float = UNKNOWN_TIMING
    finished = record.get("loadingFinishedTime")
    request_time = timing.get("requestTime")
    headers_end = timing.get("receiveHeadersEnd")
    if finished is not None and request_time is not None and headers_end is not None and headers_end >= 0:
        receive = (finished - request_time) * 1000 - headers_end

    return {
        "blocked": blocked,
        "dns": _phase(dns_start, timing.get("dnsEnd")),
        "connect": _phase(timing.get("connectStart"), timing.get("connectEnd")),
        "send": _phase(timing.get("sendStart"), timing.get("sendEnd")),
        "wait": _phase(timing.get("sendEnd"), headers_end),
        "receive": receive,
        "ssl": _phase(timing.get("sslStart"), timing.get("sslEnd")),
    }


def total_time(timings: Dict[str, float]) -> float:
    """Sum of known phases; ssl is excluded because it overlaps connect."""
    phases = ("blocked", "dns", "connect", "send", "wait", "receive")
    return sum(timings[p] for p in phases if timings.get(p, UNKNOWN_TIMING) >= 0)


def build_content(record: NetworkRequestRecord) -> Dict[str, Any]:
    body = record.get("responseBody")
    mime_type = record.get("mimeType")
    content: Dict[str, Any] = {
        "size": record.get("decodedBodyLength", _utf8_len(body) if body else 0),
        "mimeType": mime_type or "application/octet-stream",
    }
    if not body:
        return content

    if record.get("responseBodyBase64"):
        content["text"] = body
        content["encoding"] = "base64"
    elif is_binary_mime_type(mime_type):
        content["text"] = base64.b64encode(body.encode("utf-8")).decode("ascii")
        content["encoding"] = "base64"
    else:
        content["text"] = body
    return content


def build_request(record: NetworkRequestRecord) -> Dict[str, Any]:
    headers = record.get("requestHeaders")
    body = record.get("requestBody")
    request: Dict[str, Any] = {
        "method": record["method"],
        "url": record["url"],
        "httpVersion": DEFAULT_HTTP_VERSION,
        "cookies": extract_cookies(headers),
        "headers": convert_headers(headers),
        "queryString": [
            {"name": name, "value": value}
            for name, value in parse_qsl(urlsplit(record["url"]).query, keep_blank_values=True)
        ],
        "headersSize": request_headers_size(record["method"], record["url"], headers),
        "bodySize": _utf8_len(body) if body else 0,
    }
    if body:
        request["postData"] = {
            "mimeType": _header(headers, "content-type") or "text/plain",
            "params": [],
            "text": body,
        }
    return request


def build_response(record: NetworkRequestRecord) -> Dict[str, Any]:
    headers = record.get("responseHeaders")
    status = record.get("status")
    body = record.get("responseBody")
    return {
        "status": status or 0,
        "statusText": get_status_text(status),
        "httpVersion": DEFAULT_HTTP_VERSION,
        "cookies": extract_cookies(headers),
        "headers": convert_headers(headers),
        "content": build_content(record),
        "redirectURL": _header(headers, "location") or "",
        "headersSize": response_headers_size(status, headers),
        "bodySize": record.get("encodedDataLength", _utf8_len(body) if body else 0),
    }


def build_entry(record: NetworkRequestRecord) -> Dict[str, Any]:
    timings = build_timings(record)
    started = datetime.fromtimestamp(record["timestamp"] / 1000, tz=timezone.utc)
    entry: Dict[str, Any] = {
        "startedDateTime": started.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "time": total_time(timings),
        "request": build_request(record),
        "response": build_response(record),
        "cache": {},
        "timings": timings,
    }
    if record.get("serverIPAddress"):
        entry["serverIPAddress"] = record["serverIPAddress"]
    if record.get("connection"):
        entry["connection"] = record["connection"]
    return entry


def build_har(
    requests: List[NetworkRequestRecord],
    version: str,
    browser_version: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build a HAR 1.2 document.

    Args:
        requests: Completed network requests
        version: bdg version for the creator block
        browser_version: Chrome version; the browser block is omitted when unknown

    Returns:
        ``{"log": {...}}`` ready for json.dump
    """
    log: Dict[str, Any] = {
        "version": "1.2",
        "creator": {"name": CREATOR_NAME, "version": version, "comment": CREATOR_COMMENT},
        "entries": [build_entry(record) for record in requests],
    }
    if browser_version:
        # /json/version reports "Chrome/131.0.6778.86"
        log["browser"] = {"name": "Chrome", "version": browser_version.split("/")[-1]}
    return {"log": log}
