"""
Filtering rules for collected telemetry.

Covers three decisions made by the collectors:
- whether a finished request is dropped (tracking domains, URL include/exclude)
- whether its response body is fetched (should_fetch_body)
- whether a console message is noise

URL patterns are shell-style globs matched with fnmatch. A pattern without a
"/" is matched against the host only (``*.example.com``), anything else
against the full URL.
"""

import fnmatch
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence
from urllib.parse import urlsplit

# Known analytics and tracking hosts, dropped unless include_all is set
DEFAULT_EXCLUDED_DOMAINS = (
    "google-analytics.com",
    "googletagmanager.com",
    "analytics.google.com",
    "doubleclick.net",
    "googlesyndication.com",
    "googleadservices.com",
    "facebook.net",
    "connect.facebook.net",
    "hotjar.com",
    "segment.io",
    "segment.com",
    "mixpanel.com",
    "amplitude.com",
    "fullstory.com",
    "sentry.io",
    "clarity.ms",
    "newrelic.com",
    "nr-data.net",
    "intercom.io",
)

# Body-fetch heuristics: MIME prefixes/values and URL extensions skipped by default
SKIP_BODY_MIME_PREFIXES = ("image/", "font/", "video/", "audio/")
SKIP_BODY_MIME_TYPES = (
    "text/css",
    "application/font-woff",
    "application/font-woff2",
    "application/x-font-ttf",
    "application/vnd.ms-fontobject",
)
SKIP_BODY_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".bmp", ".avif",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".css",
    ".map",
)

# Console noise (substrings) dropped unless include_all is set
DEFAULT_CONSOLE_NOISE = (
    "Download the React DevTools",
    "[HMR]",
    "[vite] connecting",
    "[vite] connected",
    "[webpack-dev-server]",
    "DevTools failed to load source map",
    "Angular is running in development mode",
    "You are running Vue in development mode",
)


@dataclass(frozen=True)
class BodyFetchDecision:
    """Result of the body-fetch policy: whether to fetch and why."""

    should: bool
    reason: str


def _host(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def _path(url: str) -> str:
    try:
        return urlsplit(url).path.lower()
    except ValueError:
        return ""


def matches_pattern(url: str, pattern: str) -> bool:
    """Match a URL against one glob pattern (host-only when it has no "/")."""
    if "/" in pattern:
        return fnmatch.fnmatch(url, pattern)
    return fnmatch.fnmatch(_host(url), pattern.lower())


def matches_any(url: str, patterns: Iterable[str]) -> bool:
    return any(matches_pattern(url, pattern) for pattern in patterns)


def should_exclude_domain(url: str, include_all: bool = False) -> bool:
    """True if the URL belongs to a known tracking/analytics domain."""
    if include_all:
        return False
    host = _host(url)
    if not host:
        return False
    return any(host == domain or host.endswith("." + domain) for domain in DEFAULT_EXCLUDED_DOMAINS)


def should_exclude_url(
    url: str,
    include_patterns: Sequence[str] = (),
    exclude_patterns: Sequence[str] = (),
) -> bool:
    """Apply user URL filters; include patterns always trump exclude patterns."""
    if include_patterns:
        return not matches_any(url, include_patterns)
    if exclude_patterns:
        return matches_any(url, exclude_patterns)
    return False


def should_fetch_body(
    url: str,
    mime_type: Optional[str],
    encoded_size: Optional[float] = None,
    *,
    fetch_all_bodies: bool = False,
    include_patterns: Sequence[str] = (),
    exclude_patterns: Sequence[str] = (),
    max_body_size: Optional[int] = None,
) -> BodyFetchDecision:
    """Decide whether to fetch a response body.

    Order of precedence:
    1. fetch_all_bodies forces a fetch
    2. responses larger than max_body_size are skipped
    3. explicit include patterns force a fetch
    4. explicit exclude patterns skip
    5. default heuristics skip images, fonts, CSS and source maps
    6. everything else is fetched
    """
    if fetch_all_bodies:
        return BodyFetchDecision(True, "fetch all bodies enabled")

    if max_body_size is not None and encoded_size is not None and encoded_size > max_body_size:
        size_mb = encoded_size / (1024 * 1024)
        limit_mb = max_body_size / (1024 * 1024)
        return BodyFetchDecision(
            False, f"response too large ({size_mb:.2f}MB > {limit_mb:.2f}MB)"
        )

    if include_patterns and matches_any(url, include_patterns):
        return BodyFetchDecision(True, "matched include pattern")

    if exclude_patterns and matches_any(url, exclude_patterns):
        return BodyFetchDecision(False, "matched exclude pattern")

    mime = (mime_type or "").lower()
    if mime.startswith(SKIP_BODY_MIME_PREFIXES) or mime in SKIP_BODY_MIME_TYPES:
        return BodyFetchDecision(False, f"auto-skipped by MIME type ({mime})")

    path = _path(url)
    if path.endswith(SKIP_BODY_EXTENSIONS):
        return BodyFetchDecision(False, "auto-skipped by file extension")

    return BodyFetchDecision(True, "default")


def should_exclude_console_message(text: str, message_type: str, include_all: bool = False) -> bool:
    """True if the console message is known framework/dev-server noise.

    Errors are never treated as noise.
    """
    if include_all or message_type in ("error", "assert"):
        return False
    return any(noise in text for noise in DEFAULT_CONSOLE_NOISE)
