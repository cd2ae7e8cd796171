"""
DevTools-style filter language for captured network requests.

A filter string is whitespace-separated ``type:value`` tokens that must all
match. A leading ``!`` or ``-`` negates a token, double quotes group a token
containing spaces. ``status-code`` and ``larger-than`` accept a comparison
prefix (``>=``, ``<=``, ``>``, ``<``).

Examples:
    status-code:>=400 domain:api.*
    !resource-type:Image,Media larger-than:100KB
    is:running

Presets are named filter strings (``--preset errors``) and combine with an
explicit filter.
"""

import difflib
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from urllib.parse import urlsplit

from ..collectors.filters import matches_pattern
from ..exceptions import CommandError
from ..exit_codes import ExitCode
from .store import NetworkRequestRecord

logger = logging.getLogger(__name__)

FILTER_TYPES = (
    "domain",
    "status-code",
    "method",
    "mime-type",
    "resource-type",
    "larger-than",
    "has-response-header",
    "is",
    "scheme",
)
IS_VALUES = ("from-cache", "running")
COMPARISON_TYPES = ("status-code", "larger-than")

SIZE_UNITS = {"b": 1, "kb": 1024, "mb": 1024 ** 2, "gb": 1024 ** 3}
SIZE_PATTERN = re.compile(r"([0-9]+(?:\.[0-9]+)?)\s*(b|kb|mb|gb)?", re.IGNORECASE)
TOKEN_PATTERN = re.compile(r'(?:[^\s"]+|"[^"]*")+')

FILTER_PRESETS: Dict[str, Dict[str, str]] = {
    "errors": {"description": "Failed requests (4xx and 5xx)", "filter": "status-code:>=400"},
    "api": {"description": "API requests (XHR and Fetch)", "filter": "resource-type:XHR,Fetch"},
    "large": {"description": "Large responses (>1MB)", "filter": "larger-than:1MB"},
    "cached": {"description": "Cached responses", "filter": "is:from-cache"},
    "documents": {"description": "HTML documents only", "filter": "resource-type:Document"},
    "media": {"description": "Images, video and audio", "filter": "resource-type:Image,Media"},
    "scripts": {"description": "JavaScript files", "filter": "resource-type:Script"},
    "pending": {"description": "In-progress requests (no response yet)", "filter": "is:running"},
}

FILTER_HELP = """\
Filter syntax:
  status-code:>=400        HTTP status (=, >=, <=, >, <)
  domain:api.*             Host, with wildcards
  method:POST              HTTP method
  mime-type:application/json
  resource-type:XHR,Fetch  CDP resource types (comma-separated)
  larger-than:100KB        Encoded size (B, KB, MB, GB)
  has-response-header:set-cookie
  is:from-cache            Responses served from a cache
  is:running               Requests without a response yet
  scheme:https             URL scheme

Negate with ! (or -): "!domain:cdn.*"
Several tokens are ANDed: "domain:api.* status-code:>=400\""""


@dataclass(frozen=True)
class ParsedFilter:
    """One ``type:value`` token."""

    type: str
    value: str
    negated: bool = False
    operator: str = "="


def _invalid(message: str, suggestion: Optional[str] = None) -> CommandError:
    return CommandError(message, suggestion=suggestion, exit_code=ExitCode.INVALID_ARGUMENTS)


def parse_size(value: str) -> int:
    """``"1.5KB"`` -> 1536. Raises CommandError on a malformed size."""
    match = SIZE_PATTERN.fullmatch(value.strip())
    if not match:
        raise _invalid(f'Invalid size format: "{value}"', 'Use a size like "100KB", "1MB" or "1.5GB"')
    number, unit = match.groups()
    return int(float(number) * SIZE_UNITS[(unit or "b").lower()])


def _split_operator(value: str):
    for operator in (">=", "<=", ">", "<"):
        if value.startswith(operator):
            return operator, value[len(operator):]
    return "=", value


def _similar_types(name: str) -> List[str]:
    close = difflib.get_close_matches(name, FILTER_TYPES, n=3, cutoff=0.5)
    return close or [t for t in FILTER_TYPES if t.startswith(name) or name in t]


def parse_filter_token(token: str) -> ParsedFilter:
    """Parse one token. Raises CommandError (invalid arguments) with a suggestion."""
    text = token.strip()
    if not text:
        raise _invalid("Empty filter token")

    negated = text[0] in "!-"
    body = text[1:] if negated else text

    name, sep, raw_value = body.partition(":")
    if not sep:
        raise _invalid(
            f'Invalid filter format: "{token}". Expected "type:value"',
            'Use a filter like "status-code:404" or "domain:api.*"',
        )
    name = name.lower()
    if not raw_value:
        raise _invalid(f'Missing value for filter "{name}"', "Provide a value after the colon")

    if name not in FILTER_TYPES:
        similar = _similar_types(name)
        suggestion = f"Did you mean: {', '.join(similar)}?" if similar else f"Valid types: {', '.join(FILTER_TYPES)}"
        raise _invalid(f'Unknown filter type: "{name}"', suggestion)

    operator, value = _split_operator(raw_value) if name in COMPARISON_TYPES else ("=", raw_value)

    if name == "is":
        value = value.lower()
        if value not in IS_VALUES:
            raise _invalid(f'Invalid "is" filter value: "{raw_value}"', f"Valid values: {', '.join(IS_VALUES)}")
    elif name == "larger-than":
        parse_size(value)
    elif name == "status-code":
        if not re.fullmatch(r"[0-9]+", value) or not 100 <= int(value) <= 599:
            raise _invalid(f'Invalid status code: "{value}"', "Status codes must be between 100 and 599")

    return ParsedFilter(type=name, value=value, negated=negated, operator=operator)


def _strip_quotes(token: str) -> str:
    if len(token) >= 2 and token.startswith('"') and token.endswith('"'):
        return token[1:-1]
    return token


def parse_filter_string(text: Optional[str]) -> List[ParsedFilter]:
    if not text or not text.strip():
        return []
    return [parse_filter_token(_strip_quotes(token)) for token in TOKEN_PATTERN.findall(text)]


def resolve_preset(name: str) -> str:
    """Preset name -> filter string. Raises CommandError for unknown names."""
    preset = FILTER_PRESETS.get(name.lower())
    if preset is None:
        close = difflib.get_close_matches(name.lower(), FILTER_PRESETS, n=1)
        suggestion = f'Did you mean "{close[0]}"?' if close else f"Available presets: {', '.join(FILTER_PRESETS)}"
        raise _invalid(f'Unknown preset: "{name}"', suggestion)
    return preset["filter"]


def build_filter_string(filter_text: Optional[str] = None, preset: Optional[str] = None) -> str:
    """Preset filter first, then the explicit filter."""
    parts = []
    if preset:
        parts.append(resolve_preset(preset))
    if filter_text and filter_text.strip():
        parts.append(filter_text.strip())
    return " ".join(parts)


def _compare(actual: float, target: float, operator: str) -> bool:
    if operator == ">=":
        return actual >= target
    if operator == "<=":
        return actual <= target
    if operator == ">":
        return actual > target
    if operator == "<":
        return actual < target
    return actual == target


def _scheme(url: str) -> str:
    try:
        return urlsplit(url).scheme.lower()
    except ValueError:
        return ""


def _served_from_cache(headers: Dict[str, str]) -> bool:
    lowered = {name.lower(): value.lower() for name, value in headers.items()}
    return "hit" in lowered.get("x-cache", "") or lowered.get("cf-cache-status") == "hit"


def matches_filter(record: NetworkRequestRecord, parsed: ParsedFilter) -> bool:
    """Whether ``record`` matches ``parsed``, ignoring negation."""
    kind, value = parsed.type, parsed.value

    if kind == "domain":
        return matches_pattern(record["url"], value)
    if kind == "status-code":
        status = record.get("status")
        return status is not None and _compare(status, int(value), parsed.operator)
    if kind == "method":
        return record.get("method", "").upper() == value.upper()
    if kind == "mime-type":
        mime = (record.get("mimeType") or "").lower().split(";")[0].strip()
        return bool(mime) and mime.startswith(value.lower())
    if kind == "resource-type":
        resource_type = (record.get("resourceType") or "").lower()
        return bool(resource_type) and resource_type in {t.strip().lower() for t in value.split(",")}
    if kind == "larger-than":
        # A bare threshold means strictly larger
        operator = ">" if parsed.operator == "=" else parsed.operator
        return _compare(record.get("encodedDataLength") or 0, parse_size(value), operator)
    if kind == "has-response-header":
        wanted = value.lower()
        return any(name.lower() == wanted for name in (record.get("responseHeaders") or {}))
    if kind == "is":
        if value == "from-cache":
            return _served_from_cache(record.get("responseHeaders") or {})
        return record.get("status") is None
    if kind == "scheme":
        return _scheme(record["url"]) == value.lower()
    return False


def apply_filters(
    records: Sequence[NetworkRequestRecord], filters: Sequence[ParsedFilter]
) -> List[NetworkRequestRecord]:
    """Keep records matching every filter (negated filters must not match)."""
    if not filters:
        return list(records)
    return [
        record
        for record in records
        if all(matches_filter(record, f) != f.negated for f in filters)
    ]
