"""
Usage pattern detection for raw CDP passthrough calls.

When a client keeps issuing raw CDP methods that a higher-level bdg command
covers, the cdp_call response carries a one-line hint. Each pattern's hint
is shown at most MAX_HINTS_PER_PATTERN times per worker.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

MAX_HINTS_PER_PATTERN = 3


@dataclass(frozen=True)
class PatternDefinition:
    name: str
    cdp_methods: Tuple[str, ...]
    threshold: int
    alternative: str


PATTERNS: Tuple[PatternDefinition, ...] = (
    PatternDefinition(
        name="dom_query_with_evaluate",
        cdp_methods=("Runtime.evaluate",),
        threshold=2,
        alternative="bdg dom query <selector>",
    ),
    PatternDefinition(
        name="screenshot_with_cdp",
        cdp_methods=("Page.captureScreenshot",),
        threshold=1,
        alternative="bdg dom screenshot [path]",
    ),
    PatternDefinition(
        name="cookies_with_cdp",
        cdp_methods=("Network.getAllCookies", "Network.getCookies"),
        threshold=1,
        alternative="bdg network cookies",
    ),
    PatternDefinition(
        name="multiple_runtime_evaluations",
        cdp_methods=("Runtime.evaluate",),
        threshold=4,
        alternative="bdg dom eval <javascript>",
    ),
    PatternDefinition(
        name="network_body_fetching",
        cdp_methods=("Network.getResponseBody",),
        threshold=3,
        alternative="bdg details network <id>",
    ),
)


def find_patterns_for_method(method: str) -> List[PatternDefinition]:
    return [p for p in PATTERNS if method in p.cdp_methods]


def format_hint(pattern: PatternDefinition) -> str:
    return f"Tip: `{pattern.alternative}` does this in one step"


@dataclass(frozen=True)
class PatternDetection:
    should_show: bool
    pattern: Optional[PatternDefinition] = None
    shown_count: int = 0

    @property
    def hint(self) -> Optional[str]:
        if self.should_show and self.pattern is not None:
            return format_hint(self.pattern)
        return None


class PatternDetector:
    """Counts CDP method usage and decides when to surface a hint.

    The first matching pattern (in PATTERNS order) whose threshold is reached
    and whose hint budget is not exhausted wins.
    """

    def __init__(self, max_hints_per_pattern: int = MAX_HINTS_PER_PATTERN):
        self.max_hints_per_pattern = max_hints_per_pattern
        self._method_counts: Dict[str, int] = {}
        self._hint_shown_counts: Dict[str, int] = {}

    def track(self, method: str) -> PatternDetection:
        count = self._method_counts.get(method, 0) + 1
        self._method_counts[method] = count

        for pattern in find_patterns_for_method(method):
            if count < pattern.threshold:
                continue
            shown = self._hint_shown_counts.get(pattern.name, 0)
            if shown < self.max_hints_per_pattern:
                self._hint_shown_counts[pattern.name] = shown + 1
                return PatternDetection(True, pattern, shown + 1)

        return PatternDetection(False)

    def method_count(self, method: str) -> int:
        return self._method_counts.get(method, 0)

    def hint_shown_count(self, pattern_name: str) -> int:
        return self._hint_shown_counts.get(pattern_name, 0)

    def reset(self) -> None:
        self._method_counts.clear()
        self._hint_shown_counts.clear()
