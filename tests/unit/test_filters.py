"""Unit tests for telemetry filtering rules."""

import pytest

from bdg.collectors.filters import (
    matches_pattern,
    should_exclude_console_message,
    should_exclude_domain,
    should_exclude_url,
    should_fetch_body,
)


@pytest.mark.unit
class TestPatterns:
    def test_host_only_pattern(self):
        assert matches_pattern("https://api.example.com/v1/users", "*.example.com")
        assert not matches_pattern("https://example.org/", "*.example.com")

    def test_host_pattern_is_case_insensitive(self):
        assert matches_pattern("https://API.Example.com/", "api.example.com")

    def test_full_url_pattern(self):
        assert matches_pattern("https://example.com/api/users", "*/api/*")
        assert not matches_pattern("https://example.com/static/app.js", "*/api/*")


@pytest.mark.unit
class TestDomainFilter:
    def test_tracking_domains_excluded(self):
        assert should_exclude_domain("https://www.google-analytics.com/collect")
        assert should_exclude_domain("https://stats.g.doubleclick.net/r")

    def test_similar_domain_not_excluded(self):
        assert not should_exclude_domain("https://notdoubleclick.net/")

    def test_include_all_disables_filter(self):
        assert not should_exclude_domain("https://www.google-analytics.com/collect", include_all=True)

    def test_unparseable_url(self):
        assert not should_exclude_domain("data:text/plain,hello")


@pytest.mark.unit
class TestUrlFilter:
    def test_no_patterns_keeps_everything(self):
        assert not should_exclude_url("https://example.com/")

    def test_include_trumps_exclude(self):
        url = "https://example.com/api/users"
        assert not should_exclude_url(url, include_patterns=["*/api/*"], exclude_patterns=["*example.com*"])

    def test_include_drops_non_matching(self):
        assert should_exclude_url("https://example.com/app.js", include_patterns=["*/api/*"])

    def test_exclude(self):
        assert should_exclude_url("https://cdn.example.com/x.js", exclude_patterns=["cdn.example.com"])


@pytest.mark.unit
class TestBodyFetchPolicy:
    def test_default_fetches_json(self):
        decision = should_fetch_body("https://example.com/api", "application/json")
        assert decision.should
        assert decision.reason == "default"

    def test_images_skipped_by_mime(self):
        decision = should_fetch_body("https://example.com/logo", "image/png")
        assert not decision.should
        assert "MIME" in decision.reason

    def test_fonts_skipped_by_extension(self):
        decision = should_fetch_body("https://example.com/font.woff2?v=3", "application/octet-stream")
        assert not decision.should
        assert "extension" in decision.reason

    def test_too_large(self):
        decision = should_fetch_body("https://example.com/big.json", "application/json", 6 * 1024 * 1024, max_body_size=5 * 1024 * 1024)
        assert not decision.should
        assert "too large" in decision.reason

    def test_include_pattern_overrides_heuristics(self):
        decision = should_fetch_body("https://example.com/styles.css", "text/css", include_patterns=["*/styles.css"])
        assert decision.should

    def test_exclude_pattern(self):
        decision = should_fetch_body("https://example.com/api/data", "application/json", exclude_patterns=["*/api/*"])
        assert not decision.should

    def test_fetch_all_wins(self):
        decision = should_fetch_body("https://example.com/a.png", "image/png", 10**9, fetch_all_bodies=True, max_body_size=1)
        assert decision.should


@pytest.mark.unit
class TestConsoleNoise:
    def test_hmr_noise(self):
        assert should_exclude_console_message("[HMR] Waiting for update signal", "log")

    def test_errors_never_noise(self):
        assert not should_exclude_console_message("[HMR] failed", "error")

    def test_include_all(self):
        assert not should_exclude_console_message("Download the React DevTools for a better experience", "info", include_all=True)

    def test_regular_message(self):
        assert not should_exclude_console_message("Hello", "log")
