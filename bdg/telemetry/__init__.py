"""Telemetry storage, HAR export and DOM snapshots."""
