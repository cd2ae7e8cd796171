"""CDP event collectors that feed the worker's telemetry store."""
