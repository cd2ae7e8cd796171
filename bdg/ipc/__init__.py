"""JSONL protocol shared by the CLI client, daemon and worker."""
