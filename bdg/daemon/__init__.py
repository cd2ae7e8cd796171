"""Daemon broker and worker process."""
