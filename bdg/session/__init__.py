"""Per-session files, locks, cleanup and the DOM query cache."""
