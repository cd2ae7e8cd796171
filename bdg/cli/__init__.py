"""Command-line interface: one ``*_cmd`` module per command family."""
