"""
Main CLI entry point for bdg.

Every command talks to the session daemon over its Unix socket; ``start``
spawns the daemon when none is running.

Usage:
    bdg <subcommand> [options]

Subcommands:
    start    - Start a session against a Chrome tab
    stop     - Stop the session and write session.json
    status   - Show daemon, worker and page activity
    cleanup  - Remove stale session files
    peek     - Preview captured network and console data
    details  - Full record for one request or console message
    console  - Query captured console messages
    network  - Filtered listing, headers, HAR export and cookies
    dom      - Query, inspect and evaluate against the page
    cdp      - Call any CDP method through the session
"""

import argparse
import sys
from typing import List, Optional

from ..config import DEFAULT_CONFIG_FILE, Configuration
from ..exit_codes import ExitCode
from ..logging_setup import setup_logging


def create_parent_parser() -> argparse.ArgumentParser:
    """
    Create parent parser with global options shared across all subcommands.

    Global options:
        --chrome-host / --chrome-port: Chrome remote debugging endpoint
        --timeout: CDP command timeout in seconds
        --session-dir: Directory holding the session files (default: ~/.bdg)
        --format: Output format (json|text|table, default: json)
        --log-level: Log level (debug|info|warning|error)
        --quiet/--verbose: Mutual exclusion group for output control

    Defaults are None so values from ~/.bdgrc and BDG_* variables survive
    unless a flag is given explicitly.
    """
    parent = argparse.ArgumentParser(add_help=False)

    # Connection options
    parent.add_argument("--chrome-host", default=None, help="Chrome host (default: localhost)")
    parent.add_argument(
        "--chrome-port", type=int, default=None, help="Chrome debugging port (default: 9222)"
    )
    parent.add_argument(
        "--timeout", type=float, default=None, help="CDP command timeout in seconds (default: 30.0)"
    )
    parent.add_argument("--session-dir", default=None, help="Session directory (default: ~/.bdg)")

    # Output format
    parent.add_argument(
        "--format",
        choices=["json", "text", "table"],
        default="json",
        help="Output format (default: json)",
    )

    # Logging options
    parent.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Log level (default: info)",
    )

    verbosity_group = parent.add_mutually_exclusive_group()
    verbosity_group.add_argument(
        "--quiet", action="store_true", help="Suppress non-essential output (only show results)"
    )
    verbosity_group.add_argument("--verbose", action="store_true", help="Enable verbose debug output")

    return parent


def create_main_parser(parent: argparse.ArgumentParser) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bdg",
        description="Browser debugger: capture and inspect a Chrome tab over CDP",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start capturing a page (Chrome must run with --remote-debugging-port=9222)
  bdg start https://example.com

  # Last 20 network requests and console messages
  bdg peek --last 20

  # Query elements, then inspect the second match by index
  bdg dom query "button.submit"
  bdg dom get 1

  # Export captured traffic
  bdg network har --output capture.har

  # Raw CDP call through the session
  bdg cdp Runtime.evaluate --params '{"expression": "document.title"}'

  # Stop and write ~/.bdg/session.json
  bdg stop

For more information on subcommands, run: bdg <subcommand> --help
        """,
    )

    subparsers = parser.add_subparsers(
        dest="subcommand",
        title="subcommands",
        description="Available operations",
        required=True,
    )

    from . import cdp_cmd, console_cmd, dom_cmd, network_cmd, peek_cmd, session_cmd

    session_cmd.register_subcommand(subparsers, parent)
    peek_cmd.register_subcommand(subparsers, parent)
    console_cmd.register_subcommand(subparsers, parent)
    network_cmd.register_subcommand(subparsers, parent)
    dom_cmd.register_subcommand(subparsers, parent)
    cdp_cmd.register_subcommand(subparsers, parent)

    return parser


def load_configuration(args: argparse.Namespace) -> Configuration:
    """Precedence: CLI flags > BDG_* env vars > ~/.bdgrc > defaults."""
    cli_overrides = {
        "chrome_host": getattr(args, "chrome_host", None),
        "chrome_port": getattr(args, "chrome_port", None),
        "timeout": getattr(args, "timeout", None),
        "session_dir": getattr(args, "session_dir", None),
        "log_level": args.log_level.upper() if getattr(args, "log_level", None) else None,
    }
    config = Configuration.load(
        DEFAULT_CONFIG_FILE, **{k: v for k, v in cli_overrides.items() if v is not None}
    )

    if getattr(args, "quiet", False):
        config.log_level = "ERROR"
    elif getattr(args, "verbose", False):
        config.log_level = "DEBUG"
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for CLI.

    Args:
        argv: Command-line arguments (default: sys.argv[1:])

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    parent = create_parent_parser()
    parser = create_main_parser(parent)
    args = parser.parse_args(argv)

    config = load_configuration(args)
    setup_logging(
        format_type=config.log_format,
        level=config.log_level.upper() if isinstance(config.log_level, str) else "INFO",
        quiet=getattr(args, "quiet", False),
        verbose=getattr(args, "verbose", False),
        process_role="cli",
    )

    args.config = config

    if not hasattr(args, "func"):
        parser.print_help()
        return int(ExitCode.INVALID_ARGUMENTS)

    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return int(ExitCode.INTERRUPTED)
    except Exception as e:
        if config.log_level.upper() == "DEBUG":
            raise
        print(f"Error: {e}", file=sys.stderr)
        return int(ExitCode.GENERIC_FAILURE)


if __name__ == "__main__":
    sys.exit(main())
