"""
Shared plumbing for subcommand handlers: running the async body, printing
results in the selected ``--format`` and reporting errors with their exit code.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Awaitable, Callable, Optional

from ..exceptions import BdgError, CommandError
from ..exit_codes import ExitCode

TextFormatter = Callable[[Any], str]


def emit(args: argparse.Namespace, data: Any, text: Optional[TextFormatter] = None) -> None:
    """Print ``data`` as JSON, or through ``text`` for --format text/table."""
    if args.format != "json" and text is not None:
        print(text(data))
    else:
        print(json.dumps(data, indent=2, default=str))


def report_error(args: argparse.Namespace, error: BdgError) -> int:
    """Print ``Error: ...`` plus the suggestion or recovery hint; return the exit code."""
    config = getattr(args, "config", None)
    if config is not None and str(config.log_level).upper() == "DEBUG":
        raise error
    print(f"Error: {error}", file=sys.stderr)
    if isinstance(error, CommandError) and error.suggestion:
        print(f"Suggestion: {error.suggestion}", file=sys.stderr)
    elif error.details.get("recovery"):
        print(f"Recovery hint: {error.details['recovery']}", file=sys.stderr)
    return int(error.exit_code)


def run_handler(
    args: argparse.Namespace, handler: Callable[[argparse.Namespace], Awaitable[int]]
) -> int:
    """Synchronous wrapper: run ``handler(args)`` and map BdgError to its exit code."""

    async def guarded() -> int:
        try:
            return await handler(args)
        except BdgError as e:
            return report_error(args, e)

    return asyncio.run(guarded())


def parse_json_arg(value: Optional[str], name: str) -> Any:
    if not value:
        return {}
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise CommandError(
            f"Invalid JSON {name}: {e}",
            suggestion=f"Pass {name} as a JSON object, e.g. '{{\"key\": \"value\"}}'",
            exit_code=ExitCode.INVALID_ARGUMENTS,
        ) from e
