"""
DOM snapshot captured by the worker at session shutdown.

Every CDP call is wrapped in with_timeout so an unresponsive page cannot
keep the worker from writing its final output.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, TypeVar

from ..connection import CDPConnection
from ..exceptions import CDPError, CDPTimeoutError

logger = logging.getLogger(__name__)

CDP_TIMEOUT = 5.0

T = TypeVar("T")


async def with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await ``awaitable`` or raise CDPTimeoutError after ``timeout`` seconds."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise CDPTimeoutError(
            f"{operation} timed out", command_method=operation, timeout=timeout
        )


async def prepare_dom_collection(connection: CDPConnection) -> None:
    """Enable the domains the snapshot and navigation tracking rely on."""
    await connection.send("Page.enable")
    await connection.send("DOM.enable")


async def _document_title(connection: CDPConnection, timeout: float) -> str:
    try:
        result = await with_timeout(
            connection.send(
                "Runtime.evaluate", {"expression": "document.title", "returnByValue": True}
            ),
            timeout,
            "Runtime.evaluate",
        )
    except CDPError as e:
        logger.debug(f"Failed to get document title: {e}")
        return "Untitled"

    value = result.get("result", {}).get("value")
    return value if isinstance(value, str) else "Untitled"


async def collect_dom(connection: CDPConnection, timeout: float = CDP_TIMEOUT) -> Dict[str, Any]:
    """
    Capture url, title and outer HTML of the current page.

    Raises:
        CDPTimeoutError: If the browser does not answer within ``timeout``
        CDPError: If a CDP call fails
    """
    document, frame_tree, title = await asyncio.gather(
        with_timeout(connection.send("DOM.getDocument", {"depth": -1}), timeout, "DOM.getDocument"),
        with_timeout(connection.send("Page.getFrameTree"), timeout, "Page.getFrameTree"),
        _document_title(connection, timeout),
    )

    root_id = document["root"]["nodeId"]
    outer = await with_timeout(
        connection.send("DOM.getOuterHTML", {"nodeId": root_id}), timeout, "DOM.getOuterHTML"
    )

    return {
        "url": frame_tree.get("frameTree", {}).get("frame", {}).get("url", ""),
        "title": title,
        "outerHTML": outer.get("outerHTML", ""),
    }


async def try_collect_dom(connection: CDPConnection, timeout: float = CDP_TIMEOUT) -> Optional[Dict[str, Any]]:
    """collect_dom that logs and returns None on failure (shutdown path)."""
    try:
        return await collect_dom(connection, timeout)
    except CDPError as e:
        logger.warning(f"DOM snapshot skipped: {e}")
        return None
