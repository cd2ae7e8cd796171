"""
``bdg dom query``: run a CSS selector against the live page through the
daemon's ``cdp_call`` passthrough and build an indexed result.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

from ..exceptions import CDPConnectionError
from ..ipc.protocol import require_data
from .query_cache import QueryCacheEntry, QueryNode

logger = logging.getLogger(__name__)

CDP_CONCURRENCY_LIMIT = 10
PREVIEW_LENGTH = 80

_TAG = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")


async def call_cdp(client, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """``cdp_call`` through the daemon, returning the CDP result object."""
    return require_data(await client.cdp_call(method, params or {}), "result", "CDP result")


def text_preview(outer_html: str) -> str:
    text = _WHITESPACE.sub(" ", _TAG.sub("", outer_html)).strip()
    if len(text) > PREVIEW_LENGTH:
        return text[:PREVIEW_LENGTH] + "..."
    return text


def attributes_dict(flat: List[str]) -> Dict[str, str]:
    """CDP sends attributes as ``[name1, value1, name2, value2, ...]``."""
    return dict(zip(flat[0::2], flat[1::2]))


async def describe_node(client, index: int, node_id: int) -> QueryNode:
    node: QueryNode = {"index": index, "nodeId": node_id}

    described = (await call_cdp(client, "DOM.describeNode", {"nodeId": node_id})).get("node")
    if not described:
        return node

    tag = (described.get("nodeName") or "").lower()
    if tag:
        node["tag"] = tag
    class_attr = attributes_dict(described.get("attributes") or []).get("class")
    if class_attr is not None:
        node["classes"] = class_attr.split()

    html = await call_cdp(client, "DOM.getOuterHTML", {"nodeId": node_id})
    preview = text_preview(html.get("outerHTML") or "")
    if preview:
        node["preview"] = preview
    return node


async def query_dom_elements(client, selector: str) -> QueryCacheEntry:
    """
    Match ``selector`` in the current document.

    Returns:
        Entry with one node per match (index, nodeId, tag, classes, preview),
        without a navigationId; the caller stamps that before caching.

    Raises:
        CDPConnectionError: If the document root is unavailable
        CommandError / IPCError: From the daemon
    """
    await call_cdp(client, "DOM.enable")

    document = await call_cdp(client, "DOM.getDocument")
    root_id = (document.get("root") or {}).get("nodeId")
    if not root_id:
        raise CDPConnectionError("Failed to get document root", details={"selector": selector})

    matched = await call_cdp(client, "DOM.querySelectorAll", {"nodeId": root_id, "selector": selector})
    node_ids: List[int] = matched.get("nodeIds") or []
    if len(node_ids) > 20:
        logger.debug(f"Querying {len(node_ids)} elements with selector: {selector}")

    limiter = asyncio.Semaphore(CDP_CONCURRENCY_LIMIT)

    async def describe(index: int, node_id: int) -> QueryNode:
        async with limiter:
            return await describe_node(client, index, node_id)

    nodes = await asyncio.gather(*(describe(i, nid) for i, nid in enumerate(node_ids)))
    return {"selector": selector, "count": len(nodes), "nodes": list(nodes)}
