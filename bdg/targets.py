"""
Chrome target discovery over the DevTools HTTP endpoint.

The worker uses this to find the page it attaches to; the browser binary
itself is launched by the user with --remote-debugging-port.
"""

import json
import urllib.request
import urllib.error
from typing import List, Optional, Dict, Any

from .connection import CDPConnection
from .exceptions import CDPError, CDPTargetNotFoundError


class Target:
    """
    Represents a debuggable Chrome target (page, worker, service worker, iframe).

    Attributes:
        id: Unique target ID
        type: Target type ("page", "iframe", "worker", "service_worker", "browser")
        title: Page title or worker name
        url: Target URL
        webSocketDebuggerUrl: CDP WebSocket URL for this target
    """

    def __init__(self, target_data: Dict[str, Any]):
        self.id = target_data["id"]
        self.type = target_data["type"]
        self.title = target_data.get("title", "")
        self.url = target_data.get("url", "")
        self.webSocketDebuggerUrl = target_data.get("webSocketDebuggerUrl", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "webSocketDebuggerUrl": self.webSocketDebuggerUrl,
        }

    def __repr__(self):
        return f"Target(id={self.id!r}, type={self.type!r}, url={self.url!r})"


class TargetDiscovery:
    """
    Finds Chrome targets and builds CDP connections for them.

    Usage:
        discovery = TargetDiscovery("localhost", 9222)
        target = discovery.select_target(url_pattern="example.com")
        conn = discovery.connection_for(target)

    Attributes:
        chrome_host: Chrome host (default: "localhost")
        chrome_port: Chrome debugging port (default: 9222)
        timeout: HTTP request timeout for target discovery (default: 5s)
    """

    def __init__(
        self,
        chrome_host: str = "localhost",
        chrome_port: int = 9222,
        timeout: float = 5.0,
    ):
        if not 1 <= chrome_port <= 65535:
            raise ValueError(f"chrome_port must be 1-65535, got {chrome_port}")

        self.chrome_host = chrome_host
        self.chrome_port = chrome_port
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"http://{self.chrome_host}:{self.chrome_port}"

    def _get_json(self, path: str) -> Any:
        url = f"{self.endpoint}{path}"
        try:
            with urllib.request.urlopen(url, timeout=self.timeout) as response:
                return json.loads(response.read())
        except urllib.error.URLError as e:
            raise CDPError(
                f"Failed to connect to Chrome at {url}: {e}",
                details={
                    "chrome_host": self.chrome_host,
                    "chrome_port": self.chrome_port,
                    "recovery": "Ensure Chrome is running with --remote-debugging-port",
                },
            ) from e
        except json.JSONDecodeError as e:
            raise CDPError(
                f"Invalid JSON response from Chrome endpoint: {e}",
                details={"endpoint": url},
            ) from e

    def list_targets(
        self,
        target_type: Optional[str] = None,
        url_pattern: Optional[str] = None,
    ) -> List[Target]:
        """
        Fetch targets from Chrome HTTP endpoint with optional filtering.

        Args:
            target_type: Filter by target type ("page", "iframe", "worker", ...)
            url_pattern: Case-insensitive substring match on the target URL

        Raises:
            CDPError: If HTTP endpoint is unreachable or returns invalid data
        """
        targets = [Target(data) for data in self._get_json("/json")]

        if target_type:
            targets = [t for t in targets if t.type == target_type]

        if url_pattern:
            url_pattern_lower = url_pattern.lower()
            targets = [t for t in targets if url_pattern_lower in t.url.lower()]

        return targets

    def browser_version(self) -> Optional[str]:
        """Return the "Browser" field of /json/version, or None if unavailable."""
        try:
            info = self._get_json("/json/version")
        except CDPError:
            return None
        return info.get("Browser") if isinstance(info, dict) else None

    def select_target(
        self,
        target_id: Optional[str] = None,
        url_pattern: Optional[str] = None,
    ) -> Target:
        """
        Pick the page target to attach to.

        An explicit target id wins; otherwise the first page matching the URL
        pattern; otherwise the first page.

        Raises:
            CDPTargetNotFoundError: If nothing matches
        """
        if target_id:
            for target in self.list_targets():
                if target.id == target_id:
                    return target
            raise CDPTargetNotFoundError(
                f"Target not found: {target_id}", target_id=target_id
            )

        if url_pattern:
            targets = self.list_targets(target_type="page", url_pattern=url_pattern)
            if targets:
                return targets[0]

        targets = self.list_targets(target_type="page")
        if not targets:
            raise CDPTargetNotFoundError(
                "No page targets found",
                details={
                    "chrome_host": self.chrome_host,
                    "chrome_port": self.chrome_port,
                    "recovery": "Open a tab in Chrome or check --remote-debugging-port",
                },
            )
        return targets[0]

    def connection_for(
        self, target: Target, *, timeout: float = 30.0, max_size: int = 10_485_760
    ) -> CDPConnection:
        """
        Create a CDPConnection for the target (not yet connected).

        Raises:
            CDPError: If the target exposes no WebSocket URL (already attached elsewhere)
        """
        if not target.webSocketDebuggerUrl:
            raise CDPError(
                f"Target {target.id} has no WebSocket debugger URL",
                details={
                    "target": target.id,
                    "recovery": "Close other DevTools clients attached to this tab",
                },
            )

        return CDPConnection(target.webSocketDebuggerUrl, timeout=timeout, max_size=max_size)
