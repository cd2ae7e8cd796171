"""bdg: browser debugger over the Chrome DevTools Protocol.

This package provides:
- CDPConnection: WebSocket connection to Chrome used by the worker
- Collectors: network, console and WebSocket telemetry
- Daemon: session broker that supervises the worker over a Unix socket
- Session: PID/lock files, query cache and DOM index resolution
- CLI: the ``bdg`` command-line interface
"""

__version__ = "0.1.0"
