"""PortSniffer — find the listening port in free-form server output."""

from __future__ import annotations

import re

# Checked in order; the first pattern yielding a valid port wins.
_PORT_PATTERNS: tuple[re.Pattern[str], ...] = (
    # "Server listening on http://localhost:4321", "running at 0.0.0.0:8000"
    re.compile(r"(?:listening|running|started|serving|available)\b.*?:(\d{1,5})\b", re.IGNORECASE),
    # "http://127.0.0.1:5000/"
    re.compile(r"(?:https?|wss?)://[^\s/:]+:(\d{1,5})\b", re.IGNORECASE),
    # bare host:port
    re.compile(r"(?:0\.0\.0\.0|127\.0\.0\.1|localhost|\[::\]):(\d{1,5})\b", re.IGNORECASE),
    # "Port: 3000", "on port 3000"
    re.compile(r"\bport\b\D{0,10}?(\d{1,5})\b", re.IGNORECASE),
    # "listening on 8080"
    re.compile(r"(?:listening|running|started|serving)\b.*?\bon\s+:?(\d{1,5})\b", re.IGNORECASE),
)


def scan(line: str) -> int | None:
    """Return the first port (1-65535) announced in a single line, if any."""
    for pattern in _PORT_PATTERNS:
        match = pattern.search(line)
        if not match:
            continue
        port = int(match.group(1))
        if 0 < port < 65536:
            return port
    return None


class PortSniffer:
    """Per-run latch: reports a port once, then ignores further output."""

    def __init__(self) -> None:
        self.port: int | None = None

    @property
    def found(self) -> bool:
        return self.port is not None

    def feed(self, line: str) -> int | None:
        """Scan ``line`` unless a port was already found.

        Returns the port only on the call that first detects it.
        """
        if self.port is not None:
            return None
        port = scan(line)
        if port is not None:
            self.port = port
        return port
