"""ProjectDetector — guess a checkout's ecosystem from marker files."""

from __future__ import annotations

import logging
from pathlib import Path

from wharf.types import EcosystemKind

_logger = logging.getLogger(__name__)

# Checked in order; the first marker present decides
_MARKERS: tuple[tuple[str, EcosystemKind], ...] = (
    ("nx.json", EcosystemKind.NODE),
    ("package.json", EcosystemKind.NODE),
    ("requirements.txt", EcosystemKind.PYTHON_PIP),
    ("pyproject.toml", EcosystemKind.PYTHON_POETRY),
)

_NODE_SUFFIXES = {".js", ".ts", ".mjs", ".cjs"}


class ProjectDetector:
    """Detects the runtime family of a project directory.

    Ambiguity is never an error: when neither markers nor file counts
    decide, the project is ``UNKNOWN``.
    """

    async def detect(self, directory: Path) -> EcosystemKind:
        return self.detect_sync(Path(directory))

    def detect_sync(self, directory: Path) -> EcosystemKind:
        for marker, kind in _MARKERS:
            if (directory / marker).exists():
                return kind

        try:
            names = [p.name for p in directory.iterdir() if p.is_file()]
        except OSError as e:
            _logger.warning("Cannot list %s: %s", directory, e)
            return EcosystemKind.UNKNOWN

        node = sum(1 for n in names if Path(n).suffix in _NODE_SUFFIXES)
        python = sum(1 for n in names if n.endswith(".py"))
        if node > python:
            return EcosystemKind.NODE
        if python > node:
            return EcosystemKind.PYTHON_PIP
        return EcosystemKind.UNKNOWN
