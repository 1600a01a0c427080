"""Interfaces for the collaborators that fetch and prepare workload sources."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from wharf.types import EcosystemKind


class SourceFetcher(Protocol):
    async def clone(self, url: str, directory: Path) -> None:
        """Clone ``url`` into ``directory``; raise ``CloneFailureError`` on failure."""


class EcosystemDetector(Protocol):
    async def detect(self, directory: Path) -> EcosystemKind:
        """Return the project's ecosystem; ``UNKNOWN`` when unsure."""


class Installer(Protocol):
    async def install(self, directory: Path, ecosystem: EcosystemKind) -> None:
        """Install dependencies; raise ``InstallFailureError`` on failure."""

    async def build_monorepo(self, directory: Path) -> bool:
        """Build every project of an nx workspace. False when nothing was built."""
