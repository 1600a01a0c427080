"""GitCloner — fetch a workload's source with the git CLI."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from pathlib import Path
from urllib.parse import urlparse

from wharf.config import settings
from wharf.exceptions import CloneFailureError

_logger = logging.getLogger(__name__)

_BRANCH_SUFFIX = re.compile(r"/(?:tree|blob)/[^/]+(?:/.*)?$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_git_url(url: str) -> str:
    """Strip GitHub '/tree/<branch>' suffixes; web URLs get a .git suffix."""
    url = _BRANCH_SUFFIX.sub("", url.strip()).rstrip("/")
    if urlparse(url).scheme in ("http", "https") and not url.endswith(".git"):
        url += ".git"
    return url


def repo_name_from_url(url: str) -> str:
    """'https://github.com/acme/weather-api.git' → 'weather-api'."""
    url = _BRANCH_SUFFIX.sub("", url.strip()).rstrip("/")
    if url.startswith("git@") and ":" in url:
        tail = url.split(":", 1)[1]
    else:
        tail = urlparse(url).path or url
    name = tail.rstrip("/").split("/")[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name or "workload"


def safe_dir_name(name: str) -> str:
    """Filesystem-safe directory name fragment."""
    cleaned = _UNSAFE_CHARS.sub("-", name).strip(".-")
    return cleaned or "workload"


class GitCloner:
    """Clones repositories with ``git clone --depth 1``."""

    def __init__(self, timeout: float | None = None, depth: int | None = 1) -> None:
        self._timeout = settings.clone_timeout_seconds if timeout is None else timeout
        self._depth = depth

    async def clone(self, url: str, directory: Path) -> None:
        directory = Path(directory)
        self._prepare_target(directory)

        cmd = ["git", "clone"]
        if self._depth:
            cmd += ["--depth", str(self._depth)]
        cmd += [sanitize_git_url(url), str(directory)]
        _logger.info("Cloning %s into %s", url, directory)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            raise CloneFailureError(f"Clone timed out after {self._timeout:g}s") from e
        except OSError as e:
            raise CloneFailureError(f"git is not available: {e}") from e

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:500]
            raise CloneFailureError(f"git clone failed ({proc.returncode}): {detail}")

    def _prepare_target(self, directory: Path) -> None:
        """The target must be absent or empty; git refuses anything else."""
        if directory.exists():
            if not directory.is_dir():
                raise CloneFailureError(f"{directory} exists and is not a directory")
            if any(directory.iterdir()):
                raise CloneFailureError(f"Target directory {directory} is not empty")
            directory.rmdir()
        try:
            directory.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CloneFailureError(f"Cannot create {directory.parent}: {e}") from e


def remove_tree(directory: Path) -> None:
    """Delete a workload directory; a missing directory is fine."""
    shutil.rmtree(directory, ignore_errors=True)
