"""DependencyInstaller — prepare a fresh checkout so it can run.

Node projects get ``yarn install`` or ``npm install``. Python projects get
a ``.venv`` inside the checkout (via uv when it is on PATH, else the
stdlib venv module) with their requirements installed into it, which is
the interpreter the command resolver later prefers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
from pathlib import Path

from wharf.config import settings
from wharf.exceptions import InstallFailureError
from wharf.sources.commands import LineCallback, stream_command
from wharf.types import EcosystemKind, LogKind

_logger = logging.getLogger(__name__)


def _log_line(kind: LogKind, line: str) -> None:
    if kind == LogKind.STDERR:
        _logger.debug("[install stderr] %s", line)
    else:
        _logger.debug("[install] %s", line)


def venv_python(directory: Path) -> Path:
    if sys.platform == "win32":
        return directory / ".venv" / "Scripts" / "python.exe"
    return directory / ".venv" / "bin" / "python"


def is_nx_monorepo(directory: Path) -> bool:
    """Strict nx check: nx.json, a workspace/project file, and nx in package.json."""
    if not (directory / "nx.json").is_file():
        return False
    if not ((directory / "workspace.json").is_file() or (directory / "project.json").is_file()):
        return False
    try:
        pkg = json.loads((directory / "package.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return False
    deps = {**(pkg.get("dependencies") or {}), **(pkg.get("devDependencies") or {})}
    return "nx" in deps or "@nrwl/workspace" in deps


class DependencyInstaller:
    """Installs dependencies for a detected ecosystem."""

    def __init__(self, timeout: float | None = None, on_line: LineCallback | None = None) -> None:
        self._timeout = settings.install_timeout_seconds if timeout is None else timeout
        self._on_line = on_line or _log_line

    async def install(self, directory: Path, ecosystem: EcosystemKind) -> None:
        directory = Path(directory)
        if ecosystem == EcosystemKind.NODE:
            await self._run(self._node_command(directory), directory)
        elif ecosystem.is_python:
            await self._install_python(directory, ecosystem)
        else:
            _logger.info("Unknown project type in %s, skipping dependency installation", directory)

    def _node_command(self, directory: Path) -> list[str]:
        if (directory / "yarn.lock").exists():
            return ["yarn", "install"]
        return ["npm", "install"]

    async def _install_python(self, directory: Path, ecosystem: EcosystemKind) -> None:
        has_requirements = (directory / "requirements.txt").exists()
        has_pyproject = (directory / "pyproject.toml").exists()
        if not has_requirements and not has_pyproject:
            raise InstallFailureError("No requirements.txt or pyproject.toml to install from")

        if shutil.which("uv"):
            _logger.info("Installing %s with uv", directory)
            await self._run(["uv", "venv"], directory)
            if has_requirements:
                await self._run(["uv", "pip", "install", "-r", "requirements.txt"], directory)
            if has_pyproject:
                await self._run(["uv", "pip", "install", "-e", "."], directory)
            return

        if ecosystem == EcosystemKind.PYTHON_POETRY and has_pyproject and shutil.which("poetry"):
            env = {**os.environ, "POETRY_VIRTUALENVS_IN_PROJECT": "true"}
            await self._run(["poetry", "install"], directory, env=env)
            return

        ambient = "py" if sys.platform == "win32" else (shutil.which("python3") or "python")
        await self._run([ambient, "-m", "venv", ".venv"], directory)
        pip = [str(venv_python(directory)), "-m", "pip", "install"]
        if has_requirements:
            await self._run([*pip, "-r", "requirements.txt"], directory)
        else:
            await self._run([*pip, "-e", "."], directory)

    async def build_monorepo(self, directory: Path) -> bool:
        """Run every project's build target in an nx workspace."""
        directory = Path(directory)
        try:
            code, _ = await stream_command(
                ["npx", "nx", "--version"], directory, timeout=120,
            )
        except (OSError, asyncio.TimeoutError) as e:
            _logger.warning("nx is not installed or not accessible: %s", e)
            return False
        if code != 0:
            _logger.warning("nx is not installed or not accessible in %s", directory)
            return False

        await self._run(["npx", "nx", "run-many", "--target=build", "--all"], directory)
        return True

    async def _run(
        self, argv: list[str], directory: Path, env: dict[str, str] | None = None,
    ) -> None:
        command = " ".join(argv)
        _logger.info("[install] %s (in %s)", command, directory)
        try:
            code, stderr = await stream_command(
                argv, directory, on_line=self._on_line, env=env, timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            raise InstallFailureError(f"'{command}' timed out after {self._timeout:g}s") from e
        except OSError as e:
            raise InstallFailureError(f"Failed to start '{command}': {e}") from e
        if code != 0:
            raise InstallFailureError(f"'{command}' failed with code {code}: {stderr[-500:]}")
