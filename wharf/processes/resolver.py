"""CommandResolver — decide how to launch an unknown codebase.

Resolution order, first match wins:

1. an explicit run command (rewritten through ``npx nx`` when it invokes nx)
2. an explicit entry point file
3. the ecosystem's probe chain

Each probe chain is an ordered tuple of small functions over the workload
directory. A probe returns an argv list or ``None``; the first non-``None``
result wins, so the outcome is fully determined by directory contents.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import shutil
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from wharf.exceptions import (
    NoEntryPointError,
    NoSuitableProjectError,
    UnsupportedEcosystemError,
    UnsupportedEntryPointError,
)
from wharf.types import EcosystemKind, Workload

_logger = logging.getLogger(__name__)

Probe = Callable[[Path], "list[str] | None"]
ProjectLister = Callable[[Path], Awaitable[list[str]]]

NX_KEYWORD = "nx"
SERVER_KEYWORDS = ("server", "api", "backend", "service")

# Build output first, then the root, then common source folders
NODE_ENTRY_CANDIDATES = (
    "dist/index.js",
    "build/index.js",
    "out/index.js",
    "lib/index.js",
    "index.js",
    "server.js",
    "app.js",
    "main.js",
    "src/index.js",
    "src/server.js",
    "src/app.js",
    "src/main.js",
)
NODE_DIAGNOSTIC_DIRS = ("dist", "build", "out", "lib", "src")

PYTHON_ENTRY_CANDIDATES = (
    "main.py",
    "app.py",
    "server.py",
    "api.py",
    "src/main.py",
    "src/app.py",
)
_SKIP_DIRS = {"node_modules", "__pycache__", "venv", "site-packages"}
_MAIN_GUARD = re.compile(r"""^if\s+__name__\s*==\s*['"]__main__['"]\s*:""", re.MULTILINE)

_NODE_EXTENSIONS = {".js", ".mjs", ".cjs"}


@dataclass
class ResolvedCommand:
    """The executable and arguments chosen for a workload."""

    executable: str
    args: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)  # human-readable decisions

    @property
    def argv(self) -> list[str]:
        return [self.executable, *self.args]

    def __str__(self) -> str:
        return " ".join(self.argv)


# ── Directory helpers ────────────────────────────────────────────────────────


def read_package_json(path: Path) -> dict:
    pkg_json = path / "package.json"
    if not pkg_json.is_file():
        return {}
    try:
        data = json.loads(pkg_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        _logger.warning("Unreadable package.json in %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def package_scripts(path: Path) -> dict[str, str]:
    scripts = read_package_json(path).get("scripts") or {}
    return scripts if isinstance(scripts, dict) else {}


def is_nx_workspace(path: Path) -> bool:
    return (path / "nx.json").is_file()


def python_interpreter(path: Path) -> str:
    """Prefer the workload's own .venv over the ambient interpreter."""
    for candidate in (
        path / ".venv" / "bin" / "python",
        path / ".venv" / "Scripts" / "python.exe",
    ):
        if candidate.is_file():
            return str(candidate)
    if sys.platform == "win32":
        return "py"
    return shutil.which("python") or shutil.which("python3") or "python"


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", name.lower())


# ── Node probes ──────────────────────────────────────────────────────────────


def probe_npm_start(path: Path) -> list[str] | None:
    if "start" in package_scripts(path):
        return ["npm", "run", "start"]
    return None


def probe_package_main(path: Path) -> list[str] | None:
    main = read_package_json(path).get("main")
    if isinstance(main, str) and main and (path / main).is_file():
        return ["node", main]
    return None


def _node_file_probe(relative: str) -> Probe:
    def probe(path: Path) -> list[str] | None:
        if (path / relative).is_file():
            return ["node", relative]
        return None

    probe.__name__ = f"probe_node_{relative}"
    return probe


NODE_PROBES: tuple[Probe, ...] = (
    probe_npm_start,
    probe_package_main,
    *(_node_file_probe(c) for c in NODE_ENTRY_CANDIDATES),
)


# ── Python probes (return interpreter arguments) ─────────────────────────────


def declared_module(path: Path) -> str | None:
    """Module name declared in pyproject.toml, importable form."""
    pyproject = path / "pyproject.toml"
    if not pyproject.is_file():
        return None
    try:
        data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as e:
        _logger.warning("Could not read pyproject.toml in %s: %s", path, e)
        return None
    name = data.get("project", {}).get("name")
    if not name:
        name = data.get("tool", {}).get("poetry", {}).get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    return name.strip().replace("-", "_")


def iter_python_files(path: Path):
    """Yield .py files: a directory's own files first, then its subdirectories."""
    try:
        entries = sorted(path.iterdir(), key=lambda p: p.name)
    except OSError:
        return
    for entry in entries:
        if entry.is_file() and entry.suffix == ".py":
            yield entry
    for entry in entries:
        if not entry.is_dir() or entry.is_symlink():
            continue
        if entry.name.startswith(".") or entry.name in _SKIP_DIRS:
            continue
        yield from iter_python_files(entry)


def has_main_guard(source: str) -> bool:
    return bool(_MAIN_GUARD.search(source))


def probe_python_module(path: Path) -> list[str] | None:
    module = declared_module(path)
    if module:
        return ["-m", module]
    return None


def probe_main_guard(path: Path) -> list[str] | None:
    for py_file in iter_python_files(path):
        try:
            source = py_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        if has_main_guard(source):
            return [py_file.relative_to(path).as_posix()]
    return None


def _python_file_probe(relative: str) -> Probe:
    def probe(path: Path) -> list[str] | None:
        if (path / relative).is_file():
            return [relative]
        return None

    probe.__name__ = f"probe_python_{relative}"
    return probe


PYTHON_PROBES: tuple[Probe, ...] = (
    probe_python_module,
    probe_main_guard,
    *(_python_file_probe(c) for c in PYTHON_ENTRY_CANDIDATES),
)


def run_probes(probes: tuple[Probe, ...], path: Path) -> list[str] | None:
    for probe in probes:
        argv = probe(path)
        if argv is not None:
            return argv
    return None


# ── nx project discovery ─────────────────────────────────────────────────────


async def list_nx_projects(path: Path) -> list[str]:
    """Ask the nx CLI for the workspace's project names."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *exec_argv(["npx", "nx", "show", "projects"]),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(path),
        )
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=120)
    except (OSError, asyncio.TimeoutError) as e:
        raise NoSuitableProjectError(f"nx is not available: {e}") from e
    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()[:300]
        raise NoSuitableProjectError(
            f"'nx show projects' failed with exit code {proc.returncode}: {detail}"
        )
    text = stdout.decode("utf-8", errors="replace")
    return [line.strip() for line in text.splitlines() if line.strip()]


def choose_nx_project(projects: list[str], display_name: str = "") -> str | None:
    """Pick the project to serve: by name, then server-ish keyword, then first."""
    if not projects:
        return None
    if display_name:
        slug = slugify(display_name)
        for project in projects:
            lowered = project.lower()
            if lowered == slug or slug in lowered:
                return project
    for project in projects:
        lowered = project.lower()
        if any(keyword in lowered for keyword in SERVER_KEYWORDS):
            return project
    return projects[0]


def nearest_nx_project(root: Path, start: Path) -> str | None:
    """Name of the closest sub-project containing ``start`` (below ``root``)."""
    root = root.resolve()
    current = start.resolve()
    while current != root and root in current.parents:
        project_json = current / "project.json"
        if project_json.is_file():
            try:
                name = json.loads(project_json.read_text(encoding="utf-8")).get("name")
            except (OSError, ValueError):
                name = None
            return name or current.name
        pkg_name = read_package_json(current).get("name")
        if isinstance(pkg_name, str) and pkg_name:
            return pkg_name
        current = current.parent
    return None


def exec_argv(argv: list[str]) -> list[str]:
    """Resolve the executable on PATH (finds npm.cmd and friends on Windows)."""
    found = shutil.which(argv[0])
    return [found or argv[0], *argv[1:]]


# ── Resolver ─────────────────────────────────────────────────────────────────


class CommandResolver:
    """Turns a workload into a launch command."""

    def __init__(self, project_lister: ProjectLister | None = None) -> None:
        self._list_projects = project_lister or list_nx_projects

    async def resolve(self, workload: Workload) -> ResolvedCommand:
        path = Path(workload.directory)
        if workload.run_command and workload.run_command.strip():
            return self._from_run_command(workload.run_command)
        if workload.entry_point and workload.entry_point.strip():
            return self._from_entry_point(path, workload.entry_point.strip())

        if workload.ecosystem == EcosystemKind.NODE:
            if is_nx_workspace(path):
                return await self._nx_serve(path, workload.name)
            return self._node(path)
        if workload.ecosystem.is_python:
            return self._python(path)
        raise UnsupportedEcosystemError(
            f"Unsupported project type: {workload.ecosystem.value}"
        )

    def _from_run_command(self, run_command: str) -> ResolvedCommand:
        notes = [f"Using custom run command: {run_command}"]
        try:
            tokens = shlex.split(run_command, posix=sys.platform != "win32")
        except ValueError:
            tokens = run_command.split()  # unbalanced quotes
        if NX_KEYWORD in tokens:
            rest = tokens[tokens.index(NX_KEYWORD) + 1:]
            cmd = ResolvedCommand("npx", [NX_KEYWORD, *rest], notes)
            notes.append(f"Parsed NX command: {cmd}")
            return cmd
        return ResolvedCommand(tokens[0], tokens[1:], notes)

    def _from_entry_point(self, path: Path, entry_point: str) -> ResolvedCommand:
        notes = [f"Using custom entry point: {entry_point}"]
        entry_path = path / entry_point
        if not entry_path.is_file():
            raise NoEntryPointError(f"Custom entry point file '{entry_point}' not found.")

        if is_nx_workspace(path):
            project = nearest_nx_project(path, entry_path.parent)
            if project:
                notes.append(f"Detected NX project: {project}")
                return ResolvedCommand("npx", [NX_KEYWORD, "serve", project], notes)
            notes.append("Could not determine NX project from entry point")

        suffix = entry_path.suffix.lower()
        if suffix in _NODE_EXTENSIONS:
            return ResolvedCommand("node", [entry_point], notes)
        if suffix == ".py":
            return ResolvedCommand(python_interpreter(path), [entry_point], notes)
        raise UnsupportedEntryPointError(f"Unsupported entry point file type: {entry_point}")

    async def _nx_serve(self, path: Path, display_name: str) -> ResolvedCommand:
        notes = ["Detected NX monorepo. Checking for projects..."]
        projects = await self._list_projects(path)
        notes.append(f"Found {len(projects)} NX projects: {', '.join(projects)}")
        target = choose_nx_project(projects, display_name)
        if target is None:
            raise NoSuitableProjectError("No suitable NX project found")
        notes.append(f"Using NX project: {target}")
        return ResolvedCommand("npx", [NX_KEYWORD, "serve", target], notes)

    def _node(self, path: Path) -> ResolvedCommand:
        if not (path / "package.json").is_file():
            raise NoEntryPointError("Package.json not found")
        notes: list[str] = []
        main = read_package_json(path).get("main")
        if main and not (path / str(main)).is_file() and "start" not in package_scripts(path):
            notes.append(f"Main file {main} not found, searching for alternative entry points")

        argv = run_probes(NODE_PROBES, path)
        if argv is None:
            raise NoEntryPointError(_node_diagnostics(path))
        if argv[0] == "node":
            notes.append(f"Using {argv[1]} as entry point")
        return ResolvedCommand(argv[0], argv[1:], notes)

    def _python(self, path: Path) -> ResolvedCommand:
        args = run_probes(PYTHON_PROBES, path)
        if args is None:
            raise NoEntryPointError(
                "Could not find Python entry point. Searched for: "
                + ", ".join(PYTHON_ENTRY_CANDIDATES)
            )
        if args[0] == "-m":
            note = f"Found Python module: {args[1]}"
        else:
            note = f"Using {args[0]} as entry point"
        return ResolvedCommand(python_interpreter(path), args, [note])


def _node_diagnostics(path: Path) -> str:
    lines = [
        "Could not find a valid entry point. Please ensure the project has "
        "a start script or a valid main file.",
        f"Searched for entry points: {', '.join(NODE_ENTRY_CANDIDATES)}",
    ]
    for subdir in NODE_DIAGNOSTIC_DIRS:
        folder = path / subdir
        if folder.is_dir():
            try:
                names = sorted(p.name for p in folder.iterdir())
            except OSError:
                continue
            lines.append(f"{subdir}/ directory contents: {', '.join(names)}")
    return "\n".join(lines)
