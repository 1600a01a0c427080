"""Shared test fixtures — fake source collaborators and a wired orchestrator.

Workloads in these tests are small Python scripts launched with the
interpreter running the tests, so no network, git, npm or pip is needed.
"""

from __future__ import annotations

import shlex
import sys
from pathlib import Path

import pytest
import pytest_asyncio

from wharf.events.bus import EventBus
from wharf.exceptions import CloneFailureError, InstallFailureError
from wharf.sources.detector import ProjectDetector
from wharf.storage.store import WorkloadStore
from wharf.types import EcosystemKind
from wharf.workloads.orchestrator import WorkloadOrchestrator

PYTHON = shlex.quote(sys.executable)

# Announces a port twice, then idles until terminated
SERVER_SCRIPT = """\
import sys, time
print("Server listening on http://localhost:4321", flush=True)
print("listening on :9999", flush=True)
sys.stderr.write("warming up\\n")
sys.stderr.flush()
while True:
    time.sleep(0.1)
"""

# Dies before the liveness grace period is over
CRASH_SCRIPT = """\
import sys
print("boom", flush=True)
sys.exit(3)
"""


def run_command(script: str = "app.py") -> str:
    return f"{PYTHON} -u {script}"


class FakeCloner:
    """Writes ``files`` into the target directory instead of running git."""

    def __init__(self, files: dict[str, str] | None = None, fail: bool = False) -> None:
        self.files = files if files is not None else {
            "app.py": SERVER_SCRIPT,
            "requirements.txt": "",
        }
        self.fail = fail
        self.calls: list[tuple[str, Path]] = []

    async def clone(self, url: str, directory: Path) -> None:
        self.calls.append((url, Path(directory)))
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        if self.fail:
            (directory / "partial").write_text("half a checkout")
            raise CloneFailureError(f"git clone failed (128): repository {url} not found")
        for name, content in self.files.items():
            target = directory / name
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content)


class FakeInstaller:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.installed: list[tuple[Path, EcosystemKind]] = []
        self.monorepo_builds: list[Path] = []

    async def install(self, directory: Path, ecosystem: EcosystemKind) -> None:
        self.installed.append((Path(directory), ecosystem))
        if self.fail:
            raise InstallFailureError("'pip install -r requirements.txt' failed with code 1")

    async def build_monorepo(self, directory: Path) -> bool:
        self.monorepo_builds.append(Path(directory))
        return True


@pytest_asyncio.fixture
async def store(tmp_path):
    s = WorkloadStore(tmp_path / "wharf.db")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def cloner():
    return FakeCloner()


@pytest.fixture
def installer():
    return FakeInstaller()


@pytest_asyncio.fixture
async def orchestrator(tmp_path, store, event_bus, cloner, installer):
    orch = WorkloadOrchestrator(
        store=store,
        event_bus=event_bus,
        cloner=cloner,
        detector=ProjectDetector(),
        installer=installer,
        servers_dir=tmp_path / "servers",
        grace_seconds=0.3,
        stop_timeout=3.0,
    )
    await orch.initialize()
    yield orch
    await orch.shutdown()
