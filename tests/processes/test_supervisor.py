"""Tests for the process supervisor — real short-lived child processes."""

import asyncio
import json
import os
import shlex
import subprocess
import sys

import pytest
import pytest_asyncio
from unittest.mock import MagicMock

from wharf.exceptions import NoEntryPointError, SpawnFailureError
from wharf.processes.supervisor import ProcessSupervisor, terminate_tree
from wharf.types import EcosystemKind, LogKind, Workload, WorkloadStatus

PYTHON = shlex.quote(sys.executable)

SERVER = """\
import os, sys, time
print("Server listening on http://localhost:4321", flush=True)
print("listening on :9999", flush=True)
print("config=" + os.environ["WHARF_CONFIG_PATH"], flush=True)
print("greeting=" + os.environ.get("GREETING", ""), flush=True)
sys.stderr.write("err one\\nerr two\\n")
sys.stderr.flush()
while True:
    time.sleep(0.1)
"""

CRASH = "import sys\nprint('boom', flush=True)\nsys.exit(3)\n"

# Exits at once but leaves a grandchild holding stdout open
ORPHANING_CRASH = """\
import subprocess, sys
subprocess.Popen([sys.executable, "-c", "import time; time.sleep(2)"])
sys.exit(1)
"""

# Ignores SIGTERM so stop has to escalate
STUBBORN = """\
import signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print("ready", flush=True)
while True:
    time.sleep(0.1)
"""


class RecordingSink:
    def __init__(self):
        self.logs: list[tuple[str, LogKind, str]] = []
        self.statuses: list[tuple[str, WorkloadStatus]] = []
        self.ports: list[tuple[str, int]] = []

    def log(self, workload_id, kind, message):
        self.logs.append((workload_id, kind, message))

    def status(self, workload_id, status):
        self.statuses.append((workload_id, status))

    def port(self, workload_id, port):
        self.ports.append((workload_id, port))

    def lines(self, kind):
        return [m for _, k, m in self.logs if k == kind]


def _workload(tmp_path, script, **kwargs) -> Workload:
    (tmp_path / "app.py").write_text(script)
    return Workload(
        id=kwargs.pop("id", "w1"),
        source_url="https://example.com/app.git",
        directory=str(tmp_path),
        ecosystem=EcosystemKind.PYTHON_PIP,
        run_command=f"{PYTHON} -u app.py",
        **kwargs,
    )


async def _wait_for(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest_asyncio.fixture
async def supervisor(sink):
    sup = ProcessSupervisor(sink, grace_seconds=0.3, stop_timeout=2.0)
    yield sup
    await sup.shutdown()


@pytest.mark.asyncio
async def test_start_streams_output_and_detects_first_port(tmp_path, sink, supervisor):
    w = _workload(tmp_path, SERVER, config={"debug": True}, env={"GREETING": "hi"})

    handle = await supervisor.start(w)
    assert supervisor.is_running("w1")
    await _wait_for(lambda: len(sink.lines(LogKind.STDERR)) == 2)
    await _wait_for(lambda: any(m.startswith("greeting=") for m in sink.lines(LogKind.STDOUT)))

    assert sink.ports == [("w1", 4321)]
    assert supervisor.port_of("w1") == 4321
    assert handle.port == 4321
    assert sink.lines(LogKind.STDERR) == ["err one", "err two"]

    stdout = sink.lines(LogKind.STDOUT)
    assert stdout[:2] == ["Server listening on http://localhost:4321", "listening on :9999"]
    assert "greeting=hi" in stdout

    info = sink.lines(LogKind.INFO)
    assert "Detected server running on port 4321" in info
    assert any(m.startswith("Starting server with command:") for m in info)
    assert any("GREETING" in m for m in info)


@pytest.mark.asyncio
async def test_config_map_written_and_exported(tmp_path, sink, supervisor):
    w = _workload(tmp_path, SERVER, config={"db": "sqlite", "workers": 2})

    await supervisor.start(w)
    await _wait_for(lambda: any(m.startswith("config=") for m in sink.lines(LogKind.STDOUT)))

    line = next(m for m in sink.lines(LogKind.STDOUT) if m.startswith("config="))
    config_path = line.split("=", 1)[1]
    assert os.path.dirname(config_path) == str(tmp_path)
    assert os.path.basename(config_path) == ".wharf-config.json"
    with open(config_path) as f:
        assert json.load(f) == {"db": "sqlite", "workers": 2}


@pytest.mark.asyncio
async def test_empty_config_still_written(tmp_path, sink, supervisor):
    w = _workload(tmp_path, SERVER)

    await supervisor.start(w)

    assert json.loads((tmp_path / ".wharf-config.json").read_text()) == {}


@pytest.mark.asyncio
async def test_exit_within_grace_period_fails_start(tmp_path, sink, supervisor):
    w = _workload(tmp_path, CRASH)

    with pytest.raises(SpawnFailureError, match="exit code 3"):
        await supervisor.start(w)

    assert not supervisor.is_running("w1")
    assert "Process exited with code 3" in sink.lines(LogKind.INFO)
    assert sink.statuses == [("w1", WorkloadStatus.STOPPED)]


@pytest.mark.asyncio
async def test_early_exit_with_lingering_grandchild_fails_start(tmp_path, sink, supervisor):
    w = _workload(tmp_path, ORPHANING_CRASH)

    with pytest.raises(SpawnFailureError, match="exit code 1"):
        await supervisor.start(w)

    assert not supervisor.is_running("w1")


@pytest.mark.asyncio
async def test_missing_executable_is_spawn_failure(tmp_path, sink, supervisor):
    w = _workload(tmp_path, SERVER)
    w.run_command = "definitely-not-a-real-binary-xyz --serve"

    with pytest.raises(SpawnFailureError):
        await supervisor.start(w)

    assert not supervisor.is_running("w1")
    assert any(m.startswith("Process error:") for m in sink.lines(LogKind.ERROR))


@pytest.mark.asyncio
async def test_resolution_error_propagates(tmp_path, sink, supervisor):
    w = Workload(id="w1", source_url="x", directory=str(tmp_path),
                 ecosystem=EcosystemKind.NODE)

    with pytest.raises(NoEntryPointError):
        await supervisor.start(w)
    assert not supervisor.is_running("w1")


@pytest.mark.asyncio
async def test_stop_terminates_and_reports_exit(tmp_path, sink, supervisor):
    w = _workload(tmp_path, SERVER)
    handle = await supervisor.start(w)

    assert await supervisor.stop("w1") is True

    assert not supervisor.is_running("w1")
    assert supervisor.port_of("w1") is None
    assert handle.process.returncode is not None
    assert sink.statuses[-1] == ("w1", WorkloadStatus.STOPPED)


@pytest.mark.asyncio
async def test_stop_when_not_running_is_noop(supervisor, sink):
    assert await supervisor.stop("nobody") is False
    assert sink.logs == []


@pytest.mark.skipif(sys.platform == "win32", reason="SIGTERM cannot be ignored on Windows")
@pytest.mark.asyncio
async def test_stop_escalates_to_kill(tmp_path, sink):
    sup = ProcessSupervisor(sink, grace_seconds=0.3, stop_timeout=0.5)
    w = _workload(tmp_path, STUBBORN)
    await sup.start(w)
    await _wait_for(lambda: "ready" in sink.lines(LogKind.STDOUT))

    await sup.stop("w1")

    assert not sup.is_running("w1")
    assert any("forcing kill" in m for m in sink.lines(LogKind.INFO))


@pytest.mark.asyncio
async def test_restart_keeps_single_process(tmp_path, sink, supervisor):
    w = _workload(tmp_path, SERVER)

    first = await supervisor.start(w)
    second = await supervisor.start(w)
    third = await supervisor.start(w)

    assert first.process.returncode is not None
    assert second.process.returncode is not None
    assert third.process.returncode is None
    assert supervisor.running_ids() == ["w1"]
    assert supervisor.get_handle("w1") is third


@pytest.mark.asyncio
async def test_tracked_pids_include_supervised_process(tmp_path, supervisor):
    handle = await supervisor.start(_workload(tmp_path, SERVER))
    assert handle.os_pid in supervisor.tracked_pids()


@pytest.mark.skipif(sys.platform == "win32", reason="posix process groups")
def test_terminate_tree_signals_group_only_for_leaders(monkeypatch):
    # Shares our process group, so its pid names no group of its own
    proc = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    killpg = MagicMock()
    monkeypatch.setattr(os, "killpg", killpg)
    try:
        terminate_tree(proc.pid, force=True)
        assert proc.wait(timeout=5) is not None
        killpg.assert_not_called()
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
