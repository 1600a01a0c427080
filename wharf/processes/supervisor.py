"""ProcessSupervisor — one live OS process per workload.

Spawns a workload's resolved command, pumps its stdout/stderr line by line
into the workload's channel, sniffs the listening port, notices exit, and
tears the whole process tree down on stop (SIGTERM, then SIGKILL).

The handle table is private. Callers only use ``start``, ``stop``,
``port_of``, ``is_running`` and ``tracked_pids``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import psutil

from wharf.config import settings
from wharf.exceptions import SpawnFailureError
from wharf.processes.ports import PortSniffer
from wharf.processes.resolver import CommandResolver, ResolvedCommand, exec_argv
from wharf.types import LogKind, Workload, WorkloadId, WorkloadStatus

_logger = logging.getLogger(__name__)

_STREAM_LIMIT = 1024 * 1024  # longest line we will buffer
_PUMP_DRAIN_SECONDS = 1.0


class SupervisorSink(Protocol):
    """Where the supervisor reports what its processes do."""

    def log(self, workload_id: WorkloadId, kind: LogKind, message: str) -> None: ...

    def status(self, workload_id: WorkloadId, status: WorkloadStatus) -> None: ...

    def port(self, workload_id: WorkloadId, port: int) -> None: ...


@dataclass
class ProcessHandle:
    """The supervisor's ownership record for one live process."""

    workload_id: WorkloadId
    process: asyncio.subprocess.Process
    command: list[str]
    workdir: str
    started_at: float = field(default_factory=time.time)
    sniffer: PortSniffer = field(default_factory=PortSniffer)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    exit_code: int | None = None
    pumps: list[asyncio.Task] = field(default_factory=list)
    watcher: asyncio.Task | None = None

    @property
    def os_pid(self) -> int:
        return self.process.pid

    @property
    def port(self) -> int | None:
        return self.sniffer.port


def _leads_group(pid: int) -> bool:
    try:
        return os.getpgid(pid) == pid
    except OSError:
        return False


def terminate_tree(pid: int, force: bool = False) -> None:
    """Signal a process and every descendant. Best effort, never raises."""
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True) + [parent]
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        procs = []

    if os.name == "posix" and _leads_group(pid):
        # Children spawned with start_new_session lead their own group
        try:
            os.killpg(pid, signal.SIGKILL if force else signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            pass

    for proc in procs:
        try:
            if force:
                proc.kill()
            else:
                proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue


def _session_kwargs() -> dict:
    if sys.platform == "win32":
        import subprocess
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


class ProcessSupervisor:
    """OS-level process supervisor for workloads.

    Enforces at most one live process per workload id: ``start`` stops any
    previous process for the same id first, and start/stop for one id are
    serialized.
    """

    def __init__(
        self,
        sink: SupervisorSink,
        resolver: CommandResolver | None = None,
        grace_seconds: float | None = None,
        stop_timeout: float | None = None,
        config_env_var: str | None = None,
        config_filename: str | None = None,
    ) -> None:
        self._sink = sink
        self._resolver = resolver or CommandResolver()
        self._grace = settings.liveness_grace_seconds if grace_seconds is None else grace_seconds
        self._stop_timeout = settings.stop_timeout_seconds if stop_timeout is None else stop_timeout
        self._config_env_var = config_env_var or settings.config_env_var
        self._config_filename = config_filename or settings.config_filename
        self._handles: dict[WorkloadId, ProcessHandle] = {}
        self._locks: dict[WorkloadId, asyncio.Lock] = {}

    def _lock_for(self, workload_id: WorkloadId) -> asyncio.Lock:
        lock = self._locks.get(workload_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workload_id] = lock
        return lock

    # ── Start ──────────────────────────────────────────────────────

    async def start(self, workload: Workload) -> ProcessHandle:
        """Launch the workload and wait out the liveness grace period.

        Raises a ``ResolutionError`` when no command can be derived and
        ``SpawnFailureError`` when the process cannot be spawned or exits
        within the grace period.
        """
        async with self._lock_for(workload.id):
            await self._stop_locked(workload.id)

            command = await self._resolver.resolve(workload)
            for note in command.notes:
                self._sink.log(workload.id, LogKind.INFO, note)

            try:
                env = self._build_env(workload)
            except OSError as e:
                self._sink.log(workload.id, LogKind.ERROR, f"Could not write workload config: {e}")
                raise SpawnFailureError(f"Could not prepare {workload.directory}: {e}") from e
            handle = await self._spawn(workload, command, env)

            # Exit of the process itself, not of the pumps a grandchild may hold
            try:
                code = await asyncio.wait_for(handle.process.wait(), timeout=self._grace)
            except asyncio.TimeoutError:
                return handle  # still alive

            # Let the watcher flush what the process printed before failing
            try:
                await asyncio.wait_for(handle.exited.wait(), timeout=_PUMP_DRAIN_SECONDS + 1.0)
            except asyncio.TimeoutError:
                pass
            raise SpawnFailureError(f"Server process failed to start (exit code {code})")

    def _build_env(self, workload: Workload) -> dict[str, str]:
        env = dict(os.environ)

        config_path = Path(workload.directory) / self._config_filename
        config_path.write_text(json.dumps(workload.config, indent=2), encoding="utf-8")
        env[self._config_env_var] = str(config_path)

        if workload.env:
            self._sink.log(
                workload.id, LogKind.INFO,
                f"Adding custom environment variables: {', '.join(workload.env)}",
            )
            env.update({key: str(value) for key, value in workload.env.items()})
        return env

    async def _spawn(
        self, workload: Workload, command: ResolvedCommand, env: dict[str, str],
    ) -> ProcessHandle:
        wid = workload.id
        self._sink.log(wid, LogKind.INFO, f"Starting server with command: {command}")
        self._sink.log(wid, LogKind.INFO, f"Working directory: {workload.directory}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *exec_argv(command.argv),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workload.directory,
                env=env,
                limit=_STREAM_LIMIT,
                **_session_kwargs(),
            )
        except OSError as e:
            self._sink.log(wid, LogKind.ERROR, f"Process error: {e}")
            raise SpawnFailureError(f"Could not spawn '{command.executable}': {e}") from e

        handle = ProcessHandle(
            workload_id=wid,
            process=proc,
            command=command.argv,
            workdir=workload.directory,
        )
        self._handles[wid] = handle
        _logger.info("Workload %s spawned pid %d: %s", wid, proc.pid, command)

        handle.pumps = [
            asyncio.create_task(self._pump(handle, proc.stdout, LogKind.STDOUT)),
            asyncio.create_task(self._pump(handle, proc.stderr, LogKind.STDERR)),
        ]
        handle.watcher = asyncio.create_task(self._watch(handle))
        return handle

    # ── Output & exit ──────────────────────────────────────────────

    async def _pump(
        self, handle: ProcessHandle, stream: asyncio.StreamReader, kind: LogKind,
    ) -> None:
        """Deliver one stream line by line, in order."""
        wid = handle.workload_id
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                _logger.debug("Dropped over-long %s line from workload %s", kind.value, wid)
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            _logger.debug("[workload %s] [%s] %s", wid, kind.value, line)

            if kind == LogKind.STDOUT and not handle.sniffer.found:
                port = handle.sniffer.feed(line)
                if port is not None:
                    self._sink.port(wid, port)
                    self._sink.log(wid, LogKind.INFO, f"Detected server running on port {port}")

            self._sink.log(wid, kind, line)

    async def _watch(self, handle: ProcessHandle) -> None:
        """Wait for exit, flush output, then release the handle exactly once."""
        code = await handle.process.wait()

        # Grandchildren may hold the pipes open; don't wait on them forever
        done, pending = await asyncio.wait(handle.pumps, timeout=_PUMP_DRAIN_SECONDS)
        for task in pending:
            task.cancel()

        handle.exit_code = code
        self._release(handle)
        self._sink.log(handle.workload_id, LogKind.INFO, f"Process exited with code {code}")
        self._sink.status(handle.workload_id, WorkloadStatus.STOPPED)
        handle.exited.set()

    def _release(self, handle: ProcessHandle) -> None:
        if self._handles.get(handle.workload_id) is handle:
            del self._handles[handle.workload_id]

    # ── Stop ───────────────────────────────────────────────────────

    async def stop(self, workload_id: WorkloadId) -> bool:
        """Stop the workload's process tree. Returns False if nothing was running."""
        async with self._lock_for(workload_id):
            return await self._stop_locked(workload_id)

    async def _stop_locked(self, workload_id: WorkloadId) -> bool:
        handle = self._handles.get(workload_id)
        if handle is None:
            return False

        terminate_tree(handle.os_pid, force=False)
        try:
            await asyncio.wait_for(handle.exited.wait(), timeout=self._stop_timeout)
            return True
        except asyncio.TimeoutError:
            _logger.warning(
                "Workload %s (pid %d) ignored SIGTERM for %.1fs, killing",
                workload_id, handle.os_pid, self._stop_timeout,
            )
            self._sink.log(
                workload_id, LogKind.INFO,
                f"Process did not exit within {self._stop_timeout:g}s, forcing kill",
            )

        terminate_tree(handle.os_pid, force=True)
        try:
            await asyncio.wait_for(handle.exited.wait(), timeout=self._stop_timeout)
        except asyncio.TimeoutError:
            _logger.error("Workload %s (pid %d) survived SIGKILL", workload_id, handle.os_pid)
            if handle.watcher:
                handle.watcher.cancel()
            self._release(handle)
        return True

    async def shutdown(self) -> None:
        """Stop every supervised process."""
        await asyncio.gather(
            *(self.stop(wid) for wid in list(self._handles)),
            return_exceptions=True,
        )

    # ── Queries ────────────────────────────────────────────────────

    def port_of(self, workload_id: WorkloadId) -> int | None:
        handle = self._handles.get(workload_id)
        return handle.port if handle else None

    def is_running(self, workload_id: WorkloadId) -> bool:
        return workload_id in self._handles

    def get_handle(self, workload_id: WorkloadId) -> ProcessHandle | None:
        return self._handles.get(workload_id)

    def running_ids(self) -> list[WorkloadId]:
        return list(self._handles)

    def tracked_pids(self) -> set[int]:
        """OS pids of every supervised process and its descendants."""
        pids: set[int] = set()
        for handle in self._handles.values():
            pids.add(handle.os_pid)
            try:
                pids.update(p.pid for p in psutil.Process(handle.os_pid).children(recursive=True))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return pids
