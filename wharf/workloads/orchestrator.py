"""Workload Orchestrator — the registry and lifecycle manager of wharf.

Users register git projects as workloads. Each workload gets:
- A unique identity and an exclusive checkout under the servers dir
- A detected ecosystem with dependencies installed
- A status driven by the lifecycle state machine
- A persistent log of everything it printed and everything done to it

Lifecycle: register → start → stop → delete, plus rebuild and config
updates. Every status change is persisted before it is announced on the
event bus. Lifecycle operations on one workload are serialized; different
workloads proceed independently.

The ProcessSupervisor underneath owns the OS processes. The orchestrator
only calls its methods and hears back through the channel dispatcher.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable

from wharf.config import settings
from wharf.events.bus import LOG_TOPIC, PORT_TOPIC, STATUS_TOPIC, EventBus
from wharf.events.channels import ChannelDispatcher, ChannelMessage
from wharf.exceptions import (
    BuildFailureError,
    CloneFailureError,
    InstallFailureError,
    ProcessNotFoundError,
    RebuildNotSupportedError,
    WorkloadNotFoundError,
)
from wharf.processes.orphans import OrphanProcess, discover_orphans, kill_process, own_lineage
from wharf.processes.resolver import CommandResolver, package_scripts
from wharf.processes.supervisor import ProcessSupervisor
from wharf.sources.base import EcosystemDetector, Installer, SourceFetcher
from wharf.sources.cloner import GitCloner, remove_tree, repo_name_from_url, safe_dir_name
from wharf.sources.commands import stream_command
from wharf.sources.detector import ProjectDetector
from wharf.sources.installer import DependencyInstaller, is_nx_monorepo
from wharf.storage.store import WorkloadStorage
from wharf.types import (
    ConfigPatch,
    EcosystemKind,
    LogEntry,
    LogKind,
    OperationResult,
    RegisterOptions,
    Workload,
    WorkloadId,
    WorkloadStatus,
    new_id,
)
from wharf.workloads.state_machine import check_transition

_logger = logging.getLogger(__name__)

START_BANNER = "========== SERVER STARTING =========="
STOP_BANNER = "========== SERVER STOPPING =========="
STOPPED_MESSAGE = "Server process has been terminated"

_SOURCE = "orchestrator"


class WorkloadOrchestrator:
    """Manages the lifecycle of registered workloads.

    This is what the CLI and API talk to: register, start, stop, rebuild,
    delete. Under the hood it delegates to the cloner, detector, installer
    and ProcessSupervisor.
    """

    def __init__(
        self,
        store: WorkloadStorage,
        event_bus: EventBus,
        cloner: SourceFetcher | None = None,
        detector: EcosystemDetector | None = None,
        installer: Installer | None = None,
        resolver: CommandResolver | None = None,
        servers_dir: str | Path | None = None,
        grace_seconds: float | None = None,
        stop_timeout: float | None = None,
    ) -> None:
        self._store = store
        self._bus = event_bus
        self._cloner = cloner or GitCloner()
        self._detector = detector or ProjectDetector()
        self._installer = installer or DependencyInstaller()
        self._servers_dir = Path(servers_dir or settings.servers_dir).resolve()
        self._channels = ChannelDispatcher(self._deliver)
        self._supervisor = ProcessSupervisor(
            self._channels,
            resolver=resolver,
            grace_seconds=grace_seconds,
            stop_timeout=stop_timeout,
        )
        self._workloads: dict[WorkloadId, Workload] = {}
        self._locks: dict[WorkloadId, asyncio.Lock] = {}
        self._loaded = False
        self._shutting_down = False

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    async def initialize(self) -> None:
        """Load persisted workloads and start log delivery."""
        self._workloads = await self._store.load_all()
        self._loaded = True
        self._shutting_down = False
        self._channels.start()
        _logger.info("Loaded %d workload(s)", len(self._workloads))

    def _lock_for(self, workload_id: WorkloadId) -> asyncio.Lock:
        lock = self._locks.get(workload_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workload_id] = lock
        return lock

    def _require(self, workload_id: WorkloadId) -> Workload:
        workload = self._workloads.get(workload_id)
        if workload is None:
            raise WorkloadNotFoundError(f"Workload {workload_id} not found")
        return workload

    def _log(self, workload_id: WorkloadId, kind: LogKind, message: str) -> None:
        self._channels.channel(workload_id).log(kind, message)

    # ── Upward delivery ────────────────────────────────────────────

    async def _deliver(self, message: ChannelMessage) -> None:
        """Persist and announce one message from a workload channel."""
        workload = self._workloads.get(message.workload_id)
        if workload is None:
            return  # deleted while its output was in flight

        if message.kind == "log" and message.entry is not None:
            await self._store.append_log(message.entry)
            await self._bus.emit(LOG_TOPIC, {
                "workload_id": workload.id,
                "kind": message.entry.kind.value,
                "message": message.entry.message,
                "timestamp": message.entry.timestamp.isoformat(),
            }, source=_SOURCE)

        elif message.kind == "port" and message.port is not None:
            workload.port = message.port
            await self._store.put(workload)
            await self._bus.emit(PORT_TOPIC, {
                "workload_id": workload.id,
                "port": message.port,
            }, source=_SOURCE)

        elif message.kind == "status" and message.status == WorkloadStatus.STOPPED:
            # Only an exit nobody asked for moves a running workload here;
            # start/stop make their own transitions.
            if self._shutting_down:
                return
            if workload.status == WorkloadStatus.RUNNING and not self._supervisor.is_running(workload.id):
                await self._apply(workload, WorkloadStatus.STOPPED)

    async def _transition(self, workload: Workload, target: WorkloadStatus) -> None:
        """Validated transition, after every queued log line has landed."""
        await self._channels.drain()
        await self._apply(workload, target)

    async def _apply(self, workload: Workload, target: WorkloadStatus) -> None:
        previous = workload.status
        check_transition(workload.id, previous, target)
        if previous == target:
            return
        workload.status = target
        await self._store.put(workload)
        _logger.info("Workload %s: %s → %s", workload.id, previous.value, target.value)
        await self._bus.emit(STATUS_TOPIC, {
            "workload_id": workload.id,
            "status": target.value,
            "previous": previous.value,
        }, source=_SOURCE)

    # ── Register ───────────────────────────────────────────────────

    async def register(
        self,
        source_url: str,
        custom: RegisterOptions | dict[str, Any] | None = None,
    ) -> Workload:
        """Clone, detect, install, then persist a new stopped workload.

        A clone failure leaves nothing behind. An install failure is
        recorded in the workload's log and registration carries on.
        """
        options = _coerce(RegisterOptions, custom)
        workload_id = new_id()
        repo_name = repo_name_from_url(source_url)
        directory = self._servers_dir / f"{safe_dir_name(repo_name)}-{workload_id[:8]}"
        _logger.info("Registering %s into %s", source_url, directory)

        try:
            await self._cloner.clone(source_url, directory)
        except CloneFailureError:
            await asyncio.to_thread(remove_tree, directory)
            raise
        except OSError as e:
            await asyncio.to_thread(remove_tree, directory)
            raise CloneFailureError(f"Failed to clone {source_url}: {e}") from e

        ecosystem = await self._detector.detect(directory)
        _logger.info("Detected %s project in %s", ecosystem.value, directory)

        install_error = ""
        try:
            await self._installer.install(directory, ecosystem)
        except InstallFailureError as e:
            install_error = str(e)
            _logger.warning("Dependency installation failed for %s: %s", source_url, e)

        workload = Workload(
            id=workload_id,
            source_url=source_url,
            directory=str(directory),
            ecosystem=ecosystem,
            name=options.name or repo_name,
            config=dict(options.config),
            env=dict(options.env),
            run_command=options.run_command or None,
            entry_point=options.entry_point or None,
        )
        try:
            await self._store.put(workload)
        except Exception:
            await asyncio.to_thread(remove_tree, directory)
            raise
        self._workloads[workload_id] = workload

        if install_error:
            self._log(workload_id, LogKind.ERROR, f"Dependency installation failed: {install_error}")

        await self._bus.emit("workload.registered", {
            "workload_id": workload_id,
            "name": workload.name,
            "ecosystem": ecosystem.value,
            "source_url": source_url,
        }, source=_SOURCE)
        return workload

    # ── Start ──────────────────────────────────────────────────────

    async def start(self, workload_id: WorkloadId) -> Workload:
        """Build if needed, launch, and move the workload to running.

        A failed launch logs why, moves the workload to error, and re-raises.
        """
        self._require(workload_id)
        async with self._lock_for(workload_id):
            workload = self._require(workload_id)
            await self._start_locked(workload)
        return workload

    async def _start_locked(self, workload: Workload) -> None:
        wid = workload.id
        await self._transition(workload, WorkloadStatus.STARTING)
        self._log(wid, LogKind.INFO, START_BANNER)

        if workload.ecosystem == EcosystemKind.NODE and not workload.is_built:
            try:
                await self._build(workload)
            except BuildFailureError as e:
                # A previous build output may still run
                _logger.warning("Build failed for workload %s, starting anyway: %s", wid, e)

        try:
            await self._supervisor.start(workload)
        except Exception as e:
            self._log(wid, LogKind.ERROR, f"Failed to start server: {e}")
            await self._transition(workload, WorkloadStatus.ERROR)
            raise

        await self._transition(workload, WorkloadStatus.RUNNING)
        if not self._supervisor.is_running(wid):
            # Exited between the grace period and now
            await self._transition(workload, WorkloadStatus.STOPPED)

    async def _build(self, workload: Workload) -> bool:
        """Run the project's build step. Returns False when there is none."""
        wid = workload.id
        directory = Path(workload.directory)

        if "build" in package_scripts(directory):
            self._log(wid, LogKind.INFO, 'Building project with "npm run build"...')

            def on_line(kind: LogKind, line: str) -> None:
                self._log(wid, kind, f"[BUILD] {line}")

            try:
                code, _ = await stream_command(
                    ["npm", "run", "build"], directory,
                    on_line=on_line, timeout=settings.install_timeout_seconds,
                )
            except (OSError, asyncio.TimeoutError) as e:
                self._log(wid, LogKind.ERROR, f"Build error: {e}")
                raise BuildFailureError(f"Build could not run: {e}") from e
            if code != 0:
                self._log(wid, LogKind.ERROR, f"Build failed with exit code {code}")
                raise BuildFailureError(f"Build failed with exit code {code}")

        elif is_nx_monorepo(directory):
            self._log(wid, LogKind.INFO, "Building all nx projects...")
            try:
                built = await self._installer.build_monorepo(directory)
            except InstallFailureError as e:
                self._log(wid, LogKind.ERROR, f"Build failed: {e}")
                raise BuildFailureError(str(e)) from e
            if not built:
                self._log(wid, LogKind.ERROR, "nx is not available, skipping monorepo build")
                raise BuildFailureError("nx is not available")

        else:
            return False

        self._log(wid, LogKind.INFO, "Build completed successfully")
        workload.is_built = True
        await self._store.put(workload)
        return True

    # ── Stop ───────────────────────────────────────────────────────

    async def stop(self, workload_id: WorkloadId) -> Workload:
        """Stop the workload. A no-op for a workload that is already stopped."""
        self._require(workload_id)
        async with self._lock_for(workload_id):
            workload = self._require(workload_id)
            await self._stop_locked(workload)
        return workload

    async def _stop_locked(self, workload: Workload) -> None:
        wid = workload.id
        # An exit already queued by the supervisor lands before we decide
        await self._channels.drain()
        if workload.status == WorkloadStatus.STOPPED and not self._supervisor.is_running(wid):
            return

        self._log(wid, LogKind.INFO, STOP_BANNER)
        await self._channels.drain()
        if workload.status != WorkloadStatus.STOPPED:
            await self._apply(workload, WorkloadStatus.STOPPING)
        try:
            await self._supervisor.stop(wid)
        except Exception as e:
            # Still mark it stopped so it can't get stuck
            _logger.error("Failed to stop workload %s cleanly: %s", wid, e)
            self._log(wid, LogKind.ERROR, f"Error stopping server: {e}")
        self._log(wid, LogKind.INFO, STOPPED_MESSAGE)
        await self._transition(workload, WorkloadStatus.STOPPED)

    # ── Rebuild ────────────────────────────────────────────────────

    async def rebuild(self, workload_id: WorkloadId) -> Workload:
        """Stop if running, then run the build step again from scratch."""
        workload = self._require(workload_id)
        if workload.ecosystem != EcosystemKind.NODE:
            raise RebuildNotSupportedError("Rebuild is only supported for Node.js projects")

        async with self._lock_for(workload_id):
            workload = self._require(workload_id)
            if workload.status != WorkloadStatus.STOPPED or self._supervisor.is_running(workload_id):
                await self._stop_locked(workload)

            workload.is_built = False
            await self._store.put(workload)

            self._log(workload_id, LogKind.INFO, "Rebuilding project...")
            try:
                built = await self._build(workload)
            except BuildFailureError:
                await self._transition(workload, WorkloadStatus.ERROR)
                raise
            if not built:
                self._log(workload_id, LogKind.ERROR, "No build script found in package.json")
                await self._transition(workload, WorkloadStatus.ERROR)
                raise RebuildNotSupportedError("No build script found in package.json")
        return workload

    # ── Delete ─────────────────────────────────────────────────────

    async def delete(self, workload_id: WorkloadId) -> None:
        """Stop the workload, remove its directory, forget it."""
        self._require(workload_id)
        async with self._lock_for(workload_id):
            workload = self._require(workload_id)
            try:
                await self._stop_locked(workload)
            except Exception as e:
                _logger.error("Error stopping workload %s before delete: %s", workload_id, e)

            await self._channels.drain()
            await asyncio.to_thread(remove_tree, Path(workload.directory))
            self._workloads.pop(workload_id, None)
            self._channels.forget(workload_id)
            await self._store.delete(workload_id)

            await self._bus.emit("workload.deleted", {
                "workload_id": workload_id,
                "name": workload.name,
            }, source=_SOURCE)
        _logger.info("Deleted workload %s (%s)", workload_id, workload.name)

    # ── Config ─────────────────────────────────────────────────────

    async def update_config(
        self, workload_id: WorkloadId, patch: ConfigPatch | dict[str, Any],
    ) -> Workload:
        """Apply a partial update. Takes effect on the next start."""
        self._require(workload_id)
        patch = _coerce(ConfigPatch, patch)
        async with self._lock_for(workload_id):
            workload = self._require(workload_id)
            if patch.name is not None:
                workload.name = patch.name
            if patch.config is not None:
                workload.config = dict(patch.config)
            if patch.env is not None:
                workload.env = dict(patch.env)
            if patch.run_command is not None:
                workload.run_command = patch.run_command or None
            if patch.entry_point is not None:
                workload.entry_point = patch.entry_point or None
            await self._store.put(workload)

        await self._bus.emit("workload.updated", {
            "workload_id": workload_id,
            "fields": sorted(patch.model_dump(exclude_none=True)),
        }, source=_SOURCE)
        return workload

    async def set_status(self, workload_id: WorkloadId, status: WorkloadStatus | str) -> Workload:
        """Manual status override. Bypasses the state machine."""
        self._require(workload_id)
        status = WorkloadStatus(status)
        async with self._lock_for(workload_id):
            workload = self._require(workload_id)
            self._log(workload_id, LogKind.INFO, f"Server status updated to: {status.value}")
            await self._force_status(workload, status)
        return workload

    async def _force_status(self, workload: Workload, status: WorkloadStatus) -> None:
        await self._channels.drain()
        previous = workload.status
        if previous == status:
            return
        workload.status = status
        await self._store.put(workload)
        await self._bus.emit(STATUS_TOPIC, {
            "workload_id": workload.id,
            "status": status.value,
            "previous": previous.value,
        }, source=_SOURCE)

    # ── Batch ──────────────────────────────────────────────────────

    async def start_all(self) -> dict[WorkloadId, OperationResult]:
        """Start every workload; one failure does not hold back the rest."""
        return await self._for_each(list(self._workloads), self.start)

    async def stop_all(self) -> dict[WorkloadId, OperationResult]:
        """Stop every workload that is running, starting, or has a process."""
        active = {WorkloadStatus.RUNNING, WorkloadStatus.STARTING}
        ids = [
            wid for wid, w in self._workloads.items()
            if w.status in active or self._supervisor.is_running(wid)
        ]
        return await self._for_each(ids, self.stop)

    async def _for_each(
        self,
        ids: list[WorkloadId],
        operation: Callable[[WorkloadId], Awaitable[Any]],
    ) -> dict[WorkloadId, OperationResult]:
        async def attempt(wid: WorkloadId) -> OperationResult:
            try:
                await operation(wid)
            except Exception as e:
                _logger.warning("%s failed for workload %s: %s", operation.__name__, wid, e)
                return OperationResult(success=False, error=str(e))
            return OperationResult(success=True)

        results = await asyncio.gather(*(attempt(wid) for wid in ids))
        return dict(zip(ids, results))

    async def reconcile_on_startup(self) -> dict[WorkloadId, OperationResult]:
        """Restart the workloads that were running when wharf last exited."""
        if not self._loaded:
            await self.initialize()

        to_restart: list[WorkloadId] = []
        for workload in self._workloads.values():
            if workload.status in (WorkloadStatus.STARTING, WorkloadStatus.STOPPING):
                # Interrupted mid-transition last time
                workload.status = WorkloadStatus.STOPPED
                await self._store.put(workload)
            elif workload.status == WorkloadStatus.RUNNING:
                to_restart.append(workload.id)

        if to_restart:
            _logger.info("Restarting %d previously running workload(s)", len(to_restart))
        return await self._for_each(to_restart, self.start)

    # ── Orphans ────────────────────────────────────────────────────

    async def list_orphan_processes(self) -> list[OrphanProcess]:
        """Runtime processes on this host that wharf is not supervising."""
        tracked = self._supervisor.tracked_pids()
        return await asyncio.to_thread(
            discover_orphans, list(self._workloads.values()), tracked,
        )

    async def kill_orphan(self, pid: int) -> OrphanProcess | None:
        """Kill an untracked process; a matched workload is marked stopped."""
        if pid in self._supervisor.tracked_pids():
            raise ProcessNotFoundError(f"Process {pid} is supervised, stop its workload instead")
        if pid in own_lineage():
            raise ProcessNotFoundError(f"Process {pid} belongs to wharf itself")

        orphans = await self.list_orphan_processes()
        orphan = next((o for o in orphans if o.pid == pid), None)

        killed = await asyncio.to_thread(kill_process, pid)
        if not killed:
            raise ProcessNotFoundError(f"No such process: {pid}")
        _logger.info("Killed orphan process %d", pid)

        if orphan is not None and orphan.workload_id in self._workloads:
            async with self._lock_for(orphan.workload_id):
                workload = self._workloads.get(orphan.workload_id)
                if workload is None:
                    return orphan
                self._log(workload.id, LogKind.INFO, f"Killed orphan process {pid}")
                await self._force_status(workload, WorkloadStatus.STOPPED)
        return orphan

    # ── Queries ────────────────────────────────────────────────────

    def list_workloads(self) -> list[Workload]:
        return list(self._workloads.values())

    def get_workload(self, workload_id: WorkloadId) -> Workload:
        return self._require(workload_id)

    async def get_logs(self, workload_id: WorkloadId, limit: int | None = None) -> list[LogEntry]:
        """The newest log entries, oldest first."""
        self._require(workload_id)
        await self._channels.drain()
        return await self._store.query_logs(workload_id, limit or settings.log_query_limit)

    def get_port(self, workload_id: WorkloadId) -> int | None:
        workload = self._require(workload_id)
        return self._supervisor.port_of(workload_id) or workload.port

    # ── Shutdown ───────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Stop every process but keep recorded statuses.

        Workloads that were running stay ``running`` on disk, so the next
        ``reconcile_on_startup`` brings them back.
        """
        self._shutting_down = True
        await self._supervisor.shutdown()
        await self._channels.close()
        _logger.info("Orchestrator shut down")


def _coerce(model: type, value: Any) -> Any:
    if value is None:
        return model()
    if isinstance(value, model):
        return value
    return model.model_validate(value)
