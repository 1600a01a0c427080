"""Orphan discovery — runtime processes wharf is not supervising.

After a crash or restart, servers from an earlier session can keep running
without a handle. This module scans the OS process table for interpreter
processes (node, python, ...) that the supervisor does not track and tries
to attribute each one to a workload: by listening port first, then by
working directory.

Everything here is blocking psutil work; call it from a worker thread.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import psutil

from wharf.processes.supervisor import terminate_tree
from wharf.types import Workload, WorkloadId

_logger = logging.getLogger(__name__)

RUNTIME_NAMES = re.compile(
    r"^(node|nodejs|npm|npx|python[\d.]*|pythonw|py|uv|poetry|uvicorn|gunicorn)(\.exe)?$",
    re.IGNORECASE,
)


@dataclass
class OrphanProcess:
    """An untracked runtime process and its best-guess owner."""

    pid: int
    name: str
    command: str = ""
    cwd: str = ""
    port: int | None = None
    workload_id: WorkloadId | None = None


def listening_ports() -> dict[int, int]:
    """Map pid to the lowest TCP port it listens on."""
    ports: dict[int, int] = {}
    try:
        connections = psutil.net_connections(kind="inet")
    except (psutil.AccessDenied, OSError) as e:
        _logger.debug("System-wide connection scan unavailable: %s", e)
        return ports
    for conn in connections:
        if conn.pid is None or conn.status != psutil.CONN_LISTEN or not conn.laddr:
            continue
        port = conn.laddr.port
        if conn.pid not in ports or port < ports[conn.pid]:
            ports[conn.pid] = port
    return ports


def _process_port(proc: psutil.Process) -> int | None:
    """Per-process fallback when the system-wide scan is denied."""
    try:
        conns = proc.net_connections(kind="inet")
    except (psutil.NoSuchProcess, psutil.AccessDenied, OSError):
        return None
    listening = [c.laddr.port for c in conns if c.status == psutil.CONN_LISTEN and c.laddr]
    return min(listening) if listening else None


def own_lineage() -> set[int]:
    """This process and its ancestors."""
    pids = {os.getpid()}
    try:
        pids.update(p.pid for p in psutil.Process().parents())
    except psutil.Error:
        pass
    return pids


def _is_within(child: str, parent: str) -> bool:
    if not child or not parent:
        return False
    try:
        child_path = Path(child).resolve()
        parent_path = Path(parent).resolve()
    except OSError:
        return False
    return child_path == parent_path or parent_path in child_path.parents


def match_workload(
    workloads: Iterable[Workload], port: int | None, cwd: str,
) -> WorkloadId | None:
    """Attribute a process to a workload: port first, then directory."""
    candidates = list(workloads)
    if port is not None:
        for workload in candidates:
            if workload.port == port:
                return workload.id
    for workload in candidates:
        if _is_within(cwd, workload.directory):
            return workload.id
    return None


def discover_orphans(
    workloads: Iterable[Workload], tracked_pids: set[int],
) -> list[OrphanProcess]:
    """List untracked runtime processes that listen on a port or live in a workload dir."""
    candidates = list(workloads)
    skip = tracked_pids | own_lineage()
    ports = listening_ports()
    orphans: list[OrphanProcess] = []

    for proc in psutil.process_iter(["pid", "name", "cmdline", "cwd"]):
        try:
            info = proc.info
            name = (info.get("name") or "").lower()
            if info["pid"] in skip or not RUNTIME_NAMES.match(name):
                continue
            port = ports.get(info["pid"])
            if port is None and not ports:
                port = _process_port(proc)
            cwd = info.get("cwd") or ""
            workload_id = match_workload(candidates, port, cwd)
            if port is None and workload_id is None:
                continue
            orphans.append(OrphanProcess(
                pid=info["pid"],
                name=name,
                command=" ".join(info.get("cmdline") or [])[:500],
                cwd=cwd,
                port=port,
                workload_id=workload_id,
            ))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    return sorted(orphans, key=lambda o: o.pid)


def kill_process(pid: int) -> bool:
    """Forcefully kill a process tree. Returns False if it was already gone.

    Refuses this process and its ancestors.
    """
    if pid in own_lineage():
        raise PermissionError(f"Process {pid} belongs to wharf itself")
    if not psutil.pid_exists(pid):
        return False
    terminate_tree(pid, force=True)
    return True
