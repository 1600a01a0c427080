"""Workload channels — ordered per-workload message delivery.

Every producer (process supervisor, orchestrator) writes log, status and
port messages into the channel of the workload they concern. A single
dispatcher task drains all channels through one FIFO inbox and hands each
message to the upward handler, so per-workload (and per-stream) ordering
is exactly the order in which messages were put.

Usage:
    dispatcher = ChannelDispatcher(handler)
    dispatcher.start()
    dispatcher.channel("abc123").log(LogKind.INFO, "hello")
    await dispatcher.drain()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from wharf.types import LogEntry, LogKind, WorkloadId, WorkloadStatus

_logger = logging.getLogger(__name__)


@dataclass
class ChannelMessage:
    """One unit of upward traffic for a workload."""

    workload_id: WorkloadId
    kind: str  # log|status|port
    entry: LogEntry | None = None
    status: WorkloadStatus | None = None
    port: int | None = None


MessageHandler = Callable[[ChannelMessage], Awaitable[None]]


class WorkloadChannel:
    """Sender bound to one workload id."""

    def __init__(self, dispatcher: ChannelDispatcher, workload_id: WorkloadId) -> None:
        self._dispatcher = dispatcher
        self.workload_id = workload_id

    def log(self, kind: LogKind, message: str) -> None:
        self._dispatcher.log(self.workload_id, kind, message)

    def status(self, status: WorkloadStatus) -> None:
        self._dispatcher.status(self.workload_id, status)

    def port(self, port: int) -> None:
        self._dispatcher.port(self.workload_id, port)


class ChannelDispatcher:
    """Owns the inbox and the single task that delivers it upward.

    Also satisfies the supervisor's sink interface (``log``, ``status``,
    ``port`` keyed by workload id).
    """

    def __init__(self, handler: MessageHandler) -> None:
        self._handler = handler
        self._inbox: asyncio.Queue[ChannelMessage] = asyncio.Queue()
        self._channels: dict[WorkloadId, WorkloadChannel] = {}
        self._task: asyncio.Task | None = None

    def channel(self, workload_id: WorkloadId) -> WorkloadChannel:
        ch = self._channels.get(workload_id)
        if ch is None:
            ch = WorkloadChannel(self, workload_id)
            self._channels[workload_id] = ch
        return ch

    def forget(self, workload_id: WorkloadId) -> None:
        self._channels.pop(workload_id, None)

    # ── Sink interface ─────────────────────────────────────────────

    def log(self, workload_id: WorkloadId, kind: LogKind, message: str) -> None:
        entry = LogEntry(workload_id=workload_id, kind=kind, message=message)
        self._put(ChannelMessage(workload_id=workload_id, kind="log", entry=entry))

    def status(self, workload_id: WorkloadId, status: WorkloadStatus) -> None:
        self._put(ChannelMessage(workload_id=workload_id, kind="status", status=status))

    def port(self, workload_id: WorkloadId, port: int) -> None:
        self._put(ChannelMessage(workload_id=workload_id, kind="port", port=port))

    def _put(self, message: ChannelMessage) -> None:
        self._inbox.put_nowait(message)

    # ── Lifecycle ──────────────────────────────────────────────────

    def start(self) -> None:
        """Start the dispatcher task (idempotent; needs a running loop)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def drain(self) -> None:
        """Wait until every message put so far has been handled."""
        if not self.running:
            self.start()
        await self._inbox.join()

    async def close(self) -> None:
        """Deliver what is queued, then stop the dispatcher task."""
        if self._task is None:
            return
        await self.drain()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                await self._handler(message)
            except Exception as e:
                _logger.error(
                    "Failed to deliver %s message for workload %s: %s",
                    message.kind, message.workload_id, e,
                )
            finally:
                self._inbox.task_done()
