"""WorkloadStore — workload records and their logs, backed by SQLite.

Records are upserted whole on every change. Logs are append-only; a
workload's logs are removed with its record.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Protocol

import aiosqlite

from wharf.types import (
    EcosystemKind,
    LogEntry,
    LogKind,
    Workload,
    WorkloadId,
    WorkloadStatus,
)


class WorkloadStorage(Protocol):
    """What the orchestrator needs from persistence."""

    async def load_all(self) -> dict[WorkloadId, Workload]: ...

    async def put(self, workload: Workload) -> None: ...

    async def delete(self, workload_id: WorkloadId) -> None: ...

    async def append_log(self, entry: LogEntry) -> None: ...

    async def query_logs(self, workload_id: WorkloadId, limit: int = 1000) -> list[LogEntry]: ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS workloads (
    id TEXT PRIMARY KEY,
    source_url TEXT NOT NULL,
    directory TEXT NOT NULL UNIQUE,
    ecosystem TEXT NOT NULL,
    name TEXT,
    config TEXT,
    env TEXT,
    run_command TEXT,
    entry_point TEXT,
    is_built INTEGER DEFAULT 0,
    status TEXT NOT NULL,
    port INTEGER
);
CREATE TABLE IF NOT EXISTS workload_logs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    workload_id TEXT NOT NULL REFERENCES workloads(id) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    message TEXT
);
CREATE INDEX IF NOT EXISTS idx_workload_logs_workload ON workload_logs(workload_id, seq);
"""


class WorkloadStore:
    """SQLite persistence for workloads and logs."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the database and create tables if needed."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("WorkloadStore.initialize() has not been called")
        return self._db

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ── Workloads ──────────────────────────────────────────────────

    async def load_all(self) -> dict[WorkloadId, Workload]:
        async with self.db.execute("SELECT * FROM workloads") as cursor:
            rows = await cursor.fetchall()
        return {row["id"]: _row_to_workload(row) for row in rows}

    async def put(self, workload: Workload) -> None:
        async with self._lock:
            await self.db.execute(
                """INSERT INTO workloads
                   (id, source_url, directory, ecosystem, name, config, env,
                    run_command, entry_point, is_built, status, port)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                    source_url = excluded.source_url,
                    directory = excluded.directory,
                    ecosystem = excluded.ecosystem,
                    name = excluded.name,
                    config = excluded.config,
                    env = excluded.env,
                    run_command = excluded.run_command,
                    entry_point = excluded.entry_point,
                    is_built = excluded.is_built,
                    status = excluded.status,
                    port = excluded.port""",
                (
                    workload.id,
                    workload.source_url,
                    workload.directory,
                    workload.ecosystem.value,
                    workload.name,
                    json.dumps(workload.config),
                    json.dumps(workload.env),
                    workload.run_command,
                    workload.entry_point,
                    int(workload.is_built),
                    workload.status.value,
                    workload.port,
                ),
            )
            await self.db.commit()

    async def delete(self, workload_id: WorkloadId) -> None:
        async with self._lock:
            await self.db.execute("DELETE FROM workloads WHERE id = ?", (workload_id,))
            await self.db.commit()

    # ── Logs ───────────────────────────────────────────────────────

    async def append_log(self, entry: LogEntry) -> None:
        """Append one log entry (immutable)."""
        async with self._lock:
            await self.db.execute(
                """INSERT INTO workload_logs (workload_id, kind, timestamp, message)
                   VALUES (?, ?, ?, ?)""",
                (entry.workload_id, entry.kind.value, entry.timestamp.isoformat(), entry.message),
            )
            await self.db.commit()

    async def query_logs(self, workload_id: WorkloadId, limit: int = 1000) -> list[LogEntry]:
        """The newest ``limit`` entries, oldest first."""
        async with self.db.execute(
            """SELECT workload_id, kind, timestamp, message FROM workload_logs
               WHERE workload_id = ? ORDER BY seq DESC LIMIT ?""",
            (workload_id, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            LogEntry(
                workload_id=row["workload_id"],
                kind=LogKind(row["kind"]),
                timestamp=datetime.fromisoformat(row["timestamp"]),
                message=row["message"] or "",
            )
            for row in reversed(rows)
        ]

    def __repr__(self) -> str:
        return f"WorkloadStore(db_path={self._db_path!r})"


def _row_to_workload(row: aiosqlite.Row) -> Workload:
    return Workload(
        id=row["id"],
        source_url=row["source_url"],
        directory=row["directory"],
        ecosystem=EcosystemKind(row["ecosystem"]),
        name=row["name"] or "",
        config=json.loads(row["config"] or "{}"),
        env=json.loads(row["env"] or "{}"),
        run_command=row["run_command"],
        entry_point=row["entry_point"],
        is_built=bool(row["is_built"]),
        status=WorkloadStatus(row["status"]),
        port=row["port"],
    )
