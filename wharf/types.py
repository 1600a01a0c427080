"""Core types shared across all wharf subsystems."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias

from pydantic import BaseModel, Field

# ── ID Types ──────────────────────────────────────────────────────────────────

WorkloadId: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ─────────────────────────────────────────────────────────────


class EcosystemKind(str, Enum):
    NODE = "node"
    PYTHON_PIP = "python-pip"
    PYTHON_POETRY = "python-poetry"
    UNKNOWN = "unknown"

    @property
    def is_python(self) -> bool:
        return self in (EcosystemKind.PYTHON_PIP, EcosystemKind.PYTHON_POETRY)


class WorkloadStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class LogKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    INFO = "info"
    ERROR = "error"


# ── Workload ─────────────────────────────────────────────────────────────────


class Workload(BaseModel):
    """A registered project that wharf can start, stop and rebuild."""

    id: WorkloadId
    source_url: str
    directory: str
    ecosystem: EcosystemKind = EcosystemKind.UNKNOWN
    name: str = ""
    config: dict[str, Any] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    run_command: str | None = None
    entry_point: str | None = None
    is_built: bool = False
    status: WorkloadStatus = WorkloadStatus.STOPPED
    port: int | None = None  # last detected, informational only


class LogEntry(BaseModel):
    """One line of captured output or one synthetic message."""

    workload_id: WorkloadId
    kind: LogKind
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


# ── Operation payloads ───────────────────────────────────────────────────────


class RegisterOptions(BaseModel):
    """Optional overrides supplied when a workload is registered."""

    name: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    run_command: str | None = None
    entry_point: str | None = None


class ConfigPatch(BaseModel):
    """Partial update for a workload. ``None`` leaves a field untouched."""

    name: str | None = None
    config: dict[str, Any] | None = None
    env: dict[str, str] | None = None
    run_command: str | None = None
    entry_point: str | None = None


class OperationResult(BaseModel):
    success: bool
    error: str = ""
