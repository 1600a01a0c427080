"""Workload status machine — enforces valid lifecycle transitions."""

from __future__ import annotations

from wharf.exceptions import WorkloadStateError
from wharf.types import WorkloadStatus

# Valid status transitions
VALID_TRANSITIONS: dict[WorkloadStatus, set[WorkloadStatus]] = {
    WorkloadStatus.STOPPED: {
        WorkloadStatus.STARTING,
        WorkloadStatus.STOPPED,
        WorkloadStatus.ERROR,  # failed rebuild
    },
    WorkloadStatus.STARTING: {
        WorkloadStatus.RUNNING,
        WorkloadStatus.STOPPING,
        WorkloadStatus.ERROR,
    },
    WorkloadStatus.RUNNING: {
        WorkloadStatus.STOPPING,
        WorkloadStatus.STOPPED,  # process exited on its own
        WorkloadStatus.ERROR,
        WorkloadStatus.STARTING,  # restart
    },
    WorkloadStatus.STOPPING: {WorkloadStatus.STOPPED},
    WorkloadStatus.ERROR: {
        WorkloadStatus.STARTING,
        WorkloadStatus.STOPPING,
        WorkloadStatus.STOPPED,
    },
}


def can_transition(current: WorkloadStatus, target: WorkloadStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def check_transition(workload_id: str, current: WorkloadStatus, target: WorkloadStatus) -> None:
    if not can_transition(current, target):
        raise WorkloadStateError(
            f"Cannot transition workload {workload_id} "
            f"from {current.value} to {target.value}"
        )
