"""Custom exception hierarchy for wharf."""


class WharfError(Exception):
    """Base for all wharf errors."""


class WorkloadNotFoundError(WharfError):
    """No workload with the given ID exists."""


class WorkloadStateError(WharfError):
    """Invalid workload status transition."""


class CloneFailureError(WharfError):
    """The source repository could not be cloned."""


class InstallFailureError(WharfError):
    """Dependency installation failed."""


class BuildFailureError(WharfError):
    """A build step exited with a non-zero code or could not run."""


class RebuildNotSupportedError(WharfError):
    """Rebuild requested for a workload that has no build step."""


class SpawnFailureError(WharfError):
    """The workload process could not be started or died immediately."""


class ProcessNotFoundError(WharfError):
    """No OS process with the given pid exists (or it may not be killed)."""


# ── Command resolution ──────────────────────────────────────────────────────


class ResolutionError(WharfError):
    """No launch command could be derived for a workload."""


class NoEntryPointError(ResolutionError):
    """No runnable entry point was found in the workload directory."""


class UnsupportedEntryPointError(ResolutionError):
    """The custom entry point has a file type wharf cannot launch."""


class UnsupportedEcosystemError(ResolutionError):
    """The workload's ecosystem has no launch strategy."""


class NoSuitableProjectError(ResolutionError):
    """An nx monorepo exposed no project that could be served."""
