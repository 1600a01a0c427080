"""Process management — OS-level subprocess supervision.

wharf treats registered projects as supervised processes. This package provides:
- CommandResolver: decide the executable and arguments for a workload
- PortSniffer: spot the listening port in server output
- ProcessSupervisor: spawn, stream, stop real OS subprocesses
- orphans: find runtime processes wharf is not tracking
"""
