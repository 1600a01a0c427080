"""Run one-shot tool commands (install, build) and stream their output."""

from __future__ import annotations

import asyncio
from collections import deque
from pathlib import Path
from typing import Callable

from wharf.processes.resolver import exec_argv
from wharf.types import LogKind

LineCallback = Callable[[LogKind, str], None]


async def stream_command(
    argv: list[str],
    cwd: Path,
    on_line: LineCallback | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> tuple[int, str]:
    """Run ``argv`` in ``cwd`` and wait for it.

    Each non-blank output line is passed to ``on_line`` as it arrives.
    Returns the exit code and the last lines of stderr. Raises ``OSError``
    when the tool cannot be started and ``asyncio.TimeoutError`` (after
    killing it) when it runs past ``timeout``.
    """
    proc = await asyncio.create_subprocess_exec(
        *exec_argv(argv),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
        env=env,
    )
    stderr_tail: deque[str] = deque(maxlen=20)

    async def _read(stream: asyncio.StreamReader, kind: LogKind) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line.strip():
                continue
            if kind == LogKind.STDERR:
                stderr_tail.append(line)
            if on_line is not None:
                on_line(kind, line)

    async def _run() -> int:
        await asyncio.gather(
            _read(proc.stdout, LogKind.STDOUT),
            _read(proc.stderr, LogKind.STDERR),
        )
        return await proc.wait()

    try:
        code = await asyncio.wait_for(_run(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return code, "\n".join(stderr_tail)
