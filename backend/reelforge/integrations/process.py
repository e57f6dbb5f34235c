from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CmdResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


async def run_cmd(
    cmd: Sequence[str],
    *,
    timeout: float | None = None,
    cwd: str | Path | None = None,
) -> CmdResult:
    """Run a command and capture stdout/stderr.

    On timeout the process is killed and `timed_out` is set; a non-zero exit
    is returned, not raised, so callers can classify the diagnostic text.
    """
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
    )
    timed_out = False
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        logger.warning(f"[process] {cmd[0]} exceeded {timeout}s, killing pid={proc.pid}")
        proc.kill()
        stdout, stderr = await proc.communicate()

    result = CmdResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="ignore") if stdout else "",
        stderr=stderr.decode(errors="ignore") if stderr else "",
        timed_out=timed_out,
    )
    if result.returncode != 0:
        logger.debug(f"[process] {' '.join(cmd[:3])}... exited {result.returncode}: {result.stderr[-400:]}")
    return result


CmdRunner = Callable[..., Awaitable[CmdResult]]
