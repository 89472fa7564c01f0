"""Helpers around child processes: host tools (ps, du) and QEMU's pipes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from qspider._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from qspider.platform_utils import ProcessWrapper

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ToolOutput:
    returncode: int
    stdout: str
    stderr: str


async def run_tool(argv: list[str], *, cwd: Path | str | None = None) -> ToolOutput:
    """Run a host tool without a shell and collect what it printed.

    Raises:
        FileNotFoundError: ``argv[0]`` is not installed
    """
    proc = await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    out, err = await proc.communicate()
    returncode = -1 if proc.returncode is None else proc.returncode
    logger.debug(f"{argv[0]} exited with {returncode}", extra={"argv": argv})
    return ToolOutput(returncode, out.decode(errors="replace"), err.decode(errors="replace"))


async def drain_qemu_output(
    process: ProcessWrapper,
    vm_id: str,
    *,
    on_stdout: Callable[[str], None] | None = None,
    on_stderr: Callable[[str], None] | None = None,
) -> None:
    """Read QEMU's stdout and stderr side by side until both reach EOF.

    Both pipes are read at once: QEMU blocks when either 64KB pipe buffer
    fills. Blank lines are skipped. Lines go to the handlers, or to the
    ``qspider`` log (stdout at DEBUG, stderr at WARNING) when none is given.
    """

    def log_line(level: int, stream: str) -> Callable[[str], None]:
        return lambda line: logger.log(level, f"QEMU {stream}: {line}", extra={"vm_id": vm_id})

    async def pump(reader: asyncio.StreamReader, handler: Callable[[str], None]) -> None:
        async for raw in reader:
            if line := raw.decode(errors="replace").rstrip():
                handler(line)

    async with asyncio.TaskGroup() as tg:
        if process.stdout is not None:
            tg.create_task(pump(process.stdout, on_stdout or log_line(logging.DEBUG, "stdout")))
        if process.stderr is not None:
            tg.create_task(pump(process.stderr, on_stderr or log_line(logging.WARNING, "stderr")))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Done-callback for fire-and-forget tasks: log the failure, if any."""
    if task.cancelled() or (exc := task.exception()) is None:
        return
    logger.error(f"Task {task.get_name()} crashed", exc_info=exc)
