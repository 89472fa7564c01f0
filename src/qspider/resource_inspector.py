"""Host-side resource inspection for supervised QEMU processes.

CPU and memory share come from the OS process table (``ps -p PID -o %cpu``),
disk usage from ``du -s`` on each disk's backing file. Both tools are run
as subprocesses and their output is treated as a narrow contract: anything
that does not match it fails with DecodeError instead of yielding a wrong
number.

    $ ps -p 4242 -o %cpu
    %CPU
     3.5

    $ du -s disk.qcow2
    196704  disk.qcow2
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from qspider import subprocess_utils
from qspider._logging import get_logger
from qspider.exceptions import DecodeError, FilesystemError, ProcessNotFoundError
from qspider.settings import Settings

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)


class ResourceInspector:
    """Reads CPU%, memory% and file sizes through external tools.

    Stateless; safe to share between sessions and to call concurrently
    with control channel traffic.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or Settings()
        self._ps_bin = settings.ps_bin
        self._du_bin = settings.du_bin

    async def cpu_percent(self, pid: int) -> float:
        """CPU usage of a process in percent (ps %cpu).

        Raises:
            ProcessNotFoundError: No such process
            DecodeError: Unexpected ps output
        """
        return await self._ps_field(pid, "%cpu")

    async def mem_percent(self, pid: int) -> float:
        """Resident memory of a process as percent of host RAM (ps %mem).

        Raises:
            ProcessNotFoundError: No such process
            DecodeError: Unexpected ps output
        """
        return await self._ps_field(pid, "%mem")

    async def file_size(self, path: str, working_dir: Path | str) -> int:
        """Disk usage of a file in 1K blocks (du -s), resolved from working_dir.

        Raises:
            FilesystemError: Path does not resolve or du failed
            DecodeError: Unexpected du output
        """
        argv = [self._du_bin, "-s", "--", path]
        try:
            result = await subprocess_utils.run_tool(argv, cwd=working_dir)
        except OSError as e:
            # Missing du binary or unusable working directory
            raise FilesystemError(
                f"Cannot run du for {path}: {e}",
                {"path": path, "working_dir": str(working_dir)},
            ) from e

        if result.returncode != 0 or not result.stdout.strip():
            raise FilesystemError(
                f"du failed for {path}: {result.stderr.strip() or 'no output'}",
                {"path": path, "working_dir": str(working_dir), "returncode": result.returncode},
            )

        first_line = result.stdout.splitlines()[0]
        fields = first_line.split()
        if not fields or not fields[0].isdigit():
            raise DecodeError(
                "Unexpected du output",
                {"raw": result.stdout[:200], "path": path},
            )
        return int(fields[0])

    async def _ps_field(self, pid: int, column: str) -> float:
        argv = [self._ps_bin, "-p", str(pid), "-o", column]
        try:
            result = await subprocess_utils.run_tool(argv)
        except OSError as e:
            raise ProcessNotFoundError(f"Cannot run ps: {e}", {"pid": pid}) from e

        lines = [line for line in result.stdout.splitlines() if line.strip()]
        # ps exits 1 and prints only the header when the pid is gone
        if result.returncode != 0 or len(lines) < 2:
            raise ProcessNotFoundError(
                f"Process {pid} not found",
                {"pid": pid, "returncode": result.returncode, "stderr": result.stderr.strip()},
            )
        if len(lines) > 2:
            raise DecodeError(
                f"Expected one ps row for pid {pid}, got {len(lines) - 1}",
                {"raw": result.stdout[:200], "pid": pid},
            )

        value = lines[1].strip()
        try:
            return float(value)
        except ValueError as e:
            raise DecodeError(
                f"Non-numeric ps {column} value: {value!r}",
                {"raw": result.stdout[:200], "pid": pid},
            ) from e
