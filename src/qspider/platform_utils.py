"""Host detection and the handle qspider keeps on each QEMU process."""

import asyncio
import contextlib
from enum import Enum
from functools import cache
from typing import Literal

import psutil


class HostOS(Enum):
    """Host platforms that select QEMU accelerator flags."""

    LINUX = "linux"
    MACOS = "macos"
    UNKNOWN = "unknown"


@cache
def detect_host_os() -> HostOS:
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


class ProcessWrapper:
    """asyncio subprocess paired with a psutil.Process.

    psutil checks the process creation time before signalling, so a QEMU
    that exited and had its PID recycled is never confused with the new
    owner. Blocking psutil calls run in a worker thread.
    """

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self._ps: psutil.Process | None = None
        if proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self._ps = psutil.Process(proc.pid)

    @property
    def pid(self) -> int | None:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        """Exit status once reaped, else None."""
        return self._proc.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._proc.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._proc.stderr

    async def is_running(self) -> bool:
        """True while QEMU exists and is not an unreaped zombie."""
        if self._proc.returncode is not None:
            return False
        ps = self._ps
        if ps is None:
            return True

        def probe() -> bool:
            return ps.is_running() and ps.status() != psutil.STATUS_ZOMBIE

        try:
            return await asyncio.to_thread(probe)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def wait(self) -> int:
        return await self._proc.wait()

    async def wait_with_timeout(self, timeout: float) -> int:
        """Wait for exit without touching the pipes (the stderr drain task reads them).

        Raises:
            TimeoutError: QEMU still running after ``timeout`` seconds
        """
        return await asyncio.wait_for(self._proc.wait(), timeout=timeout)

    async def terminate(self) -> None:
        await self._send("terminate")

    async def kill(self) -> None:
        await self._send("kill")

    async def _send(self, method: Literal["terminate", "kill"]) -> None:
        # Signalling an exited process is a no-op
        if self._ps is not None and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(getattr(self._ps, method))
        elif self._proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                getattr(self._proc, method)()
