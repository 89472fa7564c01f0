"""VM Manager - spawns QEMU processes and hands out VmSessions.

Architecture:
- Allocates a QMP control port per VM
- Builds the QEMU command line
- Spawns QEMU with piped stdout/stderr (drained by the session)
- Wraps the process in ProcessWrapper and starts a VmSession around it

The manager is an explicit object held by the caller; nothing about running
VMs is kept in module-level state.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Self

from qspider._logging import get_logger
from qspider.config import VmConfig
from qspider.exceptions import VmConfigError, VmSpawnError
from qspider.platform_utils import ProcessWrapper
from qspider.port_alloc import allocate_qmp_port
from qspider.qemu_cmd import build_qemu_cmd, hotplug_cpu_driver
from qspider.resource_inspector import ResourceInspector
from qspider.settings import Settings
from qspider.vm_session import VmSession
from qspider.vm_types import VmState

if TYPE_CHECKING:
    import types

logger = get_logger(__name__)


class VmManager:
    """Starts QEMU VMs and tracks the sessions it created.

    Usage:
        async with VmManager(VmConfig(memory_mb=512, cpus=2)) as manager:
            session = await manager.start("dsl.iso")
            await session.set_balloon(256 * 1024 * 1024)
        # every session stopped and reaped on exit
    """

    def __init__(self, config: VmConfig | None = None, settings: Settings | None = None) -> None:
        self.config = config or VmConfig()
        self.settings = settings or Settings()
        self._inspector = ResourceInspector(self.settings)
        self._sessions: list[VmSession] = []

    @property
    def sessions(self) -> list[VmSession]:
        """Sessions started by this manager that are not yet stopped."""
        return [s for s in self._sessions if s.state != VmState.STOPPED]

    async def start(self, iso: str | Path) -> VmSession:
        """Boot a VM from an ISO and return its running session.

        Raises:
            VmConfigError: images_dir is not an existing directory
            VmSpawnError: No free port, QEMU binary missing, or QEMU died immediately
        """
        images_dir = self.config.get_images_dir()
        if not images_dir.is_dir():
            raise VmConfigError(f"Images directory does not exist: {images_dir}", {"images_dir": str(images_dir)})

        qmp_port = allocate_qmp_port(
            self.settings.qmp_host,
            self.settings.port_range_start,
            self.settings.port_range_size,
        )
        cmd = build_qemu_cmd(self.settings, self.config, str(iso), qmp_port)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise VmSpawnError(
                f"Failed to spawn QEMU: {e}",
                {"qemu_bin": self.settings.qemu_bin, "qmp_port": qmp_port},
            ) from e

        process = ProcessWrapper(proc)
        session = VmSession(
            qmp_port,
            process,
            cpu_count=self.config.cpus,
            images_dir=images_dir,
            settings=self.settings,
            inspector=self._inspector,
            cpu_driver=hotplug_cpu_driver(self.settings),
        )
        try:
            await session.start()
        except VmSpawnError:
            await session.aclose()
            raise
        self._sessions.append(session)
        logger.info(
            "VM started",
            extra={"vm_id": session.vm_id, "pid": session.pid, "qmp_port": qmp_port, "iso": str(iso)},
        )
        return session

    async def stop_all(self) -> None:
        """Stop and reap every session this manager started."""
        sessions = self._sessions
        self._sessions = []
        results = await asyncio.gather(*(s.aclose() for s in sessions), return_exceptions=True)
        for session, result in zip(sessions, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to stop VM",
                    extra={"vm_id": session.vm_id, "error": str(result)},
                    exc_info=result,
                )

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.stop_all()
