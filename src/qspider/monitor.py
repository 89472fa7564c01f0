"""Periodic stats polling for a VM session.

The session to poll is passed in explicitly; callers decide where samples
go (console, metrics, tests) through the on_stats callback.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from qspider import constants
from qspider._logging import get_logger
from qspider.exceptions import QSpiderError
from qspider.models import VmStats
from qspider.vm_types import VmState

if TYPE_CHECKING:
    from collections.abc import Callable

    from qspider.vm_session import VmSession

logger = get_logger(__name__)


async def collect_stats(session: VmSession) -> VmStats:
    """Take one sample: memory, CPU, disk I/O counters, disk sizes."""
    mem = await session.mem_usage()
    cpu = await session.cpu_usage()
    disks_io = await session.disk_io_usage()
    disks = await session.disk_usage()
    return VmStats(cpu_percent=cpu, mem_percent=mem, disks_io=disks_io, disks=disks)


async def monitor_session(
    session: VmSession,
    on_stats: Callable[[VmStats], None],
    *,
    interval: float = constants.DEFAULT_MONITOR_INTERVAL_SECONDS,
    on_error: Callable[[QSpiderError], None] | None = None,
) -> None:
    """Poll session stats every ``interval`` seconds until the session stops.

    A failed sample is reported through on_error (or logged) and polling
    continues with the next tick. Cancel the task to stop early.
    """
    while session.state == VmState.RUNNING:
        await asyncio.sleep(interval)
        if session.state != VmState.RUNNING:
            break
        try:
            stats = await collect_stats(session)
        except QSpiderError as e:
            if session.state != VmState.RUNNING:
                break
            if on_error is not None:
                on_error(e)
            else:
                logger.warning("Stats sample failed", extra={"vm_id": session.vm_id, "error": e.message})
            continue
        on_stats(stats)
    logger.debug("Monitor finished", extra={"vm_id": session.vm_id, "state": session.state.value})
