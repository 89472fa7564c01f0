"""QMP control port allocation.

QEMU is told to listen on ``tcp:127.0.0.1:<port>``, so the port has to be
chosen before the process is spawned.
"""

import random
import socket

from qspider import constants
from qspider._logging import get_logger
from qspider.exceptions import VmSpawnError

logger = get_logger(__name__)


def is_port_free(port: int, host: str = constants.QMP_HOST) -> bool:
    """Check whether a TCP port can be bound on host."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
        except OSError:
            return False
    return True


def allocate_qmp_port(
    host: str = constants.QMP_HOST,
    start: int = constants.QMP_PORT_RANGE_START,
    size: int = constants.QMP_PORT_RANGE_SIZE,
) -> int:
    """Pick a free port in ``[start, start + size)`` by probe-binding.

    Probing begins at a random offset so VMs started back to back do not
    all race for the first port of the range.

    Note:
        There's a small window where another process could claim the port
        between the probe and QEMU binding it. QEMU then fails to start and
        the caller sees VmSpawnError.

    Raises:
        VmSpawnError: No free port in the range
    """
    offset = random.randrange(size)
    for i in range(size):
        port = start + (offset + i) % size
        if port > 65535:
            continue
        if is_port_free(port, host):
            logger.debug("Allocated QMP port", extra={"port": port, "host": host})
            return port
    raise VmSpawnError(
        f"No free QMP port in range {start}-{start + size - 1}",
        {"host": host, "start": start, "size": size},
    )
