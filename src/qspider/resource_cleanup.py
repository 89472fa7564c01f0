"""Reaping of QEMU processes at session shutdown.

Failures are logged, never raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from qspider import constants
from qspider._logging import get_logger

if TYPE_CHECKING:
    from qspider.platform_utils import ProcessWrapper

logger = get_logger(__name__)


async def cleanup_process(
    proc: ProcessWrapper | None,
    vm_id: str,
    *,
    term_timeout: float = constants.STOP_TIMEOUT_SECONDS,
    kill_timeout: float = 2.0,
) -> bool:
    """Reap a QEMU process, escalating SIGTERM → SIGKILL.

    Args:
        proc: Process to reap (None and already-exited are no-ops)
        vm_id: Session identifier for log correlation
        term_timeout: Grace period after SIGTERM
        kill_timeout: Grace period after SIGKILL

    Returns:
        True once the process has exited, False if it outlived SIGKILL
    """
    if proc is None or proc.returncode is not None:
        return True

    escalation = (
        ("SIGTERM", proc.terminate, term_timeout),
        ("SIGKILL", proc.kill, kill_timeout),
    )
    try:
        for signal_name, send_signal, grace in escalation:
            await send_signal()
            try:
                returncode = await proc.wait_with_timeout(grace)
            except TimeoutError:
                logger.warning(
                    f"QEMU still running {grace}s after {signal_name}",
                    extra={"vm_id": vm_id, "pid": proc.pid},
                )
                continue
            logger.debug(
                "QEMU reaped",
                extra={"vm_id": vm_id, "signal": signal_name, "returncode": returncode},
            )
            return True
    except ProcessLookupError:
        return True
    except Exception:
        logger.exception("QEMU cleanup failed", extra={"vm_id": vm_id, "pid": proc.pid})
        return False

    logger.error("QEMU survived SIGKILL", extra={"vm_id": vm_id, "pid": proc.pid})
    return False
