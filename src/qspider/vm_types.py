"""VM session state machine."""

from enum import Enum


class VmState(Enum):
    """Lifecycle state of a VmSession."""

    CREATED = "created"
    """Session constructed, process not yet confirmed alive."""

    RUNNING = "running"
    """Process confirmed spawned; QMP operations allowed."""

    STOPPED = "stopped"
    """Process terminated (by stop() or on its own). Terminal."""


VALID_STATE_TRANSITIONS: dict[VmState, set[VmState]] = {
    VmState.CREATED: {VmState.RUNNING, VmState.STOPPED},
    VmState.RUNNING: {VmState.STOPPED},
    VmState.STOPPED: set(),
}
