"""Exception hierarchy for qspider.

All exceptions inherit from QSpiderError.

Hierarchy:
    QSpiderError (base)
    ├── TransientError (retryable marker base)
    │   ├── CommunicationError
    │   │   ├── ChannelConnectionError  ← control socket could not be opened
    │   │   ├── TransportError          ← write/read failed on an open socket
    │   │   └── ChannelClosedError      ← channel closed with commands in flight
    │   ├── CommandTimeoutError         ← per-command deadline expired
    │   └── VmSpawnError                ← QEMU could not be started / died early
    ├── PermanentError (non-retryable marker base)
    │   ├── RemoteCommandError          ← QEMU answered with an "error" frame
    │   ├── VmStateError                ← operation invalid in current VM state
    │   └── VmConfigError               ← invalid VM configuration
    ├── InspectionError                 ← external resource tool failed
    │   ├── ProcessNotFoundError        ← ps found no such pid
    │   └── FilesystemError             ← du could not resolve the path
    └── DecodeError                     ← malformed frame or tool output

Nothing in qspider retries automatically; the markers tell callers which
failures are worth retrying on their side.
"""

from __future__ import annotations

from typing import Any


class QSpiderError(Exception):
    """Base exception for all qspider errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(QSpiderError):
    """Base for transient errors that may succeed on retry."""


class PermanentError(QSpiderError):
    """Base for permanent errors that won't succeed on retry."""


# =============================================================================
# Control channel errors
# =============================================================================


class CommunicationError(TransientError):
    """QMP control channel communication failed."""


class ChannelConnectionError(CommunicationError):
    """Could not establish the QMP control socket.

    Raised when the TCP connect to the hypervisor's control port is
    refused or times out.
    """


class TransportError(CommunicationError):
    """Write or read failed on an established (or already closed) socket."""


class ChannelClosedError(CommunicationError):
    """Channel closed while a command was outstanding.

    Every pending command on a channel fails with this error exactly once
    when the connection is lost or closed.
    """


class CommandTimeoutError(TransientError):
    """A QMP command did not receive its response within its deadline."""


class RemoteCommandError(PermanentError):
    """QEMU returned an ``error`` frame for a command.

    Attributes:
        error: Raw error payload from the response (usually
            ``{"class": ..., "desc": ...}``)
    """

    def __init__(self, message: str, error: Any, context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx["error"] = error
        super().__init__(message, ctx)
        self.error = error

    @property
    def error_class(self) -> str | None:
        """QMP error class (e.g. ``GenericError``, ``CommandNotFound``)."""
        if isinstance(self.error, dict):
            return self.error.get("class")
        return None

    @property
    def desc(self) -> str:
        """Human-readable error description from QEMU."""
        if isinstance(self.error, dict) and "desc" in self.error:
            return str(self.error["desc"])
        return str(self.error)


# =============================================================================
# VM lifecycle errors
# =============================================================================


class VmSpawnError(TransientError):
    """QEMU process could not be spawned or exited before the session started."""


class VmStateError(PermanentError):
    """Operation is not valid in the VM session's current state."""


class VmConfigError(PermanentError):
    """Invalid VM configuration."""


# =============================================================================
# Resource inspection errors
# =============================================================================


class InspectionError(QSpiderError):
    """External resource-inspection tool (ps/du) failed."""


class ProcessNotFoundError(InspectionError):
    """Process table query returned no row for the requested pid."""


class FilesystemError(InspectionError):
    """Filesystem usage query could not resolve the requested path."""


class DecodeError(QSpiderError):
    """Malformed frame on the control channel or malformed tool output.

    The offending raw bytes/text are stored in ``context["raw"]``.
    """
