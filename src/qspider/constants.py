"""Constants for qspider configuration and the QMP wire protocol."""

from typing import Final

# ============================================================================
# VM Defaults
# ============================================================================

DEFAULT_MEMORY_MB: Final[int] = 512
"""Default guest memory in MB."""

MIN_MEMORY_MB: Final[int] = 64
"""Minimum guest memory in MB."""

DEFAULT_CPUS: Final[int] = 2
"""Default number of vCPUs at boot."""

DEFAULT_MAX_CPUS: Final[int] = 8
"""Upper bound on vCPUs (-smp maxcpus), limits CPU hotplug."""

TCG_CPU_MODEL: Final[str] = "qemu64"
"""-cpu model when no hardware accelerator is used."""

CPU_DRIVER_SUFFIX: Final[str] = "-x86_64-cpu"
"""Appended to the -cpu model to name the device_add driver for vCPU hotplug."""

HOTPLUG_CPU_DRIVER: Final[str] = TCG_CPU_MODEL + CPU_DRIVER_SUFFIX
"""Hotplug driver for sessions built without a known -cpu model."""

# ============================================================================
# QMP Control Port
# ============================================================================

QMP_HOST: Final[str] = "127.0.0.1"
"""Address QEMU's QMP server listens on."""

QMP_PORT_RANGE_START: Final[int] = 50000
"""First port probed when allocating a QMP control port."""

QMP_PORT_RANGE_SIZE: Final[int] = 1000
"""Number of ports in the allocation range."""

# ============================================================================
# QMP Protocol
# ============================================================================

QMP_CAPABILITIES_COMMAND: Final[str] = "qmp_capabilities"
"""Handshake command that must precede all others on a connection."""

QMP_COMMAND_ID_LENGTH: Final[int] = 10
"""Length of generated correlation identifiers (hex chars)."""

MAX_FRAME_BYTES: Final[int] = 1024 * 1024
"""Largest QMP frame accepted before the decoder discards and resyncs."""

READ_CHUNK_BYTES: Final[int] = 64 * 1024
"""Socket read size for the control channel read loop."""

# ============================================================================
# Timeouts
# ============================================================================

CONNECT_TIMEOUT_SECONDS: Final[float] = 5.0
"""Timeout for opening the QMP TCP connection."""

STOP_TIMEOUT_SECONDS: Final[float] = 3.0
"""Grace period between SIGTERM and SIGKILL when reaping QEMU."""

# ============================================================================
# Monitor
# ============================================================================

DEFAULT_MONITOR_INTERVAL_SECONDS: Final[float] = 4.0
"""Default stats polling interval for the CLI monitor."""

ERROR_STREAM_DEPTH: Final[int] = 1024
"""Buffered stderr lines per session before the oldest are dropped."""
