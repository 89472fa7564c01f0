"""qspider: supervise QEMU virtual machines over QMP.

Boots VMs under QEMU and talks to each one over a persistent QMP (QEMU
Monitor Protocol) connection: CPU hotplug, memory balloon, block device and
block I/O queries, plus host-side CPU/memory/disk usage.

Quick Start:
    ```python
    from qspider import VmConfig, VmManager

    async with VmManager(VmConfig(memory_mb=512, cpus=2)) as manager:
        vm = await manager.start("dsl.iso")
        await vm.add_cpu()                        # hotplug vCPU #3
        await vm.set_balloon(256 * 1024 * 1024)   # shrink guest to 256MB
        print(await vm.disk_io_usage())
        print(await vm.cpu_usage(), await vm.mem_usage())
    ```

Raw QMP:
    ```python
    from qspider import CommandCorrelator, ControlChannel

    channel = ControlChannel("127.0.0.1", 50123)
    qmp = CommandCorrelator(channel)
    status = await qmp.execute("query-status")
    await channel.close()
    ```

Requirements:
    - QEMU with QMP over TCP (qemu-kvm / qemu-system-x86_64)
    - ps and du on PATH (resource inspection)
    - Python 3.12+
"""

from qspider.config import VmConfig
from qspider.control_channel import ConnectionState, ControlChannel, FrameListener
from qspider.correlator import CommandCorrelator
from qspider.exceptions import (
    ChannelClosedError,
    ChannelConnectionError,
    CommandTimeoutError,
    CommunicationError,
    DecodeError,
    FilesystemError,
    InspectionError,
    PermanentError,
    ProcessNotFoundError,
    QSpiderError,
    RemoteCommandError,
    TransientError,
    TransportError,
    VmConfigError,
    VmSpawnError,
    VmStateError,
)
from qspider.framing import FrameDecoder
from qspider.models import DiskDescriptor, DiskIoUsage, DiskUsage, QmpCommand, VmStats
from qspider.resource_inspector import ResourceInspector
from qspider.settings import Settings
from qspider.vm_manager import VmManager
from qspider.vm_session import VmSession
from qspider.vm_types import VmState

__all__ = [
    "ChannelClosedError",
    "ChannelConnectionError",
    "CommandCorrelator",
    "CommandTimeoutError",
    "CommunicationError",
    "ConnectionState",
    "ControlChannel",
    "DecodeError",
    "DiskDescriptor",
    "DiskIoUsage",
    "DiskUsage",
    "FilesystemError",
    "FrameDecoder",
    "FrameListener",
    "InspectionError",
    "PermanentError",
    "ProcessNotFoundError",
    "QSpiderError",
    "QmpCommand",
    "RemoteCommandError",
    "ResourceInspector",
    "Settings",
    "TransientError",
    "TransportError",
    "VmConfig",
    "VmConfigError",
    "VmManager",
    "VmSession",
    "VmSpawnError",
    "VmState",
    "VmStateError",
    "VmStats",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("qspider")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
