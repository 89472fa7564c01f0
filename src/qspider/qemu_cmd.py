"""QEMU command line builder.

Builds the argument vector for an ISO-booted VM with a TCP QMP server and
a virtio balloon device.
"""

from qspider import constants
from qspider._logging import get_logger
from qspider.config import VmConfig
from qspider.platform_utils import HostOS, detect_host_os
from qspider.settings import Settings

logger = get_logger(__name__)


def build_qemu_cmd(settings: Settings, config: VmConfig, iso: str, qmp_port: int) -> list[str]:
    """Build the QEMU command for one VM.

    Args:
        settings: Runtime settings (QEMU binary, QMP host, acceleration)
        config: Memory/CPU configuration
        iso: Path to the boot ISO (attached as CD-ROM, booted first)
        qmp_port: TCP port for the QMP server

    Returns:
        Argument vector, program first
    """
    cmd = [settings.qemu_bin]

    # Memory and CPU
    cmd.extend(["-m", str(config.memory_mb)])
    cmd.extend(_accel_args(settings))
    cmd.extend(["-smp", f"{config.cpus},maxcpus={config.max_cpus}"])

    # Boot from CD-ROM
    cmd.extend(["-cdrom", iso, "-boot", "d"])

    # QMP server: QEMU listens, does not wait for a client before booting
    cmd.extend(["-qmp", f"tcp:{settings.qmp_host}:{qmp_port},server,nowait"])

    # Guest memory is not locked, so the balloon can actually return it
    cmd.extend(["-overcommit", "mem-lock=off"])
    cmd.extend(["-device", "virtio-balloon"])

    logger.debug("Built QEMU command", extra={"cmd": cmd})
    return cmd


def cpu_model(settings: Settings) -> str:
    """``-cpu`` model: ``host`` under KVM/HVF, ``qemu64`` under TCG."""
    if settings.enable_kvm and detect_host_os() in (HostOS.LINUX, HostOS.MACOS):
        return "host"
    return constants.TCG_CPU_MODEL


def hotplug_cpu_driver(settings: Settings) -> str:
    """device_add driver for a hotplugged vCPU, which QEMU requires to match ``-cpu``."""
    return f"{cpu_model(settings)}{constants.CPU_DRIVER_SUFFIX}"


def _accel_args(settings: Settings) -> list[str]:
    model = cpu_model(settings)
    if model == constants.TCG_CPU_MODEL:
        return ["-cpu", model]
    if detect_host_os() == HostOS.MACOS:
        return ["-accel", "hvf", "-cpu", model]
    return ["-enable-kvm", "-cpu", model]
