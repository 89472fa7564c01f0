"""Tests for the QEMU command line builder."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from qspider.config import VmConfig
from qspider.platform_utils import HostOS
from qspider.qemu_cmd import build_qemu_cmd, hotplug_cpu_driver
from qspider.settings import Settings


def _arg(cmd: list[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


class TestBuildQemuCmd:
    def test_default_layout(self) -> None:
        settings = Settings(qemu_bin="qemu-kvm", enable_kvm=False)
        cmd = build_qemu_cmd(settings, VmConfig(), "dsl.iso", 50123)

        assert cmd[0] == "qemu-kvm"
        assert _arg(cmd, "-m") == "512"
        assert _arg(cmd, "-smp") == "2,maxcpus=8"
        assert _arg(cmd, "-cdrom") == "dsl.iso"
        assert _arg(cmd, "-boot") == "d"
        assert _arg(cmd, "-qmp") == "tcp:127.0.0.1:50123,server,nowait"
        assert _arg(cmd, "-device") == "virtio-balloon"
        assert _arg(cmd, "-overcommit") == "mem-lock=off"

    def test_memory_and_cpus_from_config(self) -> None:
        config = VmConfig(memory_mb=1024, cpus=4, max_cpus=16)
        cmd = build_qemu_cmd(Settings(enable_kvm=False), config, "x.iso", 50000)

        assert _arg(cmd, "-m") == "1024"
        assert _arg(cmd, "-smp") == "4,maxcpus=16"

    def test_qmp_host_from_settings(self) -> None:
        cmd = build_qemu_cmd(Settings(qmp_host="0.0.0.0", enable_kvm=False), VmConfig(), "x.iso", 50001)
        assert _arg(cmd, "-qmp") == "tcp:0.0.0.0:50001,server,nowait"

    def test_no_kvm(self) -> None:
        cmd = build_qemu_cmd(Settings(enable_kvm=False), VmConfig(), "x.iso", 50000)

        assert "-enable-kvm" not in cmd
        assert _arg(cmd, "-cpu") == "qemu64"

    @pytest.mark.parametrize(
        ("host_os", "expected"),
        [
            (HostOS.LINUX, ["-enable-kvm", "-cpu", "host"]),
            (HostOS.MACOS, ["-accel", "hvf", "-cpu", "host"]),
            (HostOS.UNKNOWN, ["-cpu", "qemu64"]),
        ],
    )
    def test_acceleration_per_host(self, host_os: HostOS, expected: list[str]) -> None:
        with patch("qspider.qemu_cmd.detect_host_os", return_value=host_os):
            cmd = build_qemu_cmd(Settings(enable_kvm=True), VmConfig(), "x.iso", 50000)

        start = cmd.index(expected[0])
        assert cmd[start : start + len(expected)] == expected

    @pytest.mark.parametrize(
        ("host_os", "enable_kvm", "driver"),
        [
            (HostOS.LINUX, True, "host-x86_64-cpu"),
            (HostOS.MACOS, True, "host-x86_64-cpu"),
            (HostOS.UNKNOWN, True, "qemu64-x86_64-cpu"),
            (HostOS.LINUX, False, "qemu64-x86_64-cpu"),
        ],
    )
    def test_hotplug_driver_matches_cpu_model(self, host_os: HostOS, enable_kvm: bool, driver: str) -> None:
        settings = Settings(enable_kvm=enable_kvm)
        with patch("qspider.qemu_cmd.detect_host_os", return_value=host_os):
            cmd = build_qemu_cmd(settings, VmConfig(), "x.iso", 50000)
            assert hotplug_cpu_driver(settings) == driver

        assert driver == f"{_arg(cmd, '-cpu')}-x86_64-cpu"
