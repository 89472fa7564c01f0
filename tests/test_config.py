"""Tests for VmConfig and Settings."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from qspider.config import VmConfig
from qspider.settings import Settings

# ============================================================================
# VmConfig
# ============================================================================


class TestVmConfig:
    def test_defaults(self) -> None:
        config = VmConfig()
        assert config.memory_mb == 512
        assert config.cpus == 2
        assert config.max_cpus == 8
        assert config.images_dir is None

    def test_frozen(self) -> None:
        config = VmConfig()
        with pytest.raises(ValidationError):
            config.cpus = 4  # type: ignore[misc]

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            VmConfig(memroy_mb=1024)  # type: ignore[call-arg]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"memory_mb": 32},
            {"cpus": 0},
            {"max_cpus": 0},
            {"cpus": 4, "max_cpus": 2},
        ],
    )
    def test_invalid(self, kwargs: dict[str, int]) -> None:
        with pytest.raises(ValidationError):
            VmConfig(**kwargs)

    def test_cpus_equal_to_max(self) -> None:
        assert VmConfig(cpus=8, max_cpus=8).cpus == 8


class TestImagesDir:
    def test_explicit(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QSPIDER_IMAGES_DIR", "/elsewhere")
        assert VmConfig(images_dir=tmp_path).get_images_dir() == tmp_path

    def test_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QSPIDER_IMAGES_DIR", "/var/lib/qspider")
        assert VmConfig().get_images_dir() == Path("/var/lib/qspider")

    def test_cwd_fallback(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("QSPIDER_IMAGES_DIR", raising=False)
        monkeypatch.chdir(tmp_path)
        assert VmConfig().get_images_dir() == tmp_path


# ============================================================================
# Settings
# ============================================================================


class TestSettings:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("QSPIDER_QEMU_BIN", raising=False)
        settings = Settings()
        assert settings.qemu_bin == "qemu-kvm"
        assert settings.qmp_host == "127.0.0.1"
        assert settings.port_range_start == 50000
        assert settings.port_range_size == 1000
        assert settings.command_timeout_seconds is None
        assert settings.enable_kvm is True

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("QSPIDER_QEMU_BIN", "/usr/bin/qemu-system-x86_64")
        monkeypatch.setenv("QSPIDER_COMMAND_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("QSPIDER_ENABLE_KVM", "false")

        settings = Settings()

        assert settings.qemu_bin == "/usr/bin/qemu-system-x86_64"
        assert settings.command_timeout_seconds == 2.5
        assert settings.enable_kvm is False

    @pytest.mark.parametrize(
        ("var", "value"),
        [
            ("QSPIDER_PORT_RANGE_START", "80"),
            ("QSPIDER_PORT_RANGE_SIZE", "0"),
            ("QSPIDER_CONNECT_TIMEOUT_SECONDS", "0"),
        ],
    )
    def test_invalid_env(self, monkeypatch: pytest.MonkeyPatch, var: str, value: str) -> None:
        monkeypatch.setenv(var, value)
        with pytest.raises(ValidationError):
            Settings()
