"""Runtime configuration from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from qspider import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with QSPIDER_ prefix.
    Example: QSPIDER_QEMU_BIN=/usr/bin/qemu-system-x86_64
    """

    model_config = SettingsConfigDict(
        env_prefix="QSPIDER_",
        extra="ignore",
    )

    # External binaries
    qemu_bin: str = "qemu-kvm"
    ps_bin: str = "ps"
    du_bin: str = "du"

    # QMP control port
    qmp_host: str = constants.QMP_HOST
    port_range_start: int = Field(default=constants.QMP_PORT_RANGE_START, ge=1024, le=65535)
    port_range_size: int = Field(default=constants.QMP_PORT_RANGE_SIZE, ge=1)

    # Timeouts
    connect_timeout_seconds: float = Field(default=constants.CONNECT_TIMEOUT_SECONDS, gt=0)
    command_timeout_seconds: float | None = None
    """Default per-command deadline. None waits until response or channel loss."""
    stop_timeout_seconds: float = Field(default=constants.STOP_TIMEOUT_SECONDS, gt=0)

    # Acceleration
    enable_kvm: bool = True
