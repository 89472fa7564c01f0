"""Per-VM configuration for qspider.

Example:
    ```python
    from qspider import VmConfig, VmManager

    config = VmConfig(memory_mb=512, cpus=2)
    async with VmManager(config) as manager:
        session = await manager.start("dsl.iso")
        await session.add_cpu()
    ```
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator

from qspider import constants


class VmConfig(BaseModel):
    """Configuration applied to every VM a VmManager starts.

    Attributes:
        memory_mb: Guest memory in MB (-m). Default: 512.
        cpus: vCPUs at boot (-smp). Must not exceed max_cpus. Default: 2.
        max_cpus: Hotplug ceiling (-smp maxcpus). Default: 8.
        images_dir: Directory disk backing files are resolved against when
            measuring disk usage. If None, resolved by get_images_dir().
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    memory_mb: int = Field(
        default=constants.DEFAULT_MEMORY_MB,
        ge=constants.MIN_MEMORY_MB,
        description="Guest memory in MB",
    )
    cpus: int = Field(
        default=constants.DEFAULT_CPUS,
        ge=1,
        description="vCPUs at boot",
    )
    max_cpus: int = Field(
        default=constants.DEFAULT_MAX_CPUS,
        ge=1,
        description="Maximum vCPUs reachable through hotplug",
    )
    images_dir: Path | None = Field(
        default=None,
        description="Working directory for disk usage queries (auto-detect if None)",
    )

    @model_validator(mode="after")
    def _check_cpus(self) -> VmConfig:
        if self.cpus > self.max_cpus:
            raise ValueError(f"cpus ({self.cpus}) exceeds max_cpus ({self.max_cpus})")
        return self

    def get_images_dir(self) -> Path:
        """Get the images directory.

        Detection order:
        1. Explicit images_dir from config
        2. QSPIDER_IMAGES_DIR environment variable
        3. Current working directory
        """
        if self.images_dir is not None:
            return self.images_dir
        if env_path := os.environ.get("QSPIDER_IMAGES_DIR"):
            return Path(env_path)
        return Path.cwd()
