"""Data models for qspider."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class QmpCommand(BaseModel):
    """Outbound QMP command. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    execute: str
    arguments: dict[str, Any] | None = None
    id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """Wire form: omits absent arguments/id."""
        return self.model_dump(exclude_none=True)


class DiskDescriptor(BaseModel):
    """Block device with an inserted medium, as reported by query-block."""

    device: str
    backing_path: str = Field(description="Host path of the backing file")
    driver_type: str = Field(description="Block driver (qcow2, raw, ...)")


class DiskIoUsage(BaseModel):
    """Cumulative I/O counters for one block device (query-blockstats)."""

    device: str
    bytes_read: int
    bytes_written: int


class DiskUsage(BaseModel):
    """On-host size of a block device's backing file."""

    device: str
    size: int = Field(description="Size in 1K blocks as reported by du -s")


class VmStats(BaseModel):
    """One monitor sample for a VM session."""

    cpu_percent: float
    mem_percent: float
    disks_io: list[DiskIoUsage]
    disks: list[DiskUsage]
