"""VM session: one supervised QEMU process and its QMP control channel.

Provides the VmSession class which binds a ControlChannel to an externally
spawned QEMU process and exposes the typed operations qspider supports
(CPU hotplug, balloon resize, block queries, resource usage).
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from pathlib import Path
from typing import TYPE_CHECKING, Any, Self

from qspider import constants
from qspider._logging import get_logger
from qspider.control_channel import ControlChannel
from qspider.correlator import CommandCorrelator
from qspider.exceptions import DecodeError, VmSpawnError, VmStateError
from qspider.models import DiskDescriptor, DiskIoUsage, DiskUsage
from qspider.resource_cleanup import cleanup_process
from qspider.resource_inspector import ResourceInspector
from qspider.settings import Settings
from qspider.subprocess_utils import drain_qemu_output, log_task_exception
from qspider.vm_types import VALID_STATE_TRANSITIONS, VmState

if TYPE_CHECKING:
    import types

    from qspider.platform_utils import ProcessWrapper

logger = get_logger(__name__)

# Marks the end of the stderr error stream
_END_OF_ERRORS = None


class VmSession:
    """Handle to a running QEMU instance.

    Lifecycle: CREATED → RUNNING → STOPPED. Created by VmManager.start();
    QMP operations are only valid while RUNNING.

    The control channel is opened lazily by the first command and then
    reused; if QEMU drops the connection, the next command reconnects.
    When the process exits (stop() or on its own) the channel is closed and
    every in-flight command fails with ChannelClosedError.

    Context Manager Usage:
        ```python
        async with VmSession(qmp_port, process, cpu_count=2, images_dir=path) as vm:
            await vm.add_cpu()
            print(await vm.disk_io_usage())
        ```

    Attributes:
        vm_id: Identifier used in logs (defaults to ``qemu-<qmp_port>``)
        cpu_driver: device_add driver for add_cpu, matching QEMU's -cpu model
        images_dir: Working directory for disk usage queries
    """

    def __init__(
        self,
        qmp_port: int,
        process: ProcessWrapper,
        *,
        cpu_count: int,
        images_dir: Path,
        settings: Settings | None = None,
        channel: ControlChannel | None = None,
        inspector: ResourceInspector | None = None,
        vm_id: str | None = None,
        cpu_driver: str = constants.HOTPLUG_CPU_DRIVER,
    ) -> None:
        self._settings = settings or Settings()
        self._qmp_port = qmp_port
        self._process = process
        self._cpu_count = cpu_count
        self.cpu_driver = cpu_driver
        self.images_dir = Path(images_dir)
        self.vm_id = vm_id or f"qemu-{qmp_port}"
        self._channel = channel or ControlChannel(
            self._settings.qmp_host,
            qmp_port,
            connect_timeout=self._settings.connect_timeout_seconds,
        )
        self._correlator = CommandCorrelator(
            self._channel,
            default_timeout=self._settings.command_timeout_seconds,
        )
        self._inspector = inspector or ResourceInspector(self._settings)
        self._state = VmState.CREATED
        self._state_lock = asyncio.Lock()
        self._errors: asyncio.Queue[str | None] = asyncio.Queue(maxsize=constants.ERROR_STREAM_DEPTH)
        self._drain_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> VmState:
        return self._state

    @property
    def cpu_count(self) -> int:
        """Locally tracked vCPU count (best-effort, see add_cpu)."""
        return self._cpu_count

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def qmp_port(self) -> int:
        return self._qmp_port

    @property
    def process(self) -> ProcessWrapper:
        return self._process

    @property
    def channel(self) -> ControlChannel:
        return self._channel

    @property
    def correlator(self) -> CommandCorrelator:
        return self._correlator

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Confirm the process is alive and enter RUNNING.

        Starts the stderr drain (feeding errors()) and a watcher that stops
        the session when QEMU exits on its own.

        Raises:
            VmSpawnError: Process already exited
            VmStateError: Session is not in CREATED state
        """
        async with self._state_lock:
            if self._state != VmState.CREATED:
                raise VmStateError(
                    f"Cannot start session in state {self._state.value}",
                    {"vm_id": self.vm_id, "current_state": self._state.value},
                )
            if not await self._process.is_running():
                self._transition(VmState.STOPPED)
                self._end_errors()
                raise VmSpawnError(
                    "QEMU process exited before the session started",
                    {"vm_id": self.vm_id, "returncode": self._process.returncode},
                )
            self._transition(VmState.RUNNING)

        if self._process.stdout is not None or self._process.stderr is not None:
            self._drain_task = asyncio.create_task(
                drain_qemu_output(self._process, self.vm_id, on_stderr=self._on_stderr_line),
                name=f"drain-{self.vm_id}",
            )
            self._drain_task.add_done_callback(log_task_exception)
            self._drain_task.add_done_callback(self._end_errors)
        else:
            self._end_errors()

        self._watch_task = asyncio.create_task(self._watch_process(), name=f"watch-{self.vm_id}")
        self._watch_task.add_done_callback(log_task_exception)

    async def stop(self) -> None:
        """Signal QEMU to terminate and enter STOPPED. Idempotent.

        Does not wait for the process to exit or for the channel to drain;
        in-flight commands fail with ChannelClosedError.
        """
        async with self._state_lock:
            if self._state == VmState.STOPPED:
                return
            was_started = self._state == VmState.RUNNING
            self._transition(VmState.STOPPED)

        if not was_started:
            self._end_errors()
        if self._watch_task is not None and self._watch_task is not asyncio.current_task():
            self._watch_task.cancel()
        await self._process.terminate()
        await self._channel.close()
        logger.info("VM stopped", extra={"vm_id": self.vm_id, "pid": self.pid})

    async def aclose(self) -> None:
        """Stop and reap the process (SIGTERM → SIGKILL), then finish the stderr drain."""
        await self.stop()
        await cleanup_process(self._process, self.vm_id, term_timeout=self._settings.stop_timeout_seconds)
        if self._drain_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._drain_task), timeout=1.0)
            except TimeoutError:
                self._drain_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._drain_task
            except Exception:  # noqa: BLE001 - already logged by log_task_exception
                pass

    async def __aenter__(self) -> Self:
        if self._state == VmState.CREATED:
            await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.aclose()

    async def errors(self) -> AsyncIterator[str]:
        """Stream of QEMU stderr lines, ending once the process output is drained.

        Lines are buffered (bounded; oldest dropped first) until consumed.
        """
        while True:
            line = await self._errors.get()
            if line is _END_OF_ERRORS:
                # Leave the marker for other consumers
                self._end_errors()
                return
            yield line

    # -------------------------------------------------------------------------
    # QMP operations
    # -------------------------------------------------------------------------

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Run an arbitrary QMP command and return its ``return`` value."""
        self._require_running()
        return await self._correlator.execute(name, arguments, timeout=timeout)

    async def add_cpu(self) -> Any:
        """Hotplug one vCPU.

        The local counter is incremented before the command is sent and is
        not rolled back if QEMU rejects it; reconcile with query-cpus-fast
        when an exact count matters.
        """
        self._require_running()
        self._cpu_count += 1
        socket_id = self._cpu_count
        logger.debug("Hotplugging vCPU", extra={"vm_id": self.vm_id, "socket_id": socket_id})
        return await self._correlator.execute(
            "device_add",
            {
                "driver": self.cpu_driver,
                "socket-id": socket_id,
                "core-id": 0,
                "thread-id": 0,
            },
        )

    async def set_balloon(self, size_bytes: int) -> Any:
        """Resize the balloon so the guest sees ``size_bytes`` of memory."""
        self._require_running()
        return await self._correlator.execute("balloon", {"value": size_bytes})

    async def disk_io_usage(self) -> list[DiskIoUsage]:
        """Cumulative read/write byte counters per block device."""
        self._require_running()
        entries = await self._correlator.execute("query-blockstats")
        try:
            return [
                DiskIoUsage(
                    device=entry["device"],
                    bytes_read=entry["stats"]["rd_bytes"],
                    bytes_written=entry["stats"]["wr_bytes"],
                )
                for entry in entries
            ]
        except (KeyError, TypeError) as e:
            raise DecodeError("Unexpected query-blockstats response", {"raw": entries}) from e

    async def query_block_devices(self) -> list[DiskDescriptor]:
        """Block devices that have a backing file inserted."""
        self._require_running()
        entries = await self._correlator.execute("query-block")
        try:
            return [
                DiskDescriptor(
                    device=entry["device"],
                    backing_path=entry["inserted"]["file"],
                    driver_type=entry["inserted"]["drv"],
                )
                for entry in entries
                if entry.get("inserted") is not None
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise DecodeError("Unexpected query-block response", {"raw": entries}) from e

    async def disk_usage(self) -> list[DiskUsage]:
        """On-host size of each inserted disk's backing file, in query order."""
        disks = await self.query_block_devices()
        sizes = await asyncio.gather(
            *(self._inspector.file_size(disk.backing_path, self.images_dir) for disk in disks)
        )
        return [DiskUsage(device=disk.device, size=size) for disk, size in zip(disks, sizes, strict=True)]

    # -------------------------------------------------------------------------
    # Host-side usage
    # -------------------------------------------------------------------------

    async def cpu_usage(self) -> float:
        """QEMU process CPU usage in percent."""
        return await self._inspector.cpu_percent(self._require_pid())

    async def mem_usage(self) -> float:
        """QEMU process memory usage in percent of host RAM."""
        return await self._inspector.mem_percent(self._require_pid())

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _transition(self, new_state: VmState) -> None:
        """Validate and apply a state transition (caller holds the state lock)."""
        allowed = VALID_STATE_TRANSITIONS.get(self._state, set())
        if new_state not in allowed:
            raise VmStateError(
                f"Invalid state transition: {self._state.value} -> {new_state.value}",
                {
                    "vm_id": self.vm_id,
                    "current_state": self._state.value,
                    "target_state": new_state.value,
                },
            )
        old_state = self._state
        self._state = new_state
        logger.debug(
            "VM state transition",
            extra={"vm_id": self.vm_id, "old_state": old_state.value, "new_state": new_state.value},
        )

    def _require_running(self) -> None:
        if self._state != VmState.RUNNING:
            raise VmStateError(
                f"VM is {self._state.value}, must be running",
                {"vm_id": self.vm_id, "current_state": self._state.value},
            )

    def _require_pid(self) -> int:
        self._require_running()
        pid = self._process.pid
        if pid is None:
            raise VmStateError("VM process has no pid", {"vm_id": self.vm_id})
        return pid

    async def _watch_process(self) -> None:
        """Stop the session when QEMU exits without stop() being called."""
        returncode = await self._process.wait()
        async with self._state_lock:
            if self._state == VmState.STOPPED:
                return
            self._transition(VmState.STOPPED)
        logger.warning(
            "QEMU process exited unexpectedly",
            extra={"vm_id": self.vm_id, "returncode": returncode},
        )
        await self._channel.close()

    def _on_stderr_line(self, line: str) -> None:
        logger.warning(f"[QEMU stderr] {line}", extra={"vm_id": self.vm_id, "output": line})
        if self._errors.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._errors.get_nowait()
        self._errors.put_nowait(line)

    def _end_errors(self, _task: asyncio.Task[None] | None = None) -> None:
        if self._errors.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._errors.get_nowait()
        self._errors.put_nowait(_END_OF_ERRORS)
