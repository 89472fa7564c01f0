"""QMP control channel: one persistent TCP connection to a QEMU instance.

The channel owns the socket, performs the capability handshake once per
physical connection, serializes writes, and fans every decoded frame out to
registered listeners. It knows nothing about command ids; correlation lives
in CommandCorrelator, which registers itself as a listener.

Connection lifecycle (ConnectionState):

    DISCONNECTED --open()--> CONNECTING --> CONNECTED
         ^                                     |
         +------- EOF / read failure ----------+
    any --close()--> CLOSED (terminal)

A lost connection returns to DISCONNECTED so the next command reopens it;
only an explicit close() is final.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, Self, runtime_checkable

from qspider import constants
from qspider._logging import get_logger
from qspider.exceptions import ChannelClosedError, ChannelConnectionError, DecodeError, TransportError
from qspider.framing import FrameDecoder

if TYPE_CHECKING:
    import types

logger = get_logger(__name__)


class ConnectionState(Enum):
    """Physical connection state of a ControlChannel."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@runtime_checkable
class FrameListener(Protocol):
    """Receiver of decoded frames and connection loss notifications."""

    def frame_received(self, frame: Any) -> None:
        """Called for every decoded frame, in arrival order."""
        ...

    def connection_lost(self, exc: ChannelClosedError) -> None:
        """Called once per lost connection and once on close()."""
        ...


class ControlChannel:
    """Persistent QMP connection with lazy (re)open.

    Usage:
        channel = ControlChannel("127.0.0.1", 50123)
        channel.add_listener(correlator)
        await channel.open()
        await channel.send({"execute": "query-status", "id": "abc"})
        await channel.close()
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_timeout: float = constants.CONNECT_TIMEOUT_SECONDS,
        max_frame_bytes: int = constants.MAX_FRAME_BYTES,
    ) -> None:
        self.host = host
        self.port = port
        self._connect_timeout = connect_timeout
        self._max_frame_bytes = max_frame_bytes
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._state = ConnectionState.DISCONNECTED
        self._capabilities_negotiated = False
        self._listeners: list[FrameListener] = []
        self._open_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._connect_count = 0

    @property
    def endpoint(self) -> tuple[str, int]:
        return self.host, self.port

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def capabilities_negotiated(self) -> bool:
        return self._capabilities_negotiated

    @property
    def connect_count(self) -> int:
        """Number of physical connections established so far."""
        return self._connect_count

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: FrameListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: FrameListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> None:
        """Connect and negotiate capabilities. No-op if already connected.

        Raises:
            ChannelConnectionError: TCP connect refused or timed out
            ChannelClosedError: Channel was closed with close()
        """
        async with self._open_lock:
            if self._state == ConnectionState.CLOSED:
                raise ChannelClosedError("Control channel is closed", {"endpoint": self.endpoint})
            if self._state == ConnectionState.CONNECTED:
                return

            self._state = ConnectionState.CONNECTING
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(self.host, self.port),
                    timeout=self._connect_timeout,
                )
            except TimeoutError as e:
                self._reset_after_failed_connect()
                msg = f"QMP connection timed out after {self._connect_timeout}s"
                raise ChannelConnectionError(msg, {"endpoint": self.endpoint}) from e
            except OSError as e:
                self._reset_after_failed_connect()
                msg = f"QMP connection failed: {e}"
                raise ChannelConnectionError(msg, {"endpoint": self.endpoint}) from e

            if self._state == ConnectionState.CLOSED:
                # close() ran while the connect was in flight
                await self._close_writer(writer)
                raise ChannelClosedError("Control channel closed while connecting", {"endpoint": self.endpoint})

            self._reader = reader
            self._writer = writer
            self._capabilities_negotiated = False
            self._state = ConnectionState.CONNECTED
            self._connect_count += 1
            self._read_task = asyncio.create_task(
                self._read_loop(reader, FrameDecoder(self._max_frame_bytes)),
                name=f"qmp-read-{self.port}",
            )
            logger.debug(
                "QMP connection established",
                extra={"endpoint": self.endpoint, "connect_count": self._connect_count},
            )

            try:
                await self.negotiate_capabilities()
            except TransportError as e:
                if self._state == ConnectionState.CLOSED:
                    raise ChannelClosedError(
                        "Control channel closed during handshake", {"endpoint": self.endpoint}
                    ) from e
                await self._drop_connection()
                raise
            if self._state == ConnectionState.CLOSED:
                raise ChannelClosedError("Control channel closed during handshake", {"endpoint": self.endpoint})

    async def negotiate_capabilities(self) -> None:
        """Send the qmp_capabilities handshake once per physical connection.

        The handshake carries no id, so its ``{"return": {}}`` reply is
        ignored by correlators like any other unsolicited frame. QEMU
        processes the handshake before any command written after it.
        """
        if self._capabilities_negotiated:
            return
        await self.send({"execute": constants.QMP_CAPABILITIES_COMMAND})
        self._capabilities_negotiated = True

    async def send(self, message: dict[str, Any]) -> None:
        """Write one message as a JSON line.

        Raises:
            TransportError: Not connected or the write failed
        """
        data = json.dumps(message).encode() + b"\n"
        async with self._write_lock:
            writer = self._writer
            if self._state != ConnectionState.CONNECTED or writer is None:
                raise TransportError(
                    f"Cannot send on {self._state.value} channel",
                    {"endpoint": self.endpoint, "execute": message.get("execute")},
                )
            try:
                writer.write(data)
                await writer.drain()
            except (OSError, RuntimeError) as e:
                raise TransportError(
                    f"QMP write failed: {e}",
                    {"endpoint": self.endpoint, "execute": message.get("execute")},
                ) from e
        logger.debug("QMP send: %s", message)

    async def close(self) -> None:
        """Close the channel for good. Idempotent.

        Listeners are told the connection is gone so pending commands fail
        instead of waiting forever.
        """
        if self._state == ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSED
        self._capabilities_negotiated = False
        writer = self._detach_writer()
        self._notify_lost(ChannelClosedError("Control channel closed", {"endpoint": self.endpoint}))

        await self._stop_read_task()
        await self._close_writer(writer)
        logger.debug("QMP channel closed", extra={"endpoint": self.endpoint, "had_connection": writer is not None})

    async def __aenter__(self) -> Self:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _read_loop(self, reader: asyncio.StreamReader, decoder: FrameDecoder) -> None:
        """Read chunks, decode frames, dispatch to listeners until EOF."""
        reason = "EOF"
        try:
            while True:
                chunk = await reader.read(constants.READ_CHUNK_BYTES)
                if not chunk:
                    self._dispatch(decoder.feed_eof())
                    break
                self._dispatch(decoder.feed(chunk))
        except OSError as e:
            reason = f"{type(e).__name__}: {e}"
        # CancelledError propagates: close() owns cleanup in that case

        if self._state == ConnectionState.CLOSED or self._reader is not reader:
            return
        logger.info("QMP connection lost", extra={"endpoint": self.endpoint, "reason": reason})
        self._read_task = None
        await self._drop_connection(reason)

    def _reset_after_failed_connect(self) -> None:
        if self._state != ConnectionState.CLOSED:
            self._state = ConnectionState.DISCONNECTED

    def _dispatch(self, items: list[Any]) -> None:
        for item in items:
            if isinstance(item, DecodeError):
                logger.warning(
                    "Discarding malformed QMP frame",
                    extra={"endpoint": self.endpoint, "raw": item.context.get("raw")},
                )
                continue
            logger.debug("QMP recv: %s", item)
            # Snapshot: listeners may deregister themselves while handling
            for listener in list(self._listeners):
                try:
                    listener.frame_received(item)
                except Exception:
                    logger.exception("QMP frame listener failed", extra={"endpoint": self.endpoint})

    async def _drop_connection(self, reason: str = "handshake failed") -> None:
        """Return to DISCONNECTED after a detected failure and fail waiters.

        State, stream detach and listener notification happen before the
        first await, so a reopen racing with teardown never sees (or has its
        new commands failed by) the old connection.
        """
        if self._state == ConnectionState.CLOSED:
            return
        self._state = ConnectionState.DISCONNECTED
        self._capabilities_negotiated = False
        writer = self._detach_writer()
        self._notify_lost(ChannelClosedError(f"QMP connection lost ({reason})", {"endpoint": self.endpoint}))

        await self._stop_read_task()
        await self._close_writer(writer)

    def _detach_writer(self) -> asyncio.StreamWriter | None:
        writer = self._writer
        self._writer = None
        self._reader = None
        return writer

    async def _stop_read_task(self) -> None:
        task = self._read_task
        self._read_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter | None) -> None:
        if writer is not None:
            writer.close()
            with contextlib.suppress(TimeoutError, OSError):
                await asyncio.wait_for(writer.wait_closed(), timeout=1.0)

    def _notify_lost(self, exc: ChannelClosedError) -> None:
        for listener in list(self._listeners):
            try:
                listener.connection_lost(exc)
            except Exception:
                logger.exception("QMP listener connection_lost failed", extra={"endpoint": self.endpoint})
