"""Command correlation over a QMP control channel.

Every outgoing command carries a fresh ``id``; QEMU echoes it in the
matching ``return``/``error`` frame. The correlator keeps one future per
outstanding id and resolves it when the echo arrives, so any number of
commands can be in flight on one channel and complete in any order.

Unsolicited traffic (the ``QMP`` greeting, ``event`` frames, the reply to
the id-less capabilities handshake) and replies for ids nobody is waiting
on are dropped.

The id -> future map is only touched from the event loop thread, and every
lookup-and-mutate happens without an intervening ``await``, so registration
and resolution cannot interleave.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from qspider import constants
from qspider._logging import get_logger
from qspider.exceptions import ChannelClosedError, CommandTimeoutError, RemoteCommandError
from qspider.models import QmpCommand

if TYPE_CHECKING:
    from qspider.control_channel import ControlChannel

logger = get_logger(__name__)


@dataclass(slots=True)
class PendingCommand:
    """A sent command waiting for its response."""

    id: str
    command: QmpCommand
    future: asyncio.Future[Any] = field(repr=False)


class CommandCorrelator:
    """Matches QMP responses to requests by id.

    Registers itself as a FrameListener on the channel it is given.

    Usage:
        correlator = CommandCorrelator(channel)
        stats = await correlator.execute("query-blockstats")
        await correlator.execute("balloon", {"value": 256 * 1024 * 1024}, timeout=5.0)
    """

    def __init__(self, channel: ControlChannel, *, default_timeout: float | None = None) -> None:
        self._channel = channel
        self._default_timeout = default_timeout
        self._pending: dict[str, PendingCommand] = {}
        channel.add_listener(self)

    @property
    def channel(self) -> ControlChannel:
        return self._channel

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a command and wait for its own response.

        Opens the channel (and negotiates capabilities) on first use;
        later commands reuse the same connection.

        Args:
            name: QMP command name (e.g. "query-block")
            arguments: Command arguments, omitted from the wire when None
            timeout: Deadline in seconds. None uses the correlator default;
                a None default waits until response or channel loss.

        Returns:
            The response's ``return`` value.

        Raises:
            ChannelConnectionError: Channel could not be opened
            TransportError: Command could not be written
            RemoteCommandError: QEMU answered with an error frame
            ChannelClosedError: Connection lost before the response arrived
            CommandTimeoutError: Deadline expired
        """
        await self._channel.open()

        command_id = self._new_id()
        command = QmpCommand(execute=name, arguments=arguments, id=command_id)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[command_id] = PendingCommand(command_id, command, future)

        deadline = timeout if timeout is not None else self._default_timeout
        try:
            await self._channel.send(command.to_wire())
            async with asyncio.timeout(deadline):
                return await future
        except TimeoutError as e:
            msg = f"QMP command {name!r} timed out after {deadline}s"
            raise CommandTimeoutError(msg, {"execute": name, "id": command_id}) from e
        finally:
            # No-op when frame_received/connection_lost already removed it
            self._pending.pop(command_id, None)
            if future.done() and not future.cancelled():
                # Connection can drop mid-send, failing a future nobody awaits
                future.exception()

    # -------------------------------------------------------------------------
    # FrameListener
    # -------------------------------------------------------------------------

    def frame_received(self, frame: Any) -> None:
        if not isinstance(frame, dict) or ("return" not in frame and "error" not in frame):
            return

        command_id = frame.get("id")
        if not isinstance(command_id, str):
            logger.debug("Ignoring QMP response without id", extra={"frame": frame})
            return
        pending = self._pending.pop(command_id, None)
        if pending is None:
            logger.debug("Ignoring QMP response for unknown id", extra={"id": command_id})
            return
        if pending.future.done():
            # Caller already gave up (cancelled/timed out)
            return

        if "error" in frame:
            error = frame["error"]
            desc = error.get("desc", error) if isinstance(error, dict) else error
            pending.future.set_exception(
                RemoteCommandError(
                    f"QMP command {pending.command.execute!r} failed: {desc}",
                    error,
                    {"execute": pending.command.execute, "id": command_id},
                )
            )
        else:
            pending.future.set_result(frame["return"])

    def connection_lost(self, exc: ChannelClosedError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(
                    ChannelClosedError(
                        f"{exc.message} while waiting for {entry.command.execute!r}",
                        {**exc.context, "execute": entry.command.execute, "id": entry.id},
                    )
                )
        if pending:
            logger.debug("Failed pending QMP commands on connection loss", extra={"count": len(pending)})

    def _new_id(self) -> str:
        while True:
            command_id = uuid4().hex[: constants.QMP_COMMAND_ID_LENGTH]
            if command_id not in self._pending:
                return command_id
