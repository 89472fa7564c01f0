"""Shared pytest fixtures for qspider tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from qspider.control_channel import ControlChannel
from qspider.correlator import CommandCorrelator

# ============================================================================
# Fake QMP server
# ============================================================================

GREETING = {"QMP": {"version": {"qemu": {"major": 8, "minor": 2, "micro": 0}}, "capabilities": []}}

# Handler: command dict -> reply dict (sent as-is), or None for no reply
Handler = Callable[[dict[str, Any]], dict[str, Any] | None]


def ok(command: dict[str, Any], value: Any = None) -> dict[str, Any]:
    """Success reply echoing the command id."""
    reply: dict[str, Any] = {"return": {} if value is None else value}
    if "id" in command:
        reply["id"] = command["id"]
    return reply


class FakeQmpServer:
    """In-process QMP endpoint on 127.0.0.1.

    Sends the greeting on connect, answers qmp_capabilities, and replies to
    every other command through ``handler`` (default: empty success).
    Received commands are recorded per connection.
    """

    def __init__(self) -> None:
        self.handler: Handler = ok
        self.connections: list[list[dict[str, Any]]] = []
        self._writers: list[asyncio.StreamWriter] = []
        self._server: asyncio.Server | None = None
        self.port = 0

    @property
    def commands(self) -> list[dict[str, Any]]:
        """Every command received, across connections, in order."""
        return [cmd for conn in self.connections for cmd in conn]

    @property
    def executed(self) -> list[str]:
        return [cmd["execute"] for cmd in self.commands]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._serve, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        await self.drop_connections()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def drop_connections(self) -> None:
        """Close every client connection from the server side."""
        writers, self._writers = self._writers, []
        for writer in writers:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    async def push(self, frame: dict[str, Any] | bytes) -> None:
        """Send an unsolicited frame (or raw bytes) to every client."""
        data = frame if isinstance(frame, bytes) else json.dumps(frame).encode() + b"\r\n"
        for writer in self._writers:
            writer.write(data)
            await writer.drain()

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        received: list[dict[str, Any]] = []
        self.connections.append(received)
        self._writers.append(writer)
        writer.write(json.dumps(GREETING).encode() + b"\r\n")
        await writer.drain()
        try:
            async for line in reader:
                command = json.loads(line)
                received.append(command)
                if command["execute"] == "qmp_capabilities":
                    reply: dict[str, Any] | None = {"return": {}}
                else:
                    reply = self.handler(command)
                if reply is not None:
                    writer.write(json.dumps(reply).encode() + b"\r\n")
                    await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            pass


@pytest.fixture
async def qmp_server() -> AsyncGenerator[FakeQmpServer, None]:
    server = FakeQmpServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def channel(qmp_server: FakeQmpServer) -> AsyncGenerator[ControlChannel, None]:
    ch = ControlChannel("127.0.0.1", qmp_server.port, connect_timeout=2.0)
    yield ch
    await ch.close()


@pytest.fixture
def correlator(channel: ControlChannel) -> CommandCorrelator:
    return CommandCorrelator(channel)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def hold_connects(monkeypatch: pytest.MonkeyPatch) -> asyncio.Event:
    """Make ControlChannel's TCP connect wait until the returned event is set."""
    release = asyncio.Event()
    real_open_connection = asyncio.open_connection

    async def gated_open_connection(host: str, port: int) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        await release.wait()
        return await real_open_connection(host, port)

    monkeypatch.setattr("qspider.control_channel.asyncio.open_connection", gated_open_connection)
    return release


# ============================================================================
# Fake QEMU process
# ============================================================================


def make_fake_process(
    *,
    pid: int = 4242,
    running: bool = True,
    stderr_lines: list[bytes] | None = None,
) -> MagicMock:
    """ProcessWrapper stand-in whose wait() blocks until ``exit_event`` is set."""
    exit_event = asyncio.Event()
    proc = MagicMock()
    proc.pid = pid
    proc.returncode = None if running else 1
    proc.stdout = None
    if stderr_lines is None:
        proc.stderr = None
    else:
        stream = asyncio.StreamReader()
        for line in stderr_lines:
            stream.feed_data(line)
        stream.feed_eof()
        proc.stderr = stream

    async def wait() -> int:
        await exit_event.wait()
        return proc.returncode if proc.returncode is not None else 0

    async def exit_with(code: int = 0) -> None:
        proc.returncode = code
        exit_event.set()

    async def wait_with_timeout(timeout: float) -> int:
        return await asyncio.wait_for(wait(), timeout)

    async def terminate() -> None:
        await exit_with(-15)

    async def kill() -> None:
        await exit_with(-9)

    proc.is_running = AsyncMock(return_value=running)
    proc.wait = AsyncMock(side_effect=wait)
    proc.wait_with_timeout = AsyncMock(side_effect=wait_with_timeout)
    proc.terminate = AsyncMock(side_effect=terminate)
    proc.kill = AsyncMock(side_effect=kill)
    proc.exit_with = exit_with
    if not running:
        exit_event.set()
    return proc
