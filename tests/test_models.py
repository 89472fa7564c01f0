"""Tests for data models and the exception hierarchy."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from qspider.exceptions import (
    ChannelClosedError,
    ChannelConnectionError,
    CommandTimeoutError,
    CommunicationError,
    DecodeError,
    PermanentError,
    QSpiderError,
    RemoteCommandError,
    TransientError,
    TransportError,
    VmSpawnError,
    VmStateError,
)
from qspider.models import QmpCommand


class TestQmpCommand:
    def test_wire_form_omits_absent_fields(self) -> None:
        assert QmpCommand(execute="query-status").to_wire() == {"execute": "query-status"}

    def test_wire_form_full(self) -> None:
        command = QmpCommand(execute="balloon", arguments={"value": 1}, id="0123456789")
        assert command.to_wire() == {"execute": "balloon", "arguments": {"value": 1}, "id": "0123456789"}

    def test_immutable(self) -> None:
        command = QmpCommand(execute="query-status")
        with pytest.raises(ValidationError):
            command.execute = "quit"  # type: ignore[misc]


class TestExceptions:
    @pytest.mark.parametrize(
        "exc_type",
        [ChannelConnectionError, TransportError, ChannelClosedError],
    )
    def test_channel_errors_are_transient(self, exc_type: type[QSpiderError]) -> None:
        assert issubclass(exc_type, CommunicationError)
        assert issubclass(exc_type, TransientError)

    def test_markers(self) -> None:
        assert issubclass(CommandTimeoutError, TransientError)
        assert issubclass(VmSpawnError, TransientError)
        assert issubclass(RemoteCommandError, PermanentError)
        assert issubclass(VmStateError, PermanentError)
        assert not issubclass(DecodeError, (TransientError, PermanentError))

    def test_context_defaults_to_empty(self) -> None:
        err = TransportError("write failed")
        assert err.message == "write failed"
        assert err.context == {}
        assert str(err) == "write failed"

    def test_remote_error_payload(self) -> None:
        err = RemoteCommandError(
            "QMP command 'device_add' failed",
            {"class": "GenericError", "desc": "CPU socket-id is not set"},
            {"execute": "device_add"},
        )
        assert err.error_class == "GenericError"
        assert err.desc == "CPU socket-id is not set"
        assert err.context["execute"] == "device_add"
        assert err.context["error"]["class"] == "GenericError"

    def test_remote_error_non_dict_payload(self) -> None:
        err = RemoteCommandError("failed", "something odd")
        assert err.error_class is None
        assert err.desc == "something odd"
