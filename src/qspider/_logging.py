"""Logging setup shared by the qspider library and CLI.

The library only attaches a NullHandler to the ``qspider`` logger; output
handlers are installed by configure_logging(), which the CLI calls once.
QSPIDER_LOG_LEVEL sets the initial level at import time.

CLI lines look like:
    12:04:31 WARNING  qspider.vm_session [vm=3f9a1c0b2e]: QEMU still running 3.0s after SIGTERM

Records are handed to a bounded queue and written to stderr by a
QueueListener thread, so a slow terminal never stalls the event loop that
is polling QMP. Records that arrive while the queue is full are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "qspider"

_QUEUE_CAPACITY = 4096


def _level_from_env() -> int | None:
    name = os.environ.get("QSPIDER_LOG_LEVEL", "").strip().upper()
    return logging.getLevelNamesMapping().get(name) or None


_library_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_library_logger.addHandler(logging.NullHandler())
if (_initial_level := _level_from_env()) is not None:
    _library_logger.setLevel(_initial_level)


class _VmFormatter(logging.Formatter):
    """Tags lines with the ``vm_id`` extra when a record carries one."""

    def __init__(self) -> None:
        super().__init__(fmt="%(asctime)s %(levelname)-8s %(name)s%(vm_tag)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        vm_id = getattr(record, "vm_id", None)
        record.vm_tag = f" [vm={vm_id}]" if vm_id else ""
        return super().format(record)


class _StderrEchoHandler(logging.Handler):
    """Echoes records to stderr, dimmed on a TTY. Runs on the listener thread."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(_VmFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """QueueHandler that drops records instead of waiting on a full queue."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _StderrEchoHandler())
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # In-process queue: the listener formats the original record.
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Module logger under the ``qspider`` hierarchy."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Route qspider logs to stderr. Safe to call more than once.

    Args:
        level: Level name or number, overriding QSPIDER_LOG_LEVEL
        quiet: Log errors only (wins over ``level``)

    Raises:
        ValueError: Unknown level name
    """
    if not any(isinstance(h, _NonBlockingHandler) for h in _library_logger.handlers):
        _library_logger.addHandler(_NonBlockingHandler())

    if quiet:
        _library_logger.setLevel(logging.ERROR)
    elif level is not None:
        _library_logger.setLevel(level)
