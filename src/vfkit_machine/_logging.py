"""Logging for vfkit-machine.

The library only attaches a NullHandler to ``vfkit_machine``; output is
the CLI's decision.  ``VFKIT_MACHINE_LOG_LEVEL`` sets the initial level and
``configure_logging()`` installs the stderr handler used by the CLI.

Modules log with ``extra={...}`` (machine name, pid, role, MAC, paths).
The CLI formatter keeps that context on the line, in insertion order:

    INFO [2026-02-25 10:02:54] vfkit_machine.machine - Starting vfkit VM... (machine=dev path=.../machines/dev)

Records pass through a bounded in-process queue drained by a listener
thread, so a slow or full stderr never stalls the event loop.  Records
that do not fit in the queue are dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "vfkit_machine"
LOG_LEVEL_ENV: str = "VFKIT_MACHINE_LOG_LEVEL"

_LINE_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"
_QUEUE_CAPACITY = 1024

# Attributes every LogRecord carries; anything else came from extra=
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


def _level_from_env() -> int | None:
    name = os.environ.get(LOG_LEVEL_ENV, "").strip().upper()
    level = logging.getLevelNamesMapping().get(name)
    return level or None  # NOTSET means "not configured"


_library_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_library_logger.addHandler(logging.NullHandler())
if (_env_level := _level_from_env()) is not None:
    _library_logger.setLevel(_env_level)


def record_context(record: logging.LogRecord) -> dict[str, object]:
    """Return the ``extra`` fields attached to a record."""
    return {key: value for key, value in record.__dict__.items() if key not in _RECORD_ATTRS}


class ContextFormatter(logging.Formatter):
    """Line formatter that appends the record's ``extra`` fields as key=value pairs."""

    def __init__(self) -> None:
        super().__init__(fmt=_LINE_FMT, datefmt=_DATE_FMT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        # Keep any traceback below the context
        head, sep, tail = line.partition("\n")
        return f"{head} ({pairs}){sep}{tail}"


class _ClickHandler(logging.Handler):
    """Listener-side handler: dim lines on stderr via click (ANSI stripped off a TTY)."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(ContextFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass  # stderr full
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _QueuedCliHandler(logging.handlers.QueueHandler):
    """Hands records to a listener thread; drops them when the queue is full."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the listener formats the original record, extra fields included
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a module under the ``vfkit_machine`` hierarchy."""
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send library logs to stderr for the CLI.

    Safe to call more than once; only one queued handler is ever installed.

    Args:
        level: Explicit level, overriding VFKIT_MACHINE_LOG_LEVEL.
        quiet: Only errors. Wins over ``level``.
    """
    if not any(isinstance(handler, _QueuedCliHandler) for handler in _library_logger.handlers):
        _library_logger.addHandler(_QueuedCliHandler())

    if quiet:
        _library_logger.setLevel(logging.ERROR)
    elif level is not None:
        _library_logger.setLevel(level)
