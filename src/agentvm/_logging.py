"""Logging setup for agentvm.

The package logs through the ``agentvm`` logger hierarchy and, as a
library, only attaches a NullHandler.  Hosts embedding VmOrchestrator
bring their own handlers; the CLI calls configure_logging().

Modules pass structured fields through ``extra`` (``vm_id``, ``tap``,
``pid``...).  The CLI formatter appends them as ``key=value`` pairs:

    WARNING [2026-02-25 10:02:54] agentvm.network_pool - Rejected TAP adoption vm_id=fc-1a2b3c4d tap=tap0

AGENTVM_LOG_LEVEL sets the initial level of the ``agentvm`` logger.

Boot and restore tasks of many VMs log from the event loop at once, so
the CLI handler only enqueues; a listener thread writes to stderr.  A
full queue drops records rather than stalling the loop.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME = "agentvm"
LOG_LEVEL_ENV_VAR = "AGENTVM_LOG_LEVEL"

_LINE_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_QUEUE_SIZE = 4096

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}

_LEVEL_COLORS = {logging.WARNING: "yellow", logging.ERROR: "red", logging.CRITICAL: "red"}


def level_from_env(value: str | None) -> int | None:
    """Numeric level for a level name such as ``"debug"``; None when unset or unknown."""
    if not value:
        return None
    level = logging.getLevelNamesMapping().get(value.strip().upper())
    return level or None


def get_logger(name: str) -> logging.Logger:
    """Module logger; callers pass ``__name__`` so names stay under ``agentvm``."""
    return logging.getLogger(name)


_library_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_library_logger.addHandler(logging.NullHandler())
if (_env_level := level_from_env(os.environ.get(LOG_LEVEL_ENV_VAR))) is not None:
    _library_logger.setLevel(_env_level)


class FieldsFormatter(logging.Formatter):
    """Standard line plus the record's ``extra`` fields as ``key=value``."""

    def __init__(self) -> None:
        super().__init__(fmt=_LINE_FORMAT, datefmt=_DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = " ".join(
            f"{key}={value}"
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and not key.startswith("_") and value is not None
        )
        if not fields:
            return line
        head, sep, trace = line.partition("\n")
        return f"{head} {fields}{sep}{trace}"


class _StderrHandler(logging.Handler):
    """Writes formatted records to stderr, colored by severity.

    Called on the listener thread.  click.echo drops the styling when
    stderr is not a terminal.
    """

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(FieldsFormatter())

    def emit(self, record: logging.LogRecord) -> None:
        try:
            color = _LEVEL_COLORS.get(record.levelno)
            text = self.format(record)
            click.echo(click.style(text, fg=color) if color else click.style(text, dim=True), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class QueuedCliHandler(logging.handlers.QueueHandler):
    """Enqueue-only handler feeding a _StderrHandler on a listener thread."""

    def __init__(self, maxsize: int = _QUEUE_SIZE) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=maxsize)
        super().__init__(records)
        self.listener = logging.handlers.QueueListener(records, _StderrHandler())
        self.listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: keep args, exc_info and extra fields for the formatter.
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self.listener.stop()
        super().close()


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Route ``agentvm`` logs to stderr for the CLI.

    Safe to call more than once: the queued handler is only added the
    first time.  ``quiet`` wins over ``level``, and ``level`` wins over
    AGENTVM_LOG_LEVEL.
    """
    if not any(isinstance(h, QueuedCliHandler) for h in _library_logger.handlers):
        _library_logger.addHandler(QueuedCliHandler())

    if quiet:
        _library_logger.setLevel(logging.ERROR)
    elif level is not None:
        _library_logger.setLevel(level)
