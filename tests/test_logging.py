"""Tests for the logging helpers: field formatting, env level parsing, CLI handler."""

import logging
import queue
import sys
from collections.abc import Iterator

import pytest

from agentvm._logging import (
    LIBRARY_LOGGER_NAME,
    FieldsFormatter,
    QueuedCliHandler,
    configure_logging,
    get_logger,
    level_from_env,
)


def make_record(msg: str = "TAP released", **extra: object) -> logging.LogRecord:
    record = logging.makeLogRecord(
        {"name": "agentvm.network_pool", "levelno": logging.INFO, "levelname": "INFO", "msg": msg}
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def library_logger() -> Iterator[logging.Logger]:
    """The package logger, with handlers and level restored afterwards."""
    logger = logging.getLogger(LIBRARY_LOGGER_NAME)
    handlers, level = list(logger.handlers), logger.level
    yield logger
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)


# ============================================================================
# Formatting
# ============================================================================


class TestFieldsFormatter:
    def test_appends_extra_fields(self) -> None:
        line = FieldsFormatter().format(make_record(vm_id="fc-1a2b3c4d", tap="tap0"))

        assert line.startswith("INFO [")
        assert line.endswith("agentvm.network_pool - TAP released vm_id=fc-1a2b3c4d tap=tap0")

    def test_plain_record_unchanged(self) -> None:
        line = FieldsFormatter().format(make_record())

        assert line.endswith("- TAP released")

    def test_none_fields_omitted(self) -> None:
        line = FieldsFormatter().format(make_record(vm_id="fc-1", owner=None))

        assert line.endswith("TAP released vm_id=fc-1")

    def test_fields_stay_on_first_line_with_traceback(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = make_record(vm_id="fc-1")
            record.exc_info = sys.exc_info()

        first, _, rest = FieldsFormatter().format(record).partition("\n")

        assert first.endswith("TAP released vm_id=fc-1")
        assert "RuntimeError: boom" in rest


# ============================================================================
# Levels and handlers
# ============================================================================


class TestLevelFromEnv:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("DEBUG", logging.DEBUG), (" warning ", logging.WARNING), ("error", logging.ERROR)],
    )
    def test_known_names(self, value: str, expected: int) -> None:
        assert level_from_env(value) == expected

    @pytest.mark.parametrize("value", [None, "", "NOTSET", "verbose"])
    def test_unset_or_unknown(self, value: str | None) -> None:
        assert level_from_env(value) is None


class TestConfigureLogging:
    def test_library_logger_has_null_handler(self) -> None:
        handlers = logging.getLogger(LIBRARY_LOGGER_NAME).handlers

        assert any(isinstance(h, logging.NullHandler) for h in handlers)
        assert get_logger("agentvm.orchestrator").parent.name == LIBRARY_LOGGER_NAME

    def test_idempotent(self, library_logger: logging.Logger) -> None:
        configure_logging()
        configure_logging()

        assert sum(isinstance(h, QueuedCliHandler) for h in library_logger.handlers) == 1

    def test_quiet_wins_over_level(self, library_logger: logging.Logger) -> None:
        configure_logging(level="DEBUG", quiet=True)

        assert library_logger.level == logging.ERROR

    def test_explicit_level(self, library_logger: logging.Logger) -> None:
        configure_logging(level=logging.DEBUG)

        assert library_logger.level == logging.DEBUG


class TestQueuedCliHandler:
    def test_full_queue_drops_instead_of_blocking(self) -> None:
        handler = QueuedCliHandler(maxsize=1)
        handler.listener.stop()
        try:
            handler.handle(make_record("first"))
            handler.handle(make_record("second"))

            assert handler.queue.get_nowait().msg == "first"
            with pytest.raises(queue.Empty):
                handler.queue.get_nowait()
        finally:
            handler.close()

    def test_records_reach_stderr_with_fields(self, capsys: pytest.CaptureFixture[str]) -> None:
        handler = QueuedCliHandler()
        handler.handle(make_record("VM stopped", vm_id="fc-1"))
        handler.close()

        assert "VM stopped vm_id=fc-1" in capsys.readouterr().err
