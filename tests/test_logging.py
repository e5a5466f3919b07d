"""Tests for runguard logging."""

import logging

import pytest

from runguard.core.logging import LogLevel, StructuredLogger, setup_logging


class TestLogLevel:
    """Tests for choosing the level from CLI flags."""

    @pytest.mark.parametrize(
        "verbose,quiet,expected",
        [
            (2, False, LogLevel.DEBUG),
            (1, True, LogLevel.INFO),
            (0, True, LogLevel.ERROR),
            (0, False, LogLevel.WARNING),
        ],
    )
    def test_from_flags(self, verbose, quiet, expected):
        assert LogLevel.from_flags(verbose, quiet, default=LogLevel.WARNING) == expected

    def test_numeric(self):
        assert LogLevel.DEBUG.numeric == logging.DEBUG


class TestStructuredLogger:
    """Tests for run-context formatting."""

    def test_names_live_under_runguard(self):
        assert StructuredLogger("context")._logger.name == "runguard.context"
        assert StructuredLogger("runguard.engine.store")._logger.name == "runguard.engine.store"

    def test_run_identifiers_lead(self):
        log = StructuredLogger("engine").bind(attempt=2, step="backup", run_id="abc123")

        assert log.format("Retrying") == "Retrying [run_id=abc123 step=backup attempt=2]"

    def test_none_values_are_dropped(self):
        assert StructuredLogger("engine").format("Done", run_id="abc", error=None) == "Done [run_id=abc]"

    def test_values_with_spaces_are_quoted(self):
        message = StructuredLogger("engine").format("Manual step", instruction="drain the pool")

        assert message == "Manual step [instruction='drain the pool']"

    def test_long_values_are_truncated(self):
        message = StructuredLogger("engine").format("Output", value="x" * 500)

        assert len(message) < 250
        assert message.endswith("...]")

    def test_bind_does_not_change_parent(self):
        parent = StructuredLogger("engine", run_id="abc")
        parent.bind(step="a")

        assert parent.format("msg") == "msg [run_id=abc]"

    def test_messages_reach_handlers(self, caplog):
        setup_logging(LogLevel.DEBUG, rich_output=False)
        log = StructuredLogger("engine").bind(run_id="abc")

        with caplog.at_level(logging.DEBUG, logger="runguard"):
            log.info("Starting run", resource="db-1")

        assert "Starting run [run_id=abc resource=db-1]" in caplog.messages


class TestSetupLogging:
    """Tests for handler installation."""

    def test_repeated_setup_keeps_one_handler(self):
        setup_logging(LogLevel.INFO, rich_output=False)
        logger = setup_logging(LogLevel.ERROR, rich_output=True)

        owned = [h for h in logger.handlers if getattr(h, "_runguard", False)]
        assert len(owned) == 1
        assert logger.level == logging.ERROR

    def test_root_handlers_are_left_alone(self):
        root = logging.getLogger()
        before = list(root.handlers)

        setup_logging(LogLevel.INFO, rich_output=False)

        assert root.handlers == before
