"""Unit tests for logging configuration."""

import logging

import pytest
import structlog

from chirpstack_importer.observability.logger import (
    TRACE,
    VERBOSE,
    LogContext,
    configure_logging,
    get_log_level,
    mask_secret,
    redact_secrets,
)


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    saved_level = root.level
    saved_handlers = root.handlers[:]
    saved_levels = {
        name: logger.level
        for name, logger in logging.root.manager.loggerDict.items()
        if isinstance(logger, logging.Logger)
    }
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers = saved_handlers
    root.setLevel(saved_level)
    for name, logger in logging.root.manager.loggerDict.items():
        if isinstance(logger, logging.Logger):
            logger.setLevel(saved_levels.get(name, logging.NOTSET))
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestLogLevels:
    """Test level names."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("trace", TRACE),
            ("DEBUG", logging.DEBUG),
            ("verbose", VERBOSE),
            ("INFO", logging.INFO),
            ("error", logging.ERROR),
            ("nonsense", logging.INFO),
        ],
    )
    def test_get_log_level(self, name, expected):
        """Test names are case-insensitive with an INFO fallback."""
        assert get_log_level(name) == expected

    def test_custom_level_names(self):
        """Test custom levels are registered with logging."""
        assert logging.getLevelName(TRACE) == "TRACE"
        assert logging.getLevelName(VERBOSE) == "VERBOSE"


class TestLogContext:
    """Test run-scoped context binding."""

    def test_context_manager_restores(self, restore_logging):
        """Test nested contexts merge and unwind."""
        with LogContext(run_id="run_1"):
            with LogContext(operation="Delete"):
                assert structlog.contextvars.get_contextvars() == {
                    "run_id": "run_1",
                    "operation": "Delete",
                }
            assert structlog.contextvars.get_contextvars() == {"run_id": "run_1"}
        assert structlog.contextvars.get_contextvars() == {}

    def test_inner_value_is_restored(self, restore_logging):
        """Test rebinding a key inside a block restores the outer value."""
        with LogContext(operation="Import"):
            with LogContext(operation="Undo"):
                assert structlog.contextvars.get_contextvars()["operation"] == "Undo"
            assert structlog.contextvars.get_contextvars()["operation"] == "Import"

    def test_restored_after_exception(self, restore_logging):
        """Test the context unwinds when the block raises."""
        with pytest.raises(RuntimeError):
            with LogContext(run_id="run_1"):
                raise RuntimeError("boom")
        assert structlog.contextvars.get_contextvars() == {}


class TestRedaction:
    """Test secret masking."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("00112233445566778899aabbccddeeff", "****eeff"),
            ("short", "****"),
            ("12345678", "****"),
        ],
    )
    def test_mask_secret(self, value, expected):
        """Test only the last four characters survive."""
        assert mask_secret(value) == expected

    def test_processor_masks_secret_fields(self):
        """Test secret fields are masked and other fields left alone."""
        event = redact_secrets(
            None,
            "info",
            {
                "event": "Device created",
                "dev_eui": "0102030405060708",
                "app_key": "00112233445566778899aabbccddeeff",
                "nwk_key": None,
            },
        )

        assert event == {
            "event": "Device created",
            "dev_eui": "0102030405060708",
            "app_key": "****eeff",
            "nwk_key": None,
        }


class TestConfigureLogging:
    """Test configure_logging function."""

    def test_levels(self, restore_logging):
        """Test root and httpx levels."""
        configure_logging(level="DEBUG")

        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_json_file_output(self, restore_logging, tmp_path):
        """Test JSON lines reach the log file."""
        log_file = tmp_path / "logs" / "import.log"
        configure_logging(level="INFO", json_logs=True, log_file=log_file)

        structlog.get_logger("chirpstack_importer.test").info("Run finished", run_id="run_1")
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text()
        assert '"event": "Run finished"' in content
        assert '"run_id": "run_1"' in content

    def test_json_output_masks_secrets(self, restore_logging, tmp_path):
        """Test secrets never reach the log file."""
        log_file = tmp_path / "import.log"
        configure_logging(level="INFO", json_logs=True, log_file=log_file)

        with LogContext(run_id="run_2"):
            structlog.get_logger("chirpstack_importer.test").info(
                "Keys set", app_key="00112233445566778899aabbccddeeff"
            )
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text()
        assert "00112233445566778899aabbccddeeff" not in content
        assert '"app_key": "****eeff"' in content
        assert '"run_id": "run_2"' in content

    def test_log_filter(self, restore_logging):
        """Test loggers outside the filter are raised to WARNING."""
        logging.getLogger("chirpstack_importer.registry.client")
        logging.getLogger("chirpstack_importer.execution.executor")

        configure_logging(level="DEBUG", log_filter="executor")

        assert logging.getLogger("chirpstack_importer.registry.client").level == logging.WARNING
        assert logging.getLogger("chirpstack_importer.execution.executor").level == logging.NOTSET
