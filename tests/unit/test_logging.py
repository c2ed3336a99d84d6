"""Tests for logging configuration and behavior."""

import logging

import pytest

from simcal.config import load_control
from simcal.config.schema import LoggingConfig
from simcal.logging import DEEP_DEBUG, SimcalLogger, configure_logging, getLogger


class TestSimcalLogger:
    """Test custom SimcalLogger functionality."""

    def test_logger_has_deep_method(self):
        logger = getLogger("simcal.test")
        assert isinstance(logger, SimcalLogger)
        assert callable(logger.deep)

    def test_deep_level_exists(self):
        assert DEEP_DEBUG == 5
        assert logging.getLevelName(DEEP_DEBUG) == "DEEP"

    def test_deep_logging_when_enabled(self, caplog):
        logger = getLogger("test.deep")
        logger.setLevel(DEEP_DEBUG)

        with caplog.at_level(DEEP_DEBUG, logger="test.deep"):
            logger.deep("Deep debug message")

        assert "Deep debug message" in caplog.text

    def test_deep_logging_when_disabled(self, caplog):
        logger = getLogger("test.deep_disabled")
        logger.setLevel(logging.INFO)

        with caplog.at_level(logging.INFO, logger="test.deep_disabled"):
            logger.deep("Should not appear")

        assert "Should not appear" not in caplog.text


class TestConfigureLogging:
    """Test applying the logging section of a control object."""

    def test_default_level_is_info(self):
        configure_logging(load_control().logging)
        assert logging.getLogger("simcal").level == logging.INFO

    def test_deep_debug_by_name(self):
        configure_logging(LoggingConfig(level="DEEP_DEBUG"))
        assert logging.getLogger("simcal").level == DEEP_DEBUG

    def test_not_verbose_raises_to_warning(self):
        configure_logging(LoggingConfig(level="DEBUG", verbose=False))
        assert logging.getLogger("simcal").level == logging.WARNING

    def test_not_verbose_keeps_higher_level(self):
        configure_logging(LoggingConfig(level="ERROR", verbose=False))
        assert logging.getLogger("simcal").level == logging.ERROR

    def test_module_overrides(self):
        configure_logging(
            LoggingConfig(
                level="INFO",
                modules={"worker": "DEBUG", "simcal.dispatch": "ERROR"},
            )
        )
        assert logging.getLogger("simcal.worker").level == logging.DEBUG
        assert logging.getLogger("simcal.dispatch").level == logging.ERROR

        # Reset so other tests see inherited levels
        logging.getLogger("simcal.worker").setLevel(logging.NOTSET)
        logging.getLogger("simcal.dispatch").setLevel(logging.NOTSET)

    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging(LoggingConfig(level="LOUD"))
