"""
Tests for configuration and structured logging
"""

import json
import logging

import pytest

from loan_portfolio import config as config_module
from loan_portfolio.config import PortfolioConfig, reload_config
from loan_portfolio.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class TestPortfolioConfig:
    """Test environment-driven configuration"""

    def test_defaults(self):
        config = PortfolioConfig()

        assert config.storage_backend == "memory"
        assert config.default_currency == "BRL"
        assert config.late_penalty_rate == "0.02"
        assert config.discard_partial_schedules is True
        assert config.kpi_default_filter == "month"

    def test_precision_comes_from_currency(self):
        assert "currency_precision" not in PortfolioConfig.model_fields

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PORTFOLIO_STORAGE_BACKEND", "sqlite")
        monkeypatch.setenv("PORTFOLIO_RESYNC_AFTER_PAYMENT", "false")
        monkeypatch.setenv("PORTFOLIO_KPI_DEFAULT_FILTER", "year")

        config = PortfolioConfig()

        assert config.storage_backend == "sqlite"
        assert config.resync_after_payment is False
        assert config.kpi_default_filter == "year"

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("PORTFOLIO_LOG_LEVEL", "DEBUG")
        original = config_module.config
        try:
            reloaded = reload_config()
            assert reloaded.log_level == "DEBUG"
            assert config_module.get_config() is reloaded
        finally:
            config_module.config = original


class TestJSONFormatter:
    """Test structured log output"""

    def make_record(self, **attrs):
        record = logging.LogRecord("loan_portfolio.payments", logging.INFO, __file__, 10,
                                   "Recorded payment", None, None)
        for key, value in attrs.items():
            setattr(record, key, value)
        return record

    def test_structured_fields(self):
        record = self.make_record(action="payment_recorded", resource="loan:loan-1",
                                  extra={"amount": "424.00"})

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "loan_portfolio.payments"
        assert entry["message"] == "Recorded payment"
        assert entry["action"] == "payment_recorded"
        assert entry["resource"] == "loan:loan-1"
        assert entry["extra"] == {"amount": "424.00"}

    def test_missing_fields_are_omitted(self):
        entry = json.loads(JSONFormatter().format(self.make_record()))

        assert "action" not in entry
        assert "correlation_id" not in entry


class TestSetupLogging:
    """Test logger configuration"""

    def teardown_method(self):
        logger = logging.getLogger("loan_portfolio.test")
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()

    def test_json_to_file(self, tmp_path):
        log_file = tmp_path / "portfolio.log"
        logger = setup_logging("DEBUG", logger_name="loan_portfolio.test", log_file=str(log_file))

        log_action(get_logger("loan_portfolio.test"), "warning", "Schedule conflict",
                   action="schedule_conflict", resource="loan:loan-1",
                   extra={"expected": 3, "found": 2})
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip())
        assert entry["level"] == "WARNING"
        assert entry["action"] == "schedule_conflict"
        assert entry["extra"] == {"expected": 3, "found": 2}

    def test_setup_replaces_handlers(self):
        setup_logging(logger_name="loan_portfolio.test")
        logger = setup_logging(logger_name="loan_portfolio.test", fmt="text")

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.propagate is False

    @pytest.mark.parametrize("level", ["DEBUG", "error"])
    def test_level(self, level):
        logger = setup_logging(level, logger_name="loan_portfolio.test")

        assert logger.level == getattr(logging, level.upper())
