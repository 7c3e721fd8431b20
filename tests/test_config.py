"""
Tests for configuration and structured logging
"""

import json
import logging
import pytest
from decimal import Decimal

from pydantic import ValidationError as SettingsError

from loan_ledger import config as config_module
from loan_ledger.config import LoanLedgerConfig, get_config, reload_config
from loan_ledger.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestLoanLedgerConfig:

    def test_defaults(self, monkeypatch):
        for name in ("DATABASE_URL", "MEMBER_INTEREST_RATE", "CLIENT_INTEREST_RATE",
                     "DEFAULT_PENALTY_FEE", "MAX_LOAN_AMOUNT", "LOG_LEVEL"):
            monkeypatch.delenv(f"LOAN_LEDGER_{name}", raising=False)

        settings = LoanLedgerConfig(_env_file=None)

        assert settings.database_url == "memory://"
        assert settings.default_currency == "ZAR"
        assert settings.member_interest_rate == Decimal("15")
        assert settings.client_interest_rate == Decimal("25")
        assert settings.default_penalty_fee == Decimal("50.00")
        assert settings.max_loan_amount == Decimal("5000.00")
        assert settings.enable_events is True

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LOAN_LEDGER_MEMBER_INTEREST_RATE", "12.5")
        monkeypatch.setenv("LOAN_LEDGER_DATABASE_URL", "sqlite:///ledger.db")
        monkeypatch.setenv("LOAN_LEDGER_LOG_LEVEL", "debug")

        settings = LoanLedgerConfig(_env_file=None)

        assert settings.member_interest_rate == Decimal("12.5")
        assert settings.database_url == "sqlite:///ledger.db"
        assert settings.log_level == "DEBUG"

    def test_negative_rate_rejected(self):
        with pytest.raises(SettingsError):
            LoanLedgerConfig(_env_file=None, client_interest_rate=Decimal("-1"))

    def test_unknown_log_level_rejected(self):
        with pytest.raises(SettingsError):
            LoanLedgerConfig(_env_file=None, log_level="chatty")

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("LOAN_LEDGER_MAX_LOAN_AMOUNT", "9000")
        try:
            reloaded = reload_config()
            assert reloaded.max_loan_amount == Decimal("9000")
            assert get_config() is reloaded
        finally:
            monkeypatch.delenv("LOAN_LEDGER_MAX_LOAN_AMOUNT")
            reload_config()
        assert config_module.config.max_loan_amount == get_config().max_loan_amount


class _ListHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestStructuredLogging:

    def test_json_formatter_includes_structured_fields(self):
        logger = get_logger("loan_ledger.test_formatter")
        handler = _ListHandler()
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            log_action(
                logger, "info", "Loan disbursed",
                user_id="admin-1", action="disburse", resource="loan:L1",
                correlation_id="loan:L1", extra={"amount": "ZAR 1,200.00"}
            )
        finally:
            logger.removeHandler(handler)

        entry = json.loads(JSONFormatter().format(handler.records[0]))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "loan_ledger.test_formatter"
        assert entry["message"] == "Loan disbursed"
        assert entry["user_id"] == "admin-1"
        assert entry["action"] == "disburse"
        assert entry["resource"] == "loan:L1"
        assert entry["correlation_id"] == "loan:L1"
        assert entry["extra"] == {"amount": "ZAR 1,200.00"}

    def test_json_formatter_drops_empty_fields(self):
        record = logging.LogRecord("loan_ledger", logging.WARNING, __file__, 1, "plain", None, None)
        entry = json.loads(JSONFormatter().format(record))
        assert "user_id" not in entry
        assert entry["message"] == "plain"

    def test_json_formatter_includes_exception(self):
        logger = get_logger("loan_ledger.test_exc")
        handler = _ListHandler()
        logger.addHandler(handler)
        try:
            try:
                raise RuntimeError("schedule failed")
            except RuntimeError:
                log_action(logger, "error", "Schedule generation failed", exc_info=True)
        finally:
            logger.removeHandler(handler)

        entry = json.loads(JSONFormatter().format(handler.records[0]))
        assert "RuntimeError: schedule failed" in entry["exception"]

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging("DEBUG", logger_name="loan_ledger.test_setup")
        logger = setup_logging("WARNING", logger_name="loan_ledger.test_setup", log_format="text")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.propagate is False
