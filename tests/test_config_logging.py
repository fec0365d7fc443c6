"""
Tests for environment-based configuration and structured logging
"""

import json
import logging

from atm_bank import config as config_module
from atm_bank.config import AtmBankConfig, get_config, reload_config
from atm_bank.logging_config import JSONFormatter, setup_logging, log_action


class TestConfig:

    def test_defaults(self):
        config = AtmBankConfig()
        assert config.customer_file == "customers.txt"
        assert config.chequing_overdraft_limit == "100.00"
        assert config.first_customer_number == 1001
        assert config.full_reload_after_mutation is False

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ATM_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("ATM_FULL_RELOAD_AFTER_MUTATION", "true")

        config = AtmBankConfig()

        assert config.data_path == tmp_path
        assert config.full_reload_after_mutation is True

    def test_reload_config(self, monkeypatch):
        original = get_config()
        monkeypatch.setenv("ATM_API_PORT", "9999")
        try:
            assert reload_config().api_port == 9999
            assert get_config().api_port == 9999
        finally:
            config_module.config = original


class TestJSONFormatter:

    def _record(self, **attrs):
        record = logging.LogRecord("atm_bank.test", logging.WARNING, __file__, 1, "Transaction rejected", (), None)
        for key, value in attrs.items():
            setattr(record, key, value)
        return record

    def test_structured_fields(self):
        record = self._record(action="apply_transaction", resource="account:1", extra={"amount": "5.00"})
        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "WARNING"
        assert entry["logger"] == "atm_bank.test"
        assert entry["message"] == "Transaction rejected"
        assert entry["action"] == "apply_transaction"
        assert entry["resource"] == "account:1"
        assert entry["extra"] == {"amount": "5.00"}

    def test_missing_fields_are_omitted(self):
        entry = json.loads(JSONFormatter().format(self._record()))
        assert "action" not in entry
        assert "resource" not in entry


class TestSetupLogging:

    def test_json_log_file(self, tmp_path):
        log_file = tmp_path / "operator.log"
        logger = setup_logging("INFO", logger_name="atm_bank_test_file", log_file=str(log_file))

        log_action(logger, "info", "Account created: 1", action="create_account", resource="account:1")
        log_action(logger, "debug", "not written")
        for handler in logger.handlers:
            handler.flush()

        lines = log_file.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["action"] == "create_account"
        assert entry["resource"] == "account:1"

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "operator.log"
        logger = setup_logging("DEBUG", logger_name="atm_bank_test_text", log_format="text",
                               log_file=str(log_file))

        log_action(logger, "warning", "Skipping malformed line")
        for handler in logger.handlers:
            handler.flush()

        assert "WARNING atm_bank_test_text: Skipping malformed line" in log_file.read_text(encoding="utf-8")

    def test_repeated_setup_does_not_duplicate_handlers(self):
        setup_logging(logger_name="atm_bank_test_repeat")
        logger = setup_logging(logger_name="atm_bank_test_repeat")
        assert len(logger.handlers) == 1
