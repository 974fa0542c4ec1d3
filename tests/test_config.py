"""
Tests for configuration and structured logging
"""

import json
import logging

import pytest
from pydantic import ValidationError

from conftest import CSRF_SECRET, JWT_SECRET
from loan_servicing.config import ServicingConfig, load_config
from loan_servicing.logging_config import JSONFormatter, log_action, setup_logging


class TestServicingConfig:

    def test_defaults(self):
        config = ServicingConfig(jwt_secret=JWT_SECRET, csrf_secret=CSRF_SECRET)

        assert config.api_port == 8090
        assert config.org_config_ttl_seconds == 60
        assert config.enable_rate_limiting is True
        assert config.organization_timezone == "UTC"

    def test_missing_secrets_fail(self, monkeypatch):
        monkeypatch.delenv("SERVICING_JWT_SECRET", raising=False)
        monkeypatch.delenv("SERVICING_CSRF_SECRET", raising=False)

        with pytest.raises(ValidationError):
            ServicingConfig(_env_file=None)

    def test_short_secret_fails(self):
        with pytest.raises(ValidationError):
            ServicingConfig(jwt_secret="short", csrf_secret=CSRF_SECRET, _env_file=None)

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("SERVICING_JWT_SECRET", JWT_SECRET)
        monkeypatch.setenv("SERVICING_CSRF_SECRET", CSRF_SECRET)
        monkeypatch.setenv("SERVICING_API_PORT", "9001")
        monkeypatch.setenv("SERVICING_REDIS_URL", "redis://cache:6379/0")

        config = load_config()

        assert config.api_port == 9001
        assert config.redis_url == "redis://cache:6379/0"


class TestStructuredLogging:

    def test_json_formatter_includes_structured_fields(self):
        record = logging.LogRecord("servicing.test", logging.INFO, __file__, 1, "hello", None, None)
        record.user_id = "u1"
        record.action = "create_transaction"
        record.loan_id = "L1"

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "hello"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "u1"
        assert entry["action"] == "create_transaction"
        assert entry["loan_id"] == "L1"
        assert "request_id" not in entry

    def test_log_action_attaches_fields(self, servicing_caplog):
        logger = logging.getLogger("servicing.test_log_action")
        with servicing_caplog.at_level(logging.INFO, logger="servicing.test_log_action"):
            log_action(logger, "info", "Loan updated", user_id="u1", action="update_loan",
                       request_id="req-1", extra={"fields": ["status"]})

        records = [r for r in servicing_caplog.records if r.name == "servicing.test_log_action"]
        assert len(records) == 1
        record = records[0]
        assert record.action == "update_loan"
        assert record.request_id == "req-1"
        assert record.extra == {"fields": ["status"]}
        assert not hasattr(record, "loan_id")

    def test_setup_logging(self, tmp_path):
        log_file = tmp_path / "servicing.log"
        logger = setup_logging("DEBUG", "json", str(log_file), logger_name="servicing.test_setup")

        logger.info("started", extra={"action": "startup"})
        for handler in logger.handlers:
            handler.flush()

        line = json.loads(log_file.read_text().strip())
        assert line["action"] == "startup"
        assert logger.propagate is False
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
