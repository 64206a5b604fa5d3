import json
import logging

from assistant_core.infrastructure.logging.logger import REDACT_LIMIT, JsonFormatter, logger, setup_logger


def _record(msg, **extra):
    record = logging.LogRecord("assistant_core", logging.INFO, __file__, 1, msg, None, None)
    record.extra = extra
    return record


def test_json_formatter_includes_extra_fields():
    line = JsonFormatter().format(_record("Provider call completed", provider="openai", attempts=2))
    data = json.loads(line)
    assert data["level"] == "INFO"
    assert data["msg"] == "Provider call completed"
    assert data["provider"] == "openai"
    assert data["attempts"] == 2
    assert data["ts"].endswith("Z")


def test_redaction_truncates_content_fields():
    long_text = "x" * 500
    data = json.loads(JsonFormatter(redact=True).format(_record(long_text, raw=long_text, provider="glm")))
    assert len(data["msg"]) == REDACT_LIMIT
    assert len(data["raw"]) == REDACT_LIMIT
    assert data["provider"] == "glm"


def test_setup_logger_is_idempotent(tmp_path):
    before = len(logger.handlers)
    setup_logger(tmp_path, "DEBUG")
    setup_logger(tmp_path, "DEBUG", redact=True)
    assert len(logger.handlers) == before + 1
    logger.debug("hello", extra={"extra": {"content": "y" * 200}})
    lines = (tmp_path / "assistant.log").read_text(encoding="utf-8").splitlines()
    assert len(json.loads(lines[-1])["content"]) == REDACT_LIMIT
