"""Tests for structured request logging."""

import json
import logging
from pathlib import Path

import pytest

from maple_proxy.config import ProxyConfig
from maple_proxy.telemetry import (
    log_request,
    log_startup,
    logger,
    mask_api_key,
    setup_logging,
)


def test_mask_api_key() -> None:
    assert mask_api_key("sk-abcdefghijklmnop") == "sk-abcde..."
    assert mask_api_key("short") == "sh..."
    assert mask_api_key("") == "..."
    assert mask_api_key(None) is None


def test_mask_api_key_never_logs_short_key_in_full() -> None:
    masked = mask_api_key("sk-abc12")

    assert masked == "sk-a..."
    assert "sk-abc12" not in masked


def test_log_request_masks_key(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="maple_proxy")
    log_request(
        request_id="mp-123",
        operation="chat_completion",
        outcome="success",
        api_key="sk-supersecretvalue",
        model="gpt-4",
        stream=False,
        detail={"completion_id": "chatcmpl-1"},
    )

    assert "sk-supersecretvalue" not in caplog.text
    record = json.loads(caplog.records[-1].getMessage())
    assert record["api_key"] == "sk-super..."
    assert record["outcome"] == "success"
    assert record["detail"] == {"completion_id": "chatcmpl-1"}
    assert caplog.records[-1].levelno == logging.INFO


def test_log_request_error_is_warning(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="maple_proxy")
    log_request(
        request_id="mp-456",
        operation="list_models",
        outcome="auth_error",
        error="No API key provided",
    )

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    payload = json.loads(record.getMessage())
    assert payload["error"] == "No API key provided"
    assert "api_key" not in payload


def test_log_startup_never_logs_default_key(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="maple_proxy")
    log_startup(ProxyConfig(default_api_key="sk-default-secret", enable_cors=True))

    assert "sk-default-secret" not in caplog.text
    assert "Default API key configured" in caplog.text
    assert "CORS enabled" in caplog.text


def test_setup_logging_writes_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "proxy.log"
    saved = list(logger.handlers)
    for handler in saved:
        logger.removeHandler(handler)
    try:
        setup_logging(debug=True, log_file=str(log_file))
        assert logger.level == logging.DEBUG
        logger.debug("hello from test")
        for handler in logger.handlers:
            handler.flush()
        assert "hello from test" in log_file.read_text()
    finally:
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
        for handler in saved:
            logger.addHandler(handler)
        logger.setLevel(logging.NOTSET)
