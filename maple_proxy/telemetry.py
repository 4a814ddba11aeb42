"""Logging and telemetry for the Maple proxy.

Emits structured JSON log records to stdout and, optionally, appends them
to a log file. API keys are always masked before they reach a record.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from maple_proxy.config import SERVICE_VERSION, ProxyConfig

logger = logging.getLogger("maple_proxy")

_MASK_PREFIX_LEN = 8


def mask_api_key(api_key: Optional[str]) -> Optional[str]:
    """Return a log-safe form of an API key.

    At most the first 8 characters are kept, and never more than half the
    key, so short keys are not logged in full.
    """
    if api_key is None:
        return None
    return "{}...".format(api_key[:min(_MASK_PREFIX_LEN, len(api_key) // 2)])


def setup_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    """Configure the proxy logger with stdout and optional file handlers.

    Args:
        debug: Log at DEBUG instead of INFO.
        log_file: Optional path to an append-only log file.
    """
    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)

    if not logger.handlers:
        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

        stdout_handler = logging.StreamHandler()
        stdout_handler.setFormatter(fmt)
        logger.addHandler(stdout_handler)

        if log_file:
            log_path = Path(log_file)
            os.makedirs(log_path.parent, exist_ok=True)
            file_handler = logging.FileHandler(log_path, mode="a")
            file_handler.setFormatter(fmt)
            logger.addHandler(file_handler)

    for handler in logger.handlers:
        handler.setLevel(level)


def log_startup(config: ProxyConfig) -> None:
    """Log the effective configuration (never the key itself)."""
    logger.info("Starting Maple Proxy Server")
    logger.info("Version: %s", SERVICE_VERSION)
    logger.info("Backend URL: %s", config.backend_url)
    logger.info("Binding to: %s", config.bind_address)
    if config.default_api_key:
        logger.info("Default API key configured")
    else:
        logger.info(
            "No default API key - clients must provide Authorization header"
        )
    if config.enable_cors:
        logger.info("CORS enabled for all origins")


def log_request(
    *,
    request_id: str,
    operation: str,
    outcome: str,
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    stream: Optional[bool] = None,
    detail: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None
) -> None:
    """Log a single request outcome as one JSON line.

    Failures are logged at WARNING, everything else at INFO.

    Args:
        request_id: Proxy-assigned request ID.
        operation: Backend operation (e.g. "chat_completion").
        outcome: Short outcome label (e.g. "success", "auth_error").
        api_key: The resolved API key; masked before logging.
        model: Requested model, when known.
        stream: Whether a streaming response was requested.
        detail: Extra structured fields (completion id, counts).
        error: Error message if the request failed.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "operation": operation,
        "outcome": outcome,
    }

    if api_key is not None:
        record["api_key"] = mask_api_key(api_key)

    if model is not None:
        record["model"] = model

    if stream is not None:
        record["stream"] = stream

    if detail:
        record["detail"] = detail

    if error:
        record["error"] = error
        logger.warning(json.dumps(record))
    else:
        logger.info(json.dumps(record))
