"""Command-line entry point: ``maple-proxy [--host ...] [--port ...]``."""

import sys
from typing import List, Optional

import uvicorn

from maple_proxy.app import create_app
from maple_proxy.config import load_config
from maple_proxy.telemetry import log_startup, logger, setup_logging


def main(argv: Optional[List[str]] = None) -> None:
    config = load_config(sys.argv[1:] if argv is None else argv)
    setup_logging(config.debug, config.log_file)
    log_startup(config)

    app = create_app(config)

    logger.info("Available endpoints:")
    logger.info("   GET  /health              - Health check")
    logger.info("   GET  /v1/models           - List available models")
    logger.info("   POST /v1/chat/completions - Create chat completions (streaming & non-streaming)")
    logger.info("   POST /v1/embeddings       - Create embeddings")
    logger.info(
        "Set MAPLE_API_KEY or send 'Authorization: Bearer <key>' with each request"
    )

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="debug" if config.debug else "info",
    )


if __name__ == "__main__":
    main()
