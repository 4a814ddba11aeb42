"""Configuration loader for the Maple proxy.

Settings come from command-line flags, falling back to ``MAPLE_*``
environment variables (a ``.env`` file in the working directory is loaded
first), falling back to built-in defaults. The resulting ProxyConfig is
frozen and shared read-only by every request.
"""

import argparse
import os
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

SERVICE_NAME = "maple-proxy"
SERVICE_VERSION = "0.1.6"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080
DEFAULT_BACKEND_URL = "https://enclave.trymaple.ai"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ProxyConfig:
    """Process-wide proxy settings."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    backend_url: str = DEFAULT_BACKEND_URL
    default_api_key: Optional[str] = field(default=None, repr=False)
    debug: bool = False
    enable_cors: bool = False
    log_file: Optional[str] = None

    @property
    def bind_address(self) -> str:
        """Return ``host:port`` for the listener.

        Raises:
            ValueError: If the port is outside the valid TCP range.
        """
        if not 0 <= self.port <= 65535:
            raise ValueError(
                "Invalid socket address '{}:{}': port out of range".format(
                    self.host, self.port
                )
            )
        return "{}:{}".format(self.host, self.port)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in _TRUTHY


def _env_port(name: str) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return DEFAULT_PORT
    try:
        return int(raw)
    except ValueError:
        raise ValueError("{} must be an integer, got {!r}".format(name, raw))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description="Lightweight OpenAI-compatible proxy server for Maple/OpenSecret",
    )
    parser.add_argument(
        "--host",
        default=os.getenv("MAPLE_HOST", DEFAULT_HOST),
        help="Host to bind the server to",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=None,
        help="Port to bind the server to (env: MAPLE_PORT)",
    )
    parser.add_argument(
        "--backend-url",
        default=os.getenv("MAPLE_BACKEND_URL", DEFAULT_BACKEND_URL),
        help="OpenSecret/Maple backend URL",
    )
    parser.add_argument(
        "--default-api-key",
        default=os.getenv("MAPLE_API_KEY"),
        help="Default API key (overridden by a client Authorization header)",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        default=_env_flag("MAPLE_DEBUG"),
        help="Enable debug logging",
    )
    parser.add_argument(
        "--enable-cors",
        action="store_true",
        default=_env_flag("MAPLE_ENABLE_CORS"),
        help="Enable CORS for all origins (useful for web clients)",
    )
    parser.add_argument(
        "--log-file",
        default=os.getenv("MAPLE_LOG_FILE"),
        help="Optional append-only log file",
    )
    return parser


def load_config(argv: Optional[List[str]] = None) -> ProxyConfig:
    """Build the proxy configuration from flags, environment and defaults.

    Args:
        argv: Command-line arguments (without the program name). ``None``
            parses an empty list so library callers are not affected by
            ``sys.argv``; the CLI entry point passes the real arguments.

    Returns:
        A frozen ProxyConfig.

    Raises:
        ValueError: If the port or backend URL is invalid.
    """
    load_dotenv(find_dotenv(".env", usecwd=True))

    args = _build_parser().parse_args([] if argv is None else argv)

    backend_url = (args.backend_url or "").strip()
    if not backend_url:
        raise ValueError("Backend URL must not be empty")

    # MAPLE_PORT is only consulted when --port is absent.
    port = args.port if args.port is not None else _env_port("MAPLE_PORT")

    config = ProxyConfig(
        host=args.host,
        port=port,
        backend_url=backend_url,
        default_api_key=args.default_api_key or None,
        debug=args.debug,
        enable_cors=args.enable_cors,
        log_file=args.log_file or None,
    )
    # Validates the port range eagerly.
    config.bind_address
    return config
