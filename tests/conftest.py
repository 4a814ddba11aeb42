"""Shared test fixtures for the Maple proxy tests."""

import pytest

from fakes import FakeBackend
from maple_proxy.config import ProxyConfig


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Isolate tests from MAPLE_* variables and any local .env file."""
    for name in (
        "MAPLE_HOST",
        "MAPLE_PORT",
        "MAPLE_BACKEND_URL",
        "MAPLE_API_KEY",
        "MAPLE_DEBUG",
        "MAPLE_ENABLE_CORS",
        "MAPLE_LOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def proxy_config() -> ProxyConfig:
    """Config with no default key, pointing at a test backend."""
    return ProxyConfig(backend_url="http://enclave.test", port=0)


@pytest.fixture()
def fake_backend() -> FakeBackend:
    return FakeBackend()
