"""Shared pytest fixtures for Leadflow tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture
def anyio_backend():
    """Run @pytest.mark.anyio tests on asyncio only."""
    return "asyncio"


@pytest.fixture(autouse=True)
def _no_retry_delay(monkeypatch):
    """Platform client retries without sleeping."""
    import leadflow.credentials.platform_api as platform_api

    monkeypatch.setattr(platform_api, "RETRY_DELAY", 0)
