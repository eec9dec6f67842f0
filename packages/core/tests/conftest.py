import pytest
from fakes import FakeProviderFactory

from mongodb_mcp.config import Settings


@pytest.fixture
def settings(tmp_path):
    return Settings(exports_path=str(tmp_path / "exports"), connect_timeout_ms=2_000)


@pytest.fixture
def factory():
    return FakeProviderFactory()
