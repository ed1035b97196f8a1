"""Pytest configuration and fixtures."""

import sys
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for api_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from tagger.config import Config  # noqa: E402
from tagger.secret_store import EnvironmentSecretStore  # noqa: E402
from tagger.security import clear_registered_secrets  # noqa: E402

TEST_SECRETS = {
    "DefenderTenantId": "11111111-2222-3333-4444-555555555555",
    "DefenderAppId": "66666666-7777-8888-9999-000000000000",
    "DefenderAppSecret": "s3cr3t~value.from-store",
}

MACHINES_URL = "https://api.securitycenter.microsoft.com/api/machines"
TAG_URL = "https://api.securitycenter.microsoft.com/api/machines/AddOrRemoveTagForMultipleMachines"
MANAGED_DEVICES_URL = "https://graph.microsoft.com/v1.0/deviceManagement/managedDevices"


@pytest.fixture
def config() -> Config:
    """Default configuration with real pacing values."""
    return Config()


@pytest.fixture
def secret_store() -> EnvironmentSecretStore:
    """Secret store holding a complete app registration."""
    return EnvironmentSecretStore(dict(TEST_SECRETS))


@pytest.fixture
def now() -> datetime:
    """Fixed reference instant for inactivity math."""
    return datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


class SleepRecorder:
    """Records requested sleeps instead of sleeping."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture(autouse=True)
def _reset_secret_registry() -> Generator[None, None, None]:
    clear_registered_secrets()
    yield
    clear_registered_secrets()
