"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from apim_rbac.config import Config  # noqa: E402
from azure_mock import SUBSCRIPTION_ID, MockAuthorizationClient  # noqa: E402


class RecordingSleep:
    """Stand-in for time.sleep that records requested waits."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def mock_client() -> MockAuthorizationClient:
    return MockAuthorizationClient()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def config() -> Config:
    """Default retry bounds with the subscription bound."""
    return Config(subscription_id=SUBSCRIPTION_ID)
