"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for m365_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from m365_mock import MockCredential, MockExchangeShell, MockGraphSession  # noqa: E402
from provisioner.config import Config  # noqa: E402
from provisioner.drivers import build_drivers  # noqa: E402


class SleepRecorder:
    """Records requested pauses instead of sleeping."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def config() -> Config:
    return Config(
        domain="contoso.com",
        default_owner="admin@contoso.com",
        poll_max_attempts=3,
        poll_delay_seconds=0,
    )


@pytest.fixture
def credential() -> MockCredential:
    return MockCredential()


@pytest.fixture
def graph_session() -> MockGraphSession:
    session = MockGraphSession()
    session.add_user("admin@contoso.com")
    return session


@pytest.fixture
def exchange_shell() -> MockExchangeShell:
    return MockExchangeShell()


@pytest.fixture
def cloud_drivers(config, credential, graph_session, exchange_shell, sleeps):
    """Real drivers wired to the in-memory Graph, SharePoint and Exchange fakes."""
    return build_drivers(
        config,
        credential,
        session=graph_session,
        exchange_shell=exchange_shell,
        sleep=sleeps,
    )
