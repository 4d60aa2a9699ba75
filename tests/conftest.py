"""Shared test fixtures.

Provides:
- Configuration with a temporary cache directory and short delays
- Tool result cache bound to a temporary directory
- Recording data-channel sender
- Fake peer session and negotiator
"""

import logging
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from realtime_coach.cache import ToolResultCache
from realtime_coach.config import CacheConfig, ChoreographyConfig, CoachConfig
from realtime_coach.credentials import Credential, CredentialClient
from tests.helpers.protocol_test_utils import (
    FakeNegotiator,
    FakePeerSession,
    RecordingSender,
)


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def config(cache_dir: Path) -> CoachConfig:
    """Configuration with a temporary cache and no follow-up delay."""
    return CoachConfig(
        choreography=ChoreographyConfig(follow_up_delay_s=0.0),
        cache=CacheConfig(directory=cache_dir),
    )


@pytest.fixture
def cache(cache_dir: Path) -> ToolResultCache:
    return ToolResultCache(cache_dir)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def peer() -> FakePeerSession:
    return FakePeerSession()


@pytest.fixture
def negotiator(peer: FakePeerSession) -> FakeNegotiator:
    return FakeNegotiator(peer)


@pytest.fixture
def credential() -> Credential:
    return Credential(value="ek_test_secret", expires_at=None)


@pytest.fixture
def credential_client(credential: Credential) -> CredentialClient:
    """Credential client whose acquire_credential() succeeds immediately."""
    client = Mock(spec=CredentialClient)
    client.acquire_credential = AsyncMock(return_value=credential)
    return client


@pytest.fixture(autouse=True)
def restore_root_logger() -> Iterator[None]:
    """Undo setup_logging() calls made by a test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
