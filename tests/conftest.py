"""Shared test fixtures for dayframe."""

from __future__ import annotations

from pathlib import Path

import pytest

from dayframe.storage import MemoryStore
from dayframe.sync.engine import SyncEngine
from dayframe.sync.keycache import KeyCache
from dayframe.sync.models import SyncConfig
from dayframe.sync.queue import RetryQueue
from dayframe.sync.remote import MemoryRemoteStore

# Keeps key derivation fast; production uses 100 000.
TEST_ITERATIONS = 1_000
USER_ID = "user-1"
PASSWORD = "correct horse battery staple"


@pytest.fixture
def dayframe_home(tmp_path: Path) -> Path:
    """Provide a temporary dayframe home directory."""
    home = tmp_path / ".dayframe"
    home.mkdir()
    return home


@pytest.fixture
def local() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def remote() -> MemoryRemoteStore:
    """Remote store with USER_ID signed in."""
    return MemoryRemoteStore(user_id=USER_ID)


@pytest.fixture
def keycache(local: MemoryStore, remote: MemoryRemoteStore, dayframe_home: Path) -> KeyCache:
    return KeyCache(local, remote, home=dayframe_home, iterations=TEST_ITERATIONS)


@pytest.fixture
def queue(local: MemoryStore, dayframe_home: Path) -> RetryQueue:
    """Retry queue without backoff so every drain retries immediately."""
    return RetryQueue(local, base_backoff=0, max_backoff=0, home=dayframe_home)


@pytest.fixture
def fast_config() -> SyncConfig:
    return SyncConfig(
        pbkdf2_iterations=TEST_ITERATIONS,
        base_backoff_seconds=0,
        max_backoff_seconds=0,
        drain_interval_seconds=0.05,
    )


@pytest.fixture
def engine(
    dayframe_home: Path,
    local: MemoryStore,
    remote: MemoryRemoteStore,
    fast_config: SyncConfig,
) -> SyncEngine:
    return SyncEngine(dayframe_home, local=local, remote=remote, config=fast_config)
