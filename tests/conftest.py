"""Pytest configuration and fixtures for rosterbot tests."""

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from dedupe_store import DedupeStore  # noqa: E402
from delivery import Deduplicator  # noqa: E402
from fakes import FakeChannel, FakeClock  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return DedupeStore(signature_ttl=5.0, cooldown=3.0, event_ttl=900.0, clock=clock)


@pytest.fixture
def dedup(store):
    return Deduplicator(store)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def log_channel():
    return FakeChannel(channel_id=999)
