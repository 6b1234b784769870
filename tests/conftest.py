"""Pytest configuration and shared fixtures for all tests."""

import pytest

from ethevents.common.config import EngineConfig
from ethevents.common.types import EventFilter, EventQuery
from ethevents.storage.memory_backend import MemoryBackend

from tests.fixtures.addresses import TOKEN_ADDRESS, TRANSFER_EVENT
from tests.fixtures.endpoints import FakeClock


# =============================================================================
# Core Fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Hand-driven millisecond clock."""
    return FakeClock()


@pytest.fixture
def memory_store():
    return MemoryBackend()


@pytest.fixture
def fast_config():
    """Engine config without retry sleeps."""
    return EngineConfig(
        ordinary_retries=0,
        exploratory_retries=0,
        ordinary_retry_delay=0.0,
        exploratory_retry_delay=0.0,
    )


@pytest.fixture
def transfer_filter():
    return EventFilter(address=TOKEN_ADDRESS, event=TRANSFER_EVENT)


@pytest.fixture
def transfer_query(transfer_filter):
    return EventQuery(chain_id=1, filter=transfer_filter, from_block=0, to_block="latest")
