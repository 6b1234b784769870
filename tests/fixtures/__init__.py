"""Test fixtures for event-log retrieval tests."""

from .addresses import (
    TOKEN_ADDRESS,
    OTHER_TOKEN_ADDRESS,
    ALICE_ADDRESS,
    BOB_ADDRESS,
    TRANSFER_EVENT,
    TRANSFER_TOPIC,
    APPROVAL_EVENT,
    TEST_ADDRESSES,
)
from .endpoints import (
    FakeClock,
    FakeEndpoint,
    fixed_round_trip,
    logs_every,
    make_log,
    no_round_trip,
)

__all__ = [
    # Addresses
    "TOKEN_ADDRESS",
    "OTHER_TOKEN_ADDRESS",
    "ALICE_ADDRESS",
    "BOB_ADDRESS",
    "TRANSFER_EVENT",
    "TRANSFER_TOPIC",
    "APPROVAL_EVENT",
    "TEST_ADDRESSES",
    # Endpoints
    "FakeClock",
    "FakeEndpoint",
    "fixed_round_trip",
    "logs_every",
    "make_log",
    "no_round_trip",
]
