"""Shared fixtures for bridge client tests."""

import pytest

from merlin_bridge.constants import PROTOCOL_VERSION
from merlin_bridge.dispatcher import EventDispatcher
from merlin_bridge.types import (
    ClientCapabilities,
    Connected,
    Disconnected,
    Endpoint,
    FrameReceived,
    RetryConfig,
)

from tests.fakes import FakeClock


@pytest.fixture()
def capabilities():
    return ClientCapabilities(
        client_id="test-client",
        protocol_version=PROTOCOL_VERSION,
        device_name="Test Headset",
        max_fps=30,
    )


@pytest.fixture()
def endpoint():
    return Endpoint("127.0.0.1", 8765)


@pytest.fixture()
def fast_retry():
    """Short delays so retry paths finish quickly."""
    return RetryConfig(delay=0.05, auto_retry=True, connect_timeout=0.2)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def dispatcher():
    return EventDispatcher()


@pytest.fixture()
def recorded(dispatcher):
    """Every notification published on ``dispatcher``, in order."""
    events = []
    for kind in (Connected, Disconnected, FrameReceived):
        dispatcher.subscribe(kind, events.append)
    return events
