"""Shared fixtures: settings, an in-process relay on an ephemeral port."""

import dataclasses

import pytest
import pytest_asyncio

from checkins.config import Settings
from checkins.node import RelayServer

SECRET = "test-signing-secret-0123456789"


@pytest.fixture
def settings():
    """Settings for tests; relay_url is filled in once a relay is listening."""
    return Settings(signing_secret=SECRET, relay_url="tcp://127.0.0.1:9", cooldown_period_minutes=10)


@pytest_asyncio.fixture
async def relay(settings):
    """A running relay bound to a random free port."""
    server = RelayServer("127.0.0.1", 0, settings)
    await server.listen()
    yield server
    await server.stop()


@pytest.fixture
def client_settings(settings, relay):
    """Settings pointing at the running relay."""
    return dataclasses.replace(settings, relay_url=f"tcp://127.0.0.1:{relay.bound_port}")
