"""
Pytest configuration and fixtures for keybridge tests.
"""

import asyncio
import os
import sys
import types
import pytest

# Add python directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'python'))


async def _settle(channel, rounds=5):
    await channel.drain()
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    """Coroutine function waiting for in-flight messages and the replies they scheduled."""
    return _settle


@pytest.fixture
def memory_storage():
    """Create an empty in-memory storage backend."""
    from keybridge.storage import MemoryStorage
    return MemoryStorage()


@pytest.fixture
def peer_namespace():
    """A small namespace shaped like a browser extension API."""
    calls = []

    def query(filters):
        calls.append(("query", filters))
        return [{"id": 1, "title": "Home"}]

    async def fetch_title(tab_id):
        calls.append(("fetch_title", tab_id))
        return f"tab-{tab_id}"

    def fail(reason):
        raise RuntimeError(reason)

    def subscribe(listener, *events):
        calls.append(("subscribe", events))
        for event in events:
            listener(event, len(calls))

    return {
        "calls": calls,
        "tabs": {
            "query": query,
            "fetch_title": fetch_title,
            "count": 3,
        },
        "settings": types.SimpleNamespace(theme="dark", retries=2),
        "events": {"subscribe": subscribe},
        "runtime": {"fail": fail, "version": "1.2.0"},
    }


@pytest.fixture
def peer(peer_namespace):
    """Create a Peer serving the sample namespace."""
    from keybridge.peer import Peer
    return Peer(peer_namespace)


@pytest.fixture
def loopback_channel(peer):
    """Create an in-process channel to the sample peer."""
    from keybridge.channel import LoopbackChannel
    return LoopbackChannel(peer)


@pytest.fixture
def dispatcher(loopback_channel):
    """Create a dispatcher over the loopback channel."""
    from keybridge.dispatcher import OperationDispatcher
    return OperationDispatcher(loopback_channel)


# Pytest markers
def pytest_configure(config):
    config.addinivalue_line("markers", "p0: Priority 0 (critical) tests")
    config.addinivalue_line("markers", "p1: Priority 1 (high) tests")
    config.addinivalue_line("markers", "p2: Priority 2 (medium) tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
    config.addinivalue_line("markers", "integration: Integration tests")
