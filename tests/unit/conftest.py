"""Shared fixtures for the exporter unit tests."""

import pytest
import pytest_asyncio

from exporter.storage import StorageManager
from fakes import FakeLookup, FakeRpc, FixedClock


# ── Fixtures ────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest.fixture
def rpc():
    return FakeRpc(epoch=10)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def lookup():
    return FakeLookup()
