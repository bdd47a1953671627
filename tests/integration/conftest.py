"""
Shared fixtures for the exporter integration tests.

Builds a full ExporterServer over the fake RPC and MaxMind client with an
in-memory database, and an httpx client bound to its ASGI app.
"""

import httpx
import pytest
import pytest_asyncio

from exporter.config import ConfigWatcher, ExporterConfig
from exporter.server import ExporterServer
from fakes import GEO_TABLE, FakeLookup, FakeRpc, FixedClock, seed_cluster


@pytest.fixture
def rpc():
    return seed_cluster(FakeRpc(epoch=10))


@pytest.fixture
def lookup():
    return FakeLookup(GEO_TABLE)


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('rpc = "http://rpc.test:8899"\ntarget = "127.0.0.1:9179"\npubkey_whitelist = []\n')
    return path


@pytest_asyncio.fixture
async def server(rpc, lookup, config_path):
    srv = ExporterServer(
        ConfigWatcher.from_path(str(config_path)),
        db_path=":memory:",
        rpc=rpc,
        geo_client=lookup,
        clock=FixedClock(),
    )
    await srv._init_services()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def client(server):
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://exporter.test") as c:
        yield c
