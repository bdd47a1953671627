"""
test_api.py - Integration tests for the exporter's HTTP surface.

Runs polling cycles through ExporterServer.run_cycle and reads the results
back over /metrics and the JSON API.
"""

import httpx
import pytest

from exporter import __version__
from exporter.config import ConfigWatcher
from exporter.server import ExporterServer
from fakes import NODE_A, VOTE_A, VOTE_B

pytestmark = pytest.mark.asyncio


class TestMetricsEndpoint:

    async def test_empty_before_first_cycle(self, client):
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert resp.text == ""

    async def test_metrics_after_cycle(self, server, client):
        await server.run_cycle()
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        body = resp.text
        assert "solana_current_epoch 10.0" in body
        assert f'solana_current_staking_apy{{pubkey="{VOTE_A}"}}' in body
        assert 'solana_active_validators_dc_count{dc_identifier="15169-BE-Brussels"} 1.0' in body

    async def test_whitelist_reload_applies_next_cycle(self, server, client, config_path):
        await server.run_cycle()
        config_path.write_text(
            'rpc = "http://rpc.test:8899"\n'
            f'pubkey_whitelist = ["{VOTE_A}", "{NODE_A}"]\n'
        )
        await server.run_cycle()
        body = (await client.get("/metrics")).text
        assert f'pubkey="{VOTE_A}"' in body
        assert f'pubkey="{VOTE_B}"' not in body
        assert f'solana_node_pubkey_balances{{pubkey="{NODE_A}"}}' in body


class TestStatusEndpoints:

    async def test_root(self, client):
        resp = await client.get("/")
        data = resp.json()
        assert data["version"] == __version__
        assert data["rpc"] == "http://rpc.test:8899"

    async def test_status_tracks_cycles(self, server, client):
        data = (await client.get("/api/status")).json()
        assert data["published_cycles"] == 0
        assert data["last_cycle"] is None
        assert data["last_processed_epoch"] is None

        await server.run_cycle()
        data = (await client.get("/api/status")).json()
        assert data["published_cycles"] == 1
        assert data["last_processed_epoch"] == 10
        assert data["last_cycle"]["scraped_epoch"] == 9
        assert data["geolocation_enabled"] is True
        assert data["created_version"] == __version__


class TestLedgerEndpoints:

    async def test_rewards_for_identity(self, server, client):
        await server.run_cycle()
        data = (await client.get(f"/api/rewards/{VOTE_A}")).json()
        assert data["total"] == 1
        item = data["items"][0]
        assert item["epoch"] == 9
        assert item["amount"] == 1_000
        assert item["apy"] > 0

    async def test_unknown_identity(self, server, client):
        await server.run_cycle()
        data = (await client.get("/api/rewards/Unknown111")).json()
        assert data == {"identity": "Unknown111", "items": [], "total": 0}

    async def test_rewards_summary(self, server, client):
        await server.run_cycle()
        data = (await client.get("/api/rewards")).json()
        assert data == {"epochs": [{"epoch": 9, "records": 3}], "total": 3}

    async def test_geolocation_cache_listing(self, server, client):
        await server.run_cycle()
        data = (await client.get("/api/geolocation")).json()
        assert data["enabled"] is True
        assert [i["address"] for i in data["items"]] == ["10.0.0.1", "10.0.0.3"]
        assert data["items"][0]["datacenter"] == "14618-US-Ashburn"
        assert data["items"][0]["fresh"] is True

    async def test_storage_not_ready(self, rpc, lookup, config_path):
        srv = ExporterServer(ConfigWatcher.from_path(str(config_path)), db_path=":memory:", rpc=rpc, geo_client=lookup)
        transport = httpx.ASGITransport(app=srv.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://exporter.test") as c:
            resp = await c.get("/api/rewards")
        assert resp.status_code == 503
