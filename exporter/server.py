"""
server.py - Exporter entry point.

Single-process server combining:
 - SQLite persistent storage via StorageManager (reward records, epoch
   marker, geolocation cache)
 - Ledger RPC and MaxMind clients
 - Polling loop: one aggregation cycle every poll interval, published
   atomically to the metrics store
 - HTTP surface (FastAPI on uvicorn): /metrics plus a small JSON API

Usage:
    python -m exporter.server [--config config.toml] [--db-path persistent.db] [--verbose]
    validator-exporter [--config config.toml] [--db-path persistent.db] [--verbose]
"""

import argparse
import asyncio
import logging
import os
import sys
import time
from typing import Callable, Optional

try:
    from fastapi import FastAPI
    import uvicorn
except ImportError:
    print("ERROR: FastAPI and uvicorn are required. Install with:")
    print("  pip install fastapi uvicorn pydantic")
    sys.exit(1)

from exporter import __version__
from exporter.aggregator import CycleSnapshot, MetricAggregator
from exporter.apy import ApyEngine
from exporter.config import CONFIG_FILE_NAME, ConfigWatcher, ExporterConfig
from exporter.epochs import EpochBoundaryDetector
from exporter.errors import CorruptPersistentState
from exporter.exposition import MetricsStore, build_registry
from exporter.geolocation import GeolocationCache, MaxMindClient
from exporter.identity_filter import IdentityFilter
from exporter.rewards import EpochRewardLedger
from exporter.routers import register_all_routers
from exporter.rpc import LedgerRpcClient
from exporter.slots import SkippedSlotTracker
from exporter.snapshot import LedgerSnapshotReader
from exporter.storage import StorageManager

LOG_FORMAT = "%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s"

logger = logging.getLogger("server")


class ExporterServer:
    """Polling loop plus HTTP exposition, sharing one set of services."""

    def __init__(
        self,
        config_watcher: ConfigWatcher,
        db_path: str = "persistent.db",
        rpc: Optional[LedgerRpcClient] = None,
        geo_client: Optional[MaxMindClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config_watcher = config_watcher
        self.db_path = db_path
        self._clock = clock

        config = config_watcher.current
        self.rpc = rpc or LedgerRpcClient(config.rpc, timeout=config.rpc_timeout_sec)
        self.geo_client = geo_client or MaxMindClient(config.maxmind)

        # Storage + services are initialized async in start()
        self.storage: Optional[StorageManager] = None
        self.reader: Optional[LedgerSnapshotReader] = None
        self.detector: Optional[EpochBoundaryDetector] = None
        self.ledger: Optional[EpochRewardLedger] = None
        self.apy: Optional[ApyEngine] = None
        self.geolocation: Optional[GeolocationCache] = None
        self.slots: Optional[SkippedSlotTracker] = None
        self.aggregator: Optional[MetricAggregator] = None

        self.metrics_store = MetricsStore()
        self.registry = build_registry(self.metrics_store)

        self._poll_task: Optional[asyncio.Task] = None
        self._uvicorn_server: Optional[uvicorn.Server] = None
        self._fatal: Optional[BaseException] = None

        self.app = FastAPI(title="Validator Cluster Exporter", version=__version__)
        self.app.state.server = self
        register_all_routers(self.app)

    @property
    def config(self) -> ExporterConfig:
        return self.config_watcher.current

    async def _init_services(self):
        """Open storage and wire up services (must be called in async context)."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self.storage = StorageManager(self.db_path)
        await self.storage.initialize()

        config = self.config
        self.reader = LedgerSnapshotReader(self.rpc, clock=self._clock)
        self.detector = EpochBoundaryDetector(self.reader, self.storage.metadata, self.storage.rewards)
        self.ledger = EpochRewardLedger(self.rpc, self.storage.rewards)
        self.apy = ApyEngine(self.ledger, window=config.apy_window)
        self.geolocation = GeolocationCache(
            self.storage.geolocation, self.geo_client,
            clock=self._clock, concurrency=config.geo_concurrency,
        )
        self.slots = SkippedSlotTracker(self.rpc)
        self.aggregator = MetricAggregator(
            self.reader, self.detector, self.ledger, self.apy,
            self.geolocation, self.slots, clock=self._clock,
        )
        logger.info("Services initialized (db=%s, rpc=%s)", self.db_path, config.rpc)

    # -------------------------------------------------------------------
    # Polling loop
    # -------------------------------------------------------------------

    async def run_cycle(self) -> CycleSnapshot:
        """Reload config, aggregate one cycle, and publish it."""
        config = self.config_watcher.reload()
        self.apy.set_window(config.apy_window)
        cycle = await self.aggregator.collect(IdentityFilter(config.pubkey_whitelist))
        self.metrics_store.publish(cycle)
        logger.debug(
            "Cycle published: epoch=%s samples=%d omitted=%s (%.2fs)",
            cycle.epoch, len(cycle.samples), cycle.omitted or "-",
            cycle.finished_at - cycle.started_at,
        )
        return cycle

    async def _poll_loop(self):
        while True:
            try:
                await self.run_cycle()
            except CorruptPersistentState as e:
                logger.critical("Persistent state unusable, shutting down: %s", e)
                self._fatal = e
                if self._uvicorn_server is not None:
                    self._uvicorn_server.should_exit = True
                return
            except Exception:
                logger.exception("Error in polling cycle")
            await asyncio.sleep(self.config.poll_interval_sec)

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    async def start(self):
        """Open storage, start the polling loop, and serve HTTP until stopped."""
        try:
            await self._init_services()
        except CorruptPersistentState as e:
            logger.critical("Cannot open persistent state: %s", e)
            raise SystemExit(1)

        self._poll_task = asyncio.create_task(self._poll_loop())

        config = uvicorn.Config(
            self.app,
            host=self.config.target_host,
            port=self.config.target_port,
            log_level="info",
        )
        self._uvicorn_server = uvicorn.Server(config)
        logger.info("Metrics endpoint starting on %s", self.config.target)
        try:
            await self._uvicorn_server.serve()
        finally:
            await self.stop()
        if self._fatal is not None:
            raise SystemExit(1)

    async def stop(self):
        """Stop the polling loop and release storage and HTTP clients."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        if self.detector is not None:
            await self.detector.wait_for_commit()
        if self.storage:
            await self.storage.close()
        self.rpc.close()
        self.geo_client.close()
        if self._uvicorn_server is not None:
            self._uvicorn_server.should_exit = True


def main():
    """CLI entry point for the exporter."""
    parser = argparse.ArgumentParser(description="Validator Cluster Prometheus Exporter")
    parser.add_argument("--config", default=None, help=f"TOML config file (default: ./{CONFIG_FILE_NAME} if present)")
    parser.add_argument("--db-path", default="persistent.db", help="SQLite database path (default: persistent.db)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )

    config_path = args.config
    if config_path is None and os.path.exists(CONFIG_FILE_NAME):
        config_path = CONFIG_FILE_NAME
    watcher = ConfigWatcher.from_path(config_path)
    server = ExporterServer(watcher, db_path=args.db_path)

    config = watcher.current
    logger.info("=" * 60)
    logger.info("  Validator Cluster Exporter %s", __version__)
    logger.info("  RPC:         %s", config.rpc)
    logger.info("  Metrics:     http://%s/metrics", config.target)
    logger.info("  Database:    %s", args.db_path)
    logger.info("  Config:      %s", config_path or "(defaults)")
    logger.info("  Whitelist:   %s", ", ".join(config.pubkey_whitelist) or "(all identities)")
    logger.info("  Geolocation: %s", "enabled" if config.maxmind else "disabled")
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
