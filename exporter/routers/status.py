"""Status router: / and /api/status."""

import time

from fastapi import APIRouter
from starlette.requests import Request

from exporter import __version__
from exporter.deps import get_server

router = APIRouter()


@router.get("/")
async def root(request: Request):
    srv = get_server(request)
    return {
        "service": "Validator Cluster Exporter",
        "version": __version__,
        "rpc": srv.config.rpc,
        "metrics": "/metrics",
    }


@router.get("/api/status")
async def exporter_status(request: Request):
    srv = get_server(request)
    config = srv.config
    cycle = srv.metrics_store.latest()
    last_processed = None
    if srv.storage is not None and srv.storage.metadata is not None:
        last_processed = await srv.storage.metadata.get_last_processed_epoch()
    return {
        "version": __version__,
        "created_version": srv.storage.created_version if srv.storage else None,
        "last_processed_epoch": last_processed,
        "whitelist": sorted(config.pubkey_whitelist),
        "apy_window": config.apy_window,
        "poll_interval_sec": config.poll_interval_sec,
        "geolocation_enabled": srv.geolocation is not None and srv.geolocation.enabled,
        "published_cycles": srv.metrics_store.published_cycles,
        "last_cycle": None if cycle is None else {
            "epoch": cycle.epoch,
            "scraped_epoch": cycle.scraped_epoch,
            "samples": len(cycle.samples),
            "omitted": cycle.omitted,
            "finished_at": cycle.finished_at,
            "age_sec": round(time.time() - cycle.finished_at, 3),
        },
    }
