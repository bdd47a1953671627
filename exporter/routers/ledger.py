"""Ledger router: persisted reward records and the geolocation cache."""

from fastapi import APIRouter, Depends, Query
from starlette.requests import Request

from exporter.apy import epoch_apy
from exporter.deps import get_server, get_storage

router = APIRouter()


@router.get("/api/rewards/{identity}")
async def identity_rewards(
    request: Request,
    identity: str,
    limit: int = Query(default=20, ge=1, le=500),
    storage=Depends(get_storage),
):
    records = await get_server(request).ledger.history(identity, limit=limit)
    items = [{**r, "apy": epoch_apy(r)} for r in records]
    return {"identity": identity, "items": items, "total": len(items)}


@router.get("/api/rewards")
async def rewards_summary(storage=Depends(get_storage)):
    epochs = await storage.rewards.epochs()
    return {
        "epochs": [{"epoch": e, "records": await storage.rewards.count(epoch=e)} for e in epochs],
        "total": await storage.rewards.count(),
    }


@router.get("/api/geolocation")
async def geolocation_entries(request: Request, storage=Depends(get_storage)):
    srv = get_server(request)
    entries = await srv.geolocation.entries()
    return {
        "enabled": srv.geolocation.enabled,
        "items": [entries[address] for address in sorted(entries)],
        "total": len(entries),
    }
