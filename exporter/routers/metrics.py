"""Metrics router: /metrics in the Prometheus text format."""

from fastapi import APIRouter
from fastapi.responses import Response
from starlette.requests import Request

from exporter.deps import get_server
from exporter.exposition import CONTENT_TYPE_LATEST, render

router = APIRouter()


@router.get("/metrics")
async def metrics(request: Request):
    srv = get_server(request)
    return Response(content=render(srv.registry), media_type=CONTENT_TYPE_LATEST)
