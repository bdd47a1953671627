"""Router package: collects the exporter's HTTP routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from exporter.routers import ledger, metrics, status


def register_all_routers(app: FastAPI):
    app.include_router(metrics.router)
    app.include_router(status.router)
    app.include_router(ledger.router)
