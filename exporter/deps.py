"""Request-scoped accessors used by the router modules."""

from fastapi import HTTPException
from starlette.requests import Request


def get_server(request: Request):
    return request.app.state.server


def get_storage(request: Request):
    """The server's StorageManager; 503 until storage is open."""
    storage = get_server(request).storage
    if storage is None or storage.rewards is None:
        raise HTTPException(status_code=503, detail="Storage not initialized")
    return storage
