from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cltransfer.server.routes import router
from cltransfer.server.state import (
    DEFAULT_IDLE_TIMEOUT,
    AppState,
    ContentRegistry,
    RegistryError,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    import httpx


async def _registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def create_app(
    storage_dir: str = "./library",
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
    fetch_transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Create a configured reference content library server.

    Args:
        storage_dir: Directory holding committed item files and session staging.
        idle_timeout: Seconds an active update session survives without a
                      keepalive or upload activity.
        fetch_transport: Optional httpx transport used for pull transfers.
        clock: Source of the current (timezone-aware) time, for session expiry.
    """
    app = FastAPI(title="cltransfer")
    storage = Path(storage_dir)
    storage.mkdir(parents=True, exist_ok=True)
    app.state = AppState(
        registry=ContentRegistry(storage, idle_timeout=idle_timeout, clock=clock),
        fetch_transport=fetch_transport,
    )
    app.add_exception_handler(RegistryError, _registry_error_handler)
    app.include_router(router, prefix="/v1")
    return app
