from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING
from urllib.parse import quote

import aiofiles
import aiofiles.os
import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import FileResponse

from cltransfer import __version__
from cltransfer.server.models import (
    CreateItemRequest,
    CreateLibraryRequest,
    FailRequest,
    FileStatus,
    HealthResponse,
    ItemInfo,
    KeepAliveRequest,
    LibraryInfo,
    SessionCreate,
    SessionFileInfo,
    SessionFileSpec,
    SessionInfo,
    SourceType,
)
from cltransfer.server.state import RegistryError

if TYPE_CHECKING:
    from pathlib import Path

    from cltransfer.server.state import AppState, ContentRegistry


def get_state(request: Request) -> AppState:
    return request.app.state


StateDep = Depends(get_state)

logger = logging.getLogger(__name__)

router = APIRouter()

# Throttle registry updates to reduce lock overhead.
UPDATE_EVERY = 64


@router.get("/health", response_model=HealthResponse)
async def health(state: AppState = StateDep) -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=__version__,
        idle_timeout=state.registry.idle_timeout,
    )


# ---------------------------------------------------------------------------
# Libraries and items
# ---------------------------------------------------------------------------


@router.post("/libraries", response_model=LibraryInfo)
async def create_library(
    body: CreateLibraryRequest, state: AppState = StateDep,
) -> LibraryInfo:
    return state.registry.create_library(body.name)


@router.get("/libraries", response_model=list[LibraryInfo])
async def list_libraries(state: AppState = StateDep) -> list[LibraryInfo]:
    return state.registry.list_libraries()


@router.get("/libraries/{ref}", response_model=LibraryInfo)
async def get_library(ref: str, state: AppState = StateDep) -> LibraryInfo:
    """Look a library up by id or by name."""
    library = state.registry.get_library(ref)
    if library is None:
        raise HTTPException(status_code=404, detail="Library not found")
    return library


@router.post("/libraries/{library_id}/items", response_model=ItemInfo)
async def create_item(
    library_id: str, body: CreateItemRequest, state: AppState = StateDep,
) -> ItemInfo:
    return state.registry.create_item(library_id, body.name)


@router.get("/libraries/{library_id}/items", response_model=list[ItemInfo])
async def list_items(library_id: str, state: AppState = StateDep) -> list[ItemInfo]:
    items = state.registry.list_items(library_id)
    if items is None:
        raise HTTPException(status_code=404, detail="Library not found")
    return items


@router.get("/items/{item_id}", response_model=ItemInfo)
async def get_item(item_id: str, state: AppState = StateDep) -> ItemInfo:
    item = state.registry.get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return item


@router.get("/items/{item_id}/files/{name}")
async def download_item_file(
    item_id: str, name: str, state: AppState = StateDep,
) -> FileResponse:
    """Serve committed item content; also usable as a pull source."""
    path = state.registry.item_file_path(item_id, name)
    if path is None:
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path, filename=name)


# ---------------------------------------------------------------------------
# Update sessions
# ---------------------------------------------------------------------------


@router.post("/update-sessions", response_model=SessionInfo)
async def open_session(body: SessionCreate, state: AppState = StateDep) -> SessionInfo:
    return state.registry.open_session(body.item_id, body.content_version)


@router.get("/update-sessions/{session_id}", response_model=SessionInfo)
async def get_session(session_id: str, state: AppState = StateDep) -> SessionInfo:
    info = state.registry.get_session(session_id)
    if info is None:
        raise HTTPException(status_code=404, detail="Update session not found")
    return info


@router.post("/update-sessions/{session_id}/keep-alive", response_model=SessionInfo)
async def keep_alive(
    session_id: str, body: KeepAliveRequest, state: AppState = StateDep,
) -> SessionInfo:
    return state.registry.keep_alive(session_id, body.progress)


@router.post("/update-sessions/{session_id}/complete", response_model=SessionInfo)
async def complete_session(session_id: str, state: AppState = StateDep) -> SessionInfo:
    info = state.registry.complete(session_id)
    logger.info("Update session %s completed", session_id)
    return info


@router.post("/update-sessions/{session_id}/cancel", response_model=SessionInfo)
async def cancel_session(session_id: str, state: AppState = StateDep) -> SessionInfo:
    info = state.registry.cancel(session_id)
    logger.info("Update session %s canceled", session_id)
    return info


@router.post("/update-sessions/{session_id}/fail", response_model=SessionInfo)
async def fail_session(
    session_id: str, body: FailRequest, state: AppState = StateDep,
) -> SessionInfo:
    info = state.registry.fail(session_id, body.message)
    logger.info("Update session %s failed by client: %s", session_id, body.message)
    return info


@router.delete("/update-sessions/{session_id}", status_code=204)
async def delete_session(session_id: str, state: AppState = StateDep) -> None:
    if not state.registry.delete(session_id):
        raise HTTPException(status_code=404, detail="Update session not found")


# ---------------------------------------------------------------------------
# Session files
# ---------------------------------------------------------------------------


@router.post("/update-sessions/{session_id}/files", response_model=SessionFileInfo)
async def add_file(
    session_id: str,
    spec: SessionFileSpec,
    request: Request,
    background: BackgroundTasks,
    state: AppState = StateDep,
) -> SessionFileInfo:
    """
    Register a file with the session. Push files get back the endpoint the
    client must upload to; pull files are fetched by the server in the
    background.
    """
    upload_endpoint = None
    if spec.source_type == SourceType.PUSH:
        upload_endpoint = str(
            request.url_for(
                "upload_file", session_id=session_id, name=quote(spec.name, safe=""),
            )
        )
    record = state.registry.add_file(session_id, spec, upload_endpoint)
    if spec.source_type == SourceType.PULL:
        background.add_task(
            pull_file,
            state.registry,
            session_id,
            spec.name,
            spec.source_endpoint,
            state.fetch_transport,
        )
    return record


@router.get("/update-sessions/{session_id}/files", response_model=list[SessionFileInfo])
async def list_files(
    session_id: str, state: AppState = StateDep,
) -> list[SessionFileInfo]:
    files = state.registry.list_files(session_id)
    if files is None:
        raise HTTPException(status_code=404, detail="Update session not found")
    return files


@router.delete("/update-sessions/{session_id}/files/{name}", status_code=204)
async def remove_file(session_id: str, name: str, state: AppState = StateDep) -> None:
    state.registry.remove_file(session_id, name)


@router.put(
    "/update-sessions/{session_id}/files/{name}/content",
    response_model=SessionFileInfo,
    name="upload_file",
)
async def upload_file(
    session_id: str, name: str, request: Request, state: AppState = StateDep,
) -> SessionFileInfo:
    """
    Receive the bytes of a push file. The body is streamed to the session's
    staging area while the registry is kept up to date with the byte count.
    """
    registry = state.registry
    path = registry.begin_transfer(session_id, name, SourceType.PUSH)
    logger.info("Receiving %s (session=%s)", name, session_id)

    digest = hashlib.sha1()
    received = 0
    chunk_count = 0
    try:
        async with aiofiles.open(path, "wb") as f:
            async for chunk in request.stream():
                await f.write(chunk)
                digest.update(chunk)
                received += len(chunk)
                chunk_count += 1
                if chunk_count % UPDATE_EVERY == 0:
                    registry.record_progress(session_id, name, received)
    except Exception as exc:
        registry.fail_transfer(session_id, name, str(exc))
        raise HTTPException(
            status_code=500, detail=f"Error receiving data: {exc}"
        ) from exc

    record = registry.finish_transfer(session_id, name, received, digest.hexdigest())
    if record is None:
        await _discard_partial(path)
        raise HTTPException(status_code=404, detail="Update session not found")
    if record.status == FileStatus.ERROR:
        raise HTTPException(status_code=400, detail=record.error_message)
    logger.info("Received %s (%d bytes, session=%s)", name, received, session_id)
    return record


async def pull_file(
    registry: ContentRegistry,
    session_id: str,
    name: str,
    source: str,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Fetch a pull source into the session's staging area."""
    try:
        path = registry.begin_transfer(session_id, name, SourceType.PULL)
    except RegistryError as exc:
        logger.warning("Not pulling %s: %s", name, exc.detail)
        return

    logger.info("Pulling %s from %s (session=%s)", name, source, session_id)
    digest = hashlib.sha1()
    received = 0
    chunk_count = 0
    try:
        async with httpx.AsyncClient(
            transport=transport, follow_redirects=True, timeout=30.0,
        ) as client:
            async with client.stream("GET", source) as resp:
                resp.raise_for_status()
                async with aiofiles.open(path, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        await f.write(chunk)
                        digest.update(chunk)
                        received += len(chunk)
                        chunk_count += 1
                        if chunk_count % UPDATE_EVERY == 0:
                            registry.record_progress(session_id, name, received)
    except Exception as exc:
        registry.fail_transfer(session_id, name, str(exc))
        await _discard_partial(path)
        return

    if registry.finish_transfer(session_id, name, received, digest.hexdigest()) is None:
        await _discard_partial(path)
        return
    logger.info("Pulled %s (%d bytes, session=%s)", name, received, session_id)


async def _discard_partial(path: Path) -> None:
    if await aiofiles.os.path.exists(path):
        await aiofiles.os.remove(path)
