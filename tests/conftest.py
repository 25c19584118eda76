from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
import uvicorn
from fastapi import FastAPI

from cltransfer.client.api import ContentLibraryClient
from cltransfer.client.driver import TransferOutcome
from cltransfer.client.settings import TransferSettings
from cltransfer.server.app import create_app
from cltransfer.server.state import ContentRegistry


class FakeClock:
    """Server clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class LiveServer:
    base_url: str
    app: FastAPI
    registry: ContentRegistry
    clock: FakeClock


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def storage_dir(tmp_path) -> Path:
    d = tmp_path / "library"
    d.mkdir()
    return d


@pytest.fixture()
def app(storage_dir, clock):
    """Reference server app; pull transfers are routed back into the app."""
    application = create_app(storage_dir=str(storage_dir), clock=clock)
    application.state.fetch_transport = httpx.ASGITransport(app=application)
    return application


@pytest.fixture()
def registry(app) -> ContentRegistry:
    return app.state.registry


@pytest.fixture()
def client(app):
    """httpx AsyncClient wired to the app via ASGI transport."""
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://test")


@pytest.fixture()
def live_server(tmp_path, clock):
    """Start a real reference server on a free port in a background thread."""
    storage = tmp_path / "live_library"
    app = create_app(storage_dir=str(storage), clock=clock)

    config = uvicorn.Config(app, host="127.0.0.1", port=0, log_level="error")
    server = uvicorn.Server(config)

    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()

    # Wait for server to be ready
    for _ in range(50):
        if server.started:
            break
        time.sleep(0.1)
    else:
        raise RuntimeError("Server did not start in time")

    # Extract the actual bound port
    sockets = server.servers[0].sockets
    port = sockets[0].getsockname()[1]

    yield LiveServer(
        base_url=f"http://127.0.0.1:{port}",
        app=app,
        registry=app.state.registry,
        clock=clock,
    )

    server.should_exit = True
    thread.join(timeout=5)


@pytest.fixture()
def api(live_server):
    with ContentLibraryClient(live_server.base_url) as c:
        yield c


@pytest.fixture()
def item(live_server):
    """An empty item 'ubuntu' in library 'isos' on the live server."""
    library = live_server.registry.create_library("isos")
    return live_server.registry.create_item(library.id, "ubuntu")


@pytest.fixture()
def fast_settings() -> TransferSettings:
    return TransferSettings(poll_interval=0.01, keepalive_interval=0, chunk_size=16_384)


@pytest.fixture()
def sample_file(tmp_path) -> Path:
    f = tmp_path / "a.iso"
    f.write_bytes(bytes(range(256)) * 1024)
    return f


class ScriptedTransfer:
    """Stand-in for PushTransfer that reports a fixed sequence of percentages.

    When the script runs out it performs the real upload (for a successful
    outcome) so the server sees the bytes, then resolves.
    """

    def __init__(self, endpoint, file_path, steps, error=None):
        self.endpoint = endpoint
        self.file_path = Path(file_path)
        self.steps = list(steps)
        self.error = error
        self.percent = 0.0
        self.cancelled = False
        self.closed = False
        self._index = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def wait(self, timeout=None):
        if self._index < len(self.steps):
            self.percent = max(self.percent, self.steps[self._index])
            self._index += 1
            return None
        size = self.file_path.stat().st_size
        if self.error is not None:
            return TransferOutcome(completed=False, bytes_sent=0, error=self.error)
        resp = httpx.put(self.endpoint, content=self.file_path.read_bytes())
        resp.raise_for_status()
        self.percent = 100.0
        return TransferOutcome(completed=True, bytes_sent=size)

    def cancel(self):
        self.cancelled = True


class ScriptedDriver:
    def __init__(self, steps, error=None):
        self.steps = steps
        self.error = error
        self.transfers: list[ScriptedTransfer] = []

    def start(self, endpoint, file_path):
        transfer = ScriptedTransfer(endpoint, file_path, self.steps, self.error)
        self.transfers.append(transfer)
        return transfer


@pytest.fixture()
def scripted_driver():
    """Factory for drivers that replay a scripted percent sequence."""
    return ScriptedDriver
