"""Tests for the API client, item resolution and the push transfer driver."""

from __future__ import annotations

import threading
from unittest.mock import patch

import pytest

from cltransfer.client.api import ContentLibraryClient
from cltransfer.client.driver import (
    WRITE_TIMEOUT,
    FileTransferDriver,
    PushTransfer,
    TransferCancelled,
    _file_chunk_generator,
)
from cltransfer.client.orchestrator import ItemHandle, resolve_item
from cltransfer.errors import ConflictError, NotFoundError, RemoteUnavailableError
from cltransfer.server.models import SessionFileSpec, SourceType

# ---------------------------------------------------------------------------
# ContentLibraryClient
# ---------------------------------------------------------------------------


class TestContentLibraryClient:
    def test_health(self, api):
        assert api.health()["status"] == "ok"

    def test_library_by_name(self, api, item):
        library = api.get_library("isos")
        assert library.id == item.library_id
        assert [i.name for i in api.list_items(library.id)] == ["ubuntu"]

    def test_missing_item_maps_to_not_found(self, api):
        with pytest.raises(NotFoundError) as exc_info:
            api.get_item("nope")
        assert exc_info.value.status_code == 404
        assert "Item not found" in exc_info.value.detail

    def test_conflict_maps_to_conflict_error(self, api, item):
        api.open_session(item.id, "1")
        with pytest.raises(ConflictError):
            api.open_session(item.id, "1")

    def test_unreachable_server(self):
        with ContentLibraryClient("http://127.0.0.1:9") as dead:
            with pytest.raises(RemoteUnavailableError):
                dead.health()

    def test_absolute_url(self):
        with ContentLibraryClient("http://host:1320/") as c:
            assert c.absolute_url("/v1/x") == "http://host:1320/v1/x"
            assert c.absolute_url("http://other/v1/x") == "http://other/v1/x"


# ---------------------------------------------------------------------------
# resolve_item
# ---------------------------------------------------------------------------


class TestResolveItem:
    def test_library_item_path(self, api, item):
        handle = resolve_item(api, "isos/ubuntu")
        assert handle == ItemHandle(
            id=item.id, name="ubuntu", library_id=item.library_id, content_version="1",
        )

    def test_library_id_path(self, api, item):
        assert resolve_item(api, f"{item.library_id}/ubuntu").id == item.id

    def test_item_id(self, api, item):
        assert resolve_item(api, item.id).name == "ubuntu"

    def test_item_info(self, api, item):
        assert resolve_item(api, item).id == item.id

    def test_handle_passes_through(self, api):
        handle = ItemHandle(id="i", name="n", library_id="l", content_version="1")
        assert resolve_item(api, handle) is handle

    def test_missing_item_in_library(self, api, item):
        with pytest.raises(NotFoundError, match="debian"):
            resolve_item(api, "isos/debian")


# ---------------------------------------------------------------------------
# _file_chunk_generator
# ---------------------------------------------------------------------------


class TestFileChunkGenerator:
    def test_chunked_reads(self, tmp_path):
        f = tmp_path / "data.bin"
        content = b"abcdefghij"
        f.write_bytes(content)
        chunks = list(_file_chunk_generator(f, chunk_size=3))
        assert len(chunks) == 4  # 3+3+3+1
        assert b"".join(chunks) == content

    def test_callback_reports_sizes(self, tmp_path):
        f = tmp_path / "data.bin"
        f.write_bytes(b"abcdefghij")
        sizes = []
        list(_file_chunk_generator(f, chunk_size=4, callback=sizes.append))
        assert sizes == [4, 4, 2]

    def test_cancel_stops_reading(self, tmp_path):
        f = tmp_path / "data.bin"
        f.write_bytes(b"abcdefghij")
        cancelled = threading.Event()
        gen = _file_chunk_generator(f, chunk_size=4, cancelled=cancelled)
        assert next(gen) == b"abcd"
        cancelled.set()
        with pytest.raises(TransferCancelled):
            next(gen)


# ---------------------------------------------------------------------------
# PushTransfer / FileTransferDriver (integration with the live server)
# ---------------------------------------------------------------------------


@pytest.fixture()
def upload_endpoint(api, item, sample_file):
    session = api.open_session(item.id, "1")
    record = api.add_session_file(
        session.id,
        SessionFileSpec(
            name="a.iso",
            source_type=SourceType.PUSH,
            size=sample_file.stat().st_size,
        ),
    )
    return session.id, record.upload_endpoint


class TestPushTransfer:
    def test_upload_completes(self, api, upload_endpoint, sample_file):
        session_id, endpoint = upload_endpoint
        driver = FileTransferDriver(chunk_size=4096)
        with driver.start(endpoint, sample_file) as transfer:
            outcome = transfer.wait(timeout=30)
        assert outcome is not None
        assert outcome.completed
        assert outcome.bytes_sent == sample_file.stat().st_size
        assert transfer.percent == 100.0

        files = api.list_session_files(session_id)
        assert files[0].status.value == "ready"
        assert files[0].bytes_transferred == sample_file.stat().st_size

    def test_progress_is_monotonic(self, upload_endpoint, sample_file):
        _, endpoint = upload_endpoint
        seen = []
        with FileTransferDriver(chunk_size=1024).start(endpoint, sample_file) as transfer:
            while (outcome := transfer.wait(timeout=0.001)) is None:
                seen.append(transfer.percent)
            seen.append(transfer.percent)
        assert outcome.completed
        assert seen == sorted(seen)
        assert seen[-1] == 100.0

    def test_rejected_upload_fails(self, upload_endpoint, sample_file, tmp_path):
        _, endpoint = upload_endpoint
        # Declared size does not match what gets sent.
        other = tmp_path / "other.iso"
        other.write_bytes(b"not the same size")
        with FileTransferDriver().start(endpoint, other) as transfer:
            outcome = transfer.wait(timeout=30)
        assert not outcome.completed
        assert "rejected (400)" in outcome.error

    def test_unknown_endpoint_fails(self, live_server, tmp_path):
        small = tmp_path / "small.iso"
        small.write_bytes(b"tiny")
        endpoint = f"{live_server.base_url}/v1/update-sessions/nope/files/a.iso/content"
        with FileTransferDriver().start(endpoint, small) as transfer:
            outcome = transfer.wait(timeout=30)
        assert not outcome.completed
        assert "404" in outcome.error

    def test_unreachable_endpoint_fails(self, sample_file):
        with FileTransferDriver().start("http://127.0.0.1:9/up", sample_file) as transfer:
            outcome = transfer.wait(timeout=30)
        assert not outcome.completed
        assert outcome.error

    def test_cancel_before_first_chunk(self, upload_endpoint, sample_file):
        _, endpoint = upload_endpoint
        transfer = PushTransfer(endpoint, sample_file)
        transfer.cancel()
        with transfer.start():
            outcome = transfer.wait(timeout=30)
        assert not outcome.completed
        assert outcome.error == "cancelled"

    def test_close_releases_worker(self, upload_endpoint, sample_file):
        _, endpoint = upload_endpoint
        with FileTransferDriver(chunk_size=16).start(endpoint, sample_file) as transfer:
            pass
        assert transfer.done
        assert transfer._pool is None

    def test_wait_before_start(self, sample_file):
        with pytest.raises(RuntimeError):
            PushTransfer("http://x/up", sample_file).wait(0)

    def test_write_timeout_is_bounded(self, sample_file):
        with patch("cltransfer.client.driver.httpx.Client") as mock_client_cls:
            with FileTransferDriver(timeout=3600.0).start("http://x/up", sample_file) as transfer:
                outcome = transfer.wait(timeout=30)
        assert outcome.completed
        timeout = mock_client_cls.call_args.kwargs["timeout"]
        assert timeout.write == WRITE_TIMEOUT
        assert timeout.read == 3600.0
        assert timeout.connect == 10.0

    def test_write_timeout_never_exceeds_overall(self, sample_file):
        transfer = PushTransfer("http://x/up", sample_file, timeout=5.0)
        assert transfer._client_timeout().write == 5.0
