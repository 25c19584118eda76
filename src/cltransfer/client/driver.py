from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

logger = logging.getLogger(__name__)

# Longest a single socket write may stall; bounds how long close() can block
# on a cancelled upload whose peer stopped reading.
WRITE_TIMEOUT = 60.0


class TransferCancelled(Exception):
    """Raised inside the upload body generator when the transfer is cancelled."""


@dataclass(frozen=True)
class TransferOutcome:
    """How a push transfer ended. Produced exactly once per transfer."""

    completed: bool
    bytes_sent: int
    error: str | None = None


def _file_chunk_generator(
    file_path: Path,
    chunk_size: int = 1_048_576,
    callback: Callable[[int], None] | None = None,
    cancelled: threading.Event | None = None,
) -> Iterator[bytes]:
    """Read a file in chunks, calling callback with each chunk's size."""
    with open(file_path, "rb") as f:
        while True:
            if cancelled is not None and cancelled.is_set():
                raise TransferCancelled("transfer cancelled")
            chunk = f.read(chunk_size)
            if not chunk:
                break
            if callback:
                callback(len(chunk))
            yield chunk


class PushTransfer:
    """One in-flight upload of a local file to a server-issued endpoint.

    The upload runs on a private single-worker pool. Byte counts flow back
    through a queue and the outcome through a future, so nothing is shared
    with other transfers. Use it as a context manager: leaving the block
    cancels a still-running upload and waits for the worker to release the
    file handle and the HTTP connection.
    """

    def __init__(
        self,
        endpoint: str,
        file_path: Path,
        chunk_size: int = 1_048_576,
        timeout: float = 3600.0,
    ) -> None:
        self.endpoint = endpoint
        self.file_path = Path(file_path)
        self.total_bytes = self.file_path.stat().st_size
        self._chunk_size = chunk_size
        self._timeout = timeout
        self._cancelled = threading.Event()
        self._updates: queue.SimpleQueue[int] = queue.SimpleQueue()
        self._bytes_sent = 0
        self._percent = 0.0
        self._pool: ThreadPoolExecutor | None = None
        self._future: Future[TransferOutcome] | None = None

    def __enter__(self) -> PushTransfer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self) -> PushTransfer:
        if self._future is not None:
            raise RuntimeError("transfer already started")
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="push")
        self._future = self._pool.submit(self._run)
        logger.debug("Started upload of %s to %s", self.file_path, self.endpoint)
        return self

    @property
    def bytes_sent(self) -> int:
        self._drain()
        return self._bytes_sent

    @property
    def percent(self) -> float:
        """Percent complete; never decreases during one transfer."""
        self._drain()
        return self._percent

    @property
    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def wait(self, timeout: float | None = None) -> TransferOutcome | None:
        """Wait up to ``timeout`` seconds; *None* means the upload is still running."""
        if self._future is None:
            raise RuntimeError("transfer not started")
        try:
            outcome = self._future.result(timeout=timeout)
        except FutureTimeoutError:
            return None
        self._drain()
        if outcome.completed:
            self._percent = 100.0
        return outcome

    def cancel(self) -> None:
        self._cancelled.set()

    def close(self) -> None:
        """Cancel if still running and release the worker."""
        if self._future is not None and not self._future.done():
            logger.warning("Abandoning upload of %s", self.file_path)
            self.cancel()
        if self._pool is not None:
            self._pool.shutdown(wait=True, cancel_futures=True)
            self._pool = None

    def _drain(self) -> None:
        while True:
            try:
                sent = self._updates.get_nowait()
            except queue.Empty:
                break
            self._bytes_sent = max(self._bytes_sent, sent)
        if self.total_bytes:
            percent = 100.0 * self._bytes_sent / self.total_bytes
        else:
            percent = 0.0
        self._percent = max(self._percent, min(percent, 100.0))

    def _client_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            self._timeout, connect=10.0, write=min(self._timeout, WRITE_TIMEOUT),
        )

    def _run(self) -> TransferOutcome:
        sent = 0

        def on_chunk(delta: int) -> None:
            nonlocal sent
            sent += delta
            self._updates.put(sent)

        stream = _file_chunk_generator(
            self.file_path,
            chunk_size=self._chunk_size,
            callback=on_chunk,
            cancelled=self._cancelled,
        )
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Length": str(self.total_bytes),
        }
        try:
            with httpx.Client(timeout=self._client_timeout()) as client:
                resp = client.put(self.endpoint, headers=headers, content=stream)
                resp.raise_for_status()
        except TransferCancelled:
            return TransferOutcome(completed=False, bytes_sent=sent, error="cancelled")
        except httpx.HTTPStatusError as exc:
            try:
                detail = exc.response.json().get("detail", exc.response.text)
            except ValueError:
                detail = exc.response.text
            return TransferOutcome(
                completed=False,
                bytes_sent=sent,
                error=f"upload rejected ({exc.response.status_code}): {detail}",
            )
        except Exception as exc:
            logger.debug("Upload of %s failed", self.file_path, exc_info=True)
            return TransferOutcome(
                completed=False, bytes_sent=sent, error=str(exc) or repr(exc),
            )
        logger.debug("Uploaded %d bytes of %s", sent, self.file_path)
        return TransferOutcome(completed=True, bytes_sent=sent)


class FileTransferDriver:
    """Starts push transfers; the orchestrator observes and paces them."""

    def __init__(self, chunk_size: int = 1_048_576, timeout: float = 3600.0) -> None:
        self.chunk_size = chunk_size
        self.timeout = timeout

    def start(self, endpoint: str, file_path: Path) -> PushTransfer:
        return PushTransfer(
            endpoint,
            file_path,
            chunk_size=self.chunk_size,
            timeout=self.timeout,
        ).start()
