from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from cltransfer.client.driver import FileTransferDriver
from cltransfer.client.lease import SessionLeaseClock
from cltransfer.client.session import UpdateSession
from cltransfer.client.settings import TransferSettings
from cltransfer.client.transfer_spec import TransferSpec, classify
from cltransfer.errors import (
    ContentLibraryError,
    InvalidStateError,
    NotFoundError,
    RemoteError,
    TransferFailedError,
    UnsupportedProtocolError,
)
from cltransfer.server.models import FileStatus, ItemInfo, SessionFileInfo, SourceType

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable, Iterable

    from cltransfer.client.api import ContentLibraryClient
    from cltransfer.client.driver import PushTransfer, TransferOutcome

logger = logging.getLogger(__name__)


@runtime_checkable
class TransferProgressCallback(Protocol):
    """Callback protocol for observing per-file transfer progress."""

    def file_started(
            self,
            name: str,
            source_type: SourceType,
            total_bytes: int | None,
        ) -> None: ...

    def file_progress(self, name: str, percent: float) -> None: ...
    def file_done(self, name: str, info: SessionFileInfo | None) -> None: ...
    def file_error(self, name: str, exc: BaseException) -> None: ...


@dataclass(frozen=True)
class ItemHandle:
    """A library item resolved once at the boundary."""

    id: str
    name: str
    library_id: str
    content_version: str


@dataclass(frozen=True)
class FileSource:
    """One file to add: where it comes from and what to call it."""

    locator: str
    name: str | None = None
    source_type: SourceType | None = None
    checksum: str | None = None


@dataclass(frozen=True)
class _PlannedFile:
    name: str
    spec: TransferSpec
    local_path: Path | None
    checksum: str | None


def resolve_item(
    api: ContentLibraryClient, ref: str | ItemInfo | ItemHandle,
) -> ItemHandle:
    """Resolve an item reference into an :class:`ItemHandle`.

    Accepts a handle, an :class:`ItemInfo`, a ``"library/item"`` path (the
    library given by name or id) or a bare item id.
    """
    if isinstance(ref, ItemHandle):
        return ref
    if isinstance(ref, ItemInfo):
        item = ref
    elif "/" in ref:
        library_ref, _, item_name = ref.partition("/")
        library = api.get_library(library_ref)
        matches = [i for i in api.list_items(library.id) if i.name == item_name]
        if not matches:
            raise NotFoundError(
                404, f"Item '{item_name}' not found in library '{library.name}'",
            )
        item = matches[0]
    else:
        item = api.get_item(ref)
    return ItemHandle(
        id=item.id,
        name=item.name,
        library_id=item.library_id,
        content_version=item.content_version,
    )


def default_file_name(spec: TransferSpec) -> str:
    """Derive a file name from the last path segment of the source."""
    endpoint = spec.endpoint
    if spec.protocol in ("http", "https"):
        endpoint = httpx.URL(endpoint).path
    name = re.split(r"[/\\\]]", endpoint.rstrip("/\\"))[-1].strip()
    if not name:
        raise ValueError(f"Cannot derive a file name from {spec.endpoint!r}")
    return name


def split_datastore_path(endpoint: str) -> tuple[str, str]:
    """Split ``ds://[datastore] dir/file`` or ``ds://datastore/dir/file``."""
    path = endpoint.split("://", 1)[-1]
    if path.startswith("["):
        datastore, _, rest = path[1:].partition("]")
        return datastore, rest.strip().lstrip("/")
    datastore, _, rest = path.partition("/")
    return datastore, rest


class UpdateSessionOrchestrator:
    """Runs add-file and remove-file sequences through update sessions."""

    def __init__(
        self,
        api: ContentLibraryClient,
        settings: TransferSettings | None = None,
        driver: FileTransferDriver | None = None,
        progress: TransferProgressCallback | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api = api
        self.settings = settings or TransferSettings()
        self.driver = driver or FileTransferDriver(
            chunk_size=self.settings.chunk_size,
            timeout=self.settings.upload_timeout,
        )
        self.progress = progress
        self._sleep = sleep

    def open_session(self, item: ItemHandle) -> UpdateSession:
        lease = SessionLeaseClock(
            idle_timeout=self.settings.idle_timeout,
            keepalive_interval=self.settings.keepalive_interval,
        )
        return UpdateSession.open(self.api, item.id, item.content_version, lease=lease)

    # -- add -----------------------------------------------------------------

    def add_file(
        self,
        item_ref: str | ItemInfo | ItemHandle,
        locator: str,
        name: str | None = None,
        source_type: SourceType | None = None,
        *,
        wait: bool = False,
        abort: threading.Event | None = None,
    ) -> UpdateSession:
        return self.add_files(
            item_ref,
            [FileSource(locator, name=name, source_type=source_type)],
            wait=wait,
            abort=abort,
        )

    def add_files(
        self,
        item_ref: str | ItemInfo | ItemHandle | None,
        sources: Iterable[FileSource],
        *,
        session: UpdateSession | None = None,
        wait: bool = False,
        abort: threading.Event | None = None,
    ) -> UpdateSession:
        """Add files to an item through one update session, then complete it.

        Push sources are uploaded one at a time while the session's lease is
        kept alive; pull sources are registered and fetched by the server.
        With ``wait`` the session is polled after completion until every pull
        file is ready or has failed. Pass ``session`` to reuse an active one.
        """
        # Everything that can be validated locally is, before any remote call.
        planned = [self._plan(source) for source in sources]

        if session is None:
            if item_ref is None:
                raise ValueError("either item_ref or session is required")
            session = self.open_session(resolve_item(self.api, item_ref))
        elif not session.is_active:
            raise InvalidStateError(f"Cannot reuse update session {session.id}: not active")

        pulls: list[str] = []
        try:
            for plan in planned:
                if plan.spec.source_type == SourceType.PUSH:
                    self._push(session, plan, abort)
                else:
                    session.add_file(plan.name, plan.spec, checksum=plan.checksum)
                    if self.progress:
                        self.progress.file_started(plan.name, SourceType.PULL, None)
                    pulls.append(plan.name)
            session.complete()
        except BaseException as exc:
            self._abandon(session, exc)
            raise

        if pulls and wait:
            session.wait_for_files(
                pulls,
                timeout=self.settings.pull_timeout,
                interval=self.settings.poll_interval,
                sleep=self._sleep,
            )
            failed = {
                f.name: f for f in session.files
                if f.name in pulls and f.status == FileStatus.ERROR
            }
            for name in pulls:
                if self.progress and name not in failed:
                    self.progress.file_done(name, session.file(name))
            if failed:
                first = next(iter(failed.values()))
                exc = TransferFailedError(first.name, first.error_message or "pull failed")
                if self.progress:
                    for name in failed:
                        self.progress.file_error(name, exc)
                raise exc
        elif self.progress:
            for name in pulls:
                self.progress.file_done(name, session.file(name))
        return session

    def _plan(self, source: FileSource) -> _PlannedFile:
        spec = classify(source.locator, source.source_type)
        name = source.name or default_file_name(spec)
        local_path = None
        if spec.source_type == SourceType.PUSH:
            local_path = self._local_path(spec)
        return _PlannedFile(
            name=name, spec=spec, local_path=local_path, checksum=source.checksum,
        )

    def _local_path(self, spec: TransferSpec) -> Path:
        if spec.protocol == "file":
            return Path(spec.endpoint)
        if spec.protocol == "ds":
            datastore, relative = split_datastore_path(spec.endpoint)
            mount = self.settings.datastore_mounts.get(datastore)
            if mount is None:
                raise UnsupportedProtocolError(
                    f"No local mount configured for datastore '{datastore}'"
                )
            return Path(mount) / relative
        raise UnsupportedProtocolError(
            f"Cannot push '{spec.protocol}' sources from the client"
        )

    def _push(
        self,
        session: UpdateSession,
        plan: _PlannedFile,
        abort: threading.Event | None,
    ) -> None:
        path = plan.local_path
        size = path.stat().st_size
        record = session.add_file(plan.name, plan.spec, size=size, checksum=plan.checksum)
        if not record.upload_endpoint:
            raise RemoteError(None, f"No upload endpoint issued for {plan.name}")
        endpoint = self.api.absolute_url(record.upload_endpoint)

        if self.progress:
            self.progress.file_started(plan.name, SourceType.PUSH, size)
        try:
            with self.driver.start(endpoint, path) as transfer:
                outcome = self._drive(session, plan.name, transfer, abort)
            if not outcome.completed:
                raise TransferFailedError(plan.name, outcome.error or "upload failed")
        except BaseException as exc:
            if self.progress:
                self.progress.file_error(plan.name, exc)
            raise
        logger.info("Uploaded %s (%d bytes) in session %s", plan.name, size, session.id)
        if self.progress:
            self.progress.file_done(plan.name, record)

    def _drive(
        self,
        session: UpdateSession,
        name: str,
        transfer: PushTransfer,
        abort: threading.Event | None,
    ) -> TransferOutcome:
        """Observe an upload until it ends, renewing the lease while it runs."""
        last_percent = -1.0
        while True:
            outcome = transfer.wait(self.settings.poll_interval)
            percent = transfer.percent
            if percent != last_percent:
                last_percent = percent
                if self.progress:
                    self.progress.file_progress(name, percent)
            if outcome is not None:
                return outcome
            if abort is not None and abort.is_set():
                transfer.cancel()
                raise TransferFailedError(name, "cancelled by caller")
            if session.lease.due():
                session.keep_alive(percent)

    # -- remove --------------------------------------------------------------

    def remove_file(
        self, item_ref: str | ItemInfo | ItemHandle, name: str,
    ) -> UpdateSession:
        return self.remove_files(item_ref, [name])

    def remove_files(
        self, item_ref: str | ItemInfo | ItemHandle, names: Iterable[str],
    ) -> UpdateSession:
        """Remove files (exact names) from an item through one session."""
        session = self.open_session(resolve_item(self.api, item_ref))
        try:
            for name in names:
                session.remove_file(name)
                logger.info("Removing %s via session %s", name, session.id)
            session.complete()
        except BaseException as exc:
            self._abandon(session, exc)
            raise
        return session

    # -- failure -------------------------------------------------------------

    def _abandon(self, session: UpdateSession, exc: BaseException) -> None:
        """Fail a still-active session before ``exc`` propagates."""
        if not session.is_active:
            return
        if isinstance(exc, TransferFailedError):
            reason = exc.reason
        else:
            reason = str(exc) or exc.__class__.__name__
        try:
            session.fail(reason)
        except Exception as cleanup_exc:
            logger.error(
                "Could not fail update session %s: %s", session.id, cleanup_exc,
            )
            if isinstance(exc, ContentLibraryError):
                exc.attach_cleanup_error(cleanup_exc)
            else:
                exc.add_note(f"cleanup also failed: {cleanup_exc!r}")
