from __future__ import annotations

import logging
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from cltransfer.server.models import (
    FileStatus,
    ItemFileInfo,
    ItemInfo,
    LibraryInfo,
    SessionFileInfo,
    SessionFileSpec,
    SessionInfo,
    SessionState,
    SourceType,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    import httpx

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 300.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegistryError(Exception):
    """Raised by the registry; carries the HTTP status the API should answer with."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


@dataclass
class _Session:
    info: SessionInfo
    staging: Path
    files: dict[str, SessionFileInfo] = field(default_factory=dict)
    removals: set[str] = field(default_factory=set)
    finished_at: float | None = None


class ContentRegistry:
    """Thread-safe in-memory registry of libraries, items and update sessions.

    File content lives on disk below ``storage_dir``: committed item files in
    ``items/<item_id>/`` and in-flight session content in
    ``sessions/<session_id>/``.
    """

    def __init__(
        self,
        storage_dir: Path,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage_dir = storage_dir
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._libraries: dict[str, LibraryInfo] = {}
        self._items: dict[str, ItemInfo] = {}
        self._sessions: dict[str, _Session] = {}
        self._lock = threading.Lock()

    # -- libraries and items -------------------------------------------------

    def create_library(self, name: str) -> LibraryInfo:
        with self._lock:
            if any(lib.name == name for lib in self._libraries.values()):
                raise RegistryError(409, f"Library '{name}' already exists")
            library = LibraryInfo(id=str(uuid.uuid4()), name=name)
            self._libraries[library.id] = library
        logger.info("Created library %s (%s)", name, library.id)
        return library

    def get_library(self, ref: str) -> LibraryInfo | None:
        """Look a library up by id first, then by name."""
        with self._lock:
            if ref in self._libraries:
                return self._libraries[ref]
            for library in self._libraries.values():
                if library.name == ref:
                    return library
        return None

    def list_libraries(self) -> list[LibraryInfo]:
        with self._lock:
            return list(self._libraries.values())

    def create_item(self, library_id: str, name: str) -> ItemInfo:
        with self._lock:
            if library_id not in self._libraries:
                raise RegistryError(404, "Library not found")
            for item in self._items.values():
                if item.library_id == library_id and item.name == name:
                    raise RegistryError(409, f"Item '{name}' already exists")
            item = ItemInfo(id=str(uuid.uuid4()), library_id=library_id, name=name)
            self._items[item.id] = item
        logger.info("Created item %s (%s)", name, item.id)
        return item.model_copy(deep=True)

    def get_item(self, item_id: str) -> ItemInfo | None:
        with self._lock:
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    def list_items(self, library_id: str) -> list[ItemInfo] | None:
        with self._lock:
            if library_id not in self._libraries:
                return None
            return [
                item.model_copy(deep=True)
                for item in self._items.values()
                if item.library_id == library_id
            ]

    def item_file_path(self, item_id: str, name: str) -> Path | None:
        with self._lock:
            item = self._items.get(item_id)
            if item is None or not any(f.name == name for f in item.files):
                return None
        return self._item_dir(item_id) / name

    # -- update sessions -----------------------------------------------------

    def open_session(self, item_id: str, content_version: str) -> SessionInfo:
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise RegistryError(404, "Item not found")
            for sid in list(self._sessions):
                session = self._live(sid)
                if (
                    session is not None
                    and session.info.item_id == item_id
                    and session.info.state == SessionState.ACTIVE
                ):
                    raise RegistryError(
                        409, f"Item {item_id} already has an active update session",
                    )
            if content_version != item.content_version:
                raise RegistryError(
                    409,
                    f"Item content version is {item.content_version}, "
                    f"not {content_version}",
                )
            info = SessionInfo(
                id=str(uuid.uuid4()),
                item_id=item_id,
                content_version=content_version,
                expires_at=self._lease_end(),
            )
            staging = self.storage_dir / "sessions" / info.id
            staging.mkdir(parents=True, exist_ok=True)
            self._sessions[info.id] = _Session(info=info, staging=staging)
        logger.info("Opened update session %s on item %s", info.id, item_id)
        return info.model_copy()

    def get_session(self, session_id: str) -> SessionInfo | None:
        with self._lock:
            session = self._live(session_id)
            return session.info.model_copy() if session else None

    def keep_alive(self, session_id: str, progress: int | None) -> SessionInfo:
        with self._lock:
            session = self._active(session_id)
            if progress is not None:
                session.info.progress = progress
            session.info.expires_at = self._lease_end()
            return session.info.model_copy()

    def complete(self, session_id: str) -> SessionInfo:
        with self._lock:
            session = self._active(session_id)
            for f in session.files.values():
                if f.status == FileStatus.ERROR:
                    raise RegistryError(
                        400, f"File '{f.name}' failed: {f.error_message}",
                    )
                if f.source_type == SourceType.PUSH and f.status != FileStatus.READY:
                    raise RegistryError(
                        400, f"File '{f.name}' has not been uploaded",
                    )
            session.info.state = SessionState.DONE
            session.info.progress = 100
            session.finished_at = time.time()
            self._commit(session)
            return session.info.model_copy()

    def cancel(self, session_id: str) -> SessionInfo:
        with self._lock:
            session = self._active(session_id)
            session.info.state = SessionState.CANCELED
            session.finished_at = time.time()
            self._discard(session)
            return session.info.model_copy()

    def fail(self, session_id: str, message: str) -> SessionInfo:
        with self._lock:
            session = self._active(session_id)
            session.info.state = SessionState.ERROR
            session.info.error_message = message
            session.finished_at = time.time()
            self._discard(session)
            return session.info.model_copy()

    def delete(self, session_id: str) -> bool:
        with self._lock:
            session = self._live(session_id)
            if session is None:
                return False
            del self._sessions[session_id]
            shutil.rmtree(session.staging, ignore_errors=True)
        logger.info("Deleted update session %s", session_id)
        return True

    # -- session files -------------------------------------------------------

    def add_file(
        self,
        session_id: str,
        spec: SessionFileSpec,
        upload_endpoint: str | None = None,
    ) -> SessionFileInfo:
        with self._lock:
            session = self._active(session_id)
            if not spec.name or spec.name in (".", "..") or any(
                sep in spec.name for sep in ("/", "\\")
            ):
                raise RegistryError(400, f"Invalid file name '{spec.name}'")
            if spec.name in session.files:
                raise RegistryError(409, f"File '{spec.name}' already in session")
            if spec.source_type == SourceType.PULL and not spec.source_endpoint:
                raise RegistryError(400, "Pull transfers require a source endpoint")
            record = SessionFileInfo(
                name=spec.name,
                source_type=spec.source_type,
                source_endpoint=spec.source_endpoint,
                upload_endpoint=upload_endpoint,
                size=spec.size,
                checksum=spec.checksum,
            )
            session.files[spec.name] = record
            session.removals.discard(spec.name)
            return record.model_copy()

    def list_files(self, session_id: str) -> list[SessionFileInfo] | None:
        with self._lock:
            session = self._live(session_id)
            if session is None:
                return None
            return [f.model_copy() for f in session.files.values()]

    def remove_file(self, session_id: str, name: str) -> None:
        with self._lock:
            session = self._active(session_id)
            if name in session.files:
                del session.files[name]
                (session.staging / name).unlink(missing_ok=True)
                return
            item = self._items[session.info.item_id]
            if not any(f.name == name for f in item.files):
                raise RegistryError(404, f"File '{name}' not found")
            session.removals.add(name)

    def begin_transfer(self, session_id: str, name: str, source_type: SourceType) -> Path:
        """Mark a file as transferring and return its staging path.

        A pull may start after the session was completed; its file is then
        committed when :meth:`finish_transfer` lands.
        """
        with self._lock:
            session = self._live(session_id)
            late_pull = (
                session is not None
                and source_type == SourceType.PULL
                and session.info.state == SessionState.DONE
            )
            if not late_pull:
                session = self._active(session_id)
            record = session.files.get(name)
            if record is None:
                raise RegistryError(404, f"File '{name}' not found in session")
            if record.source_type != source_type:
                raise RegistryError(
                    400, f"File '{name}' is a {record.source_type.value} transfer",
                )
            record.status = FileStatus.TRANSFERRING
            record.bytes_transferred = 0
            record.error_message = None
            if not late_pull:
                session.info.expires_at = self._lease_end()
            return session.staging / name

    def record_progress(self, session_id: str, name: str, bytes_transferred: int) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or name not in session.files:
                return
            session.files[name].bytes_transferred = bytes_transferred
            if session.info.state == SessionState.ACTIVE:
                # Upload activity counts as a renewal.
                session.info.expires_at = self._lease_end()

    def finish_transfer(
        self, session_id: str, name: str, size: int, checksum: str,
    ) -> SessionFileInfo | None:
        """Record a finished transfer.

        Returns *None* when the session or file went away (or the session was
        canceled/failed) while the bytes were in flight.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or name not in session.files:
                return None
            if session.info.state not in (SessionState.ACTIVE, SessionState.DONE):
                return None
            record = session.files[name]
            record.bytes_transferred = size
            error = None
            if record.size is not None and record.size != size:
                error = f"Expected {record.size} bytes, received {size}"
            elif record.checksum is not None and record.checksum != checksum:
                error = f"Checksum mismatch: expected {record.checksum}, got {checksum}"
            if error:
                record.status = FileStatus.ERROR
                record.error_message = error
                return record.model_copy()
            record.size = size
            record.checksum = checksum
            record.status = FileStatus.READY
            if session.info.state == SessionState.DONE:
                # Pull transfers may still land after the session completed.
                item = self._items.get(session.info.item_id)
                if item is not None:
                    self._commit_file(session, item, record)
                    self._bump(item)
            return record.model_copy()

    def fail_transfer(self, session_id: str, name: str, message: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or name not in session.files:
                return
            record = session.files[name]
            record.status = FileStatus.ERROR
            record.error_message = message
        logger.error("Transfer of %s in session %s failed: %s", name, session_id, message)

    def cleanup(self, max_age_seconds: float = 300) -> int:
        """Remove old finished sessions and expired active ones. Returns count removed."""
        now = time.time()
        removed = 0
        with self._lock:
            for sid in list(self._sessions):
                session = self._live(sid)
                if session is None:
                    removed += 1
                    continue
                if session.finished_at is not None:
                    if now - session.finished_at > max_age_seconds:
                        del self._sessions[sid]
                        shutil.rmtree(session.staging, ignore_errors=True)
                        removed += 1
        return removed

    # -- internals (call with the lock held) ---------------------------------

    def _lease_end(self) -> datetime:
        return self._clock() + timedelta(seconds=self.idle_timeout)

    def _item_dir(self, item_id: str) -> Path:
        return self.storage_dir / "items" / item_id

    def _live(self, session_id: str) -> _Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if (
            session.info.state == SessionState.ACTIVE
            and self._clock() > session.info.expires_at
        ):
            logger.warning("Update session %s expired", session_id)
            del self._sessions[session_id]
            shutil.rmtree(session.staging, ignore_errors=True)
            return None
        return session

    def _active(self, session_id: str) -> _Session:
        session = self._live(session_id)
        if session is None:
            raise RegistryError(404, "Update session not found")
        if session.info.state != SessionState.ACTIVE:
            raise RegistryError(
                400, f"Update session is {session.info.state.value}, not active",
            )
        return session

    def _commit(self, session: _Session) -> None:
        item = self._items.get(session.info.item_id)
        if item is None:
            return
        changed = False
        for name in session.removals:
            (self._item_dir(item.id) / name).unlink(missing_ok=True)
            item.files = [f for f in item.files if f.name != name]
            changed = True
        for record in session.files.values():
            if record.status == FileStatus.READY:
                self._commit_file(session, item, record)
                changed = True
        if changed:
            self._bump(item)

    def _commit_file(self, session: _Session, item: ItemInfo, record: SessionFileInfo) -> None:
        target_dir = self._item_dir(item.id)
        target_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(session.staging / record.name), str(target_dir / record.name))
        item.files = [f for f in item.files if f.name != record.name]
        item.files.append(
            ItemFileInfo(name=record.name, size=record.size or 0, checksum=record.checksum),
        )

    @staticmethod
    def _bump(item: ItemInfo) -> None:
        item.content_version = str(int(item.content_version) + 1)

    @staticmethod
    def _discard(session: _Session) -> None:
        shutil.rmtree(session.staging, ignore_errors=True)


@dataclass
class AppState:
    """Per-application state hung off ``app.state``."""

    registry: ContentRegistry
    fetch_transport: httpx.AsyncBaseTransport | None = None
