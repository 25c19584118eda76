"""Client-side mirror of a remote update session.

The authoritative state lives on the server. Every mutating operation is
followed by a refresh, and :meth:`UpdateSession.refresh` is the only place
where local state is reconciled with the server's.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, TypeVar

from cltransfer.client.lease import SessionLeaseClock
from cltransfer.errors import (
    InvalidStateError,
    NotFoundError,
    RemoteError,
    RemoteUnavailableError,
    SessionDefunctError,
)
from cltransfer.server.models import (
    TERMINAL_FILE_STATUSES,
    SessionFileInfo,
    SessionFileSpec,
    SessionInfo,
    SessionState,
    SourceType,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from datetime import datetime

    from cltransfer.client.api import ContentLibraryClient
    from cltransfer.client.transfer_spec import TransferSpec

logger = logging.getLogger(__name__)

T = TypeVar("T")

TERMINAL_STATES = frozenset(
    {SessionState.DONE, SessionState.CANCELED, SessionState.DEFUNCT}
)
_ACTIVE_ONLY = frozenset({SessionState.ACTIVE})
_DELETABLE = frozenset({SessionState.ACTIVE, SessionState.ERROR})


def _retriable(exc: RemoteError) -> bool:
    return isinstance(exc, RemoteUnavailableError) or (
        exc.status_code is not None and exc.status_code >= 500
    )


class UpdateSession:
    """A time-bounded modification session on one library item.

    Owned by a single flow; it must not be driven from two threads at once.
    """

    def __init__(
        self,
        api: ContentLibraryClient,
        info: SessionInfo,
        lease: SessionLeaseClock | None = None,
    ) -> None:
        self._api = api
        self.id = info.id
        self.target_item_id = info.item_id
        self.content_version = info.content_version
        self.state = info.state
        self.progress: int | None = info.progress
        self.expires_at: datetime = info.expires_at
        self.error_message: str | None = info.error_message
        self.files: list[SessionFileInfo] = []
        self.last_error: Exception | None = None
        self.lease = lease or SessionLeaseClock()
        self.lease.renewed(info.expires_at)
        # Set once Complete/Cancel/Fail/Delete has been requested; no
        # keepalive may follow.
        self._closing = False

    @classmethod
    def open(
        cls,
        api: ContentLibraryClient,
        item_id: str,
        content_version: str,
        lease: SessionLeaseClock | None = None,
    ) -> UpdateSession:
        """Open a session on ``item_id``.

        Raises ``ConflictError`` when the item already has an active session
        and ``NotFoundError`` when the item does not exist.
        """
        info = api.open_session(item_id, content_version)
        logger.info(
            "Opened update session %s on item %s (content version %s)",
            info.id, item_id, content_version,
        )
        return cls(api, info, lease)

    def __repr__(self) -> str:
        return f"<UpdateSession {self.id} item={self.target_item_id} state={self.state.value}>"

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def file(self, name: str) -> SessionFileInfo | None:
        for f in self.files:
            if f.name == name:
                return f
        return None

    # -- reconciliation ------------------------------------------------------

    def refresh(self) -> SessionState:
        """Re-read state, progress, error and files from the server.

        Raises ``SessionDefunctError`` if the session is (or turns out to be)
        gone server-side.
        """
        if self.state == SessionState.DEFUNCT:
            raise SessionDefunctError(self.id)
        self._sync()
        if self.state == SessionState.DEFUNCT:
            raise SessionDefunctError(self.id) from self.last_error
        return self.state

    def _sync(self) -> None:
        try:
            info = self._api.get_session(self.id)
            files = self._api.list_session_files(self.id)
        except NotFoundError as exc:
            self.last_error = exc
            self._mark_defunct("not found on the server")
            return
        except RemoteError as exc:
            # A view we cannot reconcile is not kept around as if it were current.
            self.last_error = exc
            self._mark_defunct(f"refresh failed: {exc}")
            return
        self.state = info.state
        self.progress = info.progress
        self.expires_at = info.expires_at
        self.error_message = info.error_message
        self.lease.expires_at = info.expires_at
        self.files = files

    def _mark_defunct(self, reason: str) -> None:
        if self.state == SessionState.DEFUNCT:
            return
        self.state = SessionState.DEFUNCT
        logger.warning("Update session %s is defunct: %s", self.id, reason)

    def _require(self, allowed: frozenset[SessionState], action: str) -> None:
        if self.state == SessionState.DEFUNCT:
            raise SessionDefunctError(self.id, f"cannot {action}")
        if self.state not in allowed:
            raise InvalidStateError(
                f"Cannot {action} update session {self.id} in state {self.state.value}"
            )

    def _transition(
        self,
        action: str,
        call: Callable[[], T],
        allowed: frozenset[SessionState] = _ACTIVE_ONLY,
    ) -> T:
        self._require(allowed, action)
        try:
            result = call()
        except RemoteError as exc:
            self.last_error = exc
            self._sync()
            # A 404 may concern a file rather than the session; the refresh tells.
            if isinstance(exc, NotFoundError) and self.state == SessionState.DEFUNCT:
                raise SessionDefunctError(self.id) from exc
            raise
        self._sync()
        return result

    # -- transitions ---------------------------------------------------------

    def keep_alive(self, progress: float | None = None) -> None:
        """Extend the lease, reporting ``progress`` (percent) to the server.

        A transport or server-side failure is retried once; if the retry
        fails too the session is declared defunct.
        """
        self._require(_ACTIVE_ONLY, "keep alive")
        if self._closing:
            raise InvalidStateError(
                f"Update session {self.id} is closing; no further keepalives"
            )
        percent = None if progress is None else max(0, min(100, int(progress)))
        for attempt in (1, 2):
            try:
                info = self._api.keep_alive(self.id, percent)
            except NotFoundError as exc:
                self.last_error = exc
                self._mark_defunct("expired before keepalive")
                raise SessionDefunctError(self.id, "lease expired") from exc
            except RemoteError as exc:
                self.last_error = exc
                if not _retriable(exc):
                    self._sync()
                    raise
                if attempt == 1:
                    logger.warning("Keepalive for %s failed (%s); retrying", self.id, exc)
                    continue
                self._mark_defunct(f"keepalive failed twice: {exc}")
                raise SessionDefunctError(self.id, "keepalive failed") from exc
            self.lease.renewed(info.expires_at)
            logger.debug("Keepalive for %s (progress=%s)", self.id, percent)
            break
        self._sync()

    def complete(self) -> None:
        """Signal that all files are specified; the server validates and commits."""
        self._closing = True
        self._transition("complete", lambda: self._api.complete_session(self.id))
        logger.info("Update session %s completed (state=%s)", self.id, self.state.value)

    def cancel(self) -> None:
        self._closing = True
        self._transition("cancel", lambda: self._api.cancel_session(self.id))
        logger.info("Update session %s canceled", self.id)

    def fail(self, message: str) -> None:
        """Report a client-side failure so the server releases its resources."""
        self._closing = True
        self._transition("fail", lambda: self._api.fail_session(self.id, message))
        logger.info("Update session %s failed: %s", self.id, message)

    def delete(self) -> None:
        """Remove the session server-side. Later operations see it as defunct."""
        self._closing = True
        self._transition(
            "delete", lambda: self._api.delete_session(self.id), allowed=_DELETABLE,
        )
        logger.info("Update session %s deleted", self.id)

    # -- files ---------------------------------------------------------------

    def add_file(
        self,
        name: str,
        spec: TransferSpec,
        size: int | None = None,
        checksum: str | None = None,
    ) -> SessionFileInfo:
        """Register a file. Push files come back with their upload endpoint."""
        request = SessionFileSpec(
            name=name,
            source_type=spec.source_type,
            source_endpoint=spec.endpoint if spec.source_type == SourceType.PULL else None,
            size=size,
            checksum=checksum,
        )
        record = self._transition(
            f"add file {name!r} to",
            lambda: self._api.add_session_file(self.id, request),
        )
        logger.info(
            "Added %s to session %s as %s", name, self.id, spec.source_type.value,
        )
        return record

    def remove_file(self, name: str) -> None:
        """Remove ``name`` (exact match) from the item when the session completes."""
        self._transition(
            f"remove file {name!r} via",
            lambda: self._api.remove_session_file(self.id, name),
        )

    def wait_for_files(
        self,
        names: Iterable[str] | None = None,
        timeout: float = 3600.0,
        interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> list[SessionFileInfo]:
        """Poll until the named files (default: all) reach ready or error.

        The deadline is pushed back whenever a file makes progress.
        """
        wanted = set(names) if names is not None else None
        deadline = time.monotonic() + timeout
        last_seen: dict[str, tuple[str, int]] = {}
        while True:
            self.refresh()
            pending = [
                f for f in self.files
                if (wanted is None or f.name in wanted)
                and f.status not in TERMINAL_FILE_STATUSES
            ]
            if not pending:
                return self.files
            for f in pending:
                seen = (f.status.value, f.bytes_transferred)
                if last_seen.get(f.name) != seen:
                    last_seen[f.name] = seen
                    deadline = time.monotonic() + timeout
            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"Files {[f.name for f in pending]} in session {self.id} "
                    f"did not finish within {timeout}s"
                )
            sleep(interval)
