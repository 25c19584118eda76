"""Exception hierarchy shared by the cltransfer client."""

from __future__ import annotations


class ContentLibraryError(Exception):
    """Base class for every error raised by the client.

    ``cleanup_error`` holds the failure of a best-effort cleanup call
    (Fail/Delete) issued before this error was propagated, if any.
    """

    cleanup_error: BaseException | None = None

    def attach_cleanup_error(self, exc: BaseException) -> None:
        self.cleanup_error = exc
        self.add_note(f"cleanup also failed: {exc!r}")


class InvalidStateError(ContentLibraryError):
    """Operation attempted on a session in a state that does not permit it."""


class SessionDefunctError(InvalidStateError):
    """The session no longer exists server-side (expired or deleted).

    Never retry an operation that raised this under the same session id.
    """

    def __init__(self, session_id: str, reason: str = "session no longer exists") -> None:
        super().__init__(f"Update session {session_id} is defunct: {reason}")
        self.session_id = session_id


class UnsupportedProtocolError(ContentLibraryError):
    """A source locator uses a scheme that cannot be transferred."""


class TransferFailedError(ContentLibraryError):
    """A file transfer failed or was cancelled."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Transfer of {name} failed: {reason}")
        self.name = name
        self.reason = reason


class RemoteError(ContentLibraryError):
    """The management service answered with an error."""

    def __init__(self, status_code: int | None, detail: str) -> None:
        super().__init__(
            f"{detail} (HTTP {status_code})" if status_code is not None else detail
        )
        self.status_code = status_code
        self.detail = detail


class NotFoundError(RemoteError):
    """HTTP 404: the referenced library, item or session does not exist."""


class ConflictError(RemoteError):
    """HTTP 409: e.g. the item already has an active update session."""


class RemoteUnavailableError(RemoteError):
    """The management service could not be reached."""
