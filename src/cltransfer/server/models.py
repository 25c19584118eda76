from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    """Lifecycle states of an update session.

    ``DEFUNCT`` is never reported by the server; the client uses it for a
    session that no longer exists server-side.
    """
    ACTIVE = "active"
    ERROR = "error"
    CANCELED = "canceled"
    DONE = "done"
    DEFUNCT = "defunct"


class SourceType(str, Enum):
    """Who moves the bytes: the client (push) or the server (pull)."""
    PUSH = "push"
    PULL = "pull"


class FileStatus(str, Enum):
    """Transfer status of a single file inside a session."""
    PENDING = "pending"
    TRANSFERRING = "transferring"
    READY = "ready"
    ERROR = "error"


TERMINAL_FILE_STATUSES = frozenset({FileStatus.READY, FileStatus.ERROR})


class LibraryInfo(BaseModel):
    id: str
    name: str
    created_at: datetime = Field(default_factory=datetime.now)


class ItemFileInfo(BaseModel):
    name: str
    size: int
    checksum: str | None = None


class ItemInfo(BaseModel):
    """Read-only view of a library item."""
    id: str
    library_id: str
    name: str
    content_version: str = "1"
    files: list[ItemFileInfo] = Field(default_factory=list)


class CreateLibraryRequest(BaseModel):
    name: str


class CreateItemRequest(BaseModel):
    name: str


class SessionCreate(BaseModel):
    item_id: str
    content_version: str


class SessionInfo(BaseModel):
    """Server-side view of an update session, as returned by the refresh call."""
    id: str
    item_id: str
    content_version: str
    state: SessionState = SessionState.ACTIVE
    progress: int | None = None
    expires_at: datetime
    error_message: str | None = None

    model_config = {"from_attributes": True}


class SessionFileSpec(BaseModel):
    """File registration request for a session."""
    name: str
    source_type: SourceType
    source_endpoint: str | None = None
    size: int | None = None
    checksum: str | None = None


class SessionFileInfo(BaseModel):
    name: str
    source_type: SourceType
    source_endpoint: str | None = None
    upload_endpoint: str | None = None
    size: int | None = None
    checksum: str | None = None
    bytes_transferred: int = 0
    status: FileStatus = FileStatus.PENDING
    error_message: str | None = None

    model_config = {"from_attributes": True}


class KeepAliveRequest(BaseModel):
    progress: int | None = Field(default=None, ge=0, le=100)


class FailRequest(BaseModel):
    message: str


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    version: str
    idle_timeout: float
