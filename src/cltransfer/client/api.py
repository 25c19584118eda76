from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from cltransfer.errors import (
    ConflictError,
    NotFoundError,
    RemoteError,
    RemoteUnavailableError,
)
from cltransfer.server.models import (
    ItemInfo,
    LibraryInfo,
    SessionFileInfo,
    SessionFileSpec,
    SessionInfo,
)

logger = logging.getLogger(__name__)


class ContentLibraryClient:
    """Synchronous client for the content library management API.

    Each method is one request/response call; errors are mapped onto the
    :mod:`cltransfer.errors` hierarchy (404 → ``NotFoundError``, 409 →
    ``ConflictError``, unreachable → ``RemoteUnavailableError``).
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = httpx.Client(
            base_url=f"{self.base_url}/v1",
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    def __enter__(self) -> ContentLibraryClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def absolute_url(self, endpoint: str) -> str:
        """Resolve a possibly relative endpoint against the server's base URL."""
        return str(httpx.URL(f"{self.base_url}/").join(endpoint))

    # -- plumbing ------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = self._http.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise RemoteUnavailableError(
                None, f"{method} {path} failed: {exc}"
            ) from exc
        if resp.is_success:
            return resp
        try:
            detail = resp.json().get("detail", resp.text)
        except ValueError:
            detail = resp.text
        logger.debug("%s %s -> %d: %s", method, path, resp.status_code, detail)
        if resp.status_code == 404:
            raise NotFoundError(resp.status_code, str(detail))
        if resp.status_code == 409:
            raise ConflictError(resp.status_code, str(detail))
        raise RemoteError(resp.status_code, str(detail))

    # -- libraries and items -------------------------------------------------

    def health(self) -> dict[str, Any]:
        return self._request("GET", "/health").json()

    def get_library(self, ref: str) -> LibraryInfo:
        return LibraryInfo.model_validate(self._request("GET", f"/libraries/{ref}").json())

    def list_items(self, library_id: str) -> list[ItemInfo]:
        resp = self._request("GET", f"/libraries/{library_id}/items")
        return [ItemInfo.model_validate(i) for i in resp.json()]

    def get_item(self, item_id: str) -> ItemInfo:
        return ItemInfo.model_validate(self._request("GET", f"/items/{item_id}").json())

    # -- update sessions -----------------------------------------------------

    def open_session(self, item_id: str, content_version: str) -> SessionInfo:
        resp = self._request(
            "POST",
            "/update-sessions",
            json={"item_id": item_id, "content_version": content_version},
        )
        return SessionInfo.model_validate(resp.json())

    def get_session(self, session_id: str) -> SessionInfo:
        resp = self._request("GET", f"/update-sessions/{session_id}")
        return SessionInfo.model_validate(resp.json())

    def keep_alive(self, session_id: str, progress: int | None = None) -> SessionInfo:
        resp = self._request(
            "POST",
            f"/update-sessions/{session_id}/keep-alive",
            json={"progress": progress},
        )
        return SessionInfo.model_validate(resp.json())

    def complete_session(self, session_id: str) -> SessionInfo:
        resp = self._request("POST", f"/update-sessions/{session_id}/complete")
        return SessionInfo.model_validate(resp.json())

    def cancel_session(self, session_id: str) -> SessionInfo:
        resp = self._request("POST", f"/update-sessions/{session_id}/cancel")
        return SessionInfo.model_validate(resp.json())

    def fail_session(self, session_id: str, message: str) -> SessionInfo:
        resp = self._request(
            "POST", f"/update-sessions/{session_id}/fail", json={"message": message},
        )
        return SessionInfo.model_validate(resp.json())

    def delete_session(self, session_id: str) -> None:
        self._request("DELETE", f"/update-sessions/{session_id}")

    # -- session files -------------------------------------------------------

    def add_session_file(self, session_id: str, spec: SessionFileSpec) -> SessionFileInfo:
        resp = self._request(
            "POST",
            f"/update-sessions/{session_id}/files",
            json=spec.model_dump(mode="json"),
        )
        return SessionFileInfo.model_validate(resp.json())

    def list_session_files(self, session_id: str) -> list[SessionFileInfo]:
        resp = self._request("GET", f"/update-sessions/{session_id}/files")
        return [SessionFileInfo.model_validate(f) for f in resp.json()]

    def remove_session_file(self, session_id: str, name: str) -> None:
        self._request(
            "DELETE", f"/update-sessions/{session_id}/files/{quote(name, safe='')}",
        )
