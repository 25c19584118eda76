from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, model_validator

from cltransfer.client.lease import DEFAULT_IDLE_TIMEOUT, DEFAULT_KEEPALIVE_INTERVAL


class TransferSettings(BaseModel):
    """Client-side tunables for update session transfers."""

    poll_interval: float = Field(default=1.0, gt=0)
    keepalive_interval: float = Field(default=DEFAULT_KEEPALIVE_INTERVAL, ge=0)
    idle_timeout: float = Field(default=DEFAULT_IDLE_TIMEOUT, gt=0)
    pull_timeout: float = Field(default=3600.0, gt=0)
    upload_timeout: float = Field(default=3600.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    chunk_size: int = Field(default=1_048_576, gt=0)
    # Datastore name -> local mount point, for pushing ds:// sources.
    datastore_mounts: dict[str, Path] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _keepalive_below_idle_timeout(self) -> TransferSettings:
        if self.keepalive_interval >= self.idle_timeout:
            raise ValueError("keepalive_interval must be shorter than idle_timeout")
        return self
