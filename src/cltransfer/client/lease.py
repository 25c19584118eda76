from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

# Servers observed in the wild drop idle sessions after five minutes.
DEFAULT_IDLE_TIMEOUT = 300.0
DEFAULT_KEEPALIVE_INTERVAL = 60.0


class SessionLeaseClock:
    """Tracks an update session's lease and when the next keepalive is due.

    ``expires_at`` is the server's advisory expiry (never earlier, possibly
    later). The keepalive cadence is measured on a monotonic clock from the
    last renewal and must stay below the server's idle timeout.
    """

    def __init__(
        self,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if keepalive_interval < 0:
            raise ValueError("keepalive_interval must not be negative")
        if keepalive_interval >= idle_timeout:
            raise ValueError(
                f"keepalive_interval ({keepalive_interval}s) must be shorter "
                f"than the idle timeout ({idle_timeout}s)"
            )
        self.idle_timeout = idle_timeout
        self.keepalive_interval = keepalive_interval
        self.expires_at: datetime | None = None
        self._clock = clock
        self._last_renewal = clock()

    def renewed(self, expires_at: datetime | None = None) -> None:
        """Record a successful open/keepalive and the expiry it returned."""
        self._last_renewal = self._clock()
        if expires_at is not None:
            self.expires_at = expires_at

    def seconds_until_due(self) -> float:
        return max(0.0, self._last_renewal + self.keepalive_interval - self._clock())

    def due(self) -> bool:
        return self.seconds_until_due() <= 0.0

    def lapsed(self, now: datetime | None = None) -> bool:
        """True once the advisory expiry has passed."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at
