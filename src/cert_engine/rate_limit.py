"""Per registered domain sliding-window limit on certificate issuances."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from cert_engine.dns.util import registered_domain
from cert_engine.errors import RateLimitError
from cert_engine.store import CertificateStore

logger = logging.getLogger(__name__)

WINDOW = timedelta(days=7)
# Let's Encrypt allows 50 certificates per registered domain per week; stay under it.
DEFAULT_LIMIT = 45

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RateLimiter(ABC):
    """Check-and-record gate consulted before every real issuance."""

    def __init__(self, limit: int = DEFAULT_LIMIT, clock: Clock = _utcnow) -> None:
        self.limit = limit
        self._clock = clock

    def check_and_record(self, hostname: str) -> None:
        """Record an issuance for the hostname's registered domain.

        Raises:
            RateLimitError: ``limit`` issuances already fall inside the last 7 days.
        """
        root = registered_domain(hostname)
        count = self._count_and_record(root, self._clock())
        if count >= self.limit:
            raise RateLimitError(root, count, self.limit)
        logger.debug("Issuance %d/%d this week for %s", count + 1, self.limit, root)

    @abstractmethod
    def _count_and_record(self, root: str, now: datetime) -> int:
        """Return the in-window count before this call, recording ``now`` only if below the limit."""


class InMemoryRateLimiter(RateLimiter):
    """Process-local counters. Each instance of a multi-instance deployment counts separately."""

    def __init__(self, limit: int = DEFAULT_LIMIT, clock: Clock = _utcnow) -> None:
        super().__init__(limit, clock)
        self._issuances: dict[str, list[datetime]] = {}
        self._lock = threading.Lock()

    def _count_and_record(self, root: str, now: datetime) -> int:
        with self._lock:
            timestamps = [t for t in self._issuances.get(root, []) if now - t < WINDOW]
            count = len(timestamps)
            if count < self.limit:
                timestamps.append(now)
            self._issuances[root] = timestamps
        return count


class StoreRateLimiter(RateLimiter):
    """Counters kept in the certificate store, shared by every instance using it."""

    def __init__(self, store: CertificateStore, limit: int = DEFAULT_LIMIT, clock: Clock = _utcnow) -> None:
        super().__init__(limit, clock)
        self._store = store

    def _count_and_record(self, root: str, now: datetime) -> int:
        return self._store.record_issuance_if_below(root, now, WINDOW, self.limit)
