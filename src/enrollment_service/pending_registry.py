"""Registry of pending signing requests keyed by public-key thumbprint."""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set
import logging
import threading

from .errors import KeyGenerationError, NoMatchingRequestError
from .models import PendingRequest, PendingState

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingRequestRegistry:
    """
    Owns pending requests between CSR creation and installation.

    Every state change happens under one lock, so an install and an expiry
    sweep never both act on the same entry. Installs first claim an entry;
    a claimed entry is invisible to the sweep, to cancellation and to
    other installs until it is completed or released.
    """

    def __init__(self, ttl: timedelta = DEFAULT_TTL, clock: Callable[[], datetime] = _utcnow):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, PendingRequest] = {}
        self._claimed: Set[str] = set()
        self._lock = threading.Lock()
        self._closed = False

    def now(self) -> datetime:
        return self._clock()

    def expires_at(self, entry: PendingRequest) -> datetime:
        return entry.created_at + self.ttl

    def register(self, entry: PendingRequest):
        """
        Insert a freshly created request.

        Raises:
            KeyGenerationError: If a live entry already uses the thumbprint
            RuntimeError: If the registry was closed
        """
        with self._lock:
            if self._closed:
                raise RuntimeError("Pending request registry is closed")
            if entry.thumbprint in self._entries:
                raise KeyGenerationError(f"Duplicate key thumbprint {entry.thumbprint}")
            self._entries[entry.thumbprint] = entry

        logger.info(f"Pending request registered: {entry.thumbprint} ({entry.options.subject_name})")

    def get(self, thumbprint: str) -> Optional[PendingRequest]:
        """Return a live, unexpired entry without claiming it."""
        with self._lock:
            entry = self._entries.get(thumbprint)
            if entry is None or entry.is_expired(self.now(), self.ttl):
                return None
            return entry

    def claim(self, thumbprint: str) -> PendingRequest:
        """
        Reserve an entry for installation.

        An entry found past its time-to-live is evicted on the spot.

        Raises:
            NoMatchingRequestError: If no live, unclaimed entry exists
        """
        with self._lock:
            entry = self._entries.get(thumbprint)
            if entry is None or thumbprint in self._claimed:
                raise NoMatchingRequestError()
            if entry.is_expired(self.now(), self.ttl):
                self._retire(thumbprint, PendingState.EXPIRED)
                raise NoMatchingRequestError()
            self._claimed.add(thumbprint)
            return entry

    def complete(self, thumbprint: str) -> PendingRequest:
        """Remove a claimed entry after its certificate was stored."""
        with self._lock:
            if thumbprint not in self._claimed:
                raise NoMatchingRequestError()
            self._claimed.discard(thumbprint)
            entry = self._retire(thumbprint, PendingState.INSTALLED)

        logger.info(f"Pending request installed: {thumbprint}")
        return entry

    def release(self, thumbprint: str):
        """
        Return a claimed entry to the pool after a failed install.

        Once the registry is closed there is no pool to return to, so the
        entry is abandoned instead.
        """
        with self._lock:
            self._claimed.discard(thumbprint)
            if self._closed and thumbprint in self._entries:
                self._retire(thumbprint, PendingState.ABANDONED)

    def cancel(self, thumbprint: str) -> bool:
        """
        Abandon a request.

        Returns:
            True if an entry was abandoned, False if none was live or it is
            being installed
        """
        with self._lock:
            if thumbprint not in self._entries or thumbprint in self._claimed:
                return False
            self._retire(thumbprint, PendingState.ABANDONED)

        logger.info(f"Pending request abandoned: {thumbprint}")
        return True

    def sweep(self, now: Optional[datetime] = None) -> List[PendingRequest]:
        """
        Evict entries older than the time-to-live.

        Returns:
            The evicted entries
        """
        with self._lock:
            now = now or self.now()
            stale = [
                thumbprint for thumbprint, entry in self._entries.items()
                if thumbprint not in self._claimed and entry.is_expired(now, self.ttl)
            ]
            evicted = [self._retire(thumbprint, PendingState.EXPIRED) for thumbprint in stale]

        for entry in evicted:
            logger.info(f"Pending request expired: {entry.thumbprint}")
        return evicted

    def thumbprints(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def close(self):
        """
        Abandon every unclaimed entry and refuse further registrations.

        Entries claimed by an install in progress are left for complete or
        release to finish, so a certificate already written to the store is
        still recorded as installed.
        """
        with self._lock:
            for thumbprint in [t for t in self._entries if t not in self._claimed]:
                self._retire(thumbprint, PendingState.ABANDONED)
            self._closed = True

        logger.info("Pending request registry closed")

    def _retire(self, thumbprint: str, state: PendingState) -> PendingRequest:
        # Caller holds the lock
        entry = self._entries.pop(thumbprint)
        entry.transition(state)
        if state is not PendingState.INSTALLED:
            entry.key_handle = None
        return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, thumbprint: str) -> bool:
        with self._lock:
            return thumbprint in self._entries

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class ExpirySweeper:
    """Background thread running PendingRequestRegistry.sweep periodically."""

    def __init__(self, registry: PendingRequestRegistry, interval_seconds: float = 300.0):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="pending-expiry-sweep", daemon=True)
        self._thread.start()
        logger.info(f"Expiry sweep started (interval {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Expiry sweep stopped")

    def _run(self):
        while not self._stop.wait(self.interval_seconds):
            try:
                self.registry.sweep()
            except Exception:
                logger.exception("Expiry sweep failed")
