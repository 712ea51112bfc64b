"""In-memory period cache: last-known-good snapshot per time window."""

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable

from .models import FetchFailure, Origin, TimeWindow, WindowSnapshot

logger = logging.getLogger("ccwatch")

Listener = Callable[[TimeWindow, WindowSnapshot], None]


@dataclass(frozen=True)
class CacheEntry:
    snapshot: WindowSnapshot
    sequence: int


class PeriodCache:
    """Thread-safe store of one snapshot per window.

    Writes carry the sequence number of the fetch that produced them; a
    write whose sequence is not newer than the stored one is dropped, so a
    slow fetch can never overwrite a result that was started after it.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._entries: dict[TimeWindow, CacheEntry] = {}
        self._lock = threading.Lock()
        # Serializes deliveries so listeners always end on the newest snapshot
        self._notify_lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._clock = clock or (lambda: datetime.now(UTC))

    def read(self, window: TimeWindow) -> WindowSnapshot:
        with self._lock:
            entry = self._entries.get(window)
        if entry is None:
            return WindowSnapshot.never_fetched(window)
        return entry.snapshot

    def snapshots(self) -> dict[TimeWindow, WindowSnapshot]:
        return {w: self.read(w) for w in TimeWindow}

    def has_data(self, window: TimeWindow) -> bool:
        """True when the window holds fetched numbers (live, stale or empty)."""
        return self.read(window).fetched_at is not None

    def write(self, window: TimeWindow, snapshot: WindowSnapshot, sequence: int) -> bool:
        if snapshot.window is not window:
            raise ValueError(f"snapshot for {snapshot.window.value} written to {window.value}")
        with self._lock:
            applied = self._apply(window, snapshot, sequence)
        if applied:
            self._notify(window)
        return applied

    def mark_stale(self, window: TimeWindow, failure: FetchFailure, sequence: int) -> bool:
        """Flag cached numbers as stale after a failed fetch, keeping the data."""
        with self._lock:
            current = self._entries.get(window)
            if current is None or current.snapshot.fetched_at is None:
                return False
            stale = current.snapshot.model_copy(update={"origin": Origin.CACHED_STALE, "error": failure})
            applied = self._apply(window, stale, sequence)
        if applied:
            self._notify(window)
        return applied

    def is_stale(self, window: TimeWindow, threshold: timedelta, now: datetime | None = None) -> bool:
        fetched_at = self.read(window).fetched_at
        if fetched_at is None:
            return True
        return (now or self._clock()) - fetched_at > threshold

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _apply(self, window: TimeWindow, snapshot: WindowSnapshot, sequence: int) -> bool:
        # Caller holds the lock
        current = self._entries.get(window)
        if current is not None and sequence <= current.sequence:
            logger.debug("Dropped %s write seq=%d (have seq=%d)", window.value, sequence, current.sequence)
            return False
        self._entries[window] = CacheEntry(snapshot, sequence)
        return True

    def _notify(self, window: TimeWindow):
        with self._notify_lock:
            # Deliver what is stored now, not what this caller wrote
            snapshot = self.read(window)
            with self._lock:
                listeners = list(self._listeners)
            for listener in listeners:
                try:
                    listener(window, snapshot)
                except Exception:
                    logger.exception("Snapshot listener failed for %s", window.value)
