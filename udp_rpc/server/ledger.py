"""
Dedup Ledger

Server-side record of correlation ids already executed, giving at-most-once execution
within a fixed retention window.

Design:
- One lock around check-and-record, so two racing copies of a request never both win
- Entries kept in recorded-at order; expiry pops from the front
- One periodic sweeper thread per ledger instead of a timer per request
- An id seen again after its entry expired is treated as new and re-executed
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from udp_rpc.telemetry.metrics import increment_counter

logger = logging.getLogger(__name__)

# Default retention window in seconds
DEFAULT_TTL_SECONDS = 300  # 5 minutes

# Default sweep interval in seconds
DEFAULT_SWEEP_INTERVAL = 60


class LedgerVerdict(Enum):
    FIRST_SEEN = "first_seen"
    ALREADY_SEEN = "already_seen"


@dataclass
class LedgerEntry:
    """Entry in the dedup ledger."""
    correlation_id: str
    recorded_at: float


class DedupLedger:
    """
    Time-bounded ledger of executed correlation ids.

    Usage:
        ledger = DedupLedger(ttl_seconds=300)
        ledger.start()

        if ledger.check_and_record(request.correlation_id) is LedgerVerdict.FIRST_SEEN:
            execute(request)
        else:
            reply_duplicate(request)

        ledger.stop()
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the ledger.

        Args:
            ttl_seconds: Retention window for recorded ids
            sweep_interval_seconds: Period of the background sweep
            clock: Time source used when callers pass no explicit now
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._ttl = ttl_seconds
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock

        # correlation_id -> LedgerEntry, oldest first
        self._entries: "OrderedDict[str, LedgerEntry]" = OrderedDict()
        self._lock = threading.Lock()

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0

        self._sweeper: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def check_and_record(self, correlation_id: str, now: Optional[float] = None) -> LedgerVerdict:
        """
        Record an id unless it is already live in the ledger.

        Exactly one of any number of concurrent callers passing the same id
        receives FIRST_SEEN.

        Args:
            correlation_id: Request correlation id
            now: Current time on the ledger's clock, read under the lock if omitted

        Returns:
            FIRST_SEEN if the caller should execute, ALREADY_SEEN otherwise
        """
        with self._lock:
            if now is None:
                now = self._clock()

            entry = self._entries.get(correlation_id)
            if entry is not None:
                if now - entry.recorded_at < self._ttl:
                    self._hits += 1
                    return LedgerVerdict.ALREADY_SEEN

                # Expired but not yet swept: the guarantee has lapsed
                del self._entries[correlation_id]
                self._evictions += 1

            self._entries[correlation_id] = LedgerEntry(correlation_id, now)
            self._misses += 1
            return LedgerVerdict.FIRST_SEEN

    def sweep(self, now: Optional[float] = None) -> int:
        """
        Remove entries older than the retention window.

        Returns:
            Number of entries removed
        """
        removed = 0
        with self._lock:
            if now is None:
                now = self._clock()
            while self._entries:
                entry = next(iter(self._entries.values()))
                if now - entry.recorded_at < self._ttl:
                    break
                self._entries.popitem(last=False)
                removed += 1
            self._evictions += removed

        if removed:
            increment_counter("rpc.server.ledger.evictions", removed)
            logger.debug(f"Dedup ledger swept {removed} expired entries")
        return removed

    def start(self) -> None:
        """Start the background sweeper thread."""
        if self._sweeper is not None:
            return

        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            daemon=True,
            name="dedup-sweeper",
        )
        self._sweeper.start()

    def stop(self) -> None:
        """Stop the background sweeper thread."""
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5.0)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self._sweep_interval):
            self.sweep()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get_stats(self) -> Dict[str, float]:
        """
        Get ledger statistics.

        Returns:
            dict: size, hits (duplicates), misses (first sightings), evictions, ttl
        """
        with self._lock:
            return {
                "size": len(self._entries),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "ttl_seconds": self._ttl,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, correlation_id: str) -> bool:
        with self._lock:
            return correlation_id in self._entries

    def __enter__(self) -> "DedupLedger":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
