"""
Per-ship mutual exclusion for ledger operations.

Banking, consumption and resolution for one ship hold that ship's lock.
Pool formation holds every member's lock, always acquired in ascending
ship-id order so two overlapping formations cannot deadlock.
"""
import logging
import threading
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterable, Iterator, List

logger = logging.getLogger(__name__)


class ShipLockRegistry:
    """Thread-safe registry of re-entrant locks keyed by ship id."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, ship_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(ship_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[ship_id] = lock
            return lock

    @contextmanager
    def ship(self, ship_id: str) -> Iterator[None]:
        """
        Hold the lock of a single ship.

        Usage:
            with locks.ship("IMO9876543"):
                ledger.bank_surplus(...)
        """
        with self._lock_for(ship_id):
            yield

    @contextmanager
    def ships(self, ship_ids: Iterable[str]) -> Iterator[List[str]]:
        """Hold the locks of several ships, acquired in ascending id order."""
        ordered = sorted(set(ship_ids))
        with ExitStack() as stack:
            for ship_id in ordered:
                stack.enter_context(self._lock_for(ship_id))
            logger.debug("Acquired ship locks: %s", ordered)
            yield ordered
