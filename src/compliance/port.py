"""
Persistence boundary of the compliance ledger.

The engine never performs I/O itself; it reads and writes through a
CompliancePort. ``unit_of_work()`` brackets one engine call: everything
saved inside the block commits together or not at all.
"""
import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ConflictError
from .fueleu import target_intensity
from .models import (
    BankingEntry,
    ComplianceSnapshot,
    ConsumptionRecord,
    LedgerDraw,
    Pool,
    PoolAllocation,
)

logger = logging.getLogger(__name__)


class CompliancePort(ABC):
    """Repository contract the ledger engine depends on."""

    # ---- consumption & targets ---------------------------------------------

    @abstractmethod
    def load_consumption_records(self, ship_id: str, year: int) -> List[ConsumptionRecord]:
        ...

    @abstractmethod
    def load_target_intensity(self, year: int) -> float:
        ...

    # ---- snapshots ------------------------------------------------------------

    @abstractmethod
    def load_compliance_snapshot(self, ship_id: str, year: int) -> Optional[ComplianceSnapshot]:
        ...

    @abstractmethod
    def save_compliance_snapshot(self, snapshot: ComplianceSnapshot) -> None:
        ...

    # ---- banking ledger ---------------------------------------------------------

    @abstractmethod
    def load_banking_entries(self, ship_id: str) -> List[BankingEntry]:
        """All entries of a ship, whatever their status."""

    def load_open_banking_entries(self, ship_id: str) -> List[BankingEntry]:
        return [e for e in self.load_banking_entries(ship_id) if e.is_open]

    @abstractmethod
    def save_banking_entries(self, entries: Iterable[BankingEntry]) -> None:
        """Insert new entries and update existing ones by entry_id."""

    @abstractmethod
    def load_ledger_draws(self, ship_id: str, year: Optional[int] = None) -> List[LedgerDraw]:
        ...

    @abstractmethod
    def save_ledger_draws(self, draws: Iterable[LedgerDraw]) -> None:
        ...

    # ---- pools ----------------------------------------------------------------

    @abstractmethod
    def load_pool_membership(self, ship_id: str, year: int) -> Optional[str]:
        """Pool id the ship belongs to for ``year``, if any."""

    @abstractmethod
    def load_pool(self, pool_id: str) -> Optional[Tuple[Pool, List[PoolAllocation]]]:
        ...

    @abstractmethod
    def save_pool(self, pool: Pool, allocations: Iterable[PoolAllocation]) -> None:
        ...

    def load_pool_allocation(self, ship_id: str, year: int) -> Optional[PoolAllocation]:
        """The ship's allocation in its pool for ``year``, if it is pooled."""
        pool_id = self.load_pool_membership(ship_id, year)
        if pool_id is None:
            return None
        stored = self.load_pool(pool_id)
        if stored is None:
            return None
        for allocation in stored[1]:
            if allocation.ship_id == ship_id:
                return allocation
        return None

    # ---- transactions ---------------------------------------------------------

    @abstractmethod
    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        ...


class InMemoryCompliancePort(CompliancePort):
    """
    Dictionary-backed port.

    Loads return copies, so nothing the engine mutates is visible until it
    is saved. A failing unit of work restores the state captured on entry.
    """

    def __init__(self, target_schedule: Optional[Dict[int, float]] = None):
        self._lock = threading.RLock()
        self._depth = 0
        self.target_schedule: Dict[int, float] = dict(target_schedule or {})
        self.records: Dict[Tuple[str, int], List[ConsumptionRecord]] = {}
        self.snapshots: Dict[Tuple[str, int], ComplianceSnapshot] = {}
        self.entries: Dict[str, BankingEntry] = {}
        self.draws: List[LedgerDraw] = []
        self.pools: Dict[str, Pool] = {}
        self.allocations: Dict[str, List[PoolAllocation]] = {}
        self.memberships: Dict[Tuple[str, int], str] = {}

    def add_consumption_records(self, records: Iterable[ConsumptionRecord]) -> None:
        with self._lock:
            for record in records:
                self.records.setdefault((record.ship_id, record.year), []).append(record)

    def load_consumption_records(self, ship_id, year):
        with self._lock:
            return list(self.records.get((ship_id, year), []))

    def load_target_intensity(self, year):
        return self.target_schedule.get(year, target_intensity(year))

    def load_compliance_snapshot(self, ship_id, year):
        with self._lock:
            return self.snapshots.get((ship_id, year))

    def save_compliance_snapshot(self, snapshot):
        with self._lock:
            key = (snapshot.ship_id, snapshot.year)
            existing = self.snapshots.get(key)
            if existing is not None and existing != snapshot:
                raise ConflictError(f"Snapshot for {key} already finalized")
            self.snapshots[key] = snapshot

    def load_banking_entries(self, ship_id):
        with self._lock:
            return [copy.copy(e) for e in self.entries.values() if e.ship_id == ship_id]

    def save_banking_entries(self, entries):
        with self._lock:
            for entry in entries:
                self.entries[entry.entry_id] = copy.copy(entry)

    def load_ledger_draws(self, ship_id, year=None):
        with self._lock:
            return [
                d for d in self.draws
                if d.ship_id == ship_id and (year is None or d.year == year)
            ]

    def save_ledger_draws(self, draws):
        with self._lock:
            self.draws.extend(draws)

    def load_pool_membership(self, ship_id, year):
        with self._lock:
            return self.memberships.get((ship_id, year))

    def load_pool(self, pool_id):
        with self._lock:
            pool = self.pools.get(pool_id)
            if pool is None:
                return None
            return pool, list(self.allocations.get(pool_id, []))

    def save_pool(self, pool, allocations):
        with self._lock:
            for ship_id in pool.member_ship_ids:
                if (ship_id, pool.year) in self.memberships:
                    raise ConflictError(f"Ship {ship_id} already pooled for {pool.year}")
            self.pools[pool.pool_id] = pool
            self.allocations[pool.pool_id] = list(allocations)
            for ship_id in pool.member_ship_ids:
                self.memberships[(ship_id, pool.year)] = pool.pool_id

    def _state(self):
        return (
            self.snapshots, self.entries, self.draws,
            self.pools, self.allocations, self.memberships,
        )

    @contextmanager
    def unit_of_work(self):
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            saved = copy.deepcopy(self._state())
            self._depth = 1
            try:
                yield
            except Exception:
                logger.warning("Unit of work failed, restoring ledger state")
                (self.snapshots, self.entries, self.draws,
                 self.pools, self.allocations, self.memberships) = saved
                raise
            finally:
                self._depth = 0
