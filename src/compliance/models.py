"""
Ledger data model.

All CB amounts are tonnes CO2eq; surplus is positive, deficit negative.
Snapshots, draws, pools and allocations are immutable once created. Banking
entries change only through FIFO consumption, repayment or expiry.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class EntryKind(str, Enum):
    """Kind of banking entry."""
    BANKED_SURPLUS = "banked_surplus"
    BORROWED_DEFICIT = "borrowed_deficit"


class EntryStatus(str, Enum):
    """Lifecycle status of a banking entry."""
    OPEN = "open"
    CONSUMED = "consumed"
    EXPIRED = "expired"


class DrawKind(str, Enum):
    """Why an entry was decremented."""
    CONSUMPTION = "consumption"  # banked surplus used against a deficit
    REPAYMENT = "repayment"  # borrowed advance paid back from a surplus


# =============================================================================
# Inputs
# =============================================================================

@dataclass(frozen=True)
class ConsumptionRecord:
    """Fuel burnt by one ship in one year (input only)."""
    ship_id: str
    year: int
    fuel_type: str
    quantity_mt: float
    emission_factor: Optional[float] = None  # WtW gCO2eq/MJ override
    lcv_mj_per_g: Optional[float] = None
    is_renewable: bool = False


# =============================================================================
# Ledger state
# =============================================================================

@dataclass(frozen=True)
class ComplianceSnapshot:
    """Raw compliance balance of a ship-year."""
    ship_id: str
    year: int
    target_intensity: float  # gCO2eq/MJ
    actual_intensity: float  # gCO2eq/MJ
    total_energy_mj: float
    raw_cb: float  # tCO2eq, positive=surplus

    @property
    def is_surplus(self) -> bool:
        return self.raw_cb >= 0


@dataclass
class BankingEntry:
    """Banked surplus or borrowed advance held in a ship's ledger."""
    entry_id: str
    ship_id: str
    origin_year: int
    kind: EntryKind
    original_amount: float
    remaining_amount: float
    sequence: int
    status: EntryStatus = EntryStatus.OPEN
    repayment_deadline: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == EntryStatus.OPEN

    @property
    def fifo_key(self):
        return (self.origin_year, self.sequence)

    def decrement(self, amount: float) -> float:
        """Take up to ``amount`` from the entry; returns what was taken."""
        if not self.is_open:
            return 0.0
        taken = min(amount, self.remaining_amount)
        self.remaining_amount -= taken
        if self.remaining_amount <= 0:
            self.remaining_amount = 0.0
            self.status = EntryStatus.CONSUMED
        return taken


@dataclass(frozen=True)
class LedgerDraw:
    """One decrement of a banking entry, charged to a compliance year."""
    entry_id: str
    ship_id: str
    year: int
    amount: float
    kind: DrawKind


@dataclass
class CoverageResult:
    """Outcome of covering a deficit from banked surplus."""
    requested: float
    covered: float
    draws: List[LedgerDraw] = field(default_factory=list)

    @property
    def shortfall(self) -> float:
        return max(self.requested - self.covered, 0.0)


# =============================================================================
# Derived results
# =============================================================================

@dataclass
class AdjustedBalance:
    """Raw CB of a ship-year after ledger effects."""
    ship_id: str
    year: int
    raw_cb: float
    banking_adjustment: float
    adjusted_cb: float
    uncovered_gap: float = 0.0
    banked_remaining: float = 0.0
    overdue_borrowings: List[BankingEntry] = field(default_factory=list)
    penalty_eur: float = 0.0
    # Transfer received (+) or given (-) through an Article 21 pool
    pool_delta: float = 0.0

    @property
    def verified_cb(self) -> float:
        """Adjusted CB after the pool transfer of the ship-year, if pooled."""
        return self.adjusted_cb + self.pool_delta

    @property
    def status(self) -> str:
        return "compliant" if self.verified_cb >= 0 else "deficit"


@dataclass(frozen=True)
class Pool:
    """Article 21 pool for one compliance year."""
    pool_id: str
    year: int
    member_ship_ids: tuple
    aggregate_adjusted_cb: float


@dataclass(frozen=True)
class PoolAllocation:
    """Pre- and post-pooling balance of a single pool member."""
    pool_id: str
    ship_id: str
    pre_cb: float
    post_cb: float

    @property
    def delta(self) -> float:
        return self.post_cb - self.pre_cb


@dataclass
class PoolResult:
    """Pool record plus one allocation per member."""
    pool: Pool
    allocations: List[PoolAllocation] = field(default_factory=list)

    def allocation_for(self, ship_id: str) -> PoolAllocation:
        for allocation in self.allocations:
            if allocation.ship_id == ship_id:
                return allocation
        raise KeyError(ship_id)
