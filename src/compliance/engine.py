"""
Compliance ledger engine.

Single entry point for the surrounding application. Each call:
1. takes the per-ship lock(s) it needs (pools: all members, ascending id)
2. opens one unit of work on the port
3. runs the calculator / ledger / resolver / allocator
4. commits, or rolls back and re-raises the original error
"""

import logging
from contextlib import contextmanager
from typing import Iterable, Mapping, Optional, Sequence

from src.config import Settings, get_settings

from .audit import operation_scope
from .banking import BankingLedger
from .errors import ConflictError
from .fueleu import IntensityCalculator
from .locks import ShipLockRegistry
from .models import (
    AdjustedBalance,
    BankingEntry,
    ComplianceSnapshot,
    ConsumptionRecord,
    CoverageResult,
    PoolResult,
)
from .pooling import PoolAllocator
from .port import CompliancePort
from .resolver import AdjustedBalanceResolver

logger = logging.getLogger(__name__)


class ComplianceEngine:
    """Computes, banks and pools compliance balances through a CompliancePort."""

    def __init__(
        self,
        port: CompliancePort,
        settings: Optional[Settings] = None,
        locks: Optional[ShipLockRegistry] = None,
        allocator: Optional[PoolAllocator] = None,
    ):
        settings = settings or get_settings()
        self.port = port
        self.settings = settings
        self.locks = locks or ShipLockRegistry()
        self.calculator = IntensityCalculator(
            renewable_emission_factor_multiplier=settings.renewable_emission_factor_multiplier,
        )
        self.ledger = BankingLedger(
            port,
            banking_window_years=settings.banking_window_years,
            borrowing_cap_fraction=settings.borrowing_cap_fraction,
            borrowing_repayment_years=settings.borrowing_repayment_years,
        )
        self.resolver = AdjustedBalanceResolver(port, self.ledger, self.calculator)
        self.allocator = allocator or PoolAllocator(
            policy=settings.pool_allocation_policy,
            tolerance=settings.pool_tolerance,
        )

    @contextmanager
    def _ship_transaction(self, name: str, ship_id: str):
        with self.locks.ship(ship_id), operation_scope(name), self.port.unit_of_work():
            yield

    # ---- snapshots ------------------------------------------------------------

    def compute_snapshot(
        self,
        ship_id: str,
        year: int,
        records: Optional[Iterable[ConsumptionRecord]] = None,
    ) -> ComplianceSnapshot:
        """
        Compute and store the raw CB of a ship-year.

        Records default to what the port holds for the ship-year. A snapshot
        is final: recomputing identical inputs returns the stored one,
        different inputs raise ConflictError.
        """
        with self._ship_transaction("compute_snapshot", ship_id):
            if records is None:
                records = self.port.load_consumption_records(ship_id, year)
            target = self.port.load_target_intensity(year)
            snapshot = self.calculator.compute_snapshot(ship_id, year, records, target)

            existing = self.port.load_compliance_snapshot(ship_id, year)
            if existing is not None:
                if existing == snapshot:
                    return existing
                raise ConflictError(
                    f"Snapshot for ship {ship_id} in {year} is final "
                    f"(stored CB {existing.raw_cb:.4f} t, recomputed {snapshot.raw_cb:.4f} t)"
                )

            self.port.save_compliance_snapshot(snapshot)
            logger.info(
                "Snapshot stored for %s/%s: CB %.4f t (%s)",
                ship_id, year, snapshot.raw_cb, "surplus" if snapshot.is_surplus else "deficit",
            )
            return snapshot

    # ---- banking ledger ---------------------------------------------------------

    def bank_surplus(self, ship_id: str, year: int, amount: float) -> BankingEntry:
        with self._ship_transaction("bank_surplus", ship_id):
            return self.ledger.bank_surplus(ship_id, year, amount)

    def borrow(self, ship_id: str, year: int, amount: float,
               expected_next_year_surplus: float) -> BankingEntry:
        with self._ship_transaction("borrow", ship_id):
            return self.ledger.borrow(ship_id, year, amount, expected_next_year_surplus)

    def repay_borrowing(self, ship_id: str, year: int, amount: float) -> CoverageResult:
        with self._ship_transaction("repay_borrowing", ship_id):
            return self.ledger.repay_borrowing(ship_id, year, amount)

    def resolve_adjusted_balance(self, ship_id: str, year: int,
                                 consecutive_deficit_years: int = 0) -> AdjustedBalance:
        with self._ship_transaction("resolve_adjusted_balance", ship_id):
            return self.resolver.resolve(ship_id, year, consecutive_deficit_years)

    # ---- pooling ----------------------------------------------------------------

    def form_pool(
        self,
        year: int,
        member_ship_ids: Sequence[str],
        adjusted_balances_by_ship: Optional[Mapping[str, AdjustedBalance]] = None,
    ) -> PoolResult:
        """
        Form and persist an Article 21 pool.

        When no balances are passed, each member is resolved inside the same
        unit of work, so a rejected pool leaves the ledger untouched.
        """
        with self.locks.ships(member_ship_ids), operation_scope("form_pool"), \
                self.port.unit_of_work():
            memberships = {
                ship_id: self.port.load_pool_membership(ship_id, year)
                for ship_id in member_ship_ids
            }

            if adjusted_balances_by_ship is None and not any(memberships.values()):
                adjusted_balances_by_ship = {
                    ship_id: self.resolver.resolve(ship_id, year)
                    for ship_id in dict.fromkeys(member_ship_ids)
                }

            result = self.allocator.form_pool(
                year,
                member_ship_ids,
                adjusted_balances_by_ship or {},
                existing_memberships=memberships,
            )
            self.port.save_pool(result.pool, result.allocations)

            logger.info(
                "Pool %s formed for %s with %d members, aggregate CB %.4f t",
                result.pool.pool_id, year, len(result.allocations),
                result.pool.aggregate_adjusted_cb,
            )
            return result
