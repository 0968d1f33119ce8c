"""
Article 20 banking and borrowing ledger.

Each ship owns an append-only sequence of BankingEntry records:
- banked surplus, carried forward and consumed oldest-first (FIFO)
- borrowed advances, to be repaid from a later surplus before a deadline

Every decrement is recorded as a LedgerDraw charged to the compliance year
it served, so adjusted balances can always be re-derived from the ledger.
Callers are responsible for serializing operations per ship.
"""

import logging
import math
import uuid
from typing import List, Optional

from .audit import audit_logger
from .errors import InvalidInputError, ValidationError
from .models import (
    BankingEntry,
    ComplianceSnapshot,
    CoverageResult,
    DrawKind,
    EntryKind,
    EntryStatus,
    LedgerDraw,
)
from .port import CompliancePort

logger = logging.getLogger(__name__)

# Absolute slack (tCO2eq) for float comparisons against available surplus
EPSILON = 1e-9


def _fifo(entries: List[BankingEntry]) -> List[BankingEntry]:
    return sorted(entries, key=lambda e: e.fifo_key)


def _check_amount(amount: float, what: str) -> None:
    if not math.isfinite(amount) or amount <= 0:
        raise InvalidInputError(f"{what} must be positive and finite, got {amount}")


class BankingLedger:
    """Per-ship banking ledger backed by a CompliancePort."""

    def __init__(
        self,
        port: CompliancePort,
        banking_window_years: Optional[int] = None,
        borrowing_cap_fraction: float = 0.02,
        borrowing_repayment_years: int = 1,
    ):
        self.port = port
        self.banking_window_years = banking_window_years
        self.borrowing_cap_fraction = borrowing_cap_fraction
        self.borrowing_repayment_years = borrowing_repayment_years

    # ---- queries ------------------------------------------------------------

    def entries(self, ship_id: str) -> List[BankingEntry]:
        """All entries of a ship in FIFO order."""
        return _fifo(self.port.load_banking_entries(ship_id))

    def free_surplus(self, ship_id: str, year: int,
                     snapshot: Optional[ComplianceSnapshot] = None) -> float:
        """
        Surplus of ``year`` not yet banked, spent on repayments or given
        to a pool.
        """
        if snapshot is None:
            snapshot = self.port.load_compliance_snapshot(ship_id, year)
        if snapshot is None:
            return 0.0

        allocation = self.port.load_pool_allocation(ship_id, year)
        pool_delta = allocation.delta if allocation is not None else 0.0
        if snapshot.raw_cb + pool_delta <= 0:
            return 0.0

        banked = sum(
            e.original_amount for e in self.port.load_banking_entries(ship_id)
            if e.kind == EntryKind.BANKED_SURPLUS and e.origin_year == year
        )
        repaid = sum(
            d.amount for d in self.port.load_ledger_draws(ship_id, year)
            if d.kind == DrawKind.REPAYMENT
        )
        return max(snapshot.raw_cb + pool_delta - banked - repaid, 0.0)

    def banked_balance(self, ship_id: str, as_of_year: Optional[int] = None) -> float:
        """Open banked surplus, optionally limited to what is usable in ``as_of_year``."""
        total = 0.0
        for entry in self.port.load_open_banking_entries(ship_id):
            if entry.kind != EntryKind.BANKED_SURPLUS:
                continue
            if as_of_year is not None and (
                entry.origin_year >= as_of_year or self._is_past_window(entry, as_of_year)
            ):
                continue
            total += entry.remaining_amount
        return total

    def outstanding_borrowing(self, ship_id: str) -> float:
        return sum(
            e.remaining_amount for e in self.port.load_open_banking_entries(ship_id)
            if e.kind == EntryKind.BORROWED_DEFICIT
        )

    def overdue_borrowings(self, ship_id: str, as_of_year: int) -> List[BankingEntry]:
        """
        Borrowed advances still open after their repayment deadline.

        These are hard compliance violations: they are reported, never
        expired the way unused surplus is.
        """
        overdue = [
            e for e in self.port.load_open_banking_entries(ship_id)
            if e.kind == EntryKind.BORROWED_DEFICIT
            and e.repayment_deadline is not None
            and e.repayment_deadline < as_of_year
        ]
        for entry in overdue:
            audit_logger.error(
                "Borrowing repayment overdue",
                ship_id=ship_id,
                entry_id=entry.entry_id,
                origin_year=entry.origin_year,
                repayment_deadline=entry.repayment_deadline,
                outstanding=entry.remaining_amount,
                as_of_year=as_of_year,
            )
        return _fifo(overdue)

    # ---- banking ------------------------------------------------------------

    def bank_surplus(self, ship_id: str, year: int, amount: float) -> BankingEntry:
        """
        Bank part or all of a ship-year's surplus.

        Raises:
            InvalidInputError: amount is not positive
            ValidationError: no snapshot for the ship-year, or not enough
                unbanked surplus left
        """
        _check_amount(amount, "Banked amount")

        snapshot = self.port.load_compliance_snapshot(ship_id, year)
        if snapshot is None:
            raise ValidationError(f"No compliance snapshot for ship {ship_id} in {year}")

        available = self.free_surplus(ship_id, year, snapshot)
        if amount > available + EPSILON:
            raise ValidationError(
                f"Cannot bank {amount:.4f} t for ship {ship_id} in {year}: "
                f"only {available:.4f} t of unbanked surplus"
            )

        entry = self._new_entry(ship_id, year, EntryKind.BANKED_SURPLUS, amount)
        self.port.save_banking_entries([entry])

        audit_logger.info(
            "Surplus banked",
            ship_id=ship_id,
            year=year,
            amount=amount,
            entry_id=entry.entry_id,
        )
        return entry

    def consume_for_deficit(self, ship_id: str, target_year: int,
                            deficit_amount: float) -> CoverageResult:
        """
        Cover a deficit of ``target_year`` from banked surplus, oldest first.

        Entries past the banking window are expired before selection. The
        result reports the shortfall when banked surplus runs out.
        """
        _check_amount(deficit_amount, "Deficit amount")

        entries = self.port.load_banking_entries(ship_id)
        changed = {}

        for entry in entries:
            if (entry.is_open and entry.kind == EntryKind.BANKED_SURPLUS
                    and self._is_past_window(entry, target_year)):
                entry.status = EntryStatus.EXPIRED
                changed[entry.entry_id] = entry
                audit_logger.warning(
                    "Banked surplus expired",
                    ship_id=ship_id,
                    entry_id=entry.entry_id,
                    origin_year=entry.origin_year,
                    forfeited=entry.remaining_amount,
                    target_year=target_year,
                )

        eligible = _fifo([
            e for e in entries
            if e.is_open and e.kind == EntryKind.BANKED_SURPLUS
            and e.origin_year < target_year
        ])

        result = self._draw_down(
            ship_id, target_year, deficit_amount, eligible, DrawKind.CONSUMPTION, changed,
        )

        if result.shortfall > EPSILON:
            logger.info(
                "Ship %s %s: banked surplus covers %.4f of %.4f t deficit",
                ship_id, target_year, result.covered, deficit_amount,
            )
        return result

    # ---- borrowing ------------------------------------------------------------

    def borrow(self, ship_id: str, year: int, amount: float,
               expected_next_year_surplus: float) -> BankingEntry:
        """
        Borrow an advance against next year's expected surplus.

        Raises:
            InvalidInputError: non-positive amount or negative expectation
            ValidationError: no uncovered deficit left, ship-year already
                pooled, or amount over the cap
        """
        _check_amount(amount, "Borrowed amount")
        if not math.isfinite(expected_next_year_surplus) or expected_next_year_surplus < 0:
            raise InvalidInputError("Expected next-year surplus cannot be negative")

        snapshot = self.port.load_compliance_snapshot(ship_id, year)
        if snapshot is None:
            raise ValidationError(f"No compliance snapshot for ship {ship_id} in {year}")
        if snapshot.raw_cb >= 0:
            raise ValidationError(
                f"Ship {ship_id} has no deficit in {year} (CB {snapshot.raw_cb:.4f} t)"
            )

        if self.port.load_pool_membership(ship_id, year) is not None:
            raise ValidationError(
                f"Ship {ship_id} is pooled for {year}; the pool settled its deficit"
            )

        already = sum(
            e.original_amount for e in self.port.load_banking_entries(ship_id)
            if e.kind == EntryKind.BORROWED_DEFICIT and e.origin_year == year
        )
        covered = sum(
            d.amount for d in self.port.load_ledger_draws(ship_id, year)
            if d.kind == DrawKind.CONSUMPTION
        )
        # An advance may only fill what neither borrowing nor banked surplus covers
        uncovered = -snapshot.raw_cb - already - covered
        total = already + amount

        if amount > uncovered + EPSILON:
            raise ValidationError(
                f"Borrowing {amount:.4f} t exceeds the {max(uncovered, 0.0):.4f} t uncovered "
                f"deficit of ship {ship_id} in {year}"
            )

        cap = self.borrowing_cap_fraction * expected_next_year_surplus
        if total > cap + EPSILON:
            raise ValidationError(
                f"Borrowing {total:.4f} t exceeds cap {cap:.4f} t "
                f"({self.borrowing_cap_fraction:.2%} of expected surplus)"
            )

        entry = self._new_entry(ship_id, year, EntryKind.BORROWED_DEFICIT, amount)
        entry.repayment_deadline = year + self.borrowing_repayment_years
        self.port.save_banking_entries([entry])

        audit_logger.info(
            "Deficit borrowed",
            ship_id=ship_id,
            year=year,
            amount=amount,
            entry_id=entry.entry_id,
            repayment_deadline=entry.repayment_deadline,
        )
        return entry

    def repay_borrowing(self, ship_id: str, year: int, amount: float) -> CoverageResult:
        """Repay open advances (oldest first) from the surplus of ``year``."""
        _check_amount(amount, "Repayment")

        snapshot = self.port.load_compliance_snapshot(ship_id, year)
        if snapshot is None:
            raise ValidationError(f"No compliance snapshot for ship {ship_id} in {year}")

        available = self.free_surplus(ship_id, year, snapshot)
        if amount > available + EPSILON:
            raise ValidationError(
                f"Cannot repay {amount:.4f} t from {year}: "
                f"only {available:.4f} t of free surplus"
            )

        owed = _fifo([
            e for e in self.port.load_open_banking_entries(ship_id)
            if e.kind == EntryKind.BORROWED_DEFICIT and e.origin_year < year
        ])
        outstanding = sum(e.remaining_amount for e in owed)
        if amount > outstanding + EPSILON:
            raise ValidationError(
                f"Repayment {amount:.4f} t exceeds {outstanding:.4f} t outstanding "
                f"for ship {ship_id}"
            )

        return self._draw_down(ship_id, year, amount, owed, DrawKind.REPAYMENT, {})

    # ---- private helpers ----------------------------------------------------

    def _is_past_window(self, entry: BankingEntry, target_year: int) -> bool:
        if self.banking_window_years is None:
            return False
        return entry.origin_year < target_year - self.banking_window_years

    def _new_entry(self, ship_id: str, year: int, kind: EntryKind,
                   amount: float) -> BankingEntry:
        existing = self.port.load_banking_entries(ship_id)
        sequence = max((e.sequence for e in existing), default=0) + 1
        return BankingEntry(
            entry_id=str(uuid.uuid4()),
            ship_id=ship_id,
            origin_year=year,
            kind=kind,
            original_amount=amount,
            remaining_amount=amount,
            sequence=sequence,
        )

    def _draw_down(self, ship_id, year, amount, entries, kind, changed) -> CoverageResult:
        remaining = amount
        draws = []
        for entry in entries:
            if remaining <= EPSILON:
                break
            taken = entry.decrement(remaining)
            if taken <= 0:
                continue
            remaining -= taken
            changed[entry.entry_id] = entry
            draws.append(LedgerDraw(
                entry_id=entry.entry_id,
                ship_id=ship_id,
                year=year,
                amount=taken,
                kind=kind,
            ))
            audit_logger.info(
                "Ledger entry drawn",
                ship_id=ship_id,
                entry_id=entry.entry_id,
                origin_year=entry.origin_year,
                charged_year=year,
                draw_kind=kind.value,
                amount=taken,
                remaining=entry.remaining_amount,
                status=entry.status.value,
            )

        if changed:
            self.port.save_banking_entries(changed.values())
        if draws:
            self.port.save_ledger_draws(draws)

        return CoverageResult(
            requested=amount,
            covered=sum(d.amount for d in draws),
            draws=draws,
        )
