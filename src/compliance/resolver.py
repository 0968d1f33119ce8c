"""Adjusted compliance balance: raw CB plus the ledger effects of a year."""

import logging

from .banking import EPSILON, BankingLedger
from .errors import ValidationError
from .fueleu import IntensityCalculator
from .models import AdjustedBalance, DrawKind, EntryKind
from .port import CompliancePort

logger = logging.getLogger(__name__)


class AdjustedBalanceResolver:
    """
    Derives the Adjusted CB used for compliance and pooling.

    For a deficit year the resolver covers the gap from banked surplus via
    FIFO consumption. Surplus years are never banked automatically; that is
    an explicit caller action.

    Surplus banked out of the year leaves its balance. Resolution only
    requests the part of the deficit not already covered by earlier
    consumption draws charged to the same year, so resolving a ship-year
    twice does not consume the ledger twice. A pooled ship-year draws
    nothing further; its pool transfer is reported as ``pool_delta``.
    """

    def __init__(self, port: CompliancePort, ledger: BankingLedger,
                 calculator: IntensityCalculator = None):
        self.port = port
        self.ledger = ledger
        self.calculator = calculator or IntensityCalculator()

    def resolve(self, ship_id: str, year: int,
                consecutive_deficit_years: int = 0) -> AdjustedBalance:
        snapshot = self.port.load_compliance_snapshot(ship_id, year)
        if snapshot is None:
            raise ValidationError(f"No compliance snapshot for ship {ship_id} in {year}")

        entries = [e for e in self.port.load_banking_entries(ship_id) if e.origin_year == year]
        advance = sum(e.original_amount for e in entries if e.kind == EntryKind.BORROWED_DEFICIT)
        banked_out = sum(e.original_amount for e in entries if e.kind == EntryKind.BANKED_SURPLUS)
        draws = self.port.load_ledger_draws(ship_id, year)
        repaid = sum(d.amount for d in draws if d.kind == DrawKind.REPAYMENT)
        covered = sum(d.amount for d in draws if d.kind == DrawKind.CONSUMPTION)

        allocation = self.port.load_pool_allocation(ship_id, year)

        pre_banking = snapshot.raw_cb + advance - repaid - banked_out
        if pre_banking < 0 and allocation is None:
            still_open = -pre_banking - covered
            if still_open > EPSILON:
                result = self.ledger.consume_for_deficit(ship_id, year, still_open)
                covered += result.covered

        credit = advance + covered
        if snapshot.raw_cb < 0 and credit > -snapshot.raw_cb + EPSILON:
            logger.error(
                "Ship %s %s: advances and banked cover %.4f t exceed the %.4f t deficit",
                ship_id, year, credit, -snapshot.raw_cb,
            )
            credit = -snapshot.raw_cb

        adjustment = credit - repaid - banked_out
        adjusted_cb = snapshot.raw_cb + adjustment
        pool_delta = allocation.delta if allocation is not None else 0.0
        verified_cb = adjusted_cb + pool_delta
        gap = -verified_cb if verified_cb < -EPSILON else 0.0

        penalty = self.calculator.calculate_penalty(
            gap, snapshot.actual_intensity, consecutive_deficit_years,
        )
        if gap:
            logger.warning(
                "Ship %s %s: uncovered deficit %.4f t (penalty exposure EUR %.2f)",
                ship_id, year, gap, penalty.penalty_eur,
            )

        return AdjustedBalance(
            ship_id=ship_id,
            year=year,
            raw_cb=snapshot.raw_cb,
            banking_adjustment=adjustment,
            adjusted_cb=adjusted_cb,
            uncovered_gap=gap,
            banked_remaining=self.ledger.banked_balance(ship_id),
            overdue_borrowings=self.ledger.overdue_borrowings(ship_id, year),
            penalty_eur=penalty.penalty_eur,
            pool_delta=pool_delta,
        )
