"""
SQLAlchemy implementation of the CompliancePort.

Maps ORM rows to the ledger dataclasses. A unit of work is a session
transaction: the outermost block commits on success and rolls back on any
error; nested blocks join the outer one.
"""

import logging
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.compliance.errors import ConflictError
from src.compliance.fueleu import target_intensity
from src.compliance.models import (
    BankingEntry,
    ComplianceSnapshot,
    ConsumptionRecord,
    DrawKind,
    EntryKind,
    EntryStatus,
    LedgerDraw,
    Pool,
    PoolAllocation,
)
from src.compliance.port import CompliancePort
from src.database.models import (
    BankingEntryRow,
    ComplianceSnapshotRow,
    ConsumptionRecordRow,
    LedgerDrawRow,
    PoolAllocationRow,
    PoolRow,
    TargetIntensity,
)

logger = logging.getLogger(__name__)


def _entry_from_row(row: BankingEntryRow) -> BankingEntry:
    return BankingEntry(
        entry_id=row.entry_id,
        ship_id=row.ship_id,
        origin_year=row.origin_year,
        kind=EntryKind(row.kind),
        original_amount=row.original_amount,
        remaining_amount=row.remaining_amount,
        sequence=row.sequence,
        status=EntryStatus(row.status),
        repayment_deadline=row.repayment_deadline,
    )


def _snapshot_from_row(row: ComplianceSnapshotRow) -> ComplianceSnapshot:
    return ComplianceSnapshot(
        ship_id=row.ship_id,
        year=row.year,
        target_intensity=row.target_intensity,
        actual_intensity=row.actual_intensity,
        total_energy_mj=row.total_energy_mj,
        raw_cb=row.raw_cb,
    )


class SqlAlchemyCompliancePort(CompliancePort):
    """Ledger persistence on a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db
        self._depth = 0

    # ---- consumption & targets ---------------------------------------------

    def add_consumption_records(self, records) -> None:
        for record in records:
            self.db.add(ConsumptionRecordRow(
                ship_id=record.ship_id,
                year=record.year,
                fuel_type=record.fuel_type,
                quantity_mt=record.quantity_mt,
                emission_factor=record.emission_factor,
                lcv_mj_per_g=record.lcv_mj_per_g,
                is_renewable=record.is_renewable,
            ))
        self.db.flush()

    def load_consumption_records(self, ship_id, year) -> List[ConsumptionRecord]:
        rows = (
            self.db.query(ConsumptionRecordRow)
            .filter(ConsumptionRecordRow.ship_id == ship_id, ConsumptionRecordRow.year == year)
            .order_by(ConsumptionRecordRow.id)
            .all()
        )
        return [
            ConsumptionRecord(
                ship_id=r.ship_id,
                year=r.year,
                fuel_type=r.fuel_type,
                quantity_mt=r.quantity_mt,
                emission_factor=r.emission_factor,
                lcv_mj_per_g=r.lcv_mj_per_g,
                is_renewable=r.is_renewable,
            )
            for r in rows
        ]

    def load_target_intensity(self, year) -> float:
        row = self.db.get(TargetIntensity, year)
        if row is not None:
            return row.intensity
        return target_intensity(year)

    # ---- snapshots ------------------------------------------------------------

    def _snapshot_row(self, ship_id, year) -> Optional[ComplianceSnapshotRow]:
        return (
            self.db.query(ComplianceSnapshotRow)
            .filter(ComplianceSnapshotRow.ship_id == ship_id, ComplianceSnapshotRow.year == year)
            .one_or_none()
        )

    def load_compliance_snapshot(self, ship_id, year) -> Optional[ComplianceSnapshot]:
        row = self._snapshot_row(ship_id, year)
        return _snapshot_from_row(row) if row is not None else None

    def save_compliance_snapshot(self, snapshot: ComplianceSnapshot) -> None:
        existing = self._snapshot_row(snapshot.ship_id, snapshot.year)
        if existing is not None:
            if _snapshot_from_row(existing) != snapshot:
                raise ConflictError(
                    f"Snapshot for {snapshot.ship_id}/{snapshot.year} already finalized"
                )
            return
        self.db.add(ComplianceSnapshotRow(
            ship_id=snapshot.ship_id,
            year=snapshot.year,
            target_intensity=snapshot.target_intensity,
            actual_intensity=snapshot.actual_intensity,
            total_energy_mj=snapshot.total_energy_mj,
            raw_cb=snapshot.raw_cb,
        ))
        self.db.flush()

    # ---- banking ledger ---------------------------------------------------------

    def load_banking_entries(self, ship_id) -> List[BankingEntry]:
        rows = (
            self.db.query(BankingEntryRow)
            .filter(BankingEntryRow.ship_id == ship_id)
            .order_by(BankingEntryRow.origin_year, BankingEntryRow.sequence)
            .all()
        )
        return [_entry_from_row(r) for r in rows]

    def save_banking_entries(self, entries) -> None:
        for entry in entries:
            row = self.db.get(BankingEntryRow, entry.entry_id)
            if row is None:
                row = BankingEntryRow(
                    entry_id=entry.entry_id,
                    ship_id=entry.ship_id,
                    origin_year=entry.origin_year,
                    kind=entry.kind.value,
                    original_amount=entry.original_amount,
                    sequence=entry.sequence,
                )
                self.db.add(row)
            row.remaining_amount = entry.remaining_amount
            row.status = entry.status.value
            row.repayment_deadline = entry.repayment_deadline
        self.db.flush()

    def load_ledger_draws(self, ship_id, year=None) -> List[LedgerDraw]:
        query = self.db.query(LedgerDrawRow).filter(LedgerDrawRow.ship_id == ship_id)
        if year is not None:
            query = query.filter(LedgerDrawRow.year == year)
        return [
            LedgerDraw(
                entry_id=r.entry_id,
                ship_id=r.ship_id,
                year=r.year,
                amount=r.amount,
                kind=DrawKind(r.kind),
            )
            for r in query.order_by(LedgerDrawRow.id).all()
        ]

    def save_ledger_draws(self, draws) -> None:
        for draw in draws:
            self.db.add(LedgerDrawRow(
                entry_id=draw.entry_id,
                ship_id=draw.ship_id,
                year=draw.year,
                amount=draw.amount,
                kind=draw.kind.value,
            ))
        self.db.flush()

    # ---- pools ----------------------------------------------------------------

    def load_pool_membership(self, ship_id, year) -> Optional[str]:
        row = (
            self.db.query(PoolAllocationRow)
            .filter(PoolAllocationRow.ship_id == ship_id, PoolAllocationRow.year == year)
            .one_or_none()
        )
        return row.pool_id if row is not None else None

    def load_pool(self, pool_id):
        row = self.db.get(PoolRow, pool_id)
        if row is None:
            return None
        pool = Pool(
            pool_id=row.pool_id,
            year=row.year,
            member_ship_ids=tuple(a.ship_id for a in row.allocations),
            aggregate_adjusted_cb=row.aggregate_adjusted_cb,
        )
        allocations = [
            PoolAllocation(pool_id=row.pool_id, ship_id=a.ship_id, pre_cb=a.pre_cb, post_cb=a.post_cb)
            for a in row.allocations
        ]
        return pool, allocations

    def save_pool(self, pool: Pool, allocations) -> None:
        row = PoolRow(
            pool_id=pool.pool_id,
            year=pool.year,
            aggregate_adjusted_cb=pool.aggregate_adjusted_cb,
        )
        for position, allocation in enumerate(allocations):
            row.allocations.append(PoolAllocationRow(
                ship_id=allocation.ship_id,
                year=pool.year,
                position=position,
                pre_cb=allocation.pre_cb,
                post_cb=allocation.post_cb,
                delta=allocation.delta,
            ))
        self.db.add(row)
        try:
            self.db.flush()
        except IntegrityError as e:
            raise ConflictError(f"Pool membership conflict for {pool.year}: {e.orig}") from e

    # ---- transactions ---------------------------------------------------------

    @contextmanager
    def unit_of_work(self):
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield
            self.db.commit()
        except Exception as e:
            logger.error(f"Ledger unit of work failed: {e}")
            self.db.rollback()
            raise
        finally:
            self._depth = 0
