"""
SQLAlchemy models for the compliance ledger database.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from src.database.session import Base


def _utcnow():
    return datetime.now(timezone.utc)


class TargetIntensity(Base):
    """GHG intensity limit for a compliance year (overrides the default schedule)."""

    __tablename__ = "target_intensities"

    year = Column(Integer, primary_key=True)
    intensity = Column(Float, nullable=False)

    def __repr__(self):
        return f"<TargetIntensity(year={self.year}, intensity={self.intensity})>"


class ConsumptionRecordRow(Base):
    """Fuel consumed by a ship in a compliance year."""

    __tablename__ = "consumption_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ship_id = Column(String(64), nullable=False)
    year = Column(Integer, nullable=False)
    fuel_type = Column(String(50), nullable=False)
    quantity_mt = Column(Float, nullable=False)
    emission_factor = Column(Float, nullable=True)
    lcv_mj_per_g = Column(Float, nullable=True)
    is_renewable = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_consumption_ship_year", "ship_id", "year"),
    )

    def __repr__(self):
        return f"<ConsumptionRecordRow(ship_id='{self.ship_id}', year={self.year}, fuel='{self.fuel_type}')>"


class ComplianceSnapshotRow(Base):
    """Raw compliance balance of a ship-year. Written once."""

    __tablename__ = "compliance_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ship_id = Column(String(64), nullable=False)
    year = Column(Integer, nullable=False)
    target_intensity = Column(Float, nullable=False)
    actual_intensity = Column(Float, nullable=False)
    total_energy_mj = Column(Float, nullable=False)
    raw_cb = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("ship_id", "year", name="uq_snapshot_ship_year"),
    )

    def __repr__(self):
        return f"<ComplianceSnapshotRow(ship_id='{self.ship_id}', year={self.year}, cb={self.raw_cb})>"


class BankingEntryRow(Base):
    """Banked surplus or borrowed advance."""

    __tablename__ = "banking_entries"

    entry_id = Column(String(36), primary_key=True)
    ship_id = Column(String(64), nullable=False)
    origin_year = Column(Integer, nullable=False)
    kind = Column(String(20), nullable=False)
    original_amount = Column(Float, nullable=False)
    remaining_amount = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    repayment_deadline = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    # Relationships
    draws = relationship("LedgerDrawRow", back_populates="entry")

    __table_args__ = (
        Index("ix_banking_ship_fifo", "ship_id", "origin_year", "sequence"),
        UniqueConstraint("ship_id", "sequence", name="uq_banking_ship_sequence"),
    )

    def __repr__(self):
        return f"<BankingEntryRow(ship_id='{self.ship_id}', year={self.origin_year}, status='{self.status}')>"


class LedgerDrawRow(Base):
    """Append-only record of a decrement applied to a banking entry."""

    __tablename__ = "ledger_draws"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(
        String(36), ForeignKey("banking_entries.entry_id"), nullable=False, index=True
    )
    ship_id = Column(String(64), nullable=False)
    year = Column(Integer, nullable=False)
    amount = Column(Float, nullable=False)
    kind = Column(String(20), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationships
    entry = relationship("BankingEntryRow", back_populates="draws")

    __table_args__ = (
        Index("ix_draws_ship_year", "ship_id", "year"),
    )


class PoolRow(Base):
    """Article 21 pool."""

    __tablename__ = "pools"

    pool_id = Column(String(36), primary_key=True)
    year = Column(Integer, nullable=False, index=True)
    aggregate_adjusted_cb = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Relationships
    allocations = relationship(
        "PoolAllocationRow",
        back_populates="pool",
        order_by="PoolAllocationRow.position",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<PoolRow(pool_id='{self.pool_id}', year={self.year})>"


class PoolAllocationRow(Base):
    """Pre/post balance of one pool member. One pool per ship-year."""

    __tablename__ = "pool_allocations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pool_id = Column(String(36), ForeignKey("pools.pool_id", ondelete="CASCADE"), nullable=False)
    ship_id = Column(String(64), nullable=False)
    year = Column(Integer, nullable=False)
    position = Column(Integer, nullable=False)
    pre_cb = Column(Float, nullable=False)
    post_cb = Column(Float, nullable=False)
    delta = Column(Float, nullable=False)

    # Relationships
    pool = relationship("PoolRow", back_populates="allocations")

    __table_args__ = (
        UniqueConstraint("ship_id", "year", name="uq_pool_member_ship_year"),
    )
