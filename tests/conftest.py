"""
Shared pytest fixtures for compliance ledger tests.

Environment variables are set before any src.* import so the module-level
database engine in src.database.session points at in-memory SQLite.
"""

import os

import pytest

# ---------------------------------------------------------------------------
# Section 1: Environment setup (before ANY src.* imports)
# ---------------------------------------------------------------------------
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DB_ECHO", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from src.compliance.engine import ComplianceEngine  # noqa: E402
from src.compliance.models import ComplianceSnapshot, ConsumptionRecord  # noqa: E402
from src.compliance.port import InMemoryCompliancePort  # noqa: E402
from src.config import Settings  # noqa: E402
from src.database.session import Base, create_db_engine  # noqa: E402
import src.database.models  # noqa: E402,F401 - ensure all ORM models are registered


# ---------------------------------------------------------------------------
# Section 2: Helpers
# ---------------------------------------------------------------------------


def make_snapshot(ship_id, year, raw_cb, actual_intensity=91.74):
    """Snapshot with a chosen raw CB, bypassing the intensity calculation."""
    return ComplianceSnapshot(
        ship_id=ship_id,
        year=year,
        target_intensity=89.3368,
        actual_intensity=actual_intensity,
        total_energy_mj=1.0e9,
        raw_cb=float(raw_cb),
    )


def make_record(ship_id="IMO9000001", year=2025, fuel_type="hfo", quantity_mt=1000.0, **kwargs):
    return ConsumptionRecord(
        ship_id=ship_id,
        year=year,
        fuel_type=fuel_type,
        quantity_mt=quantity_mt,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Section 3: Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        banking_window_years=None,
        borrowing_cap_fraction=0.5,
        borrowing_repayment_years=1,
        renewable_emission_factor_multiplier=0.0,
        pool_allocation_policy="largest_surplus_first",
    )


@pytest.fixture
def port():
    return InMemoryCompliancePort()


@pytest.fixture
def engine(port, settings):
    return ComplianceEngine(port, settings=settings)


@pytest.fixture
def snapshot_factory():
    return make_snapshot


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def seed(port):
    """Store snapshots with given raw CB values: seed({("A", 2025): 80.0, ...})."""
    def _seed(values):
        for (ship_id, year), raw_cb in values.items():
            port.save_compliance_snapshot(make_snapshot(ship_id, year, raw_cb))
    return _seed


@pytest.fixture
def db():
    """Fresh in-memory SQLite database per test."""
    test_engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=test_engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()
