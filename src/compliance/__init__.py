"""FuelEU Maritime compliance ledger: CB calculation, banking and pooling."""

from .banking import BankingLedger
from .engine import ComplianceEngine
from .errors import (
    ComplianceError,
    ConflictError,
    FairnessViolationError,
    InvalidInputError,
    PoolNonCompliantError,
    ValidationError,
)
from .fueleu import IntensityCalculator
from .pooling import PoolAllocator
from .port import CompliancePort, InMemoryCompliancePort
from .resolver import AdjustedBalanceResolver

__all__ = [
    "AdjustedBalanceResolver",
    "BankingLedger",
    "ComplianceEngine",
    "ComplianceError",
    "CompliancePort",
    "ConflictError",
    "FairnessViolationError",
    "InMemoryCompliancePort",
    "IntensityCalculator",
    "InvalidInputError",
    "PoolAllocator",
    "PoolNonCompliantError",
    "ValidationError",
]
