"""
FuelEU Maritime (EU 2023/1805) GHG intensity and compliance balance.

Implements the Well-to-Wake intensity side of the ledger:
- GHG intensity of a ship-year from its consumption records (gCO2eq/MJ)
- Raw compliance balance against the year's limit (tCO2eq)
- Penalty exposure of an uncovered deficit

Reference: EU Regulation 2023/1805 (FuelEU Maritime)
Baseline: 91.16 gCO2eq/MJ (2020 EU MRV reference)
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .errors import InvalidInputError
from .models import ComplianceSnapshot, ConsumptionRecord

logger = logging.getLogger(__name__)


# =============================================================================
# Emission Factor Data (Annex II defaults)
# =============================================================================

# Lower Calorific Values (MJ/g fuel)
LCV = {
    "hfo": 0.0405,
    "lfo": 0.0410,
    "vlsfo": 0.0410,
    "mdo": 0.0427,
    "mgo": 0.0427,
    "lng": 0.0491,
    "lpg_propane": 0.0460,
    "lpg_butane": 0.0460,
    "methanol": 0.0199,
    "ethanol": 0.0268,
}

# Well-to-Tank emission factors (gCO2eq/MJ)
WTT_FACTORS = {
    "hfo": 13.5,
    "lfo": 13.2,
    "vlsfo": 13.2,
    "mdo": 14.4,
    "mgo": 14.4,
    "lng": 18.5,
    "lpg_propane": 7.8,
    "lpg_butane": 7.8,
    "methanol": 31.3,
    "ethanol": 31.3,
}

# Tank-to-Wake CO2eq factors (gCO2eq/MJ), includes CO2, CH4, N2O
TTW_FACTORS = {
    "hfo": 78.24,
    "lfo": 78.19,
    "vlsfo": 78.19,
    "mdo": 76.37,
    "mgo": 76.37,
    "lng": 70.70,
    "lpg_propane": 65.22,
    "lpg_butane": 65.87,
    "methanol": 69.08,
    "ethanol": 69.08,
}

# GHG intensity reference and reduction targets
REFERENCE_GHG = 91.16  # gCO2eq/MJ (2020 baseline)

# Each step applies from its year until the next step
REDUCTION_TARGETS = {
    2025: 2.0,
    2030: 6.0,
    2035: 14.5,
    2040: 31.0,
    2045: 62.0,
    2050: 80.0,
}

GRAMS_PER_TONNE = 1_000_000

# Penalty: EUR 2,400 per MT VLSFO equivalent (41,000 MJ/t)
PENALTY_EUR_PER_MT_VLSFO = 2400.0
VLSFO_MJ_PER_MT = 41_000.0
CONSECUTIVE_YEAR_ESCALATION = 0.10  # 10% escalation


def normalize_fuel_type(fuel_type: str) -> str:
    return fuel_type.strip().lower().replace(" ", "_").replace("-", "_")


def reduction_target_pct(year: int) -> float:
    """Get the applicable reduction target (%) for a given year."""
    pct = 0.0
    for step_year, step_pct in sorted(REDUCTION_TARGETS.items()):
        if year >= step_year:
            pct = step_pct
        else:
            break
    return pct


def target_intensity(year: int) -> float:
    """GHG intensity limit (gCO2eq/MJ) for a compliance year."""
    return REFERENCE_GHG * (1 - reduction_target_pct(year) / 100)


def get_limits_by_year() -> List[Dict]:
    """Return GHG intensity limits for all target years."""
    limits = []
    for year, pct in sorted(REDUCTION_TARGETS.items()):
        limits.append({
            "year": year,
            "reduction_pct": pct,
            "ghg_limit": round(target_intensity(year), 2),
        })
    return limits


# =============================================================================
# Result Dataclasses
# =============================================================================

@dataclass
class FuelBreakdown:
    """Per-record breakdown of energy and emissions."""
    fuel_type: str
    mass_mt: float
    energy_mj: float
    wtw_factor: float  # effective gCO2eq/MJ after renewable treatment
    wtw_gco2eq: float
    is_renewable: bool = False


@dataclass
class IntensityResult:
    """Energy-weighted GHG intensity of a set of records."""
    ghg_intensity: float  # gCO2eq/MJ (WtW)
    total_energy_mj: float
    total_co2eq_g: float
    fuel_breakdown: List[FuelBreakdown] = field(default_factory=list)


@dataclass
class PenaltyResult:
    """Penalty exposure for an uncovered deficit."""
    gap_tco2eq: float
    non_compliant_energy_mj: float
    vlsfo_equivalent_mt: float
    penalty_eur: float


# =============================================================================
# Calculator
# =============================================================================

class IntensityCalculator:
    """Turns a ship-year's consumption records into a ComplianceSnapshot."""

    def __init__(self, renewable_emission_factor_multiplier: float = 0.0):
        self.renewable_multiplier = renewable_emission_factor_multiplier

    def calculate_ghg_intensity(self, records: Iterable[ConsumptionRecord]) -> IntensityResult:
        """
        Calculate Well-to-Wake GHG intensity across all records.

        Args:
            records: Consumption records; quantities in metric tons

        Returns:
            IntensityResult with energy-weighted intensity and breakdown

        Raises:
            InvalidInputError: negative quantity, unknown fuel without
                factor overrides, or zero total energy
        """
        total_energy = 0.0
        total_co2eq = 0.0
        breakdown = []

        for record in records:
            if not math.isfinite(record.quantity_mt) or record.quantity_mt < 0:
                raise InvalidInputError(
                    f"Invalid quantity {record.quantity_mt} for {record.fuel_type} "
                    f"(ship {record.ship_id}, {record.year})"
                )

            lcv = self._lcv(record)
            wtw = self._wtw_factor(record)

            # Energy in MJ: mass (MT) * 1e6 (g/MT) * LCV (MJ/g)
            energy_mj = record.quantity_mt * GRAMS_PER_TONNE * lcv
            wtw_gco2eq = energy_mj * wtw

            total_energy += energy_mj
            total_co2eq += wtw_gco2eq

            breakdown.append(FuelBreakdown(
                fuel_type=normalize_fuel_type(record.fuel_type),
                mass_mt=record.quantity_mt,
                energy_mj=energy_mj,
                wtw_factor=wtw,
                wtw_gco2eq=wtw_gco2eq,
                is_renewable=record.is_renewable,
            ))

        if not math.isfinite(total_energy) or total_energy <= 0:
            raise InvalidInputError(
                f"Total energy must be positive and finite, got {total_energy}; "
                "GHG intensity is undefined"
            )

        return IntensityResult(
            ghg_intensity=total_co2eq / total_energy,
            total_energy_mj=total_energy,
            total_co2eq_g=total_co2eq,
            fuel_breakdown=breakdown,
        )

    def compute_snapshot(
        self,
        ship_id: str,
        year: int,
        records: Iterable[ConsumptionRecord],
        target: Optional[float] = None,
    ) -> ComplianceSnapshot:
        """
        Calculate the raw compliance balance of one ship-year.

        rawCB = (target - actual) * total_energy, converted g -> t CO2eq.
        Positive means the ship performed better than the limit (surplus).

        Args:
            ship_id: Ship identity
            year: Compliance year
            records: The ship-year's consumption records
            target: Target intensity; defaults to the regulation schedule

        Returns:
            ComplianceSnapshot
        """
        records = list(records)
        for record in records:
            if record.ship_id != ship_id or record.year != year:
                raise InvalidInputError(
                    f"Record for ship {record.ship_id}/{record.year} passed "
                    f"to snapshot of {ship_id}/{year}"
                )

        if target is None:
            target = target_intensity(year)
        if not math.isfinite(target) or target <= 0:
            raise InvalidInputError(f"Target intensity must be positive, got {target}")

        result = self.calculate_ghg_intensity(records)
        raw_cb = (target - result.ghg_intensity) * result.total_energy_mj / GRAMS_PER_TONNE

        logger.debug(
            "Snapshot %s/%s: actual=%.4f target=%.4f energy=%.0f MJ cb=%.4f t",
            ship_id, year, result.ghg_intensity, target, result.total_energy_mj, raw_cb,
        )

        return ComplianceSnapshot(
            ship_id=ship_id,
            year=year,
            target_intensity=target,
            actual_intensity=result.ghg_intensity,
            total_energy_mj=result.total_energy_mj,
            raw_cb=raw_cb,
        )

    @staticmethod
    def calculate_penalty(
        gap_tco2eq: float,
        actual_intensity: float,
        consecutive_deficit_years: int = 0,
    ) -> PenaltyResult:
        """
        Calculate penalty exposure for an uncovered deficit.

        Args:
            gap_tco2eq: Uncovered deficit as a positive tCO2eq amount
            actual_intensity: Attained GHG intensity (gCO2eq/MJ)
            consecutive_deficit_years: Number of prior consecutive deficit years
                                       (for 10% escalation)
        """
        if gap_tco2eq <= 0 or actual_intensity <= 0:
            return PenaltyResult(
                gap_tco2eq=max(gap_tco2eq, 0.0),
                non_compliant_energy_mj=0.0,
                vlsfo_equivalent_mt=0.0,
                penalty_eur=0.0,
            )

        # Non-compliant energy: |deficit| / GHG intensity
        non_compliant_energy_mj = gap_tco2eq * GRAMS_PER_TONNE / actual_intensity
        vlsfo_equivalent_mt = non_compliant_energy_mj / VLSFO_MJ_PER_MT
        penalty_eur = vlsfo_equivalent_mt * PENALTY_EUR_PER_MT_VLSFO

        if consecutive_deficit_years > 0:
            penalty_eur *= 1 + CONSECUTIVE_YEAR_ESCALATION * consecutive_deficit_years

        return PenaltyResult(
            gap_tco2eq=gap_tco2eq,
            non_compliant_energy_mj=round(non_compliant_energy_mj, 2),
            vlsfo_equivalent_mt=round(vlsfo_equivalent_mt, 4),
            penalty_eur=round(penalty_eur, 2),
        )

    # ---- private helpers ----------------------------------------------------

    @staticmethod
    def _lcv(record: ConsumptionRecord) -> float:
        if record.lcv_mj_per_g is not None:
            if not math.isfinite(record.lcv_mj_per_g) or record.lcv_mj_per_g <= 0:
                raise InvalidInputError(f"Invalid LCV {record.lcv_mj_per_g} for {record.fuel_type}")
            return record.lcv_mj_per_g
        fuel_key = normalize_fuel_type(record.fuel_type)
        if fuel_key not in LCV:
            raise InvalidInputError(f"Unknown fuel type without LCV override: {record.fuel_type}")
        return LCV[fuel_key]

    def _wtw_factor(self, record: ConsumptionRecord) -> float:
        if record.emission_factor is not None:
            if not math.isfinite(record.emission_factor) or record.emission_factor < 0:
                raise InvalidInputError(
                    f"Invalid emission factor {record.emission_factor} for {record.fuel_type}"
                )
            wtw = record.emission_factor
        else:
            fuel_key = normalize_fuel_type(record.fuel_type)
            if fuel_key not in WTT_FACTORS:
                raise InvalidInputError(
                    f"Unknown fuel type without emission factor override: {record.fuel_type}"
                )
            wtw = WTT_FACTORS[fuel_key] + TTW_FACTORS[fuel_key]
        if record.is_renewable:
            wtw *= self.renewable_multiplier
        return wtw
