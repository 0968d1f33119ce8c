"""
End-to-end tests for the ComplianceEngine on the in-memory port.

Covers snapshot finality, unit-of-work rollback and serialized pool
formation under concurrent requests.
"""

import threading

import pytest

from src.compliance.engine import ComplianceEngine
from src.compliance.errors import (
    ConflictError,
    InvalidInputError,
    PoolNonCompliantError,
    ValidationError,
)
from src.compliance.models import ConsumptionRecord, EntryStatus


class TestComputeSnapshot:
    def test_uses_port_records_and_targets(self, engine, port):
        port.target_schedule[2025] = 95.0
        port.add_consumption_records([
            ConsumptionRecord(ship_id="A", year=2025, fuel_type="hfo", quantity_mt=100.0),
        ])

        snapshot = engine.compute_snapshot("A", 2025)

        assert snapshot.target_intensity == 95.0
        assert snapshot.raw_cb > 0
        assert port.load_compliance_snapshot("A", 2025) == snapshot

    def test_recompute_identical_returns_stored(self, engine, record_factory):
        records = [record_factory("A", 2025, "hfo", 500.0)]
        first = engine.compute_snapshot("A", 2025, records)
        assert engine.compute_snapshot("A", 2025, records) == first

    def test_recompute_different_is_conflict(self, engine, record_factory):
        engine.compute_snapshot("A", 2025, [record_factory("A", 2025, "hfo", 500.0)])
        with pytest.raises(ConflictError, match="final"):
            engine.compute_snapshot("A", 2025, [record_factory("A", 2025, "hfo", 600.0)])

    def test_no_records_is_invalid_input(self, engine, port):
        with pytest.raises(InvalidInputError):
            engine.compute_snapshot("A", 2025)
        assert port.load_compliance_snapshot("A", 2025) is None


class TestLedgerFlow:
    def test_bank_then_resolve(self, engine, port, seed):
        seed({("A", 2025): 80.0, ("A", 2027): -50.0})
        entry = engine.bank_surplus("A", 2025, 80.0)

        balance = engine.resolve_adjusted_balance("A", 2027)

        assert balance.adjusted_cb == pytest.approx(0.0)
        assert port.entries[entry.entry_id].remaining_amount == pytest.approx(30.0)

    def test_borrow_and_repay(self, engine, port, seed):
        seed({("A", 2025): -40.0, ("A", 2026): 50.0})
        entry = engine.borrow("A", 2025, 20.0, expected_next_year_surplus=100.0)
        assert engine.resolve_adjusted_balance("A", 2025).adjusted_cb == pytest.approx(-20.0)

        engine.repay_borrowing("A", 2026, 20.0)

        assert port.entries[entry.entry_id].status == EntryStatus.CONSUMED
        assert engine.resolve_adjusted_balance("A", 2026).adjusted_cb == pytest.approx(30.0)

    def test_full_pipeline_from_records(self, engine, port, record_factory):
        port.target_schedule.update({2025: 95.0, 2026: 89.0})
        engine.compute_snapshot("A", 2025, [record_factory("A", 2025, "hfo", 100.0)])
        engine.compute_snapshot("A", 2026, [record_factory("A", 2026, "hfo", 100.0)])

        surplus = port.load_compliance_snapshot("A", 2025).raw_cb
        deficit = port.load_compliance_snapshot("A", 2026).raw_cb
        engine.bank_surplus("A", 2025, surplus)

        balance = engine.resolve_adjusted_balance("A", 2026)

        assert balance.adjusted_cb == pytest.approx(min(surplus + deficit, 0.0))
        assert balance.banked_remaining == pytest.approx(max(surplus + deficit, 0.0))


class TestFormPool:
    def test_pool_scenario_persisted(self, engine, port, seed):
        seed({("A", 2026): -20.0, ("B", 2026): 50.0, ("C", 2026): 10.0})

        result = engine.form_pool(2026, ["A", "B", "C"])

        stored_pool, stored_allocations = port.load_pool(result.pool.pool_id)
        assert stored_pool.aggregate_adjusted_cb == pytest.approx(40.0)
        assert {a.ship_id: a.post_cb for a in stored_allocations} == {"A": 0.0, "B": 30.0, "C": 10.0}
        assert port.load_pool_membership("B", 2026) == result.pool.pool_id

    def test_non_compliant_pool_leaves_no_state(self, engine, port, seed):
        seed({("A", 2026): -60.0, ("B", 2026): 10.0})

        with pytest.raises(PoolNonCompliantError):
            engine.form_pool(2026, ["A", "B"])

        assert port.pools == {}
        assert port.load_pool_membership("A", 2026) is None
        assert port.load_pool_membership("B", 2026) is None

    def test_rejected_pool_rolls_back_consumption(self, engine, port, seed):
        seed({("A", 2025): 10.0, ("A", 2026): -100.0, ("B", 2026): 5.0})
        entry = engine.bank_surplus("A", 2025, 10.0)

        with pytest.raises(PoolNonCompliantError):
            engine.form_pool(2026, ["A", "B"])

        assert port.entries[entry.entry_id].remaining_amount == 10.0
        assert port.load_ledger_draws("A") == []

    def test_ship_cannot_join_two_pools_same_year(self, engine, seed):
        seed({("A", 2026): -5.0, ("B", 2026): 20.0, ("C", 2026): 30.0})
        engine.form_pool(2026, ["A", "B"])
        with pytest.raises(ConflictError):
            engine.form_pool(2026, ["B", "C"])

    def test_concurrent_formations_sharing_member(self, port, settings, seed):
        seed({(s, 2026): v for s, v in {"A": -5.0, "B": 20.0, "C": 30.0, "D": -1.0}.items()})
        engine = ComplianceEngine(port, settings=settings)
        barrier = threading.Barrier(2)
        outcomes = []

        def form(members):
            barrier.wait()
            try:
                engine.form_pool(2026, members)
                outcomes.append("ok")
            except ConflictError:
                outcomes.append("conflict")

        threads = [
            threading.Thread(target=form, args=(["A", "B"],)),
            threading.Thread(target=form, args=(["D", "B"],)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(outcomes) == ["conflict", "ok"]
        assert len(port.pools) == 1


class TestLedgerAndPoolInteraction:
    def test_fully_banked_donor_cannot_fund_pool(self, engine, port, seed):
        seed({("A", 2025): -20.0, ("B", 2025): 50.0, ("B", 2026): -50.0})
        engine.bank_surplus("B", 2025, 50.0)

        assert engine.resolve_adjusted_balance("B", 2025).adjusted_cb == pytest.approx(0.0)
        with pytest.raises(PoolNonCompliantError):
            engine.form_pool(2025, ["A", "B"])

        assert engine.resolve_adjusted_balance("B", 2026).adjusted_cb == pytest.approx(0.0)
        assert port.pools == {}

    def test_bank_then_pool_conserves_balance(self, engine, port, seed):
        seed({("A", 2025): -20.0, ("B", 2025): 50.0})
        engine.bank_surplus("B", 2025, 20.0)

        result = engine.form_pool(2025, ["A", "B"])

        assert result.allocation_for("B").pre_cb == pytest.approx(30.0)
        assert result.allocation_for("B").post_cb == pytest.approx(10.0)
        verified = sum(engine.resolve_adjusted_balance(s, 2025).verified_cb for s in ("A", "B"))
        banked = engine.ledger.banked_balance("B")
        assert verified + banked == pytest.approx(-20.0 + 50.0)

    def test_pool_then_bank_limited_to_post_pool_surplus(self, engine, seed):
        seed({("A", 2025): -20.0, ("B", 2025): 50.0, ("B", 2026): -50.0})
        engine.form_pool(2025, ["A", "B"])

        with pytest.raises(ValidationError, match="unbanked surplus"):
            engine.bank_surplus("B", 2025, 50.0)
        engine.bank_surplus("B", 2025, 30.0)

        donor = engine.resolve_adjusted_balance("B", 2025)
        receiver = engine.resolve_adjusted_balance("A", 2025)
        assert donor.pool_delta == pytest.approx(-20.0)
        assert donor.verified_cb == pytest.approx(0.0)
        assert receiver.verified_cb == pytest.approx(0.0)
        assert receiver.status == "compliant"

        later = engine.resolve_adjusted_balance("B", 2026)
        assert later.adjusted_cb == pytest.approx(-20.0)
        assert later.uncovered_gap == pytest.approx(20.0)

    def test_pooled_deficit_year_draws_no_later_bank(self, engine, port, seed):
        seed({("A", 2024): 10.0, ("A", 2025): -20.0, ("B", 2025): 50.0})
        engine.form_pool(2025, ["A", "B"])
        entry = engine.bank_surplus("A", 2024, 10.0)

        balance = engine.resolve_adjusted_balance("A", 2025)

        assert balance.verified_cb == pytest.approx(0.0)
        assert port.entries[entry.entry_id].remaining_amount == 10.0

    def test_cover_then_borrow_rejected(self, engine, seed):
        seed({("A", 2024): 80.0, ("A", 2025): -50.0})
        engine.bank_surplus("A", 2024, 80.0)
        engine.resolve_adjusted_balance("A", 2025)

        with pytest.raises(ValidationError):
            engine.borrow("A", 2025, 50.0, expected_next_year_surplus=200.0)
        assert engine.resolve_adjusted_balance("A", 2025).adjusted_cb == pytest.approx(0.0)
