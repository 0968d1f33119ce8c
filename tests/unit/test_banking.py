"""Tests for the Article 20 banking ledger."""

import pytest

from src.compliance.banking import BankingLedger
from src.compliance.errors import InvalidInputError, ValidationError
from src.compliance.models import DrawKind, EntryKind, EntryStatus, Pool, PoolAllocation


@pytest.fixture
def ledger(port):
    return BankingLedger(port, banking_window_years=None, borrowing_cap_fraction=0.5,
                         borrowing_repayment_years=1)


def _entry(port, entry_id):
    return port.entries[entry_id]


# =============================================================================
# bank_surplus
# =============================================================================

class TestBankSurplus:
    def test_creates_open_entry(self, ledger, port, seed):
        seed({("A", 2025): 80.0})
        entry = ledger.bank_surplus("A", 2025, 80.0)

        assert entry.kind == EntryKind.BANKED_SURPLUS
        assert entry.status == EntryStatus.OPEN
        assert entry.origin_year == 2025
        assert entry.original_amount == entry.remaining_amount == 80.0
        assert port.entries[entry.entry_id].remaining_amount == 80.0

    def test_partial_banking_accumulates(self, ledger, seed):
        seed({("A", 2025): 100.0})
        ledger.bank_surplus("A", 2025, 60.0)
        ledger.bank_surplus("A", 2025, 40.0)
        assert ledger.free_surplus("A", 2025) == pytest.approx(0.0)

        with pytest.raises(ValidationError, match="unbanked surplus"):
            ledger.bank_surplus("A", 2025, 0.5)

    def test_more_than_surplus_rejected(self, ledger, seed):
        seed({("A", 2025): 10.0})
        with pytest.raises(ValidationError):
            ledger.bank_surplus("A", 2025, 10.5)

    def test_deficit_year_cannot_bank(self, ledger, seed):
        seed({("A", 2025): -10.0})
        with pytest.raises(ValidationError):
            ledger.bank_surplus("A", 2025, 1.0)

    def test_missing_snapshot_rejected(self, ledger):
        with pytest.raises(ValidationError, match="No compliance snapshot"):
            ledger.bank_surplus("A", 2025, 1.0)

    @pytest.mark.parametrize("amount", [0.0, -5.0, float("nan"), float("inf")])
    def test_non_positive_amount_rejected(self, ledger, seed, amount):
        seed({("A", 2025): 10.0})
        with pytest.raises(InvalidInputError):
            ledger.bank_surplus("A", 2025, amount)

    def test_sequence_increases_per_ship(self, ledger, seed):
        seed({("A", 2025): 10.0, ("A", 2026): 10.0, ("B", 2025): 10.0})
        first = ledger.bank_surplus("A", 2025, 5.0)
        second = ledger.bank_surplus("A", 2026, 5.0)
        other = ledger.bank_surplus("B", 2025, 5.0)
        assert second.sequence == first.sequence + 1
        assert other.sequence == 1


# =============================================================================
# consume_for_deficit
# =============================================================================

class TestConsumeForDeficit:
    def test_fifo_consumes_oldest_only(self, ledger, port, seed):
        seed({("A", 2025): 80.0, ("A", 2026): 40.0})
        older = ledger.bank_surplus("A", 2025, 80.0)
        newer = ledger.bank_surplus("A", 2026, 40.0)

        result = ledger.consume_for_deficit("A", 2027, 50.0)

        assert result.covered == pytest.approx(50.0)
        assert result.shortfall == 0.0
        assert _entry(port, older.entry_id).remaining_amount == pytest.approx(30.0)
        assert _entry(port, newer.entry_id).remaining_amount == 40.0
        assert [d.entry_id for d in result.draws] == [older.entry_id]

    def test_spills_into_next_entry_and_marks_consumed(self, ledger, port, seed):
        seed({("A", 2025): 30.0, ("A", 2026): 40.0})
        older = ledger.bank_surplus("A", 2025, 30.0)
        newer = ledger.bank_surplus("A", 2026, 40.0)

        result = ledger.consume_for_deficit("A", 2027, 50.0)

        assert result.covered == pytest.approx(50.0)
        assert _entry(port, older.entry_id).status == EntryStatus.CONSUMED
        assert _entry(port, older.entry_id).remaining_amount == 0.0
        assert _entry(port, newer.entry_id).remaining_amount == pytest.approx(20.0)
        assert _entry(port, newer.entry_id).status == EntryStatus.OPEN

    def test_shortfall_reported_not_clamped(self, ledger, port, seed):
        seed({("A", 2025): 20.0})
        ledger.bank_surplus("A", 2025, 20.0)

        result = ledger.consume_for_deficit("A", 2026, 50.0)

        assert result.requested == 50.0
        assert result.covered == pytest.approx(20.0)
        assert result.shortfall == pytest.approx(30.0)

    def test_never_consumes_more_than_requested(self, ledger, port, seed):
        seed({("A", 2025): 500.0})
        ledger.bank_surplus("A", 2025, 500.0)
        result = ledger.consume_for_deficit("A", 2026, 12.5)
        assert result.covered == pytest.approx(12.5)
        assert ledger.banked_balance("A") == pytest.approx(487.5)

    def test_same_year_ties_broken_by_sequence(self, ledger, port, seed):
        seed({("A", 2025): 100.0})
        first = ledger.bank_surplus("A", 2025, 60.0)
        second = ledger.bank_surplus("A", 2025, 40.0)

        ledger.consume_for_deficit("A", 2026, 70.0)

        assert _entry(port, first.entry_id).status == EntryStatus.CONSUMED
        assert _entry(port, second.entry_id).remaining_amount == pytest.approx(30.0)

    def test_future_and_same_year_entries_ignored(self, ledger, seed):
        seed({("A", 2027): 50.0, ("A", 2026): 50.0})
        ledger.bank_surplus("A", 2027, 50.0)
        ledger.bank_surplus("A", 2026, 50.0)
        result = ledger.consume_for_deficit("A", 2026, 10.0)
        assert result.covered == 0.0

    def test_draws_are_recorded(self, ledger, port, seed):
        seed({("A", 2025): 10.0})
        ledger.bank_surplus("A", 2025, 10.0)
        ledger.consume_for_deficit("A", 2026, 4.0)
        draws = port.load_ledger_draws("A", 2026)
        assert len(draws) == 1
        assert draws[0].kind == DrawKind.CONSUMPTION
        assert draws[0].amount == pytest.approx(4.0)

    def test_non_positive_deficit_rejected(self, ledger):
        with pytest.raises(InvalidInputError):
            ledger.consume_for_deficit("A", 2026, 0.0)


class TestBankingWindow:
    @pytest.fixture
    def windowed(self, port):
        return BankingLedger(port, banking_window_years=2)

    def test_entry_past_window_expires_before_fifo(self, windowed, port, seed):
        seed({("A", 2025): 30.0, ("A", 2027): 30.0})
        stale = windowed.bank_surplus("A", 2025, 30.0)
        fresh = windowed.bank_surplus("A", 2027, 30.0)

        result = windowed.consume_for_deficit("A", 2028, 10.0)

        assert _entry(port, stale.entry_id).status == EntryStatus.EXPIRED
        assert _entry(port, stale.entry_id).remaining_amount == 30.0
        assert _entry(port, fresh.entry_id).remaining_amount == pytest.approx(20.0)
        assert result.covered == pytest.approx(10.0)

    def test_entry_inside_window_used(self, windowed, port, seed):
        seed({("A", 2025): 30.0})
        entry = windowed.bank_surplus("A", 2025, 30.0)
        windowed.consume_for_deficit("A", 2027, 10.0)
        assert _entry(port, entry.entry_id).status == EntryStatus.OPEN
        assert _entry(port, entry.entry_id).remaining_amount == pytest.approx(20.0)

    def test_expired_entry_never_reopens(self, windowed, port, seed):
        seed({("A", 2025): 30.0})
        entry = windowed.bank_surplus("A", 2025, 30.0)
        windowed.consume_for_deficit("A", 2030, 10.0)
        result = windowed.consume_for_deficit("A", 2026, 10.0)
        assert result.covered == 0.0
        assert _entry(port, entry.entry_id).status == EntryStatus.EXPIRED


# =============================================================================
# Borrowing
# =============================================================================

class TestBorrowing:
    def test_borrow_creates_entry_with_deadline(self, ledger, seed):
        seed({("A", 2025): -40.0})
        entry = ledger.borrow("A", 2025, 20.0, expected_next_year_surplus=100.0)
        assert entry.kind == EntryKind.BORROWED_DEFICIT
        assert entry.repayment_deadline == 2026
        assert ledger.outstanding_borrowing("A") == 20.0

    def test_borrow_over_cap_rejected(self, ledger, seed):
        seed({("A", 2025): -40.0})
        with pytest.raises(ValidationError, match="exceeds cap"):
            ledger.borrow("A", 2025, 30.0, expected_next_year_surplus=50.0)

    def test_cap_counts_earlier_borrowing_same_year(self, ledger, seed):
        seed({("A", 2025): -40.0})
        ledger.borrow("A", 2025, 20.0, expected_next_year_surplus=50.0)
        with pytest.raises(ValidationError):
            ledger.borrow("A", 2025, 10.0, expected_next_year_surplus=50.0)

    def test_borrow_beyond_deficit_rejected(self, ledger, seed):
        seed({("A", 2025): -10.0})
        with pytest.raises(ValidationError, match="deficit"):
            ledger.borrow("A", 2025, 15.0, expected_next_year_surplus=1000.0)

    def test_borrow_requires_deficit(self, ledger, seed):
        seed({("A", 2025): 5.0})
        with pytest.raises(ValidationError, match="no deficit"):
            ledger.borrow("A", 2025, 1.0, expected_next_year_surplus=100.0)

    def test_borrowed_entries_not_used_as_surplus(self, ledger, seed):
        seed({("A", 2025): -40.0})
        ledger.borrow("A", 2025, 20.0, expected_next_year_surplus=100.0)
        result = ledger.consume_for_deficit("A", 2026, 10.0)
        assert result.covered == 0.0

    def test_repayment_from_later_surplus(self, ledger, port, seed):
        seed({("A", 2025): -40.0, ("A", 2026): 50.0})
        entry = ledger.borrow("A", 2025, 20.0, expected_next_year_surplus=100.0)

        result = ledger.repay_borrowing("A", 2026, 20.0)

        assert result.covered == pytest.approx(20.0)
        assert _entry(port, entry.entry_id).status == EntryStatus.CONSUMED
        assert ledger.free_surplus("A", 2026) == pytest.approx(30.0)
        assert port.load_ledger_draws("A", 2026)[0].kind == DrawKind.REPAYMENT

    def test_repayment_beyond_outstanding_rejected(self, ledger, seed):
        seed({("A", 2025): -40.0, ("A", 2026): 50.0})
        ledger.borrow("A", 2025, 10.0, expected_next_year_surplus=100.0)
        with pytest.raises(ValidationError, match="outstanding"):
            ledger.repay_borrowing("A", 2026, 15.0)

    def test_repayment_needs_free_surplus(self, ledger, seed):
        seed({("A", 2025): -40.0, ("A", 2026): 5.0})
        ledger.borrow("A", 2025, 10.0, expected_next_year_surplus=100.0)
        with pytest.raises(ValidationError, match="free surplus"):
            ledger.repay_borrowing("A", 2026, 10.0)

    def test_overdue_borrowing_reported(self, ledger, seed):
        seed({("A", 2025): -40.0})
        entry = ledger.borrow("A", 2025, 10.0, expected_next_year_surplus=100.0)

        assert ledger.overdue_borrowings("A", 2026) == []
        overdue = ledger.overdue_borrowings("A", 2027)
        assert [e.entry_id for e in overdue] == [entry.entry_id]
        assert overdue[0].status == EntryStatus.OPEN

    def test_borrow_after_bank_cover_rejected(self, ledger, seed):
        seed({("A", 2024): 80.0, ("A", 2025): -50.0})
        ledger.bank_surplus("A", 2024, 80.0)
        ledger.consume_for_deficit("A", 2025, 50.0)

        with pytest.raises(ValidationError, match="uncovered"):
            ledger.borrow("A", 2025, 50.0, expected_next_year_surplus=200.0)

    def test_borrow_limited_to_gap_left_after_consumption(self, ledger, seed):
        seed({("A", 2024): 20.0, ("A", 2025): -50.0})
        ledger.bank_surplus("A", 2024, 20.0)
        ledger.consume_for_deficit("A", 2025, 50.0)

        ledger.borrow("A", 2025, 30.0, expected_next_year_surplus=200.0)
        with pytest.raises(ValidationError, match="uncovered"):
            ledger.borrow("A", 2025, 0.5, expected_next_year_surplus=200.0)

    def test_non_finite_expected_surplus_rejected(self, ledger, seed):
        seed({("A", 2025): -40.0})
        with pytest.raises(InvalidInputError):
            ledger.borrow("A", 2025, 1.0, expected_next_year_surplus=float("nan"))


# =============================================================================
# Pooled ship-years
# =============================================================================

class TestPooledShipYear:
    @pytest.fixture
    def pooled(self, port, seed):
        """A (-20) and B (+50) pooled for 2025: A ends at 0, B at 30."""
        seed({("A", 2025): -20.0, ("B", 2025): 50.0})
        port.save_pool(
            Pool(pool_id="pool-1", year=2025, member_ship_ids=("A", "B"),
                 aggregate_adjusted_cb=30.0),
            [
                PoolAllocation(pool_id="pool-1", ship_id="A", pre_cb=-20.0, post_cb=0.0),
                PoolAllocation(pool_id="pool-1", ship_id="B", pre_cb=50.0, post_cb=30.0),
            ],
        )

    def test_donor_free_surplus_net_of_transfer(self, ledger, pooled):
        assert ledger.free_surplus("B", 2025) == pytest.approx(30.0)
        assert ledger.free_surplus("A", 2025) == 0.0

    def test_donor_cannot_bank_what_it_gave_away(self, ledger, pooled):
        with pytest.raises(ValidationError, match="unbanked surplus"):
            ledger.bank_surplus("B", 2025, 50.0)
        entry = ledger.bank_surplus("B", 2025, 30.0)
        assert entry.original_amount == 30.0

    def test_pooled_deficit_year_cannot_borrow(self, ledger, pooled):
        with pytest.raises(ValidationError, match="pooled"):
            ledger.borrow("A", 2025, 5.0, expected_next_year_surplus=100.0)
