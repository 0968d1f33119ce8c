"""Tests for audit log correlation and ship lock ordering."""

import json
import logging

from src.compliance.audit import audit_logger, get_operation_id, operation_scope
from src.compliance.locks import ShipLockRegistry


class TestOperationScope:
    def test_nested_scope_keeps_outer_id(self):
        with operation_scope("form_pool") as outer:
            with operation_scope("resolve_adjusted_balance") as inner:
                assert inner == outer
        assert get_operation_id() is None

    def test_audit_line_is_json_with_operation(self, caplog):
        with caplog.at_level(logging.INFO, logger="fueleu.audit"):
            with operation_scope("bank_surplus", operation_id="op-1"):
                audit_logger.info("Surplus banked", ship_id="A", amount=12.5, note=None)

        entry = json.loads(caplog.records[-1].getMessage())
        assert entry["operation_id"] == "op-1"
        assert entry["operation"] == "bank_surplus"
        assert entry["ship_id"] == "A"
        assert "note" not in entry


class TestShipLockRegistry:
    def test_ships_acquired_in_sorted_order(self):
        locks = ShipLockRegistry()
        with locks.ships(["C", "A", "B", "A"]) as ordered:
            assert ordered == ["A", "B", "C"]

    def test_same_ship_lock_is_reentrant(self):
        locks = ShipLockRegistry()
        with locks.ships(["A", "B"]):
            with locks.ship("A"):
                pass
