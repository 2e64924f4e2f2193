"""
Tests for planning/snapshots.py — versioned budget snapshots and comparison.
"""

import pytest

from planning import budgets, snapshots
from planning.errors import NotFoundError


def _concepto(conn, partida_id, quantity, price):
    return budgets.create_concepto(conn, partida_id, "X", "x", real_quantity=quantity,
                                   real_unit_price=price, waste_pct=0, fee_pct=0)


class TestSnapshots:
    def test_versions_increase(self, catalog_conn, budget):
        first = snapshots.create_snapshot(catalog_conn, budget.id, notes="borrador")
        second = snapshots.create_snapshot(catalog_conn, budget.id)
        assert (first["version_number"], second["version_number"]) == (1, 2)
        assert first["notes"] == "borrador"

    def test_payload_is_frozen(self, catalog_conn, budget):
        p = budgets.create_partida(catalog_conn, budget.id, "A")
        c = _concepto(catalog_conn, p.id, 1, 100)
        snap = snapshots.create_snapshot(catalog_conn, budget.id)
        budgets.update_concepto(catalog_conn, c.id, real_unit_price=999)
        stored = snapshots.get_snapshot(catalog_conn, snap["id"])
        assert stored["totals"]["subtotal"] == pytest.approx(100)

    def test_list_newest_first(self, catalog_conn, budget):
        snapshots.create_snapshot(catalog_conn, budget.id)
        snapshots.create_snapshot(catalog_conn, budget.id)
        versions = [s["version_number"] for s in snapshots.list_snapshots(catalog_conn,
                                                                          budget.id)]
        assert versions == [2, 1]

    def test_unknown_snapshot(self, catalog_conn):
        with pytest.raises(NotFoundError):
            snapshots.get_snapshot(catalog_conn, 77)

    def test_has_snapshot(self, catalog_conn, budget):
        assert not snapshots.has_snapshot(catalog_conn, budget.id)
        snapshots.create_snapshot(catalog_conn, budget.id)
        assert snapshots.has_snapshot(catalog_conn, budget.id)


class TestCompare:
    def test_added_removed_and_modified(self, catalog_conn, budget):
        a = budgets.create_partida(catalog_conn, budget.id, "A")
        b = budgets.create_partida(catalog_conn, budget.id, "B")
        ca = _concepto(catalog_conn, a.id, 1, 100)
        _concepto(catalog_conn, b.id, 1, 50)
        before = snapshots.create_snapshot(catalog_conn, budget.id)

        budgets.update_concepto(catalog_conn, ca.id, real_unit_price=300)
        budgets.move_partida_to_trash(catalog_conn, b.id)
        c = budgets.create_partida(catalog_conn, budget.id, "C")
        _concepto(catalog_conn, c.id, 2, 10)
        after = snapshots.create_snapshot(catalog_conn, budget.id)

        diff = snapshots.compare_snapshots(before, after)
        kinds = {ch["partida"]: ch["change"] for ch in diff["changes"]}
        assert kinds == {"A": "modified", "B": "removed", "C": "added"}
        assert diff["changes"][0]["partida"] == "A"
        assert (diff["from_version"], diff["to_version"]) == (1, 2)
        assert diff["grand_total_before"] == pytest.approx(150 * 1.16)
        assert diff["delta"] == pytest.approx((320 - 150) * 1.16)

    def test_identical_snapshots(self, catalog_conn, budget):
        p = budgets.create_partida(catalog_conn, budget.id, "A")
        _concepto(catalog_conn, p.id, 1, 100)
        one = snapshots.create_snapshot(catalog_conn, budget.id)
        two = snapshots.create_snapshot(catalog_conn, budget.id)
        diff = snapshots.compare_snapshots(one, two)
        assert diff["delta"] == 0
        assert diff["delta_pct"] == 0
        assert [ch["change"] for ch in diff["changes"]] == ["unchanged"]
