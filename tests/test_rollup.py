"""
Tests for planning/rollup.py — EAC rows, aggregation and the purchase feed.

The pure ``build_rollup`` tests use plain BaselineLine/PurchaseRecord values;
the database tests import a catalog selection first, the way a user would.
"""

import pytest

from planning import budgets, rollup
from planning.errors import NotFoundError, PreconditionFailed, ValidationError
from planning.importer import LineItemSelection, MajorGroupSelection, import_catalog_selection
from planning.models import BaselineLine, PurchaseRecord, RollupRow


def _line(sub_item_id=1, quantity=10.0, price=100.0, method="weighted_avg", manual=None):
    return BaselineLine(sub_item_id=sub_item_id, quantity=quantity, total=quantity * price,
                        unit_price=price, eac_method=method, manual_price=manual)


def _buy(quantity, price, when="2026-03-01", sub_item_id=1, purchase_id=None):
    return PurchaseRecord(sub_item_id=sub_item_id, quantity=quantity, unit_price=price,
                          purchase_date=when, id=purchase_id)


class TestEacRow:
    def test_weighted_average_price(self):
        [row] = rollup.build_rollup([_line()], [_buy(2, 5), _buy(2, 8)])
        assert row.weighted_avg_price == pytest.approx(6.5)
        assert row.purchased_total == pytest.approx(26)
        assert row.remaining_quantity == pytest.approx(6)
        assert row.eac_total == pytest.approx(26 + 6 * 6.5)

    def test_overbought_row_has_no_remaining(self):
        [row] = rollup.build_rollup([_line()], [_buy(12, 90)])
        assert row.remaining_quantity == 0
        assert row.eac_total == pytest.approx(1080)
        assert row.completion_pct == 100.0

    def test_variance_sign(self):
        [over] = rollup.build_rollup([_line()], [_buy(10, 110)])
        [under] = rollup.build_rollup([_line()], [_buy(10, 90)])
        assert over.variance_total == pytest.approx(100)
        assert over.variance_pct == pytest.approx(0.10)
        assert under.variance_total == pytest.approx(-100)

    def test_zero_baseline_has_zero_variance_pct(self):
        [row] = rollup.build_rollup([], [_buy(3, 10)])
        assert row.base_total == 0
        assert row.variance_total == pytest.approx(30)
        assert row.variance_pct == 0
        assert row.supply_status == "not_required"

    def test_without_purchases_uses_baseline_price(self):
        [row] = rollup.build_rollup([_line()], [])
        assert row.weighted_avg_price == pytest.approx(100)
        assert row.last_price is None
        assert row.eac_total == pytest.approx(1000)
        assert row.variance_total == 0
        assert row.supply_status == "required"

    def test_manual_price(self):
        [row] = rollup.build_rollup([_line(method="manual", manual=120)], [_buy(5, 100)])
        assert row.eac_method == "manual"
        assert row.eac_total == pytest.approx(500 + 5 * 120)
        assert row.eac_warning is None

    def test_manual_without_price_falls_back(self):
        [row] = rollup.build_rollup([_line(method="manual")], [_buy(2, 5), _buy(2, 8)])
        assert row.eac_method == "weighted_avg"
        assert row.eac_price == pytest.approx(6.5)
        assert row.eac_warning == rollup.MANUAL_FALLBACK_WARNING

    def test_last_price_uses_latest_date(self):
        purchases = [_buy(1, 50, "2026-03-05"), _buy(1, 70, "2026-03-01")]
        [row] = rollup.build_rollup([_line(method="last_price")], purchases)
        assert row.last_price == 50
        assert row.eac_total == pytest.approx(120 + 8 * 50)

    def test_last_price_tie_goes_to_higher_id(self):
        purchases = [_buy(1, 70, purchase_id=9), _buy(1, 50, purchase_id=4)]
        [row] = rollup.build_rollup([_line(method="last_price")], purchases)
        assert row.last_price == 70

    def test_last_price_tie_without_ids_goes_to_feed_order(self):
        [row] = rollup.build_rollup([_line()], [_buy(1, 70), _buy(1, 50)])
        assert row.last_price == 50

    def test_first_baseline_line_decides_method(self):
        lines = [_line(method="last_price"), _line(method="manual", manual=1)]
        [row] = rollup.build_rollup(lines, [_buy(1, 90)])
        assert row.eac_method == "last_price"
        assert row.base_quantity == 20

    def test_stored_supply_status_wins(self):
        [row] = rollup.build_rollup([_line()], [], {1: "in_transit"})
        assert row.supply_status == "in_transit"

    def test_rows_follow_baseline_then_feed_order(self):
        rows = rollup.build_rollup([_line(3), _line(1)], [_buy(1, 1, sub_item_id=7)])
        assert [r.sub_item_id for r in rows] == [3, 1, 7]


class TestAggregation:
    def _rows(self):
        return [
            RollupRow(sub_item_id=1, base_total=1000, eac_total=1000, variance_total=0,
                      completion_pct=100.0, line_item_id=10, major_group_id=100,
                      major_group_code="01", department="CONST", remaining_quantity=0),
            RollupRow(sub_item_id=2, base_total=1000, eac_total=1020, variance_total=20,
                      variance_pct=0.02, line_item_id=10, major_group_id=100,
                      major_group_code="01", department="CONST",
                      remaining_quantity=4, base_price=5),
            RollupRow(sub_item_id=3, base_total=500, eac_total=450, variance_total=-50,
                      variance_pct=-0.1, line_item_id=20, major_group_id=200,
                      major_group_code="02", department="CONST",
                      remaining_quantity=10, base_price=50),
        ]

    def test_line_item_variance_recomputed_from_sums(self):
        [li10, li20] = rollup.aggregate(self._rows(), "line_item")
        assert li10["id"] == 10
        assert li10["variance_pct"] == pytest.approx(0.01)
        assert li20["variance_pct"] == pytest.approx(-0.1)

    def test_department_totals(self):
        [dept] = rollup.aggregate(self._rows(), "department")
        assert dept["base_total"] == pytest.approx(2500)
        assert dept["eac_total"] == pytest.approx(2470)
        assert dept["completion_pct"] == pytest.approx(100 / 3)

    def test_unknown_level(self):
        with pytest.raises(ValidationError):
            rollup.aggregate(self._rows(), "partida")

    def test_summary_of_nothing(self):
        kpis = rollup.summarize([])
        assert kpis["completion_pct"] == 0
        assert kpis["variance_pct"] == 0

    def test_top_variances_skip_zero(self):
        top = rollup.top_variances(self._rows(), limit=5)
        assert [r.sub_item_id for r in top] == [3, 2]

    def test_material_alerts_largest_pending_first(self):
        alerts = rollup.material_alerts(self._rows())
        assert [a["major_group_code"] for a in alerts] == ["02", "01"]
        assert alerts[0]["pending_amount"] == pytest.approx(500)
        assert alerts[1]["sub_item_ids"] == [2]

    @pytest.mark.parametrize("pct,band", [
        (0.0, "acceptable"), (0.05, "acceptable"), (-0.07, "caution"),
        (0.10, "caution"), (0.1000001, "critical"), (-0.5, "critical"),
    ])
    def test_variance_band(self, pct, band):
        assert rollup.variance_band(pct) == band


@pytest.fixture()
def imported(catalog_conn, budget, node, config):
    """Budget with two conceptos imported from CONST 01 / 01 (Manual, Maquinaria)."""
    sel = [MajorGroupSelection(node("CONST", "01"), [
        LineItemSelection(node("CONST", "01", "01"),
                          [node("CONST", "01", "01", "01"), node("CONST", "01", "01", "02")]),
    ])]
    import_catalog_selection(catalog_conn, budget.id, sel, "CONST", config=config)
    [partida] = budgets.list_partidas(catalog_conn, budget.id)
    return budgets.list_conceptos(catalog_conn, partida.id)


class TestComputeRollup:
    def test_import_quantities_and_purchases(self, catalog_conn, budget, imported, config):
        manual, _ = imported
        budgets.update_concepto(catalog_conn, manual.id, real_quantity=50, real_unit_price=180)
        rollup.record_purchase(catalog_conn, budget.id, manual.sub_item_id, 50, 200,
                               "2026-04-01")
        result = rollup.compute_rollup(catalog_conn, budget.id, config=config)
        row = next(r for r in result.rows if r.sub_item_id == manual.sub_item_id)
        assert row.base_quantity == pytest.approx(50)
        assert row.eac_total == pytest.approx(10000)
        assert row.variance_total == pytest.approx(1000)
        assert row.supply_status == "delivered"
        assert (row.line_item_code, row.major_group_code, row.department) == \
            ("01", "01", "CONST")
        assert result.band(row.variance_pct) == "critical"

    def test_rows_sorted_by_catalog_code(self, catalog_conn, budget, imported, config):
        result = rollup.compute_rollup(catalog_conn, budget.id, config=config)
        assert [r.sub_item_code for r in result.rows] == ["01", "02"]

    def test_trashed_concepto_leaves_baseline(self, catalog_conn, budget, imported, config):
        budgets.move_concepto_to_trash(catalog_conn, imported[1].id)
        result = rollup.compute_rollup(catalog_conn, budget.id, config=config)
        assert [r.sub_item_code for r in result.rows] == ["01"]

    def test_eac_method_change_is_picked_up(self, catalog_conn, budget, imported, config):
        manual, _ = imported
        budgets.update_concepto(catalog_conn, manual.id, real_quantity=10, real_unit_price=100)
        rollup.set_eac_method(catalog_conn, manual.id, "manual", 150)
        result = rollup.compute_rollup(catalog_conn, budget.id, config=config)
        row = next(r for r in result.rows if r.sub_item_id == manual.sub_item_id)
        assert row.eac_total == pytest.approx(1500)

    def test_eac_method_on_shared_sub_item(self, catalog_conn, budget, imported, node,
                                            config):
        sel = [MajorGroupSelection(node("CONST", "01"), [
            LineItemSelection(node("CONST", "01", "01"), [node("CONST", "01", "01", "01")]),
        ])]
        import_catalog_selection(catalog_conn, budget.id, sel, "CONST", config=config)
        second = budgets.list_partidas(catalog_conn, budget.id)[1]
        [again] = budgets.list_conceptos(catalog_conn, second.id)
        assert again.sub_item_id == imported[0].sub_item_id
        budgets.update_concepto(catalog_conn, again.id, real_quantity=10, real_unit_price=100)
        rollup.set_eac_method(catalog_conn, again.id, "manual", 150)

        row = next(r for r in rollup.compute_rollup(catalog_conn, budget.id,
                                                    config=config).rows
                   if r.sub_item_id == again.sub_item_id)
        assert row.eac_method == "manual"
        assert row.eac_total == pytest.approx(1500)
        assert budgets.get_concepto(catalog_conn, imported[0].id).eac_method == "manual"

    def test_new_concepto_inherits_sub_item_method(self, catalog_conn, budget, imported):
        rollup.set_eac_method(catalog_conn, imported[0].id, "last_price")
        partida = budgets.create_partida(catalog_conn, budget.id, "Extra")
        added = budgets.create_concepto(catalog_conn, partida.id, "01", "Manual",
                                        sub_item_id=imported[0].sub_item_id)
        assert added.eac_method == "last_price"

    def test_supply_status_set_and_cleared(self, catalog_conn, budget, imported, config):
        sub_item_id = imported[0].sub_item_id
        rollup.set_supply_status(catalog_conn, budget.id, sub_item_id, "in_transit")
        rows = rollup.compute_rollup(catalog_conn, budget.id, config=config).rows
        assert rows[0].supply_status == "in_transit"
        rollup.set_supply_status(catalog_conn, budget.id, sub_item_id, None)
        rows = rollup.compute_rollup(catalog_conn, budget.id, config=config).rows
        assert rows[0].supply_status == "not_required"

    def test_to_dict_carries_bands(self, catalog_conn, budget, imported, config):
        data = rollup.compute_rollup(catalog_conn, budget.id, config=config).to_dict()
        assert data["currency"] == "MXN"
        assert data["kpis"]["variance_band"] == "acceptable"
        assert all("variance_band" in r for r in data["rows"])

    def test_unknown_budget(self, catalog_conn, config):
        with pytest.raises(NotFoundError):
            rollup.compute_rollup(catalog_conn, 999, config=config)


class TestStateUpdates:
    def test_unknown_eac_method(self, catalog_conn, imported):
        with pytest.raises(ValidationError):
            rollup.set_eac_method(catalog_conn, imported[0].id, "average")

    def test_negative_manual_price(self, catalog_conn, imported):
        with pytest.raises(ValidationError):
            rollup.set_eac_method(catalog_conn, imported[0].id, "manual", -1)

    def test_manual_without_price_accepted(self, catalog_conn, imported):
        concepto = rollup.set_eac_method(catalog_conn, imported[0].id, "manual")
        assert concepto.eac_method == "manual"
        assert concepto.manual_price is None

    def test_closed_budget_rejects_eac_change(self, catalog_conn, budget, imported):
        budgets.publish_budget(catalog_conn, budget.id)
        budgets.close_budget(catalog_conn, budget.id)
        with pytest.raises(PreconditionFailed):
            rollup.set_eac_method(catalog_conn, imported[0].id, "last_price")

    def test_unknown_supply_status(self, catalog_conn, budget, imported):
        with pytest.raises(ValidationError):
            rollup.set_supply_status(catalog_conn, budget.id, imported[0].sub_item_id, "lost")


class TestPurchases:
    def test_record_defaults_to_today(self, catalog_conn, budget, node):
        p = rollup.record_purchase(catalog_conn, budget.id, node("CONST", "01", "01", "01"),
                                   5, 10)
        assert p.budget_id == budget.id
        assert len(p.purchase_date) == 10

    @pytest.mark.parametrize("quantity,price", [(0, 10), (-1, 10), (1, -5), ("x", 1)])
    def test_record_rejects_bad_values(self, catalog_conn, budget, node, quantity, price):
        with pytest.raises(ValidationError):
            rollup.record_purchase(catalog_conn, budget.id,
                                   node("CONST", "01", "01", "01"), quantity, price)

    def test_record_rejects_non_sub_item(self, catalog_conn, budget, node):
        with pytest.raises(NotFoundError):
            rollup.record_purchase(catalog_conn, budget.id, node("CONST", "01"), 1, 1)

    def test_bulk_import_is_all_or_nothing(self, catalog_conn, budget, node):
        sub = node("CONST", "01", "01", "01")
        records = [
            {"sub_item_id": sub, "quantity": 1, "unit_price": 10, "purchase_date": "2026-01-02"},
            {"sub_item_id": sub, "quantity": 1, "unit_price": 10, "purchase_date": "02/01/2026"},
        ]
        with pytest.raises(ValidationError) as exc_info:
            rollup.import_purchases(catalog_conn, budget.id, records)
        assert exc_info.value.field == "records[1].purchase_date"
        assert rollup.list_purchases(catalog_conn, budget.id) == []

    def test_bulk_import_and_filter(self, catalog_conn, budget, node):
        a = node("CONST", "01", "01", "01")
        b = node("CONST", "01", "01", "02")
        inserted = rollup.import_purchases(catalog_conn, budget.id, [
            {"sub_item_id": a, "quantity": 2, "unit_price": 5, "purchase_date": "2026-01-02"},
            {"sub_item_id": b, "quantity": 1, "unit_price": 7, "purchase_date": "2026-01-01"},
        ])
        assert inserted == 2
        assert [p.sub_item_id for p in rollup.list_purchases(catalog_conn, budget.id)] == [b, a]
        assert len(rollup.list_purchases(catalog_conn, budget.id, sub_item_id=a)) == 1

    def test_delete_purchase(self, catalog_conn, budget, node):
        p = rollup.record_purchase(catalog_conn, budget.id, node("CONST", "01", "01", "01"),
                                   1, 1)
        rollup.delete_purchase(catalog_conn, budget.id, p.id)
        with pytest.raises(NotFoundError):
            rollup.delete_purchase(catalog_conn, budget.id, p.id)
