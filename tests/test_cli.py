"""
Tests for manage_budget.py — the command-line workflow against a temp database.
"""

import json

import pytest

import manage_budget
from planning import catalog
from utils.database import get_connection


@pytest.fixture()
def db(tmp_path, catalog_tree, monkeypatch):
    monkeypatch.setenv("GLOBAL_SUBITEM_DEPARTMENTS", "")
    db_path = tmp_path / "cli.sqlite"
    catalog_file = tmp_path / "catalog.json"
    catalog_file.write_text(json.dumps(catalog_tree), encoding="utf-8")
    assert manage_budget.main(["--db", str(db_path), "init-db"]) == 0
    assert manage_budget.main(["--db", str(db_path), "load-catalog", str(catalog_file)]) == 0
    return db_path


def _excavacion_ids(db_path):
    conn = get_connection(db_path)
    try:
        mg = catalog.list_major_groups(conn, "CONST")[0]
        li = catalog.list_line_items(conn, mg.id)[0]
        subs = catalog.list_sub_items(conn, li.id)
        return mg.id, li.id, [s.id for s in subs]
    finally:
        conn.close()


class TestCli:
    def test_full_workflow(self, db, tmp_path, capsys):
        mg, li, subs = _excavacion_ids(db)
        selection = tmp_path / "selection.json"
        selection.write_text(json.dumps([{"major_group_id": mg, "line_items": [
            {"line_item_id": li, "sub_item_ids": subs}]}]), encoding="utf-8")
        purchases = tmp_path / "purchases.csv"
        purchases.write_text(
            "sub_item_id,quantity,unit_price,purchase_date,reference,provider\n"
            f"{subs[0]},10,\"$1,200.00\",2026-02-01,OC-1,Aceros del Norte\n"
            f",,,,,\n",
            encoding="utf-8",
        )

        assert manage_budget.main(["--db", str(db), "create-budget", "Casa Norte"]) == 0
        assert manage_budget.main(["--db", str(db), "import", "1", str(selection),
                                   "--department", "CONST"]) == 0
        assert manage_budget.main(["--db", str(db), "load-purchases", "1",
                                   str(purchases)]) == 0
        assert manage_budget.main(["--db", str(db), "rollup", "1"]) == 0
        out = capsys.readouterr().out
        assert "Loaded 1 purchase records" in out
        assert "Import completed" in out
        assert "12,000.00 MXN" in out

    def test_rollup_by_level(self, db, capsys):
        manage_budget.main(["--db", str(db), "create-budget", "Vacío"])
        assert manage_budget.main(["--db", str(db), "rollup", "1",
                                   "--level", "major_group"]) == 0
        assert "By major group" in capsys.readouterr().out

    def test_domain_error_exit_code(self, db, capsys):
        assert manage_budget.main(["--db", str(db), "rollup", "42"]) == 1
        assert "budget 42 not found" in capsys.readouterr().err

    def test_read_purchases_json(self, tmp_path):
        path = tmp_path / "p.json"
        path.write_text(json.dumps([{"sub_item_id": 1, "quantity": 2, "unit_price": 3}]),
                        encoding="utf-8")
        assert manage_budget.read_purchases(path)[0]["quantity"] == 2

    def test_settings_file_overrides_environment(self, db, tmp_path, capsys):
        settings = tmp_path / "settings.json"
        assert manage_budget.main(["--db", str(db), "write-config", str(settings)]) == 0
        data = json.loads(settings.read_text(encoding="utf-8"))
        assert "default_currency" in data
        data["default_currency"] = "USD"
        settings.write_text(json.dumps(data), encoding="utf-8")

        assert manage_budget.main(["--db", str(db), "--config", str(settings),
                                   "create-budget", "Bodega"]) == 0
        assert "(USD, draft)" in capsys.readouterr().out
