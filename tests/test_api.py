"""
API tests — end-to-end requests through the FastAPI app.

Each test gets a fresh SQLite file with the sample catalog loaded, and a
TestClient built with ``create_app(db_path=...)``.
"""

import io
import json

import pytest

pytest.importorskip("fastapi", reason="fastapi not installed")
pytest.importorskip("httpx", reason="httpx not installed")

from fastapi.testclient import TestClient  # noqa: E402

from api.app import create_app  # noqa: E402
from planning import catalog  # noqa: E402
from utils.database import get_connection  # noqa: E402

API = "/api/v1"


@pytest.fixture()
def client(tmp_path, config, catalog_tree):
    db_path = tmp_path / "budget.sqlite"
    app = create_app(db_path=db_path, config=config)
    conn = get_connection(db_path)
    try:
        catalog.load_catalog(conn, catalog_tree)
    finally:
        conn.close()
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture()
def ids(client):
    """Catalog ids of CONST / 01 Cimentación / 01 Excavación and its sub-items."""
    groups = client.get(f"{API}/catalog/major-groups", params={"department": "CONST"}).json()
    mg = groups[0]["id"]
    li = client.get(f"{API}/catalog/line-items", params={"major_group_id": mg}).json()[0]["id"]
    subs = client.get(f"{API}/catalog/sub-items", params={"line_item_id": li}).json()
    return {"major_group": mg, "line_item": li, "manual": subs[0]["id"],
            "maquinaria": subs[1]["id"]}


@pytest.fixture()
def budget_id(client):
    resp = client.post(f"{API}/budgets", json={"name": "Casa Norte"})
    assert resp.status_code == 201
    return resp.json()["id"]


def _import(client, budget_id, ids):
    return client.post(f"{API}/budgets/{budget_id}/import-catalog", json={
        "department": "CONST",
        "selection": [{"major_group_id": ids["major_group"], "line_items": [
            {"line_item_id": ids["line_item"],
             "sub_item_ids": [ids["manual"], ids["maquinaria"]]}]}],
    })


@pytest.fixture()
def imported(client, budget_id, ids):
    """Budget with the Manual concepto priced at 50 x 180 and one 50 x 200 purchase."""
    assert _import(client, budget_id, ids).status_code == 201
    partida = client.get(f"{API}/budgets/{budget_id}/partidas").json()[0]
    conceptos = client.get(f"{API}/partidas/{partida['id']}/conceptos").json()
    manual = conceptos[0]
    resp = client.patch(f"{API}/conceptos/{manual['id']}",
                        json={"real_quantity": 50, "real_unit_price": 180})
    assert resp.status_code == 200
    resp = client.post(f"{API}/budgets/{budget_id}/purchases", json={
        "sub_item_id": ids["manual"], "quantity": 50, "unit_price": 200,
        "purchase_date": "2026-04-01", "reference": "OC-1042"})
    assert resp.status_code == 201
    return {"budget_id": budget_id, "concepto_id": manual["id"]}


class TestMeta:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["counts"]["catalog_nodes"] == 18

    def test_health_reports_catalog_cache(self, client):
        client.get(f"{API}/catalog/departments")
        client.get(f"{API}/catalog/departments")
        stats = client.get("/health").json()["catalog_cache"]
        assert (stats["hits"], stats["misses"]) == (1, 1)

    def test_routes_registered(self, client):
        paths = {getattr(r, "path", "") for r in client.app.routes}
        assert f"{API}/budgets/{{budget_id}}/rollup" in paths
        assert f"{API}/catalog/departments" in paths

    def test_request_id_header(self, client):
        assert client.get("/health").headers.get("X-Request-ID")


class TestCatalogEndpoints:
    def test_departments(self, client):
        codes = [d["code"] for d in client.get(f"{API}/catalog/departments").json()]
        assert codes == ["CONST", "ELEC"]

    def test_unknown_department_is_empty(self, client):
        resp = client.get(f"{API}/catalog/major-groups", params={"department": "NOPE"})
        assert resp.status_code == 200
        assert resp.json() == []

    def test_search_puts_globals_first(self, client, ids):
        resp = client.get(f"{API}/catalog/sub-items/search",
                          params={"department": "CONST", "line_item_id": ids["line_item"]})
        assert [s["code"] for s in resp.json()] == ["G01", "01", "02"]

    def test_node_path(self, client, ids):
        path = client.get(f"{API}/catalog/nodes/{ids['manual']}/path").json()
        assert [n["level"] for n in path] == ["department", "major_group", "line_item",
                                              "sub_item"]

    def test_unknown_node(self, client):
        assert client.get(f"{API}/catalog/nodes/9999").status_code == 404


class TestBudgetEndpoints:
    def test_create_uses_config_defaults(self, client):
        body = client.post(f"{API}/budgets", json={"name": "Bodega"}).json()
        assert body["status"] == "draft"
        assert body["currency"] == "MXN"
        assert body["default_fee_pct"] == pytest.approx(0.17)

    def test_not_found_body(self, client):
        resp = client.get(f"{API}/budgets/999")
        assert resp.status_code == 404
        body = resp.json()
        assert body["error"] == "NotFoundError"
        assert body["status_code"] == 404
        assert "999" in body["detail"]

    def test_bad_currency_is_400(self, client):
        resp = client.post(f"{API}/budgets", json={"name": "X", "currency": "pesos"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "ValidationError"

    def test_out_of_range_pct_is_422(self, client):
        resp = client.post(f"{API}/budgets", json={"name": "X", "default_fee_pct": 17})
        assert resp.status_code == 422

    def test_structure_locked_after_publish(self, client, budget_id):
        resp = client.post(f"{API}/budgets/{budget_id}/status", json={"status": "published"})
        assert resp.json()["status"] == "published"
        resp = client.post(f"{API}/budgets/{budget_id}/partidas", json={"name": "Nueva"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "PreconditionFailed"

    def test_partial_update(self, client, budget_id):
        resp = client.patch(f"{API}/budgets/{budget_id}", json={"notes": "fase 1"})
        body = resp.json()
        assert body["notes"] == "fase 1"
        assert body["name"] == "Casa Norte"

    def test_trash_restore_and_delete(self, client, budget_id):
        client.post(f"{API}/budgets/{budget_id}/trash")
        assert client.get(f"{API}/budgets/{budget_id}").status_code == 404
        trash = client.get(f"{API}/budgets", params={"trashed": True}).json()
        assert [b["id"] for b in trash] == [budget_id]
        client.post(f"{API}/budgets/{budget_id}/restore")
        assert client.delete(f"{API}/budgets/{budget_id}").status_code == 204
        assert client.get(f"{API}/budgets/{budget_id}").status_code == 404

    def test_concepto_inherits_partida_override(self, client, budget_id):
        partida = client.post(f"{API}/budgets/{budget_id}/partidas",
                              json={"name": "P", "fee_pct_override": 0.1}).json()
        concepto = client.post(f"{API}/partidas/{partida['id']}/conceptos",
                               json={"code": "A", "description": "a",
                                     "real_quantity": 10, "real_unit_price": 10}).json()
        assert concepto["fee_pct"] == pytest.approx(0.1)
        assert concepto["total_real"] == pytest.approx(10 * 1.05 * 10 * 1.1)

    def test_snapshot_compare(self, client, budget_id):
        client.post(f"{API}/budgets/{budget_id}/status", json={"status": "published"})
        client.post(f"{API}/budgets/{budget_id}/snapshots", json={"notes": "cierre"})
        resp = client.get(f"{API}/budgets/{budget_id}/snapshots/compare",
                          params={"from_version": 1, "to_version": 2})
        assert resp.status_code == 200
        assert resp.json()["delta"] == 0
        same = client.get(f"{API}/budgets/{budget_id}/snapshots/compare",
                          params={"from_version": 1, "to_version": 1})
        assert same.status_code == 400
        missing = client.get(f"{API}/budgets/{budget_id}/snapshots/compare",
                             params={"from_version": 1, "to_version": 5})
        assert missing.status_code == 404


class TestImportAndMapping:
    def test_import(self, client, budget_id, ids):
        resp = _import(client, budget_id, ids)
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "completed"
        assert (body["partidas_created"], body["conceptos_created"]) == (1, 2)
        mappings = client.get(f"{API}/budgets/{budget_id}/mappings").json()
        assert len(mappings) == 1

    def test_import_bad_id_is_reported(self, client, budget_id, ids):
        resp = client.post(f"{API}/budgets/{budget_id}/import-catalog", json={
            "department": "CONST", "selection": [{"major_group_id": 9999}]})
        assert resp.status_code == 201
        assert resp.json()["status"] == "partial"
        assert resp.json()["issues"][0]["category"] == "not_found"

    def test_import_empty_selection(self, client, budget_id):
        resp = client.post(f"{API}/budgets/{budget_id}/import-catalog",
                           json={"department": "CONST", "selection": []})
        assert resp.status_code == 400

    def test_import_unknown_department(self, client, budget_id, ids):
        resp = client.post(f"{API}/budgets/{budget_id}/import-catalog", json={
            "department": "NOPE", "selection": [{"major_group_id": ids["major_group"]}]})
        assert resp.status_code == 404

    def test_match_major_group(self, client, ids):
        resp = client.post(f"{API}/mapping/major-group",
                           json={"name": "cimentacion", "department": "CONST"})
        body = resp.json()
        assert body["mapped"] is True
        assert body["node_id"] == ids["major_group"]
        assert body["match_type"] == "fuzzy_name"

    def test_match_major_group_needs_department(self, client):
        resp = client.post(f"{API}/mapping/major-group", json={"code": "01"})
        assert resp.status_code == 400

    def test_manual_mapping_roundtrip(self, client, budget_id, ids):
        partida = client.post(f"{API}/budgets/{budget_id}/partidas", json={"name": "P"}).json()
        url = f"{API}/budgets/{budget_id}/mappings/{partida['id']}"
        resp = client.put(url, json={"department": "CONST",
                                     "major_group_id": ids["major_group"]})
        assert resp.status_code == 200
        assert resp.json()["match_type"] == "manual"
        assert client.delete(url).status_code == 204
        assert client.get(url).status_code == 404


class TestRollupEndpoints:
    def test_rollup_rows_and_kpis(self, client, imported):
        body = client.get(f"{API}/budgets/{imported['budget_id']}/rollup").json()
        manual = body["rows"][0]
        assert manual["eac_total"] == pytest.approx(10000)
        assert manual["variance_total"] == pytest.approx(1000)
        assert manual["variance_band"] == "critical"
        assert body["kpis"]["row_count"] == 2
        assert body["kpis"]["completion_pct"] == pytest.approx(100.0)

    def test_summary(self, client, imported):
        kpis = client.get(f"{API}/budgets/{imported['budget_id']}/rollup/summary").json()
        assert kpis["base_total"] == pytest.approx(9000)
        assert kpis["variance_pct"] == pytest.approx(1000 / 9000)

    def test_aggregates(self, client, imported):
        url = f"{API}/budgets/{imported['budget_id']}/rollup/aggregates"
        [group] = client.get(f"{url}/major_group").json()
        assert group["code"] == "01"
        assert group["eac_total"] == pytest.approx(10000)
        assert client.get(f"{url}/partida").status_code == 400

    def test_manual_without_price_flags_row(self, client, imported):
        resp = client.put(f"{API}/conceptos/{imported['concepto_id']}/eac-method",
                          json={"method": "manual"})
        assert resp.status_code == 200
        row = client.get(f"{API}/budgets/{imported['budget_id']}/rollup").json()["rows"][0]
        assert row["eac_method"] == "weighted_avg"
        assert row["eac_warning"]

    def test_supply_status(self, client, imported, ids):
        url = f"{API}/budgets/{imported['budget_id']}/supply-status/{ids['maquinaria']}"
        assert client.put(url, json={"status": "in_transit"}).status_code == 204
        rows = client.get(f"{API}/budgets/{imported['budget_id']}/rollup").json()["rows"]
        assert rows[1]["supply_status"] == "in_transit"
        assert client.put(url, json={"status": "lost"}).status_code == 422

    def test_bulk_purchases_validate_first(self, client, imported, ids):
        url = f"{API}/budgets/{imported['budget_id']}/purchases"
        resp = client.post(f"{url}/bulk", json=[
            {"sub_item_id": ids["maquinaria"], "quantity": 1, "unit_price": 10},
            {"sub_item_id": ids["maquinaria"], "quantity": 1, "unit_price": 10,
             "purchase_date": "ayer"},
        ])
        assert resp.status_code == 400
        assert len(client.get(url).json()) == 1
        resp = client.post(f"{url}/bulk", json=[
            {"sub_item_id": ids["maquinaria"], "quantity": 2, "unit_price": 10,
             "purchase_date": "2026-04-02"}])
        assert resp.json() == {"inserted": 1}

    def test_delete_purchase(self, client, imported):
        url = f"{API}/budgets/{imported['budget_id']}/purchases"
        [purchase] = client.get(url).json()
        assert client.delete(f"{url}/{purchase['id']}").status_code == 204
        assert client.delete(f"{url}/{purchase['id']}").status_code == 404

    def test_alerts_and_top_variances(self, client, imported):
        base = f"{API}/budgets/{imported['budget_id']}/rollup"
        assert client.get(f"{base}/alerts").json() == []
        top = client.get(f"{base}/top-variances", params={"limit": 3}).json()
        assert [r["sub_item_code"] for r in top] == ["01"]


class TestExport:
    def test_csv(self, client, imported):
        resp = client.get(f"{API}/budgets/{imported['budget_id']}/rollup/export")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.headers["x-total-count"] == "2"
        lines = resp.text.strip().splitlines()
        assert lines[0].startswith("department,major_group_code,")
        assert len(lines) == 3

    def test_ndjson(self, client, imported):
        resp = client.get(f"{API}/budgets/{imported['budget_id']}/rollup/export",
                          params={"fmt": "json"})
        rows = [json.loads(line) for line in resp.text.splitlines() if line]
        assert rows[0]["variance_band"] == "critical"
        assert rows[0]["eac_total"] == pytest.approx(10000)

    def test_xlsx(self, client, imported):
        openpyxl = pytest.importorskip("openpyxl")
        resp = client.get(f"{API}/budgets/{imported['budget_id']}/rollup/export",
                          params={"fmt": "xlsx"})
        assert resp.status_code == 200
        wb = openpyxl.load_workbook(io.BytesIO(resp.content))
        assert wb.sheetnames == ["Metadata", "Rollup"]
        header = [c.value for c in next(wb["Rollup"].iter_rows(max_row=1))]
        assert header[0] == "department"
        assert wb["Rollup"].max_row == 3

    def test_unknown_format(self, client, imported):
        resp = client.get(f"{API}/budgets/{imported['budget_id']}/rollup/export",
                          params={"fmt": "pdf"})
        assert resp.status_code == 422
