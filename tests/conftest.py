"""
Pytest fixtures for the budget control tests.

Provides an in-memory SQLite connection with the schema applied, a small
seeded catalog, and a ``node`` helper that resolves catalog ids by code path:

    node("CONST")                 -> department id
    node("CONST", "01")           -> major group 01 Cimentación
    node("CONST", "01", "01")     -> line item 01 Excavación
    node("CONST", "01", "01", "02") -> sub-item 02 Maquinaria
    node("CONST", "*", "G01")     -> global sub-item G01 Acarreo
"""

import copy
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from planning.catalog import load_catalog  # noqa: E402
from planning.schema import init_schema  # noqa: E402
from utils.config import AppConfig  # noqa: E402
from utils.database import get_connection  # noqa: E402

CATALOG = {
    "departments": [
        {
            "code": "CONST", "name": "Construcción",
            "major_groups": [
                {"code": "01", "name": "Cimentación", "line_items": [
                    {"code": "01", "name": "Excavación", "sub_items": [
                        {"code": "01", "name": "Manual"},
                        {"code": "02", "name": "Maquinaria"},
                    ]},
                    {"code": "02", "name": "Concreto", "sub_items": [
                        {"code": "01", "name": "Concreto f'c 250"},
                        {"code": "02", "name": "Acero de refuerzo"},
                        {"code": "10", "name": "Curado"},
                    ]},
                ]},
                {"code": "02", "name": "Estructura", "line_items": [
                    {"code": "01", "name": "Columnas", "sub_items": [
                        {"code": "01", "name": "Cimbra"},
                    ]},
                ]},
                {"code": "09", "name": "Obsoleto", "active": False},
            ],
            "global_sub_items": [
                {"code": "G01", "name": "Acarreo"},
            ],
        },
        {
            "code": "ELEC", "name": "Eléctrico",
            "major_groups": [
                {"code": "01", "name": "Acometida", "line_items": [
                    {"code": "01", "name": "Cableado", "sub_items": [
                        {"code": "01", "name": "Cable THW"},
                    ]},
                ]},
            ],
        },
    ]
}


def _find(conn, path: tuple[str, ...]) -> int:
    dept = conn.execute(
        "SELECT id FROM catalog_nodes WHERE level = 'department' AND code = ?", (path[0],)
    ).fetchone()
    if len(path) == 1:
        return dept["id"]
    if path[1] == "*":
        row = conn.execute(
            "SELECT id FROM catalog_nodes WHERE level = 'sub_item' AND is_global = 1 "
            "AND parent_id IS NULL AND applicable_department = ? AND code = ?",
            (path[0], path[2]),
        ).fetchone()
        return row["id"]
    parent_id = dept["id"]
    for level, code in zip(("major_group", "line_item", "sub_item"), path[1:]):
        row = conn.execute(
            "SELECT id FROM catalog_nodes WHERE level = ? AND parent_id = ? AND code = ?",
            (level, parent_id, code),
        ).fetchone()
        parent_id = row["id"]
    return parent_id


@pytest.fixture()
def config():
    """Default configuration, independent of the caller's environment."""
    cfg = AppConfig()
    cfg.global_subitem_departments = []
    cfg.default_fee_pct = 0.17
    cfg.default_waste_pct = 0.05
    cfg.default_tax_rate = 0.16
    cfg.default_currency = "MXN"
    cfg.variance_caution_pct = 0.05
    cfg.variance_critical_pct = 0.10
    cfg.catalog_cache_ttl = 300.0
    return cfg


@pytest.fixture()
def conn():
    """In-memory database with the schema applied and no data."""
    c = get_connection(":memory:")
    init_schema(c)
    yield c
    c.close()


@pytest.fixture()
def catalog_tree():
    """The sample catalog as a nested dict."""
    return copy.deepcopy(CATALOG)


@pytest.fixture()
def catalog_conn(conn, catalog_tree):
    """In-memory database with the sample catalog loaded."""
    load_catalog(conn, catalog_tree)
    return conn


@pytest.fixture()
def node(catalog_conn):
    """Resolve a catalog node id from its code path."""
    def _node(*path: str) -> int:
        return _find(catalog_conn, path)
    return _node


@pytest.fixture()
def budget(catalog_conn, config):
    """A draft budget with the default settings."""
    from planning.budgets import create_budget
    return create_budget(catalog_conn, "Casa Norte", config=config)
