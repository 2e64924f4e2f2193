"""
Tests for utils/ — string normalization, TTL cache, formatting, config and
the query builder.
"""

import pytest

from utils.cache import TTLCache
from utils.config import AppConfig
from utils.database import QueryBuilder, next_order_index
from utils.formatting import (
    ReportFormatter,
    TableFormatter,
    format_amount,
    format_percent,
    format_quantity,
)
from utils.strings import (
    natural_code_key,
    normalize_code,
    normalize_for_comparison,
    safe_float,
)


class TestStrings:
    def test_normalize_for_comparison(self):
        assert normalize_for_comparison("  MANO_DE_OBRA Cimentación ") == \
            "mano de obra cimentacion"
        assert normalize_for_comparison(None) == ""

    def test_normalize_code(self):
        assert normalize_code(" g01 ") == "G01"
        assert normalize_code(None) == ""

    def test_natural_code_order(self):
        codes = ["10", "2", "01.10", "01.2", "A"]
        assert sorted(codes, key=natural_code_key) == ["01.2", "01.10", "2", "10", "A"]

    @pytest.mark.parametrize("raw,expected", [
        ("$1,234.50", 1234.5), (" 12 ", 12.0), (7, 7.0), ("", 0.0), (None, 0.0),
        ("n/a", 0.0),
    ])
    def test_safe_float(self, raw, expected):
        assert safe_float(raw) == expected


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTTLCache:
    def test_entries_expire(self):
        clock = _Clock()
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set(("a",), 1)
        clock.now = 9.9
        assert cache.get(("a",)) == 1
        clock.now = 10
        assert cache.get(("a",)) is None

    def test_get_or_compute_runs_once(self):
        calls = []
        cache = TTLCache(ttl_seconds=60, clock=_Clock())
        for _ in range(3):
            cache.get_or_compute("k", lambda: calls.append(1) or "v")
        assert calls == [1]
        assert cache.stats() == {"hits": 2, "misses": 1, "size": 1}

    def test_full_cache_evicts_soonest_expiry(self):
        clock = _Clock()
        cache = TTLCache(maxsize=2, ttl_seconds=10, clock=clock)
        cache.set("old", 1)
        clock.now = 1
        cache.set("new", 2)
        cache.set("newest", 3)
        assert cache.get("old") is None
        assert cache.get("new") == 2

    def test_zero_ttl_disables_caching(self):
        cache = TTLCache(ttl_seconds=0, clock=_Clock())
        cache.set("k", 1)
        assert cache.get("k") is None


class TestFormatting:
    def test_amounts(self):
        assert format_amount(10000) == "10,000.00 MXN"
        assert format_amount(-512.5, "USD") == "-512.50 USD"
        assert format_amount(3, "") == "3.00"
        assert format_amount(None) == "-"

    def test_percent(self):
        assert format_percent(0.01) == "1.0%"
        assert format_percent(62.5, fraction=False) == "62.5%"

    def test_quantity(self):
        assert format_quantity(52.5, "PZA") == "52.5 PZA"
        assert format_quantity(50, "PZA") == "50 PZA"
        assert format_quantity(0) == "0"

    def test_table_alignment(self):
        table = TableFormatter(["Code", "EAC"])
        table.add_row(["01", "10,000.00"])
        table.add_row(["G01", "5.00"])
        lines = table.to_string().splitlines()
        assert lines[0].startswith("Code")
        assert lines[3].endswith("     5.00")

    def test_table_rejects_wrong_width(self):
        with pytest.raises(ValueError):
            TableFormatter(["a", "b"]).add_row([1])

    def test_report_sections(self):
        report = ReportFormatter("Rollup")
        report.add_section("Summary", {"EAC": "1.00"})
        report.add_section("Warnings", [])
        text = report.to_string()
        assert text.startswith("Rollup\n======")
        assert "  EAC  1.00" in text
        assert "(none)" in text


class TestConfig:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_FEE_PCT", "0.2")
        monkeypatch.setenv("GLOBAL_SUBITEM_DEPARTMENTS", "CONST, Eléctrico")
        cfg = AppConfig.from_env()
        assert cfg.default_fee_pct == pytest.approx(0.2)
        assert cfg.global_subitem_departments == ["CONST", "Eléctrico"]

    def test_allows_global_subitems(self, monkeypatch):
        monkeypatch.delenv("GLOBAL_SUBITEM_DEPARTMENTS", raising=False)
        cfg = AppConfig()
        assert cfg.allows_global_subitems("ANY")
        cfg.global_subitem_departments = ["const"]
        assert cfg.allows_global_subitems("CONST")
        assert not cfg.allows_global_subitems("ELEC", "Eléctrico")
        cfg.global_subitem_departments = ["eléctrico"]
        assert cfg.allows_global_subitems("ELEC", "Eléctrico")

    def test_dict_roundtrip(self, tmp_path):
        cfg = AppConfig()
        cfg.default_currency = "USD"
        path = tmp_path / "config.json"
        cfg.save_json(path)
        assert AppConfig.load_json(path).default_currency == "USD"


class TestDatabaseHelpers:
    def test_query_builder(self):
        sql, params = (QueryBuilder().from_table("catalog_nodes").select(["id"])
                       .where("level = ?", "sub_item").order_by("code").limit(5).build())
        assert sql.startswith("SELECT id FROM catalog_nodes WHERE level = ?")
        assert sql.endswith("ORDER BY code ASC LIMIT ?")
        assert params == ["sub_item", 5]

    def test_query_builder_needs_table(self):
        with pytest.raises(ValueError):
            QueryBuilder().build()

    def test_next_order_index(self, conn, budget):
        assert next_order_index(conn, "partidas", "budget_id", budget.id) == 0
