#!/usr/bin/env python3
"""
Budget Control — command-line management tool.

Usage:
    python manage_budget.py init-db
    python manage_budget.py load-catalog catalog.json
    python manage_budget.py create-budget "Casa Norte" --currency MXN
    python manage_budget.py import 1 selection.json --department CONST
    python manage_budget.py load-purchases 1 purchases.csv
    python manage_budget.py rollup 1 [--level major_group] [--top 5]
    python manage_budget.py write-config settings.json

All commands accept --db (default: budget_control.sqlite or APP_DB_PATH).
--config loads settings from a JSON file written by `write-config`; without it
settings come from the environment.

Selection files hold a JSON list of major group selections:
    [{"major_group_id": 3, "line_items": [{"line_item_id": 7, "sub_item_ids": [11]}]}]

Purchase files are CSV (header: sub_item_id,quantity,unit_price,purchase_date,
reference,provider) or a JSON list of objects with the same keys.
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import os
import sys
import textwrap
from pathlib import Path

from planning import budgets, catalog, rollup
from planning.errors import PlanningError
from planning.importer import import_catalog_selection, parse_selection
from planning.schema import init_schema
from utils import AppConfig, get_connection
from utils.formatting import (
    ReportFormatter,
    TableFormatter,
    format_amount,
    format_percent,
    format_quantity,
)
from utils.strings import safe_float

DEFAULT_DB_PATH = Path(os.getenv("APP_DB_PATH", "budget_control.sqlite"))


def _read_json(path: Path):
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def read_purchases(path: Path) -> list[dict]:
    """Read purchase records from a CSV or JSON file.

    CSV numbers are parsed leniently (currency symbols and thousands
    separators are stripped); rows without a sub_item_id are skipped.
    """
    if path.suffix.lower() == ".json":
        return list(_read_json(path))
    records = []
    with open(path, newline="", encoding="utf-8") as fh:
        for row in csv.DictReader(fh):
            if not (row.get("sub_item_id") or "").strip():
                continue
            records.append({
                "sub_item_id": int(row["sub_item_id"]),
                "quantity": safe_float(row.get("quantity")),
                "unit_price": safe_float(row.get("unit_price")),
                "purchase_date": (row.get("purchase_date") or "").strip() or None,
                "reference": (row.get("reference") or "").strip() or None,
                "provider": (row.get("provider") or "").strip() or None,
            })
    return records


# ── Commands ──────────────────────────────────────────────────────────────────

def _config(args) -> AppConfig:
    if args.config is None:
        return AppConfig.from_env()
    return AppConfig.load_json(args.config)


def cmd_init_db(conn, args) -> None:
    applied = init_schema(conn)
    print(f"Schema ready ({applied} migrations applied).")


def cmd_load_catalog(conn, args) -> None:
    counts = catalog.load_catalog(conn, _read_json(args.file))
    print("Loaded catalog: " + ", ".join(f"{v} {k}" for k, v in counts.items()))


def cmd_create_budget(conn, args) -> None:
    budget = budgets.create_budget(
        conn, args.name, args.currency,
        tax_rate=args.tax_rate,
        default_fee_pct=args.fee,
        default_waste_pct=args.waste,
        config=_config(args),
    )
    print(f"Created budget {budget.id}: {budget.name} ({budget.currency}, {budget.status})")


def cmd_import(conn, args) -> None:
    selection = parse_selection(_read_json(args.selection))
    result = import_catalog_selection(conn, args.budget_id, selection, args.department,
                                      config=_config(args))
    print(f"Import {result.status}: {result.console_summary()}")
    for issue in result.issues:
        print(f"  [{issue.category}] {issue.detail}")


def cmd_load_purchases(conn, args) -> None:
    inserted = rollup.import_purchases(conn, args.budget_id, read_purchases(args.file))
    print(f"Loaded {inserted} purchase records into budget {args.budget_id}.")


def cmd_rollup(conn, args) -> None:
    config = _config(args)
    result = rollup.compute_rollup(conn, args.budget_id, config)
    cur = result.currency
    kpis = result.kpis

    report = ReportFormatter(f"Rollup: budget {args.budget_id}")
    report.add_section("Summary", {
        "Baseline": format_amount(kpis["base_total"], cur),
        "Purchased": format_amount(kpis["purchased_total"], cur),
        "EAC": format_amount(kpis["eac_total"], cur),
        "Variance": f"{format_amount(kpis['variance_total'], cur)} "
                    f"({format_percent(kpis['variance_pct'])}, "
                    f"{result.band(kpis['variance_pct'])})",
        "Completion": format_percent(kpis["completion_pct"], fraction=False),
    })

    if args.level:
        table = TableFormatter(["Code", "Name", "Baseline", "EAC", "Variance %"])
        for agg in result.aggregates(args.level):
            table.add_row([agg["code"], agg["name"],
                           format_amount(agg["base_total"], ""),
                           format_amount(agg["eac_total"], ""),
                           format_percent(agg["variance_pct"])])
        report.add_section(f"By {args.level.replace('_', ' ')}", table)
    else:
        table = TableFormatter(["Sub-item", "Base qty", "Bought", "Method",
                                "EAC", "Variance %", "Status"])
        for row in result.rows:
            table.add_row([row.sub_item_code or row.sub_item_id,
                           format_quantity(row.base_quantity),
                           format_quantity(row.purchased_quantity),
                           row.eac_method,
                           format_amount(row.eac_total, ""),
                           format_percent(row.variance_pct),
                           row.supply_status])
        report.add_section("Rows", table)

    if args.top:
        report.add_section("Top variances", [
            f"{r.sub_item_code or r.sub_item_id} {r.sub_item_name}: "
            f"{format_amount(r.variance_total, cur)}"
            for r in rollup.top_variances(result.rows, args.top)
        ])
    warnings = [f"{r.sub_item_code or r.sub_item_id}: {r.eac_warning}"
                for r in result.rows if r.eac_warning]
    if warnings:
        report.add_section("Warnings", warnings)
    report.print_report()


def cmd_write_config(conn, args) -> None:
    _config(args).save_json(args.file)
    print(f"Wrote settings to {args.file}.")


# ── CLI ───────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage construction budgets and their EAC rollup",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""
            Examples:
              python manage_budget.py load-catalog catalog.json
              python manage_budget.py create-budget "Casa Norte"
              python manage_budget.py import 1 selection.json --department CONST
              python manage_budget.py rollup 1 --level major_group
        """),
    )
    parser.add_argument("--db", type=Path, default=DEFAULT_DB_PATH, help="Database path")
    parser.add_argument("--config", type=Path, default=None,
                        help="JSON settings file (default: environment variables)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create or migrate the database schema")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("load-catalog", help="Load a catalog tree from JSON")
    p.add_argument("file", type=Path)
    p.set_defaults(func=cmd_load_catalog)

    p = sub.add_parser("create-budget", help="Create a draft budget")
    p.add_argument("name")
    p.add_argument("--currency", default=None)
    p.add_argument("--tax-rate", type=float, default=None, help="Fraction, e.g. 0.16")
    p.add_argument("--fee", type=float, default=None, help="Default fee fraction")
    p.add_argument("--waste", type=float, default=None, help="Default waste fraction")
    p.set_defaults(func=cmd_create_budget)

    p = sub.add_parser("import", help="Import a catalog selection into a budget")
    p.add_argument("budget_id", type=int)
    p.add_argument("selection", type=Path)
    p.add_argument("--department", required=True, help="Department code or name")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("load-purchases", help="Load purchase records (CSV or JSON)")
    p.add_argument("budget_id", type=int)
    p.add_argument("file", type=Path)
    p.set_defaults(func=cmd_load_purchases)

    p = sub.add_parser("rollup", help="Print the EAC rollup of a budget")
    p.add_argument("budget_id", type=int)
    p.add_argument("--level", choices=["line_item", "major_group", "department"],
                   default=None, help="Aggregate instead of listing rows")
    p.add_argument("--top", type=int, default=5, help="Top variances to list (0 to hide)")
    p.set_defaults(func=cmd_rollup)

    p = sub.add_parser("write-config", help="Save the current settings as JSON")
    p.add_argument("file", type=Path)
    p.set_defaults(func=cmd_write_config)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    conn = get_connection(args.db)
    try:
        if args.command != "init-db":
            init_schema(conn)
        args.func(conn, args)
    except PlanningError as exc:
        print(f"ERROR: {exc.reason}", file=sys.stderr)
        return 1
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
