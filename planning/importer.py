"""
Catalog import: turn a selection of catalog nodes into budget structure.

For each selected major group one partida is created ("01 - Cimentación")
with a manual mapping to that major group.  For each selected sub-item under
a selected line item one zero-quantity concepto is created
(code "<line item>.<sub-item>", description "<line item> / <sub-item>") and
the partida's mapping is upserted with the full catalog chain.

The run is not atomic: a bad catalog id or a rejected write is recorded on
the result and the rest of the selection still goes through.  Re-running a
selection is safe; it creates fresh zero-quantity partidas and mapping
upserts never duplicate a partida's mapping.

Usage::

    result = import_catalog_selection(conn, budget_id, [
        MajorGroupSelection(major_group_id=3, line_items=[
            LineItemSelection(line_item_id=7, sub_item_ids=[11, 12]),
        ]),
    ], department="CONST")
    print(result.console_summary())
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable

from planning import catalog
from planning.budgets import create_concepto, create_partida, get_budget, require_draft
from planning.errors import NotFoundError, ValidationError
from planning.mapping import store_mapping
from planning.models import CatalogNode
from planning.reports import ImportResult
from utils.config import DEFAULT_IMPORT_UNIT, AppConfig
from utils.database import next_order_index

logger = logging.getLogger("budget_control.import")


@dataclass
class LineItemSelection:
    line_item_id: int
    sub_item_ids: list[int] = field(default_factory=list)


@dataclass
class MajorGroupSelection:
    major_group_id: int
    line_items: list[LineItemSelection] = field(default_factory=list)


def parse_selection(data: Iterable[dict[str, Any]]) -> list[MajorGroupSelection]:
    """Build selection objects from plain dicts (JSON bodies, CLI files).

    Raises:
        ValidationError: If an entry lacks its id.
    """
    selection = []
    for i, mg in enumerate(data):
        if mg.get("major_group_id") is None:
            raise ValidationError(f"selection[{i}].major_group_id", "is required")
        line_items = []
        for j, li in enumerate(mg.get("line_items") or []):
            if li.get("line_item_id") is None:
                raise ValidationError(f"selection[{i}].line_items[{j}].line_item_id",
                                      "is required")
            line_items.append(LineItemSelection(int(li["line_item_id"]),
                                                [int(s) for s in li.get("sub_item_ids") or []]))
        selection.append(MajorGroupSelection(int(mg["major_group_id"]), line_items))
    return selection


def _lookup(conn: sqlite3.Connection, node_id: int, level: str,
            result: ImportResult) -> CatalogNode | None:
    try:
        node = catalog.get_node(conn, node_id, level)
    except NotFoundError as exc:
        result.add_issue("not_found", exc.reason, f"{level}:{node_id}")
        logger.warning("Import: %s", exc.reason)
        return None
    if not node.active:
        result.add_issue("not_found", f"{level} {node_id} is inactive", f"{level}:{node_id}")
        logger.warning("Import: %s %d is inactive", level, node_id)
        return None
    return node


def _sub_item_allowed(conn: sqlite3.Connection, sub_item: CatalogNode,
                      line_item: CatalogNode, department: CatalogNode,
                      config: AppConfig) -> bool:
    if sub_item.parent_id == line_item.id:
        return True
    if not sub_item.is_global:
        return False
    allowed = catalog.list_global_sub_items(conn, department.code, config)
    return any(n.id == sub_item.id for n in allowed)


def import_catalog_selection(
    conn: sqlite3.Connection,
    budget_id: int,
    selection: list[MajorGroupSelection],
    department: str,
    config: AppConfig | None = None,
) -> ImportResult:
    """Create partidas, conceptos and mappings for a catalog selection.

    Raises:
        ValidationError: Empty selection.
        NotFoundError: Unknown budget (or trashed) or unknown department.
        PreconditionFailed: The budget is not a draft.

    Returns:
        ImportResult with the created counts and any per-item issues.
    """
    config = config or AppConfig.from_env()
    if not selection:
        raise ValidationError("selection", "select at least one major group")
    budget = get_budget(conn, budget_id)
    require_draft(budget)
    dept = catalog.resolve_department(conn, department)
    if dept is None:
        raise NotFoundError("department", department)

    result = ImportResult()
    result.start()
    result.items_requested = sum(
        1 + sum(len(li.sub_item_ids) for li in mg.line_items) for mg in selection
    )
    order_index = next_order_index(conn, "partidas", "budget_id", budget_id)
    logger.info("Importing %d major groups into budget %d (department %s)",
                len(selection), budget_id, dept.code)

    for mg_sel in selection:
        major_group = _lookup(conn, mg_sel.major_group_id, "major_group", result)
        if major_group is None:
            continue
        if major_group.parent_id != dept.id:
            result.add_issue("wrong_parent",
                             f"major group {major_group.code} is not in department {dept.code}",
                             f"major_group:{major_group.id}")
            continue

        try:
            partida = create_partida(
                conn, budget_id, f"{major_group.code} - {major_group.name}",
                order_index=order_index,
                notes=f"Imported from catalog: {dept.name} / {major_group.name}",
            )
        except sqlite3.Error as exc:
            logger.warning("Import: partida for major group %s failed: %s",
                           major_group.code, exc)
            result.add_issue("write_failed", str(exc), f"major_group:{major_group.id}")
            continue
        order_index += 1
        result.partidas_created += 1
        result.partida_ids.append(partida.id)

        try:
            if store_mapping(conn, budget_id, partida.id, dept.code, major_group.id,
                             None, None, None, "manual",
                             f"Major group: {major_group.name}"):
                result.mappings_created += 1
            conn.commit()
        except sqlite3.Error as exc:
            logger.warning("Import: mapping for partida %d failed: %s", partida.id, exc)
            result.add_issue("write_failed", str(exc), f"partida:{partida.id}")

        for li_sel in mg_sel.line_items:
            line_item = _lookup(conn, li_sel.line_item_id, "line_item", result)
            if line_item is None:
                continue
            if line_item.parent_id != major_group.id:
                result.add_issue("wrong_parent",
                                 f"line item {line_item.code} is not under major group "
                                 f"{major_group.code}",
                                 f"line_item:{line_item.id}")
                continue
            for sub_item_id in li_sel.sub_item_ids:
                sub_item = _lookup(conn, sub_item_id, "sub_item", result)
                if sub_item is None:
                    continue
                if not _sub_item_allowed(conn, sub_item, line_item, dept, config):
                    result.add_issue("wrong_parent",
                                     f"sub-item {sub_item.code} is not under line item "
                                     f"{line_item.code}",
                                     f"sub_item:{sub_item.id}")
                    continue
                try:
                    concepto = create_concepto(
                        conn, partida.id,
                        code=f"{line_item.code}.{sub_item.code}",
                        description=f"{line_item.name} / {sub_item.name}",
                        long_description=(f"{dept.name} / {major_group.name} / "
                                          f"{line_item.name} / {sub_item.name}"),
                        unit=DEFAULT_IMPORT_UNIT,
                        real_quantity=0.0,
                        real_unit_price=0.0,
                        waste_pct=0.0,
                        fee_pct=0.0,
                        line_item_id=line_item.id,
                        sub_item_id=sub_item.id,
                    )
                    result.conceptos_created += 1
                    store_mapping(conn, budget_id, partida.id, dept.code, major_group.id,
                                  line_item.id, sub_item.id, concepto.id, "manual",
                                  f"Sub-item: {sub_item.name}")
                    conn.commit()
                except sqlite3.Error as exc:
                    logger.warning("Import: concepto for sub-item %s failed: %s",
                                   sub_item.code, exc)
                    result.add_issue("write_failed", str(exc), f"sub_item:{sub_item.id}")

    result.finish()
    logger.info("Import into budget %d finished (%s): %s", budget_id, result.status,
                result.console_summary())
    return result
