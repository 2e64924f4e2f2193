"""
Catalog tree queries.

The catalog (department -> major group -> line item -> sub-item) is
owned outside the planning code; everything here is a read-only query,
except ``load_catalog`` which seeds a database from a nested dict.

Listings return active nodes ordered by code.  Department arguments accept
a department code or name, case-insensitively.
"""

import logging
import sqlite3
from typing import Any

from planning.errors import NotFoundError, ValidationError
from planning.models import CatalogNode
from utils.config import AppConfig
from utils.database import QueryBuilder, query_to_dicts
from utils.strings import natural_code_key, normalize_for_comparison, normalize_code

logger = logging.getLogger("budget_control.catalog")

CATALOG_LEVELS = ("department", "major_group", "line_item", "sub_item")

_CHILD_KEYS = {
    "department": ("major_groups", "major_group"),
    "major_group": ("line_items", "line_item"),
    "line_item": ("sub_items", "sub_item"),
}

_NODE_COLUMNS = ["id", "level", "code", "name", "parent_id", "active",
                 "is_global", "applicable_department"]


def _list_level(conn: sqlite3.Connection, level: str,
                parent_id: int | None = None,
                use_parent: bool = False) -> list[CatalogNode]:
    qb = (
        QueryBuilder()
        .from_table("catalog_nodes")
        .select(_NODE_COLUMNS)
        .where("level = ?", level)
        .where("active = 1")
        .order_by("code")
    )
    if use_parent:
        qb.where("parent_id = ?", parent_id)
    sql, params = qb.build()
    return [CatalogNode.from_row(r) for r in query_to_dicts(conn, sql, params)]


def get_node(conn: sqlite3.Connection, node_id: int,
             level: str | None = None) -> CatalogNode:
    """Return a catalog node by id.

    Raises:
        NotFoundError: If the node does not exist or is not at *level*.
    """
    row = conn.execute(
        f"SELECT {', '.join(_NODE_COLUMNS)} FROM catalog_nodes WHERE id = ?",
        (node_id,),
    ).fetchone()
    if row is None or (level is not None and row["level"] != level):
        raise NotFoundError(level or "catalog node", node_id)
    return CatalogNode.from_row(row)


def resolve_department(conn: sqlite3.Connection,
                       department: str | None) -> CatalogNode | None:
    """Find a department by code or name (case-insensitive), else None."""
    if not department:
        return None
    wanted = department.strip().casefold()
    rows = conn.execute(
        f"SELECT {', '.join(_NODE_COLUMNS)} FROM catalog_nodes "
        "WHERE level = 'department' ORDER BY code"
    ).fetchall()
    for row in rows:
        if row["code"].casefold() == wanted or row["name"].casefold() == wanted:
            return CatalogNode.from_row(row)
    return None


def department_of(conn: sqlite3.Connection, node_id: int) -> CatalogNode | None:
    """Return the department a node belongs to.

    Departments are inherited from the root ancestor.  A global sub-item
    with no parent uses its ``applicable_department``.
    """
    node = get_node(conn, node_id)
    seen = set()
    while node.parent_id is not None and node.id not in seen:
        seen.add(node.id)
        node = get_node(conn, node.parent_id)
    if node.level == "department":
        return node
    return resolve_department(conn, node.applicable_department)


def list_departments(conn: sqlite3.Connection) -> list[CatalogNode]:
    return _list_level(conn, "department")


def list_major_groups(conn: sqlite3.Connection,
                      department: str | None = None) -> list[CatalogNode]:
    """List major groups, optionally only those of *department*.

    An unknown department yields an empty list.
    """
    if department is None:
        return _list_level(conn, "major_group")
    dept = resolve_department(conn, department)
    if dept is None:
        return []
    return _list_level(conn, "major_group", dept.id, use_parent=True)


def list_line_items(conn: sqlite3.Connection,
                    major_group_id: int | None = None) -> list[CatalogNode]:
    return _list_level(conn, "line_item", major_group_id,
                       use_parent=major_group_id is not None)


def list_sub_items(conn: sqlite3.Connection,
                   line_item_id: int | None = None) -> list[CatalogNode]:
    return _list_level(conn, "sub_item", line_item_id,
                       use_parent=line_item_id is not None)


def _global_department_code(conn: sqlite3.Connection, node: CatalogNode) -> str:
    if node.applicable_department:
        return node.applicable_department
    dept = department_of(conn, node.id)
    return dept.code if dept else ""


def list_global_sub_items(conn: sqlite3.Connection, department: str,
                          config: AppConfig | None = None) -> list[CatalogNode]:
    """Global sub-items applicable to *department*.

    Returns nothing when the configuration does not enable global
    sub-items for that department.
    """
    config = config or AppConfig.from_env()
    dept = resolve_department(conn, department)
    if dept is None or not config.allows_global_subitems(dept.code, dept.name):
        return []
    sql, params = (
        QueryBuilder()
        .from_table("catalog_nodes")
        .select(_NODE_COLUMNS)
        .where("level = 'sub_item'")
        .where("active = 1")
        .where("is_global = 1")
        .order_by("code")
        .build()
    )
    result = []
    for row in query_to_dicts(conn, sql, params):
        node = CatalogNode.from_row(row)
        applicable = _global_department_code(conn, node).casefold()
        if applicable in (dept.code.casefold(), dept.name.casefold()):
            result.append(node)
    return result


def list_sub_items_for_line_item_or_global(
    conn: sqlite3.Connection,
    line_item_id: int | None,
    department: str,
    search_text: str | None = None,
    limit: int = 50,
    config: AppConfig | None = None,
) -> list[CatalogNode]:
    """Sub-items of a line item plus the department's global sub-items.

    Results are de-duplicated by id, global sub-items come first, then the
    rest in natural code order.  *search_text* matches code or name,
    ignoring case and accents.
    """
    own = list_sub_items(conn, line_item_id) if line_item_id is not None else []
    globals_ = list_global_sub_items(conn, department, config)

    merged: dict[int, CatalogNode] = {}
    for node in globals_ + own:
        merged.setdefault(node.id, node)
    nodes = sorted(merged.values(),
                   key=lambda n: (not n.is_global, natural_code_key(n.code)))

    needle = normalize_for_comparison(search_text)
    if needle:
        nodes = [
            n for n in nodes
            if needle in normalize_for_comparison(n.code)
            or needle in normalize_for_comparison(n.name)
        ]
    if limit is not None and limit >= 0:
        nodes = nodes[:limit]
    return nodes


def catalog_path(conn: sqlite3.Connection, node_id: int) -> list[CatalogNode]:
    """Return the chain of nodes from the root down to *node_id*."""
    chain = [get_node(conn, node_id)]
    while chain[0].parent_id is not None:
        chain.insert(0, get_node(conn, chain[0].parent_id))
    return chain


# ── Loading ───────────────────────────────────────────────────────────────────


def _insert_node(conn: sqlite3.Connection, level: str, item: dict[str, Any],
                 parent_id: int | None, department_code: str | None = None) -> int:
    code = str(item.get("code", "")).strip()
    name = str(item.get("name", "")).strip()
    if not code:
        raise ValidationError(f"{level}.code", "code is required")
    if not name:
        raise ValidationError(f"{level}.name", f"name is required for code {code!r}")
    is_global = bool(item.get("global") or item.get("is_global"))
    try:
        cur = conn.execute(
            "INSERT INTO catalog_nodes "
            "(level, code, name, parent_id, active, is_global, applicable_department) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (level, code, name, parent_id, int(item.get("active", True)),
             int(is_global), department_code if is_global else None),
        )
    except sqlite3.IntegrityError as exc:
        raise ValidationError(
            f"{level}.code", f"duplicate code {code!r} within its parent"
        ) from exc
    return cur.lastrowid


def _check_unique_codes(level: str, items: list[dict[str, Any]]) -> None:
    seen = set()
    for item in items:
        code = normalize_code(str(item.get("code", "")))
        if code in seen:
            raise ValidationError(f"{level}.code",
                                  f"duplicate code {item.get('code')!r} within its parent")
        seen.add(code)


def _load_children(conn, level, items, parent_id, dept_code, counts) -> None:
    _check_unique_codes(level, items)
    for item in items:
        node_id = _insert_node(conn, level, item, parent_id, dept_code)
        counts[level] += 1
        child = _CHILD_KEYS.get(level)
        if child:
            key, child_level = child
            _load_children(conn, child_level, item.get(key, []), node_id,
                           dept_code, counts)


def load_catalog(conn: sqlite3.Connection, tree: dict[str, Any]) -> dict[str, int]:
    """Load a nested catalog into ``catalog_nodes``.

    Expected shape::

        {"departments": [
            {"code": "CONST", "name": "Construcción",
             "major_groups": [
                {"code": "01", "name": "Cimentación",
                 "line_items": [
                    {"code": "01", "name": "Excavación",
                     "sub_items": [{"code": "01", "name": "Manual"}]}]}],
             "global_sub_items": [{"code": "G01", "name": "Acarreo"}]}]}

    Sub-items flagged ``"global": true`` under a line item, and every entry
    of ``global_sub_items`` (stored without a parent), are offered under any
    line item of their department.

    Returns:
        Count of inserted nodes per level.

    Raises:
        ValidationError: On missing codes/names or duplicate codes in a scope.
    """
    counts = {level: 0 for level in CATALOG_LEVELS}
    departments = tree.get("departments", [])
    _check_unique_codes("department", departments)
    try:
        for dept in departments:
            dept_id = _insert_node(conn, "department", dept, None)
            counts["department"] += 1
            dept_code = str(dept["code"]).strip()
            _load_children(conn, "major_group", dept.get("major_groups", []),
                           dept_id, dept_code, counts)
            globals_ = [dict(g, is_global=True) for g in dept.get("global_sub_items", [])]
            _check_unique_codes("sub_item", globals_)
            for item in globals_:
                _insert_node(conn, "sub_item", item, None, dept_code)
                counts["sub_item"] += 1
        conn.commit()
    except ValidationError:
        conn.rollback()
        raise
    logger.info("Loaded catalog: %s", ", ".join(f"{v} {k}" for k, v in counts.items()))
    return counts
