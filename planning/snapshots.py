"""
Immutable budget snapshots.

A snapshot stores the whole budget tree plus its totals as JSON under an
increasing ``version_number``.  Publishing a budget records one; a budget
with any snapshot can no longer be deleted permanently.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any

from planning.budgets import budget_payload, budget_totals, get_budget
from planning.errors import NotFoundError

logger = logging.getLogger("budget_control.snapshots")


def _decode(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    d["snapshot_data"] = json.loads(d["snapshot_data"])
    d["totals"] = json.loads(d["totals"])
    return d


def create_snapshot(conn: sqlite3.Connection, budget_id: int,
                    notes: str | None = None) -> dict[str, Any]:
    """Record the current state of a budget as the next version."""
    get_budget(conn, budget_id)
    payload = budget_payload(conn, budget_id)
    totals = budget_totals(conn, budget_id)
    row = conn.execute(
        "SELECT COALESCE(MAX(version_number), 0) FROM budget_snapshots WHERE budget_id = ?",
        (budget_id,),
    ).fetchone()
    version = row[0] + 1
    cur = conn.execute(
        "INSERT INTO budget_snapshots (budget_id, version_number, snapshot_data, totals, "
        "notes, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (budget_id, version, json.dumps(payload, default=str),
         json.dumps(totals), notes,
         datetime.now(timezone.utc).isoformat(timespec="seconds")),
    )
    conn.commit()
    logger.info("Snapshot v%d of budget %d (grand total %.2f)",
                version, budget_id, totals["grand_total"])
    return get_snapshot(conn, cur.lastrowid)


def get_snapshot(conn: sqlite3.Connection, snapshot_id: int) -> dict[str, Any]:
    row = conn.execute("SELECT * FROM budget_snapshots WHERE id = ?",
                       (snapshot_id,)).fetchone()
    if row is None:
        raise NotFoundError("snapshot", snapshot_id)
    return _decode(row)


def list_snapshots(conn: sqlite3.Connection, budget_id: int) -> list[dict[str, Any]]:
    """Snapshot headers (without payload), newest version first."""
    get_budget(conn, budget_id, include_trashed=True)
    rows = conn.execute(
        "SELECT id, budget_id, version_number, totals, notes, created_at "
        "FROM budget_snapshots WHERE budget_id = ? ORDER BY version_number DESC",
        (budget_id,),
    ).fetchall()
    result = []
    for row in rows:
        d = dict(row)
        d["totals"] = json.loads(d["totals"])
        result.append(d)
    return result


def has_snapshot(conn: sqlite3.Connection, budget_id: int) -> bool:
    row = conn.execute("SELECT 1 FROM budget_snapshots WHERE budget_id = ? LIMIT 1",
                       (budget_id,)).fetchone()
    return row is not None


def _partida_subtotals(snapshot: dict[str, Any]) -> dict[str, float]:
    return {p["name"]: p["subtotal"] for p in snapshot["totals"]["partidas"]}


def compare_snapshots(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    """Compare two decoded snapshots partida by partida.

    Partidas are matched by name.  Changes are sorted by absolute delta,
    largest first.
    """
    total_a = a["totals"]["grand_total"]
    total_b = b["totals"]["grand_total"]
    delta = total_b - total_a
    old = _partida_subtotals(a)
    new = _partida_subtotals(b)

    changes = []
    for name in sorted(set(old) | set(new)):
        before = old.get(name, 0.0)
        after = new.get(name, 0.0)
        if name not in old:
            kind = "added"
        elif name not in new:
            kind = "removed"
        elif abs(after - before) > 1e-9:
            kind = "modified"
        else:
            kind = "unchanged"
        changes.append({"partida": name, "change": kind, "before": before,
                        "after": after, "delta": after - before})
    changes.sort(key=lambda c: abs(c["delta"]), reverse=True)

    return {
        "from_version": a["version_number"],
        "to_version": b["version_number"],
        "grand_total_before": total_a,
        "grand_total_after": total_b,
        "delta": delta,
        "delta_pct": delta / total_a if total_a else 0.0,
        "changes": changes,
    }
