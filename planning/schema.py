"""
SQLite schema for the budget control database.

Tables:
    catalog_nodes       Department / major group / line item / sub-item tree
    budgets             Budget header, settings and lifecycle status
    partidas            Ordered groupings inside a budget
    conceptos           Priced items inside a partida
    catalog_mappings    Partida -> catalog links (one per partida)
    purchase_records    Purchase/commitment feed keyed by sub-item
    supply_statuses     User-set supply status per (budget, sub-item)
    budget_snapshots    Immutable budget versions (JSON payload + totals)

Migrations are applied in version order and recorded in schema_version, so
``init_schema`` is safe to call on every start-up.
"""

import logging
import sqlite3

logger = logging.getLogger("budget_control.schema")


_DDL_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    description TEXT,
    applied_at  TEXT    DEFAULT (datetime('now'))
);
"""

_DDL_001_CORE = """
-- ── Catalog tree (read-only to the planning code) ───────────────────────────

CREATE TABLE IF NOT EXISTS catalog_nodes (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    level                 TEXT    NOT NULL
                          CHECK (level IN ('department', 'major_group',
                                           'line_item', 'sub_item')),
    code                  TEXT    NOT NULL,
    name                  TEXT    NOT NULL,
    parent_id             INTEGER REFERENCES catalog_nodes(id),
    active                INTEGER NOT NULL DEFAULT 1,
    is_global             INTEGER NOT NULL DEFAULT 0,
    applicable_department TEXT     -- department code for global sub-items
);

-- Codes are unique within a parent; NULL parents share one scope per level.
CREATE UNIQUE INDEX IF NOT EXISTS idx_catalog_nodes_scope
    ON catalog_nodes(level, COALESCE(parent_id, 0), code);
CREATE INDEX IF NOT EXISTS idx_catalog_nodes_parent
    ON catalog_nodes(parent_id);

-- ── Budget hierarchy ────────────────────────────────────────────────────────

CREATE TABLE IF NOT EXISTS budgets (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    name              TEXT    NOT NULL,
    project_id        INTEGER,
    currency          TEXT    NOT NULL DEFAULT 'MXN',
    status            TEXT    NOT NULL DEFAULT 'draft'
                      CHECK (status IN ('draft', 'published', 'closed')),
    enable_tax        INTEGER NOT NULL DEFAULT 1,
    tax_rate          REAL    NOT NULL DEFAULT 0.16,
    default_fee_pct   REAL    NOT NULL DEFAULT 0.17,
    default_waste_pct REAL    NOT NULL DEFAULT 0.05,
    notes             TEXT,
    created_at        TEXT    NOT NULL,
    updated_at        TEXT    NOT NULL,
    deleted_at        TEXT
);

CREATE TABLE IF NOT EXISTS partidas (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    budget_id          INTEGER NOT NULL REFERENCES budgets(id) ON DELETE CASCADE,
    name               TEXT    NOT NULL,
    order_index        INTEGER NOT NULL DEFAULT 0,
    active             INTEGER NOT NULL DEFAULT 1,
    fee_pct_override   REAL,
    waste_pct_override REAL,
    notes              TEXT,
    deleted_at         TEXT
);
CREATE INDEX IF NOT EXISTS idx_partidas_budget ON partidas(budget_id, order_index);

CREATE TABLE IF NOT EXISTS conceptos (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    partida_id       INTEGER NOT NULL REFERENCES partidas(id) ON DELETE CASCADE,
    code             TEXT    NOT NULL DEFAULT '',
    description      TEXT    NOT NULL DEFAULT '',
    long_description TEXT,
    unit             TEXT    NOT NULL DEFAULT 'PZA',
    real_quantity    REAL    NOT NULL DEFAULT 0,
    waste_pct        REAL    NOT NULL DEFAULT 0,
    real_unit_price  REAL    NOT NULL DEFAULT 0,
    fee_pct          REAL    NOT NULL DEFAULT 0,
    provider         TEXT,
    active           INTEGER NOT NULL DEFAULT 1,
    order_index      INTEGER NOT NULL DEFAULT 0,
    line_item_id     INTEGER REFERENCES catalog_nodes(id),
    sub_item_id      INTEGER REFERENCES catalog_nodes(id),
    eac_method       TEXT    NOT NULL DEFAULT 'weighted_avg'
                     CHECK (eac_method IN ('weighted_avg', 'last_price', 'manual')),
    manual_price     REAL,
    deleted_at       TEXT
);
CREATE INDEX IF NOT EXISTS idx_conceptos_partida ON conceptos(partida_id, order_index);
CREATE INDEX IF NOT EXISTS idx_conceptos_sub_item ON conceptos(sub_item_id);

-- ── Mapping, purchases, supply status ───────────────────────────────────────

CREATE TABLE IF NOT EXISTS catalog_mappings (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    budget_id      INTEGER NOT NULL REFERENCES budgets(id) ON DELETE CASCADE,
    partida_id     INTEGER NOT NULL REFERENCES partidas(id) ON DELETE CASCADE,
    concepto_id    INTEGER REFERENCES conceptos(id) ON DELETE SET NULL,
    department     TEXT    NOT NULL,
    major_group_id INTEGER REFERENCES catalog_nodes(id),
    line_item_id   INTEGER REFERENCES catalog_nodes(id),
    sub_item_id    INTEGER REFERENCES catalog_nodes(id),
    match_type     TEXT    NOT NULL DEFAULT 'manual'
                   CHECK (match_type IN ('exact_code', 'fuzzy_name', 'manual', 'none')),
    notes          TEXT,
    created_at     TEXT    NOT NULL,
    updated_at     TEXT    NOT NULL,
    UNIQUE (budget_id, partida_id)
);

CREATE TABLE IF NOT EXISTS purchase_records (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    budget_id     INTEGER NOT NULL REFERENCES budgets(id) ON DELETE CASCADE,
    sub_item_id   INTEGER NOT NULL REFERENCES catalog_nodes(id),
    quantity      REAL    NOT NULL CHECK (quantity > 0),
    unit_price    REAL    NOT NULL CHECK (unit_price >= 0),
    purchase_date TEXT    NOT NULL,
    reference     TEXT,
    provider      TEXT
);
CREATE INDEX IF NOT EXISTS idx_purchases_budget ON purchase_records(budget_id, sub_item_id);

CREATE TABLE IF NOT EXISTS supply_statuses (
    budget_id   INTEGER NOT NULL REFERENCES budgets(id) ON DELETE CASCADE,
    sub_item_id INTEGER NOT NULL REFERENCES catalog_nodes(id),
    status      TEXT    NOT NULL
                CHECK (status IN ('not_required', 'required', 'requested',
                                  'in_transit', 'delivered')),
    updated_at  TEXT    NOT NULL,
    PRIMARY KEY (budget_id, sub_item_id)
);

-- ── Snapshots ───────────────────────────────────────────────────────────────

CREATE TABLE IF NOT EXISTS budget_snapshots (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    budget_id      INTEGER NOT NULL REFERENCES budgets(id),
    version_number INTEGER NOT NULL,
    snapshot_data  TEXT    NOT NULL,
    totals         TEXT    NOT NULL,
    notes          TEXT,
    created_at     TEXT    NOT NULL,
    UNIQUE (budget_id, version_number)
);
"""

# Each entry: (version, description, sql)
_MIGRATIONS = [
    (1, "001_core: catalog, budgets, mappings, purchases, snapshots", _DDL_001_CORE),
]

TABLES = (
    "catalog_nodes", "budgets", "partidas", "conceptos", "catalog_mappings",
    "purchase_records", "supply_statuses", "budget_snapshots",
)


def current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version (0 if none applied)."""
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] or 0
    except sqlite3.OperationalError:
        return 0


def init_schema(conn: sqlite3.Connection) -> int:
    """Apply all pending migrations in order.

    Idempotent: already-applied migrations are skipped.

    Returns:
        Number of migrations applied in this call (0 if already up to date).
    """
    conn.execute(_DDL_SCHEMA_VERSION)
    conn.commit()

    current = current_version(conn)
    applied = 0
    for version, description, sql in _MIGRATIONS:
        if version <= current:
            continue
        conn.executescript(sql)
        conn.execute(
            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
            (version, description),
        )
        conn.commit()
        logger.info("Applied schema migration %d (%s)", version, description)
        applied += 1
    return applied
