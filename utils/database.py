"""Database utilities for the budget control tools.

Provides reusable functions for:
- Connection creation and pragmas
- Batch insert operations
- Small query helpers (row dicts, counts, table existence)
- A fluent SELECT builder used by the catalog listings
"""

import sqlite3
from pathlib import Path
from typing import Any, Dict, List


def init_pragmas(conn: sqlite3.Connection) -> None:
    """Initialize SQLite reliability pragmas.

    - WAL mode for concurrent readers while a writer commits
    - NORMAL synchronous mode for speed without data loss
    - Foreign keys enforced so child rows cannot outlive their parents
    """
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")


def get_connection(db_path: Path | str) -> sqlite3.Connection:
    """Open a read-write SQLite connection with ``sqlite3.Row`` rows.

    ``":memory:"`` is accepted for tests.  WAL is skipped for in-memory
    databases because SQLite ignores it there.
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    if str(db_path) == ":memory:":
        conn.execute("PRAGMA foreign_keys=ON")
    else:
        init_pragmas(conn)
    return conn


def batch_insert(conn: sqlite3.Connection, query: str, rows: List[tuple],
                 batch_size: int = 1000) -> int:
    """Execute batch insert operations efficiently.

    Inserts rows in batches and commits after each batch.

    Args:
        conn: SQLite connection
        query: SQL INSERT query with ? placeholders
        rows: List of tuples to insert
        batch_size: Number of rows per batch (default: 1000)

    Returns:
        Total number of rows inserted
    """
    total_inserted = 0

    for i in range(0, len(rows), batch_size):
        batch = rows[i:i + batch_size]
        conn.executemany(query, batch)
        conn.commit()
        total_inserted += len(batch)

    return total_inserted


def get_table_count(conn: sqlite3.Connection, table: str) -> int:
    """Get row count for a table."""
    result = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}").fetchone()
    return result[0] if result else 0


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    """Check if a table exists in the database."""
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table,)
    )
    return cursor.fetchone() is not None


def query_to_dicts(conn: sqlite3.Connection, query: str,
                   params: tuple | list = ()) -> List[Dict[str, Any]]:
    """Execute query and return results as list of dicts.

    Args:
        conn: SQLite connection (must have row_factory set)
        query: SQL query string
        params: Query parameters

    Returns:
        List of row dicts
    """
    cursor = conn.execute(query, params)
    return [dict(row) for row in cursor.fetchall()]


def next_order_index(conn: sqlite3.Connection, table: str, parent_column: str,
                     parent_id: int) -> int:
    """Return ``max(order_index) + 1`` among a parent's children, or 0."""
    row = conn.execute(
        f"SELECT MAX(order_index) FROM {table} WHERE {parent_column} = ?",
        (parent_id,),
    ).fetchone()
    return 0 if row is None or row[0] is None else row[0] + 1


class QueryBuilder:
    """Fluent SQL SELECT query builder producing safe parameterized queries.

    Column and table names are passed as-is (callers validate them);
    WHERE values always go through ``?`` placeholders.

    Example::

        sql, params = (
            QueryBuilder()
            .from_table("catalog_nodes")
            .select(["id", "code", "name"])
            .where("level = ?", "major_group")
            .where("active = 1")
            .order_by("code")
            .build()
        )
    """

    def __init__(self) -> None:
        self._table: str = ""
        self._columns: List[str] = ["*"]
        self._conditions: List[str] = []
        self._params: List[Any] = []
        self._order: str = ""
        self._limit: int | None = None

    def from_table(self, table: str) -> "QueryBuilder":
        """Set the FROM table."""
        self._table = table
        return self

    def select(self, columns: List[str]) -> "QueryBuilder":
        """Set the SELECT column list."""
        self._columns = columns
        return self

    def where(self, condition: str, *values: Any) -> "QueryBuilder":
        """Add a WHERE condition with positional ``?`` placeholders."""
        self._conditions.append(condition)
        self._params.extend(values)
        return self

    def order_by(self, column: str, direction: str = "ASC") -> "QueryBuilder":
        """Set ORDER BY clause."""
        direction = "DESC" if direction.upper() == "DESC" else "ASC"
        self._order = f"ORDER BY {column} {direction}"
        return self

    def limit(self, n: int) -> "QueryBuilder":
        """Set LIMIT."""
        self._limit = n
        return self

    def build(self) -> tuple[str, List[Any]]:
        """Build and return (sql, params) tuple.

        Raises:
            ValueError: If no table has been set.
        """
        if not self._table:
            raise ValueError("QueryBuilder: no table set; call .from_table() first")
        cols = ", ".join(self._columns)
        sql = f"SELECT {cols} FROM {self._table}"
        params = list(self._params)
        if self._conditions:
            sql += " WHERE " + " AND ".join(self._conditions)
        if self._order:
            sql += f" {self._order}"
        if self._limit is not None:
            sql += " LIMIT ?"
            params.append(self._limit)
        return sql, params
