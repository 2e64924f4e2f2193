"""
Database connection management for the API.

Provides a get_db() dependency that opens a per-request read-write SQLite
connection and closes it after the response is sent.  The database path is
resolved once at startup from the APP_DB_PATH environment variable (default:
budget_control.sqlite); ``create_app(db_path=...)`` overrides it for tests.
"""

import logging
import os
import sqlite3
from collections.abc import Generator
from pathlib import Path

from planning.schema import init_schema
from utils.database import get_connection

logger = logging.getLogger("budget_control.api")

_DB_PATH: Path = Path(os.getenv("APP_DB_PATH", "budget_control.sqlite"))


def get_db_path() -> Path:
    """Return the configured database path."""
    return _DB_PATH


def set_db_path(db_path: Path | str) -> None:
    global _DB_PATH
    _DB_PATH = Path(db_path)


def ensure_schema(db_path: Path | None = None) -> int:
    """Create the database file if needed and apply pending migrations."""
    path = db_path or _DB_PATH
    conn = get_connection(path)
    try:
        applied = init_schema(conn)
    finally:
        conn.close()
    if applied:
        logger.info("Initialised schema at %s (%d migrations)", path, applied)
    return applied


def get_db() -> Generator[sqlite3.Connection, None, None]:
    """FastAPI dependency: yield a SQLite connection, close on exit.

    Usage in a route::

        from api.database import get_db
        from fastapi import Depends

        @router.get("/example")
        def example(conn=Depends(get_db)):
            ...
    """
    conn = get_connection(_DB_PATH)
    try:
        yield conn
    finally:
        conn.close()
