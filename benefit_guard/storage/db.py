"""
Database connection management.

Provides SQLite connections for the credit ledger, the user directory and
the append-only query record log.
"""

import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

DEFAULT_DB_PATH = "benefit_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@asynccontextmanager
async def connect_async(db_path: str = DEFAULT_DB_PATH, **kwargs: Any) -> AsyncIterator[aiosqlite.Connection]:
    """Open an async SQLite connection with row access by column name.

    Extra keyword arguments are passed through to ``sqlite3.connect``
    (e.g. ``isolation_level=None`` for explicit transaction control).
    """
    async with aiosqlite.connect(str(Path(db_path)), **kwargs) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        yield db
