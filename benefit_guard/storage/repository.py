"""
Repository pattern for query record access.

The query record log is append-only: rows are inserted, read back and
never updated or deleted.
"""

import sqlite3
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from benefit_guard.config.logging import get_logger
from benefit_guard.core.errors import PersistenceFailure
from benefit_guard.core.keys import QueryKey

from .db import DEFAULT_DB_PATH, connect_async, get_connection
from .models import PAYLOAD_COLUMNS, BenefitPayload, QueryRecord

logger = get_logger(__name__)

_RECORD_COLUMNS = (
    "id", "user_id", "document_number", "benefit_number",
    *PAYLOAD_COLUMNS,
    "recorded_at", "source",
)

_SELECT_RECORD = f"SELECT {', '.join(_RECORD_COLUMNS)} FROM query_records"


def _format_timestamp(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _row_to_record(row) -> QueryRecord:
    payload = BenefitPayload(**{column: row[column] for column in PAYLOAD_COLUMNS})
    return QueryRecord(
        id=row["id"],
        user_id=row["user_id"],
        document_number=row["document_number"],
        benefit_number=row["benefit_number"],
        payload=payload,
        recorded_at=datetime.fromisoformat(row["recorded_at"]),
        source=row["source"],
    )


class ResultStore:
    """Persistent log of benefit query outcomes.

    Records are looked up by normalized (document, benefit) key and ordered
    by recording time, newest first.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    async def most_recent(self, key: QueryKey) -> Optional[QueryRecord]:
        """Return the latest record for ``key``, or None.

        Raises:
            PersistenceFailure: If the database cannot be read
        """
        try:
            async with connect_async(self.db_path) as db:
                cursor = await db.execute(
                    _SELECT_RECORD
                    + " WHERE document_number = ? AND benefit_number = ?"
                    " ORDER BY recorded_at DESC, id DESC LIMIT 1",
                    (key.document, key.benefit),
                )
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            logger.error("query_record_read_failed", query_key=key.value, error=str(e))
            raise PersistenceFailure("could not read stored query records") from e
        return _row_to_record(row) if row is not None else None

    async def append(self, record: QueryRecord) -> QueryRecord:
        """Insert ``record`` and return it with its assigned id.

        Raises:
            PersistenceFailure: If the insert fails
        """
        values = (
            record.user_id,
            record.document_number,
            record.benefit_number,
            *(getattr(record.payload, column) for column in PAYLOAD_COLUMNS),
            _format_timestamp(record.recorded_at),
            record.source,
        )
        placeholders = ", ".join("?" for _ in values)
        try:
            async with connect_async(self.db_path) as db:
                cursor = await db.execute(
                    f"INSERT INTO query_records ({', '.join(_RECORD_COLUMNS[1:])}) VALUES ({placeholders})",
                    values,
                )
                await db.commit()
                record_id = cursor.lastrowid
        except sqlite3.Error as e:
            logger.error(
                "query_record_write_failed",
                document=record.document_number,
                benefit=record.benefit_number,
                error=str(e),
            )
            raise PersistenceFailure("could not store query record") from e

        logger.debug("query_record_stored", record_id=record_id, valid=record.is_valid)
        return replace(record, id=record_id)

    async def history(self, key: QueryKey, limit: int = 100) -> List[QueryRecord]:
        """Return records for ``key``, newest first."""
        try:
            async with connect_async(self.db_path) as db:
                cursor = await db.execute(
                    _SELECT_RECORD
                    + " WHERE document_number = ? AND benefit_number = ?"
                    " ORDER BY recorded_at DESC, id DESC LIMIT ?",
                    (key.document, key.benefit, limit),
                )
                rows = await cursor.fetchall()
        except sqlite3.Error as e:
            raise PersistenceFailure("could not read stored query records") from e
        return [_row_to_record(row) for row in rows]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the users, credits and query_records tables if they don't exist.

    ``query_records`` is an append-only ledger of lookup outcomes. No UPDATE
    or DELETE operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    payload_columns = ",\n                ".join(
        f"{column} {_column_type(column)}" for column in PAYLOAD_COLUMNS
    )
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                login TEXT NOT NULL UNIQUE,
                password_hash TEXT,
                created_at TEXT NOT NULL,
                last_login TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS credits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id),
                total_loaded INTEGER NOT NULL,
                available_limit INTEGER NOT NULL CHECK (available_limit >= 0),
                queries_made INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS query_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL REFERENCES users(id),
                document_number TEXT NOT NULL,
                benefit_number TEXT NOT NULL,
                {payload_columns},
                recorded_at TEXT NOT NULL,
                source TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_query_records_key
            ON query_records(document_number, benefit_number, recorded_at DESC)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_credits_user
            ON credits(user_id, created_at DESC)
        """)
        conn.commit()
    finally:
        conn.close()


_NUMERIC_COLUMNS = {
    "benefit_card_limit": "REAL",
    "benefit_card_balance": "REAL",
    "consigned_card_limit": "REAL",
    "consigned_card_balance": "REAL",
    "consigned_credit_balance": "REAL",
    "max_total_balance": "REAL",
    "used_total_balance": "REAL",
    "available_total_balance": "REAL",
    "portability_count": "INTEGER",
}


def _column_type(column: str) -> str:
    return _NUMERIC_COLUMNS.get(column, "TEXT")
