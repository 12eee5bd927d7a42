"""
Prepaid credit ledger.

A user's ledger is a set of credit-grant rows. Reported balances are the
sum across rows; debits always target the most recently created row.
"""

import sqlite3
from datetime import datetime
from typing import Callable, Optional

from benefit_guard.config.logging import get_logger
from benefit_guard.core.errors import InsufficientCredit, NoCreditRelationship, PersistenceFailure

from .db import DEFAULT_DB_PATH, connect_async
from .models import CreditBalance, CreditSummary

logger = get_logger(__name__)

_SELECT_LATEST_ROW = """
    SELECT id, user_id, total_loaded, available_limit, queries_made, created_at
    FROM credits
    WHERE user_id = ?
    ORDER BY created_at DESC, id DESC
    LIMIT 1
"""


def _row_to_balance(row) -> CreditBalance:
    return CreditBalance(
        id=row["id"],
        user_id=row["user_id"],
        total_loaded=int(row["total_loaded"]),
        available_limit=int(row["available_limit"]),
        queries_made=int(row["queries_made"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class CreditLedger:
    """Read and charge users' query credits."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Callable[[], datetime] = datetime.now):
        self.db_path = db_path
        self.clock = clock

    async def current_balance(self, user_id: int) -> CreditBalance:
        """Return the user's most recent ledger row.

        Raises:
            NoCreditRelationship: If the user has no ledger row at all
            PersistenceFailure: If the database cannot be read
        """
        try:
            async with connect_async(self.db_path) as db:
                cursor = await db.execute(_SELECT_LATEST_ROW, (user_id,))
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure("could not read credit ledger") from e
        if row is None:
            raise NoCreditRelationship(
                "no credit operation found for this user", {"user_id": user_id}
            )
        return _row_to_balance(row)

    async def aggregate_balance(self, user_id: int) -> CreditSummary:
        """Sum every ledger row for the user; zeros when there are none."""
        try:
            async with connect_async(self.db_path) as db:
                cursor = await db.execute(
                    """
                    SELECT SUM(total_loaded), SUM(available_limit), SUM(queries_made)
                    FROM credits WHERE user_id = ?
                    """,
                    (user_id,),
                )
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure("could not read credit ledger") from e
        if row is None or row[0] is None:
            return CreditSummary(total_loaded=0, available_limit=0, queries_made=0)
        return CreditSummary(
            total_loaded=int(row[0]),
            available_limit=int(row[1]),
            queries_made=int(row[2]),
        )

    async def debit(self, user_id: int) -> CreditBalance:
        """Charge one credit against the user's most recent ledger row.

        The decrement is a single conditional UPDATE inside an immediate
        write transaction, so concurrent debits for one user never lose an
        update and never push ``available_limit`` below zero.

        Returns:
            The ledger row after the debit

        Raises:
            NoCreditRelationship: If the user has no ledger row
            InsufficientCredit: If the row has no credit left (nothing is written)
            PersistenceFailure: If the database cannot be updated
        """
        try:
            async with connect_async(self.db_path, isolation_level=None) as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(_SELECT_LATEST_ROW, (user_id,))
                    row = await cursor.fetchone()
                    if row is None:
                        raise NoCreditRelationship(
                            "no credit operation found for this user", {"user_id": user_id}
                        )

                    cursor = await db.execute(
                        """
                        UPDATE credits
                        SET available_limit = available_limit - 1,
                            queries_made = queries_made + 1
                        WHERE id = ? AND available_limit > 0
                        """,
                        (row["id"],),
                    )
                    if cursor.rowcount == 0:
                        raise InsufficientCredit(
                            "credits exhausted for this user",
                            {"user_id": user_id, "available_limit": int(row["available_limit"])},
                        )

                    cursor = await db.execute(
                        "SELECT id, user_id, total_loaded, available_limit, queries_made, created_at"
                        " FROM credits WHERE id = ?",
                        (row["id"],),
                    )
                    updated = await cursor.fetchone()
                    await db.execute("COMMIT")
                except Exception:
                    await db.execute("ROLLBACK")
                    raise
        except sqlite3.Error as e:
            logger.error("credit_debit_failed", user_id=user_id, error=str(e))
            raise PersistenceFailure("could not update credit ledger") from e

        balance = _row_to_balance(updated)
        logger.info(
            "credit_debited",
            user_id=user_id,
            ledger_row=balance.id,
            available_limit=balance.available_limit,
            queries_made=balance.queries_made,
        )
        return balance

    async def grant(self, user_id: int, credits: int, created_at: Optional[datetime] = None) -> CreditBalance:
        """Open a new ledger row loaded with ``credits``.

        Raises:
            ValueError: If credits is negative
        """
        if credits < 0:
            raise ValueError("credits cannot be negative")
        created = created_at or self.clock()
        try:
            async with connect_async(self.db_path) as db:
                cursor = await db.execute(
                    """
                    INSERT INTO credits (user_id, total_loaded, available_limit, queries_made, created_at)
                    VALUES (?, ?, ?, 0, ?)
                    """,
                    (user_id, credits, credits, created.isoformat(timespec="microseconds")),
                )
                await db.commit()
                row_id = cursor.lastrowid
        except sqlite3.Error as e:
            raise PersistenceFailure("could not write credit ledger") from e
        logger.info("credit_granted", user_id=user_id, credits=credits, ledger_row=row_id)
        return CreditBalance(
            id=row_id,
            user_id=user_id,
            total_loaded=credits,
            available_limit=credits,
            queries_made=0,
            created_at=created,
        )
