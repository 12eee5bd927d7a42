"""
Shared fixtures for Benefit Guard tests.

Provides:
- A fresh SQLite database per test with the schema applied
- Synchronous seeding of users and ledger rows
- A scripted stand-in for the benefit lookup client
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import pytest

from benefit_guard.core.keys import QueryKey
from benefit_guard.sdk.benefits_client import FetchOutcome
from benefit_guard.sdk.payload import parse_payload
from benefit_guard.storage.db import get_connection
from benefit_guard.storage.repository import initialize_schema

MATCHED_RESPONSE: Dict[str, Any] = {
    "name": "MARIA DA SILVA",
    "state": "SP",
    "alimony": "N",
    "birthDate": "15031958",
    "blockType": "NOT_BLOCKED",
    "grantDate": "01022010",
    "creditType": "CHECKING_ACCOUNT",
    "benefitCardLimit": 1412.0,
    "benefitCardBalance": 70.6,
    "consignedCardLimit": 1412.0,
    "consignedCardBalance": 70.6,
    "benefitStatus": "ACTIVE",
    "benefitEndDate": None,
    "consignedCreditBalance": 494.2,
    "maxTotalBalance": 635.4,
    "usedTotalBalance": 141.2,
    "queryDate": "10102026",
    "queryReturnDate": "10102026",
    "queryReturnTime": "10:15:22",
    "legalRepresentativeName": None,
    "disbursementBankAccount": {"bank": "104", "branch": "0001", "number": "123456", "digit": "7"},
    "numberOfActiveSuspendedReservations": 0,
}

UNMATCHED_RESPONSE: Dict[str, Any] = {"name": None, "benefitStatus": None}


def seed_user(db_path: str, login: str, name: str = "Test User") -> int:
    """Insert a user row and return its id."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            "INSERT INTO users (name, login, created_at) VALUES (?, ?, ?)",
            (name, login, datetime.now().isoformat()),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def seed_credits(
    db_path: str,
    user_id: int,
    available_limit: int,
    queries_made: int = 0,
    total_loaded: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> int:
    """Insert a ledger row and return its id."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """
            INSERT INTO credits (user_id, total_loaded, available_limit, queries_made, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                user_id,
                available_limit + queries_made if total_loaded is None else total_loaded,
                available_limit,
                queries_made,
                (created_at or datetime.now()).isoformat(timespec="microseconds"),
            ),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def count_records(db_path: str) -> int:
    conn = get_connection(db_path)
    try:
        return conn.execute("SELECT COUNT(*) FROM query_records").fetchone()[0]
    finally:
        conn.close()


class ScriptedBenefitsClient:
    """Stand-in for BenefitsApiClient.

    Each fetch consumes the next scripted response (a raw body dict or an
    exception to raise); the last entry repeats. An optional gate holds
    every fetch until released.
    """

    def __init__(self, responses: Optional[List[Union[Dict[str, Any], Exception]]] = None,
                 gate: Optional[asyncio.Event] = None):
        self.responses = list(responses or [MATCHED_RESPONSE])
        self.gate = gate
        self.calls: List[QueryKey] = []
        self.active = 0
        self.max_active = 0
        self.transient_cache = None

    async def fetch(self, key: QueryKey) -> FetchOutcome:
        self.calls.append(key)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
            if isinstance(response, Exception):
                raise response
            return FetchOutcome(payload=parse_payload(response), raw=response, attempts=1)
        finally:
            self.active -= 1

    async def aclose(self) -> None:
        pass


@pytest.fixture
def db_path(tmp_path) -> str:
    path = str(tmp_path / "benefit_guard_test.db")
    initialize_schema(path)
    return path
