"""
Data models for storage layer.

Defines users, credit ledger rows and benefit query records.
"""

from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import Optional, Tuple

RECORD_SOURCE = "individual_query"


@dataclass(frozen=True)
class User:
    """Directory entry for a login. Only ``id`` matters to the query core."""
    id: int
    name: str
    login: str
    password_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


@dataclass(frozen=True)
class CreditBalance:
    """A single credit-grant row of a user's ledger."""
    id: int
    user_id: int
    total_loaded: int
    available_limit: int
    queries_made: int
    created_at: datetime


@dataclass(frozen=True)
class CreditSummary:
    """Aggregate of every ledger row for a user."""
    total_loaded: int
    available_limit: int
    queries_made: int


@dataclass(frozen=True)
class BenefitPayload:
    """Benefit fields returned by the external lookup.

    ``name`` is the resolved beneficiary identity; a payload without it is
    the external service's "no match" answer.
    """
    name: Optional[str] = None
    state: Optional[str] = None
    alimony: Optional[str] = None
    birth_date: Optional[str] = None
    block_type: Optional[str] = None
    grant_date: Optional[str] = None
    credit_type: Optional[str] = None
    benefit_card_limit: Optional[float] = None
    benefit_card_balance: Optional[float] = None
    consigned_card_limit: Optional[float] = None
    consigned_card_balance: Optional[float] = None
    benefit_status: Optional[str] = None
    benefit_end_date: Optional[str] = None
    consigned_credit_balance: Optional[float] = None
    max_total_balance: Optional[float] = None
    used_total_balance: Optional[float] = None
    available_total_balance: Optional[float] = None
    query_date: Optional[str] = None
    query_return_date: Optional[str] = None
    query_return_time: Optional[str] = None
    legal_representative_name: Optional[str] = None
    disbursement_bank: Optional[str] = None
    disbursement_branch: Optional[str] = None
    disbursement_account: Optional[str] = None
    disbursement_digit: Optional[str] = None
    portability_count: Optional[int] = None

    @property
    def has_identity(self) -> bool:
        return isinstance(self.name, str) and bool(self.name.strip())


PAYLOAD_COLUMNS: Tuple[str, ...] = tuple(f.name for f in fields(BenefitPayload))


@dataclass(frozen=True)
class QueryRecord:
    """Immutable outcome of a benefit lookup.

    Rows are append-only: a cache hit never reuses a row, it stores a new
    one attributed to the requesting user.
    """
    document_number: str
    benefit_number: str
    user_id: int
    payload: BenefitPayload
    recorded_at: datetime
    source: str = RECORD_SOURCE
    id: Optional[int] = None

    @property
    def is_valid(self) -> bool:
        """True when the external service resolved an identity."""
        return self.payload.has_identity

    def duplicate_for(self, user_id: int, recorded_at: datetime) -> "QueryRecord":
        """Copy this record's payload into a new, unsaved row for ``user_id``."""
        return replace(self, id=None, user_id=user_id, recorded_at=recorded_at)
