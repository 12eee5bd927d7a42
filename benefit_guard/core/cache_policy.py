"""
Reuse rules for stored query records.

A stored record can stand in for a new billed lookup only when the
external service resolved an identity for it and it is younger than the
validity window. Invalid records are never reused, whatever their age.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from benefit_guard.storage.models import QueryRecord

DEFAULT_VALIDITY = timedelta(days=30)


class CacheDecision(Enum):
    """Why a lookup did or did not reuse a stored record."""
    HIT = "hit"
    MISS = "miss"          # nothing stored for the key
    INVALID = "invalid"    # latest record has no resolved identity
    EXPIRED = "expired"    # latest record is valid but too old


@dataclass(frozen=True)
class CacheVerdict:
    decision: CacheDecision
    record: Optional[QueryRecord] = None

    @property
    def usable(self) -> bool:
        return self.decision is CacheDecision.HIT


def record_age(record: QueryRecord, now: datetime) -> timedelta:
    return now - record.recorded_at


def evaluate_cached_record(
    record: Optional[QueryRecord],
    now: datetime,
    validity: timedelta = DEFAULT_VALIDITY,
) -> CacheVerdict:
    """Decide whether ``record`` may satisfy a request at ``now``.

    Args:
        record: Most recent stored record for the key, if any
        now: Current time, in the same clock as ``record.recorded_at``
        validity: Maximum age; a record aged exactly ``validity`` is expired

    Returns:
        CacheVerdict carrying the record only on a hit
    """
    if record is None:
        return CacheVerdict(CacheDecision.MISS)
    if not record.is_valid:
        return CacheVerdict(CacheDecision.INVALID)
    if record_age(record, now) >= validity:
        return CacheVerdict(CacheDecision.EXPIRED)
    return CacheVerdict(CacheDecision.HIT, record)
