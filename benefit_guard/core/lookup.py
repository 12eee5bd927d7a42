"""
Non-billing read paths.

Neither call contacts the lookup service nor touches the credit ledger.
"""

from typing import Any, Dict, Optional

from benefit_guard.sdk.transient_cache import TransientCache
from benefit_guard.storage.models import QueryRecord
from benefit_guard.storage.repository import ResultStore

from .errors import RecordNotFound
from .keys import QueryKey


class RecordLookup:
    """Read stored and recently fetched results for a benefit."""

    def __init__(self, store: ResultStore, transient_cache: Optional[TransientCache] = None):
        self.store = store
        self.transient_cache = transient_cache

    async def latest(self, document: str, benefit: str) -> QueryRecord:
        """Return the most recent stored record, valid or not.

        Raises:
            ValidationError: If document or benefit is malformed
            RecordNotFound: If nothing was ever stored for the pair
        """
        key = QueryKey.from_raw(document, benefit)
        record = await self.store.most_recent(key)
        if record is None:
            raise RecordNotFound("no stored query for this benefit", {"query_key": key.value})
        return record

    def peek(self, document: str, benefit: str) -> Optional[Dict[str, Any]]:
        """Return the raw response fetched within the transient window, if any."""
        if self.transient_cache is None:
            return None
        return self.transient_cache.get(QueryKey.from_raw(document, benefit))
