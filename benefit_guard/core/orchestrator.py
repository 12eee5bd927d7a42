"""
Benefit query orchestration.

Answers one logical request: serve a reusable stored record or perform a
billed external lookup, persist the outcome, then charge the requesting
user one credit.

Stage order:
RECEIVED -> RESOLVE_USER -> CHECK_CREDIT -> CHECK_CACHE
  -> CACHE_DUPLICATE | EXTERNAL_FETCH -> PERSIST -> DEBIT -> RESPOND
Any stage may end in FAILED.

Billing rules:
1. A fresh lookup that resolved an identity costs one credit
2. Reusing a valid stored record costs one credit for the new requester
3. An unmatched lookup is stored for audit and never billed
4. The debit happens only after the record is stored
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from benefit_guard.config.loader import ServiceConfig
from benefit_guard.config.logging import get_logger
from benefit_guard.sdk.benefits_client import BenefitsApiClient
from benefit_guard.sdk.transient_cache import TransientCache
from benefit_guard.storage.directory import CredentialDirectory
from benefit_guard.storage.ledger import CreditLedger
from benefit_guard.storage.models import QueryRecord
from benefit_guard.storage.repository import ResultStore

from .cache_policy import evaluate_cached_record
from .dispatch import PerKeyDispatchQueue
from .errors import BenefitGuardError, UnmatchedIdentity, ValidationError
from .keys import QueryKey

logger = get_logger(__name__)


class QueryStage(Enum):
    RECEIVED = "received"
    RESOLVE_USER = "resolve_user"
    CHECK_CREDIT = "check_credit"
    CHECK_CACHE = "check_cache"
    CACHE_DUPLICATE = "cache_duplicate"
    EXTERNAL_FETCH = "external_fetch"
    PERSIST = "persist"
    DEBIT = "debit"
    RESPOND = "respond"
    FAILED = "failed"


class RecordOrigin(Enum):
    """Where the returned record's payload came from."""
    CACHE = "cache"
    EXTERNAL = "external"


@dataclass(frozen=True)
class QueryResult:
    """Successful answer: the stored record and the post-debit balance."""
    record: QueryRecord
    available_limit: int
    queries_made: int
    origin: RecordOrigin


class QueryOrchestrator:
    """Serializes work per benefit key and runs the billing state machine."""

    def __init__(
        self,
        directory: CredentialDirectory,
        ledger: CreditLedger,
        store: ResultStore,
        client: BenefitsApiClient,
        cache_validity: timedelta = timedelta(days=30),
        pacing_delay: float = 0.0,
        dispatch_queue: Optional[PerKeyDispatchQueue] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.directory = directory
        self.ledger = ledger
        self.store = store
        self.client = client
        self.cache_validity = cache_validity
        self.pacing_delay = pacing_delay
        self.dispatch_queue = dispatch_queue or PerKeyDispatchQueue()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "QueryOrchestrator":
        """Wire SQLite-backed collaborators and the HTTP client from config."""
        db_path = config.database.path
        transient_cache = TransientCache(
            ttl_seconds=config.cache.transient_ttl_seconds,
            max_entries=config.cache.transient_max_entries,
        )
        return cls(
            directory=CredentialDirectory(db_path),
            ledger=CreditLedger(db_path),
            store=ResultStore(db_path),
            client=BenefitsApiClient(config.external_api, config.api_token, transient_cache),
            cache_validity=timedelta(days=config.cache.validity_days),
            pacing_delay=config.external_api.pacing_delay_seconds,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def submit_query(self, document: str, benefit: str, login: str) -> QueryResult:
        """Answer a balance query for ``login``.

        Requests for the same normalized (document, benefit) key run one at
        a time in arrival order.

        Raises:
            ValidationError: If document, benefit or login is missing/malformed
            UserNotFound, NoCreditRelationship, InsufficientCredit,
            ExternalServiceUnavailable, UnmatchedIdentity, PersistenceFailure
        """
        key = QueryKey.from_raw(document, benefit)
        if not isinstance(login, str) or not login.strip():
            raise ValidationError("login is required")
        login = login.strip()

        return await self.dispatch_queue.submit(key.value, lambda: self._run(key, login))

    async def _run(self, key: QueryKey, login: str) -> QueryResult:
        with structlog.contextvars.bound_contextvars(query_key=key.value, login=login):
            stage = QueryStage.RECEIVED
            try:
                stage = self._enter(QueryStage.RESOLVE_USER)
                user_id = await self.directory.resolve_user(login)

                stage = self._enter(QueryStage.CHECK_CREDIT)
                await self.ledger.current_balance(user_id)

                stage = self._enter(QueryStage.CHECK_CACHE)
                latest = await self.store.most_recent(key)
                verdict = evaluate_cached_record(latest, self._clock(), self.cache_validity)
                logger.debug("cache_checked", decision=verdict.decision.value)

                if verdict.usable:
                    stage = self._enter(QueryStage.CACHE_DUPLICATE)
                    origin = RecordOrigin.CACHE
                    pending = verdict.record.duplicate_for(user_id, self._clock())
                else:
                    stage = self._enter(QueryStage.EXTERNAL_FETCH)
                    origin = RecordOrigin.EXTERNAL
                    outcome = await self.client.fetch(key)
                    if self.pacing_delay > 0:
                        await self._sleep(self.pacing_delay)
                    pending = QueryRecord(
                        document_number=key.document,
                        benefit_number=key.benefit,
                        user_id=user_id,
                        payload=outcome.payload,
                        recorded_at=self._clock(),
                    )

                stage = self._enter(QueryStage.PERSIST)
                record = await self.store.append(pending)
                if not record.is_valid:
                    raise UnmatchedIdentity(
                        "name not found by the lookup service; no credit consumed",
                        {"record_id": record.id},
                    )

                stage = self._enter(QueryStage.DEBIT)
                balance = await self.ledger.debit(user_id)

                self._enter(QueryStage.RESPOND)
                logger.info(
                    "query_answered",
                    origin=origin.value,
                    record_id=record.id,
                    available_limit=balance.available_limit,
                    queries_made=balance.queries_made,
                    cache_decision=verdict.decision.value,
                )
                return QueryResult(
                    record=record,
                    available_limit=balance.available_limit,
                    queries_made=balance.queries_made,
                    origin=origin,
                )
            except BenefitGuardError as e:
                self._enter(QueryStage.FAILED)
                logger.error(
                    "query_failed",
                    failed_stage=stage.value,
                    code=e.code,
                    error=e.message,
                )
                raise

    def _enter(self, stage: QueryStage) -> QueryStage:
        logger.debug("query_stage", stage=stage.value)
        return stage
