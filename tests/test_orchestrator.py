"""
Tests for the query orchestrator.

Covers billing, cache reuse, unmatched identities, failures at each stage
and per-key serialization against a real SQLite database.
"""

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest

from benefit_guard.core.errors import (
    ExternalServiceUnavailable,
    InsufficientCredit,
    NoCreditRelationship,
    PersistenceFailure,
    UnmatchedIdentity,
    UserNotFound,
    ValidationError,
)
from benefit_guard.core.keys import QueryKey
from benefit_guard.core.orchestrator import QueryOrchestrator, RecordOrigin
from benefit_guard.storage import ledger as ledger_module
from benefit_guard.storage.directory import CredentialDirectory
from benefit_guard.storage.ledger import CreditLedger
from benefit_guard.storage.models import QueryRecord
from benefit_guard.storage.repository import ResultStore
from benefit_guard.sdk.payload import parse_payload

from conftest import (
    MATCHED_RESPONSE,
    UNMATCHED_RESPONSE,
    ScriptedBenefitsClient,
    count_records,
    seed_credits,
    seed_user,
)

DOCUMENT = "123.456.789-00"
BENEFIT = "987.654.321-0"
KEY = QueryKey.from_raw(DOCUMENT, BENEFIT)


def build_orchestrator(db_path, client, **kwargs):
    return QueryOrchestrator(
        directory=CredentialDirectory(db_path),
        ledger=CreditLedger(db_path),
        store=ResultStore(db_path),
        client=client,
        **kwargs
    )


async def store_record(db_path, user_id, response, age):
    store = ResultStore(db_path)
    return await store.append(QueryRecord(
        document_number=KEY.document,
        benefit_number=KEY.benefit,
        user_id=user_id,
        payload=parse_payload(response),
        recorded_at=datetime.now() - age,
    ))


class TestBilling:
    """Fresh lookups and the credit they consume."""

    @pytest.mark.asyncio
    async def test_fresh_lookup_debits_exactly_one_credit(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5, queries_made=2)
        client = ScriptedBenefitsClient()
        orchestrator = build_orchestrator(db_path, client)

        result = await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")

        assert result.available_limit == 4
        assert result.queries_made == 3
        assert result.origin == RecordOrigin.EXTERNAL
        assert result.record.id is not None
        assert result.record.user_id == user_id
        assert result.record.document_number == "12345678900"
        assert result.record.benefit_number == "9876543210"
        assert result.record.payload.name == "MARIA DA SILVA"
        assert len(client.calls) == 1

        balance = await CreditLedger(db_path).current_balance(user_id)
        assert balance.available_limit == 4
        assert balance.queries_made == 3

    @pytest.mark.asyncio
    async def test_zero_balance_reports_insufficient_credit(self, db_path):
        """External path stores the record but leaves the balance unchanged."""
        user_id = seed_user(db_path, "broke")
        seed_credits(db_path, user_id, available_limit=0, queries_made=7)
        orchestrator = build_orchestrator(db_path, ScriptedBenefitsClient())

        with pytest.raises(InsufficientCredit):
            await orchestrator.submit_query(DOCUMENT, BENEFIT, "broke")

        balance = await CreditLedger(db_path).current_balance(user_id)
        assert balance.available_limit == 0
        assert balance.queries_made == 7
        assert count_records(db_path) == 1

    @pytest.mark.asyncio
    async def test_zero_balance_on_cache_hit_leaves_balance_untouched(self, db_path):
        owner = seed_user(db_path, "owner")
        broke = seed_user(db_path, "broke")
        seed_credits(db_path, broke, available_limit=0)
        await store_record(db_path, owner, MATCHED_RESPONSE, timedelta(days=1))
        client = ScriptedBenefitsClient()
        orchestrator = build_orchestrator(db_path, client)

        with pytest.raises(InsufficientCredit):
            await orchestrator.submit_query(DOCUMENT, BENEFIT, "broke")

        assert client.calls == []
        balance = await CreditLedger(db_path).current_balance(broke)
        assert balance.available_limit == 0
        assert balance.queries_made == 0

    @pytest.mark.asyncio
    async def test_debit_targets_most_recent_ledger_row(self, db_path):
        user_id = seed_user(db_path, "alice")
        old_row = seed_credits(db_path, user_id, available_limit=3,
                               created_at=datetime.now() - timedelta(days=60))
        new_row = seed_credits(db_path, user_id, available_limit=10)
        orchestrator = build_orchestrator(db_path, ScriptedBenefitsClient())

        result = await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")

        assert result.available_limit == 9
        ledger = CreditLedger(db_path)
        assert (await ledger.current_balance(user_id)).id == new_row
        summary = await ledger.aggregate_balance(user_id)
        assert summary.available_limit == 12  # old row (3) untouched
        assert old_row != new_row


class TestCacheReuse:
    """Stored records standing in for billed lookups."""

    @pytest.mark.asyncio
    async def test_recent_valid_record_is_duplicated_for_second_user(self, db_path):
        first = seed_user(db_path, "first")
        second = seed_user(db_path, "second")
        seed_credits(db_path, first, available_limit=5)
        seed_credits(db_path, second, available_limit=5)
        cached = await store_record(db_path, first, MATCHED_RESPONSE, timedelta(days=10))
        client = ScriptedBenefitsClient()
        orchestrator = build_orchestrator(db_path, client)

        result = await orchestrator.submit_query(DOCUMENT, BENEFIT, "second")

        assert client.calls == []
        assert result.origin == RecordOrigin.CACHE
        assert result.record.id != cached.id
        assert result.record.user_id == second
        assert result.record.payload == cached.payload
        assert result.record.recorded_at > cached.recorded_at
        assert result.available_limit == 4
        assert result.queries_made == 1

        ledger = CreditLedger(db_path)
        assert (await ledger.current_balance(first)).available_limit == 5
        assert count_records(db_path) == 2

    @pytest.mark.asyncio
    async def test_expired_valid_record_triggers_fresh_lookup(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5)
        await store_record(db_path, user_id, MATCHED_RESPONSE, timedelta(days=30))
        client = ScriptedBenefitsClient()
        orchestrator = build_orchestrator(db_path, client)

        result = await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")

        assert len(client.calls) == 1
        assert result.origin == RecordOrigin.EXTERNAL

    @pytest.mark.asyncio
    async def test_invalid_record_is_never_reused(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5)
        await store_record(db_path, user_id, UNMATCHED_RESPONSE, timedelta(hours=1))
        client = ScriptedBenefitsClient()
        orchestrator = build_orchestrator(db_path, client)

        result = await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")

        assert len(client.calls) == 1
        assert result.origin == RecordOrigin.EXTERNAL
        assert result.record.is_valid

    @pytest.mark.asyncio
    async def test_formatting_differences_share_the_cache(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5)
        client = ScriptedBenefitsClient()
        orchestrator = build_orchestrator(db_path, client)

        await orchestrator.submit_query("123.456.789-00", "987.654.321-0", "alice")
        result = await orchestrator.submit_query("12345678900", " 9876543210 ", "alice")

        assert len(client.calls) == 1
        assert result.origin == RecordOrigin.CACHE
        assert result.available_limit == 3


class TestUnmatchedIdentity:
    """Lookups the service answered without a beneficiary."""

    @pytest.mark.asyncio
    async def test_unmatched_lookup_is_stored_but_not_billed(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5)
        orchestrator = build_orchestrator(db_path, ScriptedBenefitsClient([UNMATCHED_RESPONSE]))

        with pytest.raises(UnmatchedIdentity):
            await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")

        balance = await CreditLedger(db_path).current_balance(user_id)
        assert balance.available_limit == 5
        assert balance.queries_made == 0
        stored = await ResultStore(db_path).most_recent(KEY)
        assert stored is not None
        assert not stored.is_valid

    @pytest.mark.asyncio
    async def test_next_query_after_unmatched_fetches_again(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5)
        client = ScriptedBenefitsClient([UNMATCHED_RESPONSE, UNMATCHED_RESPONSE])
        orchestrator = build_orchestrator(db_path, client)

        for _ in range(2):
            with pytest.raises(UnmatchedIdentity):
                await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")

        assert len(client.calls) == 2
        assert count_records(db_path) == 2
        assert (await CreditLedger(db_path).current_balance(user_id)).available_limit == 5


class TestFailures:
    """Terminal errors at each stage."""

    @pytest.mark.asyncio
    async def test_unknown_login(self, db_path):
        client = ScriptedBenefitsClient()
        orchestrator = build_orchestrator(db_path, client)

        with pytest.raises(UserNotFound):
            await orchestrator.submit_query(DOCUMENT, BENEFIT, "ghost")
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_user_without_ledger_row(self, db_path):
        seed_user(db_path, "newcomer")
        client = ScriptedBenefitsClient()
        orchestrator = build_orchestrator(db_path, client)

        with pytest.raises(NoCreditRelationship):
            await orchestrator.submit_query(DOCUMENT, BENEFIT, "newcomer")
        assert client.calls == []
        assert count_records(db_path) == 0

    @pytest.mark.asyncio
    async def test_service_unavailable_persists_nothing(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5)
        client = ScriptedBenefitsClient([ExternalServiceUnavailable("down", attempts=3)])
        orchestrator = build_orchestrator(db_path, client)

        with pytest.raises(ExternalServiceUnavailable):
            await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")

        assert count_records(db_path) == 0
        assert (await CreditLedger(db_path).current_balance(user_id)).available_limit == 5

    @pytest.mark.asyncio
    async def test_store_unavailable(self, tmp_path):
        """A database without schema surfaces as a persistence failure."""
        orchestrator = build_orchestrator(str(tmp_path / "empty.db"), ScriptedBenefitsClient())

        with pytest.raises(PersistenceFailure):
            await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("document,benefit,login", [
        ("", BENEFIT, "alice"),
        (DOCUMENT, "", "alice"),
        (DOCUMENT, BENEFIT, ""),
        ("abc", BENEFIT, "alice"),
        (None, BENEFIT, "alice"),
    ])
    async def test_validation_errors(self, db_path, document, benefit, login):
        orchestrator = build_orchestrator(db_path, ScriptedBenefitsClient())

        with pytest.raises(ValidationError):
            await orchestrator.submit_query(document, benefit, login)
        assert len(orchestrator.dispatch_queue) == 0

    @pytest.mark.asyncio
    async def test_pacing_delay_follows_external_lookup(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5)
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        orchestrator = build_orchestrator(
            db_path, ScriptedBenefitsClient(), pacing_delay=3.0, sleep=record_sleep
        )

        await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")
        await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")  # cache hit

        assert delays == [3.0]

    @pytest.mark.asyncio
    async def test_debit_store_failure_keeps_record(self, db_path, monkeypatch):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5, queries_made=1)
        real_connect = ledger_module.connect_async

        @asynccontextmanager
        async def locked_for_writes(path, **kwargs):
            if "isolation_level" in kwargs:
                raise sqlite3.OperationalError("database is locked")
            async with real_connect(path, **kwargs) as db:
                yield db

        monkeypatch.setattr(ledger_module, "connect_async", locked_for_writes)
        orchestrator = build_orchestrator(db_path, ScriptedBenefitsClient())

        with pytest.raises(PersistenceFailure):
            await orchestrator.submit_query(DOCUMENT, BENEFIT, "alice")

        stored = await ResultStore(db_path).most_recent(KEY)
        assert stored is not None
        assert stored.is_valid
        balance = await CreditLedger(db_path).current_balance(user_id)
        assert balance.available_limit == 5
        assert balance.queries_made == 1
        assert len(orchestrator.dispatch_queue) == 0


class TestConcurrency:
    """Per-key serialization and cross-key independence."""

    @pytest.mark.asyncio
    async def test_concurrent_requests_for_same_key_fetch_once(self, db_path):
        first = seed_user(db_path, "first")
        second = seed_user(db_path, "second")
        seed_credits(db_path, first, available_limit=5)
        seed_credits(db_path, second, available_limit=5)
        gate = asyncio.Event()
        client = ScriptedBenefitsClient(gate=gate)
        orchestrator = build_orchestrator(db_path, client)

        tasks = [
            asyncio.ensure_future(orchestrator.submit_query(DOCUMENT, BENEFIT, "first")),
            asyncio.ensure_future(orchestrator.submit_query("12345678900", "9876543210", "second")),
        ]
        while not client.calls:
            await asyncio.sleep(0.01)
        assert orchestrator.dispatch_queue.waiting(KEY.value) == 1
        gate.set()
        first_result, second_result = await asyncio.gather(*tasks)

        assert len(client.calls) == 1
        assert first_result.origin == RecordOrigin.EXTERNAL
        assert second_result.origin == RecordOrigin.CACHE
        assert first_result.record.user_id == first
        assert second_result.record.user_id == second
        assert first_result.available_limit == 4
        assert second_result.available_limit == 4
        assert count_records(db_path) == 2
        assert len(orchestrator.dispatch_queue) == 0

    @pytest.mark.asyncio
    async def test_distinct_keys_for_one_user_both_debit(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5)
        gate = asyncio.Event()
        client = ScriptedBenefitsClient(gate=gate)
        orchestrator = build_orchestrator(db_path, client)

        tasks = [
            asyncio.ensure_future(orchestrator.submit_query(DOCUMENT, "111", "alice")),
            asyncio.ensure_future(orchestrator.submit_query(DOCUMENT, "222", "alice")),
        ]
        while len(client.calls) < 2:
            await asyncio.sleep(0.01)
        assert client.max_active == 2
        gate.set()
        results = await asyncio.gather(*tasks)

        assert sorted(r.available_limit for r in results) == [3, 4]
        balance = await CreditLedger(db_path).current_balance(user_id)
        assert balance.available_limit == 3
        assert balance.queries_made == 2

    @pytest.mark.asyncio
    async def test_many_concurrent_debits_never_overdraw(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=3)
        orchestrator = build_orchestrator(db_path, ScriptedBenefitsClient())

        outcomes = await asyncio.gather(
            *(orchestrator.submit_query(DOCUMENT, str(100 + n), "alice") for n in range(6)),
            return_exceptions=True,
        )

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(successes) == 3
        assert all(isinstance(f, InsufficientCredit) for f in failures)
        balance = await CreditLedger(db_path).current_balance(user_id)
        assert balance.available_limit == 0
        assert balance.queries_made == 3

    @pytest.mark.asyncio
    async def test_abandoned_request_still_completes(self, db_path):
        user_id = seed_user(db_path, "alice")
        seed_credits(db_path, user_id, available_limit=5)
        gate = asyncio.Event()
        client = ScriptedBenefitsClient(gate=gate)
        orchestrator = build_orchestrator(db_path, client)

        waiter = asyncio.ensure_future(orchestrator.submit_query(DOCUMENT, BENEFIT, "alice"))
        while not client.calls:
            await asyncio.sleep(0.01)
        waiter.cancel()
        gate.set()
        while orchestrator.dispatch_queue.is_busy(KEY.value):
            await asyncio.sleep(0.01)

        assert waiter.cancelled()
        assert count_records(db_path) == 1
        assert (await CreditLedger(db_path).current_balance(user_id)).available_limit == 4
