"""
Tests for the SQLite ledger store.

Tests:
- Idempotent schema and document creation
- Conditional debit, referenced credit applied once
- Audit trail entries
- Pending credit queue
- Watcher notification after commit
"""

import sqlite3

import pytest

from slidegen.models.ledger import PendingCredit, TokenBalance
from slidegen.storage.ledger_store import LedgerStore


@pytest.mark.asyncio
async def test_initialize_is_idempotent(tmp_path):
    store = LedgerStore(str(tmp_path / "nested" / "ledger.db"))
    await store.initialize()
    await store.initialize()

    assert (tmp_path / "nested" / "ledger.db").exists()
    store.close()


@pytest.mark.asyncio
async def test_ensure_document_does_not_overwrite(store):
    await store.ensure_document("u1")
    await store.apply_debit("u1", 1)

    balance = await store.ensure_document("u1", TokenBalance(free_units=5, premium_units=5))

    assert balance == TokenBalance(free_units=0, premium_units=0)


@pytest.mark.asyncio
async def test_get_balance_missing_document(store):
    assert await store.get_balance("nobody") is None


@pytest.mark.asyncio
async def test_apply_debit_missing_document_returns_none(store):
    assert await store.apply_debit("nobody", 1) is None


@pytest.mark.asyncio
async def test_apply_debit_insufficient_changes_nothing(store):
    await store.ensure_document("u1")

    assert await store.apply_debit("u1", 2) is None
    assert await store.get_balance("u1") == TokenBalance(free_units=1, premium_units=0)
    assert await store.list_entries("u1") == []


@pytest.mark.asyncio
async def test_apply_debit_rejects_non_positive_units(store):
    await store.ensure_document("u1")

    with pytest.raises(ValueError):
        await store.apply_debit("u1", 0)


@pytest.mark.asyncio
async def test_credit_reference_applied_once(store):
    await store.ensure_document("u1")

    first = await store.apply_credit("u1", 3, reference="txn_1")
    second = await store.apply_credit("u1", 3, reference="txn_1")

    assert first == TokenBalance(free_units=1, premium_units=3)
    assert second == first


@pytest.mark.asyncio
async def test_credit_without_reference_always_applies(store):
    await store.ensure_document("u1")

    await store.apply_credit("u1", 1)
    await store.apply_credit("u1", 1)

    assert (await store.get_balance("u1")).premium_units == 2


@pytest.mark.asyncio
async def test_credit_missing_document_leaves_no_audit_row(store):
    assert await store.apply_credit("ghost", 2, reference="txn_ghost") is None
    assert await store.list_entries("ghost") == []


@pytest.mark.asyncio
async def test_audit_trail_records_split(store):
    await store.ensure_document("u1")
    await store.apply_credit("u1", 2, reference="txn_1")
    await store.apply_debit("u1", 2, reference="pres_1")

    entries = await store.list_entries("u1")

    assert [(e.kind, e.free_delta, e.premium_delta) for e in entries] == [
        ("credit", 0, 2),
        ("debit", -1, -1),
    ]
    assert entries[1].reference == "pres_1"


@pytest.mark.asyncio
async def test_check_constraint_blocks_negative_balance(store):
    await store.ensure_document("u1")
    conn = store._get_connection()

    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("UPDATE ledgers SET free_tokens = -1 WHERE user_id = 'u1'")


@pytest.mark.asyncio
async def test_watchers_notified_after_commit(store):
    seen: list[TokenBalance] = []
    unwatch = store.watch("u1", seen.append)

    await store.ensure_document("u1")
    await store.apply_debit("u1", 1)
    unwatch()
    await store.apply_credit("u1", 1)

    assert seen == [
        TokenBalance(free_units=1, premium_units=0),
        TokenBalance(free_units=0, premium_units=0),
    ]
    assert store.watcher_count("u1") == 0


@pytest.mark.asyncio
async def test_pending_credit_queue(store):
    pending = PendingCredit(user_id="u1", purchase_id="txn_1", units=3, last_error="timeout")

    assert await store.enqueue_pending_credit(pending) is True
    assert await store.enqueue_pending_credit(pending) is False
    assert await store.count_pending_credits() == 1

    assert await store.record_pending_credit_failure("u1", "txn_1", "HTTP 503") is True
    [queued] = await store.list_pending_credits("u1")
    assert queued.units == 3
    assert queued.attempts == 1
    assert queued.last_error == "HTTP 503"

    assert await store.list_pending_credits("someone_else") == []
    assert await store.delete_pending_credit("u1", "txn_1") is True
    assert await store.count_pending_credits() == 0
