"""State store: record lifecycle, dedup index and linearizable updates."""

from __future__ import annotations

import asyncio
import sqlite3

import pytest

from crowdfund_relay.errors import AlreadyExistsError, InvalidTransitionError, NotFoundError
from crowdfund_relay.models.records import AppendResult, Contribution, CrowdfundStatus

from tests.factories import ALICE, BOB, CF_A, CF_B, CF_C, WEI, tx


def _contribution(n: int, amount: int, running_total: int, contributor: str = ALICE) -> Contribution:
    return Contribution(
        contributor=contributor,
        amount=amount,
        running_total=running_total,
        timestamp="2026-01-01T00:00:00+00:00",
        transaction_hash=tx(n),
        block_number=100 + n,
    )


# ── Create / get ─────────────────────────────────────────────────


async def test_create_and_get(store):
    """A new record starts Active with zero total and no contributions."""
    record = await store.create_entity(
        CF_A, creator=ALICE, token_name="Larry", token_symbol="LARRY", total_supply=10**27,
    )
    assert record.address == CF_A
    assert record.status is CrowdfundStatus.ACTIVE
    assert record.total_contributed == 0
    assert record.contributions == []
    assert record.total_supply == 10**27

    fetched = await store.get_entity(CF_A)
    assert fetched.token_symbol == "LARRY"
    assert fetched.creator == ALICE


async def test_create_duplicate_raises(store):
    await store.create_entity(CF_A)
    with pytest.raises(AlreadyExistsError):
        await store.create_entity(CF_A)


async def test_addresses_are_case_insensitive(store):
    await store.create_entity(CF_A.upper().replace("0X", "0x"))
    record = await store.get_entity(CF_A)
    assert record.address == CF_A


async def test_get_missing_raises(store):
    with pytest.raises(NotFoundError):
        await store.get_entity(CF_B)


# ── Status transitions ───────────────────────────────────────────


async def test_set_status_finalized(store):
    await store.create_entity(CF_A)
    token = "0x" + "77" * 20
    assert await store.set_status(CF_A, CrowdfundStatus.FINALIZED, token) is True

    record = await store.get_entity(CF_A)
    assert record.status is CrowdfundStatus.FINALIZED
    assert record.token_address == token


async def test_same_terminal_status_is_noop(store):
    """Replaying the terminal event returns False and changes nothing."""
    await store.create_entity(CF_A)
    await store.set_status(CF_A, CrowdfundStatus.REFUNDED)
    assert await store.set_status(CF_A, CrowdfundStatus.REFUNDED) is False
    assert (await store.get_entity(CF_A)).status is CrowdfundStatus.REFUNDED


async def test_terminal_status_never_changes(store):
    await store.create_entity(CF_A)
    await store.set_status(CF_A, CrowdfundStatus.FINALIZED)
    with pytest.raises(InvalidTransitionError):
        await store.set_status(CF_A, CrowdfundStatus.REFUNDED)
    with pytest.raises(InvalidTransitionError):
        await store.set_status(CF_A, CrowdfundStatus.ACTIVE)
    assert (await store.get_entity(CF_A)).status is CrowdfundStatus.FINALIZED


async def test_set_status_missing_raises(store):
    with pytest.raises(NotFoundError):
        await store.set_status(CF_C, CrowdfundStatus.FINALIZED)


async def test_list_active_addresses(store):
    for address in (CF_A, CF_B, CF_C):
        await store.create_entity(address)
    await store.set_status(CF_C, CrowdfundStatus.FINALIZED)

    assert await store.list_active_addresses() == {CF_A, CF_B}
    finalized = await store.list_entities(CrowdfundStatus.FINALIZED)
    assert [r.address for r in finalized] == [CF_C]
    assert len(await store.list_entities()) == 3


# ── Message handles ──────────────────────────────────────────────


async def test_attach_message_is_set_once(store):
    await store.create_entity(CF_A)
    assert await store.attach_message(CF_A, "m1", "t1") is True
    assert await store.attach_message(CF_A, "m2", "t2") is False

    record = await store.get_entity(CF_A)
    assert (record.message_id, record.thread_id) == ("m1", "t1")


async def test_create_with_message_id(store):
    await store.create_entity(CF_A, "m0")
    assert await store.attach_message(CF_A, "m1") is False
    assert (await store.get_entity(CF_A)).message_id == "m0"


# ── Contributions and dedup ──────────────────────────────────────


async def test_append_applies_and_sets_running_total(store):
    await store.create_entity(CF_A)
    result = await store.append_contribution_if_new(CF_A, _contribution(1, WEI, 3 * WEI))
    assert result is AppendResult.APPLIED

    record = await store.get_entity(CF_A)
    assert record.total_contributed == 3 * WEI  # ledger-reported, not a local sum
    assert len(record.contributions) == 1
    assert record.contributions[0].transaction_hash == tx(1)


async def test_duplicate_transaction_is_ignored(store):
    """Same (address, tx) twice yields Duplicate with exactly one contribution stored."""
    await store.create_entity(CF_A)
    first = await store.append_contribution_if_new(CF_A, _contribution(1, WEI, WEI))
    second = await store.append_contribution_if_new(CF_A, _contribution(1, WEI, WEI))

    assert first is AppendResult.APPLIED
    assert second is AppendResult.DUPLICATE
    record = await store.get_entity(CF_A)
    assert len(record.contributions) == 1
    assert record.total_contributed == WEI
    assert await store.is_processed(CF_A, tx(1))


async def test_same_tx_on_other_crowdfund_is_not_a_duplicate(store):
    await store.create_entity(CF_A)
    await store.create_entity(CF_B)
    assert await store.append_contribution_if_new(CF_A, _contribution(1, WEI, WEI)) is AppendResult.APPLIED
    assert await store.append_contribution_if_new(CF_B, _contribution(1, WEI, WEI)) is AppendResult.APPLIED


async def test_total_never_decreases(store):
    """A late replay with a smaller running total leaves the total in place."""
    await store.create_entity(CF_A)
    await store.append_contribution_if_new(CF_A, _contribution(2, WEI, 5 * WEI))
    await store.append_contribution_if_new(CF_A, _contribution(1, WEI, 4 * WEI))

    record = await store.get_entity(CF_A)
    assert record.total_contributed == 5 * WEI
    assert [c.transaction_hash for c in record.contributions] == [tx(2), tx(1)]


async def test_append_missing_raises(store):
    with pytest.raises(NotFoundError):
        await store.append_contribution_if_new(CF_B, _contribution(1, WEI, WEI))


async def test_uint256_amounts_survive(store):
    """Amounts above 64 bits round-trip exactly."""
    huge = 2**200 + 7
    await store.create_entity(CF_A, total_supply=2**255)
    await store.append_contribution_if_new(CF_A, _contribution(1, huge, huge))

    record = await store.get_entity(CF_A)
    assert record.total_contributed == huge
    assert record.contributions[0].amount == huge
    assert record.total_supply == 2**255


async def test_concurrent_appends_are_linearizable(store):
    """Interleaved appends lose nothing and replays still dedup."""
    await store.create_entity(CF_A)
    batch = [_contribution(n, WEI, n * WEI, BOB) for n in range(1, 21)]
    replays = [_contribution(n, WEI, n * WEI, BOB) for n in range(1, 21)]

    results = await asyncio.gather(
        *(store.append_contribution_if_new(CF_A, c) for c in batch + replays)
    )

    assert results.count(AppendResult.APPLIED) == 20
    assert results.count(AppendResult.DUPLICATE) == 20
    record = await store.get_entity(CF_A)
    assert len(record.contributions) == 20
    assert record.total_contributed == 20 * WEI


async def test_dedup_survives_terminal_status(store):
    """Dedup entries are retained after the record turns terminal."""
    await store.create_entity(CF_A)
    await store.append_contribution_if_new(CF_A, _contribution(1, WEI, WEI))
    await store.set_status(CF_A, CrowdfundStatus.FINALIZED)
    assert await store.is_processed(CF_A, tx(1))


# ── Activity log ─────────────────────────────────────────────────


async def test_failed_commit_leaves_nothing_behind(store, monkeypatch):
    """A write whose commit fails is rolled back, so the next write cannot
    commit it by accident."""
    original = store.db.commit
    calls = 0

    async def commit_once_failing():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise sqlite3.OperationalError("disk I/O error")
        await original()

    monkeypatch.setattr(store.db, "commit", commit_once_failing)

    with pytest.raises(sqlite3.OperationalError):
        await store.create_entity(CF_A)
    await store.log_activity("relay_started", "Relay started")

    with pytest.raises(NotFoundError):
        await store.get_entity(CF_A)
    assert await store.list_active_addresses() == set()
    assert [a.event_type for a in await store.get_recent_activity()] == ["relay_started"]


async def test_failed_status_update_is_rolled_back(store, monkeypatch):
    await store.create_entity(CF_A)
    original = store.db.commit
    calls = 0

    async def commit_once_failing():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise sqlite3.OperationalError("database is locked")
        await original()

    monkeypatch.setattr(store.db, "commit", commit_once_failing)

    with pytest.raises(sqlite3.OperationalError):
        await store.set_status(CF_A, CrowdfundStatus.FINALIZED)
    await store.attach_message(CF_A, "msg-1")

    record = await store.get_entity(CF_A)
    assert record.status is CrowdfundStatus.ACTIVE
    assert record.message_id == "msg-1"


async def test_activity_log_newest_first(store):
    await store.log_activity("relay_started", "Relay started")
    await store.log_activity("contribution", "1 ETH", address=CF_A, tx_hash=tx(1), amount=WEI)

    entries = await store.get_recent_activity(10)
    assert [e.event_type for e in entries] == ["contribution", "relay_started"]
    assert entries[0].amount == WEI
    assert entries[0].address == CF_A
    assert entries[1].amount is None


async def test_file_backed_store_persists(tmp_path):
    """State survives closing and reopening the database."""
    from crowdfund_relay.storage.sqlite import SQLiteStateStore

    path = str(tmp_path / "nested" / "state.db")
    first = SQLiteStateStore(path)
    await first.initialize()
    await first.create_entity(CF_A)
    await first.append_contribution_if_new(CF_A, _contribution(1, WEI, WEI))
    await first.close()

    second = SQLiteStateStore(path)
    await second.initialize()
    try:
        assert await second.list_active_addresses() == {CF_A}
        assert await second.append_contribution_if_new(
            CF_A, _contribution(1, WEI, WEI)
        ) is AppendResult.DUPLICATE
    finally:
        await second.close()
