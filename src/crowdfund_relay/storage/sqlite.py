"""SQLite implementation of the StateStore protocol."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from crowdfund_relay.errors import (
    AlreadyExistsError,
    InvalidTransitionError,
    NotFoundError,
)
from crowdfund_relay.models.records import (
    ActivityRecord,
    AppendResult,
    Contribution,
    CrowdfundRecord,
    CrowdfundStatus,
)

log = logging.getLogger(__name__)

# Amounts are uint256 on the ledger; they are kept as decimal TEXT so SQLite's
# 64-bit INTEGER never truncates them.
SCHEMA = """
-- Tracked crowdfunds
CREATE TABLE IF NOT EXISTS crowdfunds (
    address TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'active',
    creator TEXT,
    party TEXT,
    token_name TEXT,
    token_symbol TEXT,
    total_supply TEXT,
    token_address TEXT,
    message_id TEXT,
    thread_id TEXT,
    total_contributed TEXT NOT NULL DEFAULT '0',
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_crowdfunds_status ON crowdfunds(status);

-- Append-only contribution history, id order = arrival order
CREATE TABLE IF NOT EXISTS contributions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    address TEXT NOT NULL,
    contributor TEXT NOT NULL,
    amount TEXT NOT NULL,
    running_total TEXT NOT NULL,
    tx_hash TEXT NOT NULL,
    block_number INTEGER NOT NULL DEFAULT 0,
    observed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_contributions_address ON contributions(address);

-- Dedup index of applied transactions
CREATE TABLE IF NOT EXISTS processed_txs (
    address TEXT NOT NULL,
    tx_hash TEXT NOT NULL,
    processed_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (address, tx_hash)
);

-- Activity log
CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    address TEXT,
    tx_hash TEXT,
    amount TEXT,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_activity_created ON activity_log(created_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _key(value: str) -> str:
    return value.lower()


def _opt_int(value: str | None) -> int | None:
    return int(value) if value is not None else None


class SQLiteStateStore:
    """SQLite-backed implementation of the StateStore protocol.

    All writes go through one connection and are serialised by a store-wide
    lock, so a read-modify-write on a record never interleaves with another
    write and each multi-statement update commits or rolls back as a unit.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._db is not None:
            return
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not initialized. Call initialize() first."
        return self._db

    # ── Crowdfunds ─────────────────────────────────────────

    async def create_entity(
        self,
        address: str,
        message_id: str | None = None,
        *,
        creator: str | None = None,
        party: str | None = None,
        token_name: str | None = None,
        token_symbol: str | None = None,
        total_supply: int | None = None,
    ) -> CrowdfundRecord:
        address = _key(address)
        now = _now()
        async with self._write_lock:
            if await self._fetch_row(address) is not None:
                raise AlreadyExistsError(address)
            try:
                await self.db.execute(
                    "INSERT INTO crowdfunds"
                    " (address, status, creator, party, token_name, token_symbol,"
                    "  total_supply, message_id, total_contributed, created_at, updated_at)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, '0', ?, ?)",
                    (
                        address, CrowdfundStatus.ACTIVE.value,
                        creator.lower() if creator else None,
                        party.lower() if party else None,
                        token_name, token_symbol,
                        str(total_supply) if total_supply is not None else None,
                        message_id, now, now,
                    ),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        log.debug("Tracking crowdfund %s", address)
        return await self.get_entity(address)

    async def get_entity(self, address: str) -> CrowdfundRecord:
        address = _key(address)
        row = await self._fetch_row(address)
        if row is None:
            raise NotFoundError(address)
        record = _row_to_record(row)
        async with self.db.execute(
            "SELECT * FROM contributions WHERE address=? ORDER BY id", (address,)
        ) as cur:
            record.contributions = [_row_to_contribution(r) async for r in cur]
        return record

    async def set_status(
        self, address: str, status: CrowdfundStatus, token_address: str | None = None,
    ) -> bool:
        address = _key(address)
        async with self._write_lock:
            row = await self._fetch_row(address)
            if row is None:
                raise NotFoundError(address)

            current = CrowdfundStatus(row["status"])
            if current == status:
                return False
            if current.is_terminal:
                raise InvalidTransitionError(address, current.value, status.value)

            try:
                await self.db.execute(
                    "UPDATE crowdfunds SET status=?,"
                    " token_address=COALESCE(?, token_address), updated_at=?"
                    " WHERE address=?",
                    (
                        status.value,
                        token_address.lower() if token_address else None,
                        _now(), address,
                    ),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        log.info("Crowdfund %s: %s -> %s", address, current.value, status.value)
        return True

    async def attach_message(
        self, address: str, message_id: str, thread_id: str | None = None,
    ) -> bool:
        address = _key(address)
        async with self._write_lock:
            row = await self._fetch_row(address)
            if row is None:
                raise NotFoundError(address)
            if row["message_id"] is not None:
                return False
            try:
                await self.db.execute(
                    "UPDATE crowdfunds SET message_id=?, thread_id=?, updated_at=?"
                    " WHERE address=?",
                    (message_id, thread_id, _now(), address),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return True

    async def append_contribution_if_new(
        self, address: str, contribution: Contribution,
    ) -> AppendResult:
        address = _key(address)
        tx_hash = _key(contribution.transaction_hash)
        async with self._write_lock:
            row = await self._fetch_row(address)
            if row is None:
                raise NotFoundError(address)

            try:
                cur = await self.db.execute(
                    "INSERT OR IGNORE INTO processed_txs (address, tx_hash, processed_at)"
                    " VALUES (?, ?, ?)",
                    (address, tx_hash, _now()),
                )
                if cur.rowcount == 0:
                    await self.db.rollback()
                    return AppendResult.DUPLICATE

                await self.db.execute(
                    "INSERT INTO contributions"
                    " (address, contributor, amount, running_total, tx_hash,"
                    "  block_number, observed_at)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        address, contribution.contributor.lower(),
                        str(contribution.amount), str(contribution.running_total),
                        tx_hash, contribution.block_number, contribution.timestamp,
                    ),
                )
                # Never let a late replay move the total backwards
                new_total = max(int(row["total_contributed"]), contribution.running_total)
                await self.db.execute(
                    "UPDATE crowdfunds SET total_contributed=?, updated_at=? WHERE address=?",
                    (str(new_total), _now(), address),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return AppendResult.APPLIED

    async def list_active_addresses(self) -> set[str]:
        async with self.db.execute(
            "SELECT address FROM crowdfunds WHERE status=?",
            (CrowdfundStatus.ACTIVE.value,),
        ) as cur:
            return {row["address"] async for row in cur}

    async def list_entities(
        self, status: CrowdfundStatus | None = None,
    ) -> list[CrowdfundRecord]:
        if status is not None:
            sql = "SELECT * FROM crowdfunds WHERE status=? ORDER BY created_at DESC"
            params: tuple = (status.value,)
        else:
            sql = "SELECT * FROM crowdfunds ORDER BY created_at DESC"
            params = ()
        async with self.db.execute(sql, params) as cur:
            return [_row_to_record(row) async for row in cur]

    async def is_processed(self, address: str, tx_hash: str) -> bool:
        async with self.db.execute(
            "SELECT 1 FROM processed_txs WHERE address=? AND tx_hash=?",
            (_key(address), _key(tx_hash)),
        ) as cur:
            return await cur.fetchone() is not None

    async def _fetch_row(self, address: str) -> aiosqlite.Row | None:
        async with self.db.execute(
            "SELECT * FROM crowdfunds WHERE address=?", (address,)
        ) as cur:
            return await cur.fetchone()

    # ── Activity log ───────────────────────────────────────

    async def log_activity(
        self,
        event_type: str,
        message: str,
        address: str | None = None,
        tx_hash: str | None = None,
        amount: int | None = None,
    ) -> None:
        async with self._write_lock:
            try:
                await self.db.execute(
                    "INSERT INTO activity_log"
                    " (event_type, address, tx_hash, amount, message, created_at)"
                    " VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        event_type,
                        _key(address) if address else None,
                        _key(tx_hash) if tx_hash else None,
                        str(amount) if amount is not None else None,
                        message, _now(),
                    ),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

    async def get_recent_activity(self, limit: int = 50) -> list[ActivityRecord]:
        async with self.db.execute(
            "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?", (limit,)
        ) as cur:
            return [
                ActivityRecord(
                    id=row["id"],
                    event_type=row["event_type"],
                    address=row["address"],
                    tx_hash=row["tx_hash"],
                    amount=_opt_int(row["amount"]),
                    message=row["message"],
                    created_at=row["created_at"],
                )
                async for row in cur
            ]


# ── Row converters ─────────────────────────────────────────


def _row_to_record(row: aiosqlite.Row) -> CrowdfundRecord:
    return CrowdfundRecord(
        address=row["address"],
        status=CrowdfundStatus(row["status"]),
        creator=row["creator"],
        party=row["party"],
        token_name=row["token_name"],
        token_symbol=row["token_symbol"],
        total_supply=_opt_int(row["total_supply"]),
        token_address=row["token_address"],
        message_id=row["message_id"],
        thread_id=row["thread_id"],
        total_contributed=int(row["total_contributed"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_contribution(row: aiosqlite.Row) -> Contribution:
    return Contribution(
        contributor=row["contributor"],
        amount=int(row["amount"]),
        running_total=int(row["running_total"]),
        timestamp=row["observed_at"],
        transaction_hash=row["tx_hash"],
        block_number=row["block_number"],
    )
