"""SQLite persistence layer for the marketplace ledger."""
from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .models import (
    ItemLine,
    Listing,
    ListingDraft,
    ListingStatus,
    Offer,
    OfferDraft,
    OfferStatus,
    TradeConfirmation,
    TradeStatus,
)

_log = logging.getLogger(__name__)

_LISTING_COLUMNS = (
    "l.id, l.owner_id, l.item_id, l.quantity, l.asking_price, l.accepts_items,\n"
    "l.accepts_partial_offers, l.kind, l.note, l.status, l.created_at, l.updated_at,\n"
    "(SELECT COUNT(*) FROM offers o WHERE o.listing_id = l.id AND o.status = 'pending') AS offer_count"
)
_EDITABLE_LISTING_COLUMNS = frozenset(
    {"quantity", "asking_price", "accepts_items", "accepts_partial_offers", "note"}
)
_CONFIRMATION_SELECT = (
    "SELECT tc.*, l.owner_id AS seller_id, o.bidder_id AS buyer_id\n"
    "FROM trade_confirmations tc\n"
    "JOIN listings l ON tc.listing_id = l.id\n"
    "JOIN offers o ON tc.offer_id = o.id\n"
)


class Database:
    """Data access helper built on top of SQLite.

    Writes go through :meth:`transaction`, which serializes writers within the
    process and holds SQLite's write lock for the whole unit so concurrent
    processes cannot interleave with it either.
    """

    def __init__(self, path: str | os.PathLike[str], *, retries: int = 3) -> None:
        self.path = os.fspath(path)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.retries = max(1, retries)
        self._lock = asyncio.Lock()

    async def setup(self) -> None:
        async with self._connect() as db:
            await db.executescript(
                """
                CREATE TABLE IF NOT EXISTS listings (
                    id TEXT PRIMARY KEY,
                    owner_id INTEGER NOT NULL,
                    item_id INTEGER NOT NULL,
                    quantity INTEGER NOT NULL,
                    asking_price INTEGER NOT NULL CHECK (asking_price > 0),
                    accepts_items INTEGER NOT NULL DEFAULT 0,
                    accepts_partial_offers INTEGER NOT NULL DEFAULT 0,
                    kind TEXT NOT NULL DEFAULT 'selling' CHECK (kind IN ('selling', 'buying')),
                    note TEXT DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'pending', 'sold', 'removed', 'closed')),
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    CHECK (status != 'active' OR quantity > 0 OR quantity = -1)
                );

                CREATE TABLE IF NOT EXISTS offers (
                    id TEXT PRIMARY KEY,
                    listing_id TEXT NOT NULL REFERENCES listings (id),
                    bidder_id INTEGER NOT NULL,
                    coin_amount INTEGER NOT NULL DEFAULT 0 CHECK (coin_amount >= 0),
                    requested_quantity INTEGER CHECK (requested_quantity IS NULL OR requested_quantity > 0),
                    message TEXT DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'accepted', 'rejected')),
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS offer_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    offer_id TEXT NOT NULL REFERENCES offers (id),
                    item_id INTEGER NOT NULL,
                    quantity INTEGER NOT NULL CHECK (quantity > 0)
                );

                CREATE TABLE IF NOT EXISTS trade_confirmations (
                    id TEXT PRIMARY KEY,
                    offer_id TEXT NOT NULL REFERENCES offers (id),
                    listing_id TEXT NOT NULL REFERENCES listings (id),
                    seller_confirmed INTEGER NOT NULL DEFAULT 0,
                    buyer_confirmed INTEGER NOT NULL DEFAULT 0,
                    seller_confirmed_at TEXT,
                    buyer_confirmed_at TEXT,
                    accepted_quantity INTEGER,
                    reserved_quantity INTEGER NOT NULL,
                    holds_listing INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'completed', 'cancelled')),
                    completed_at TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    CHECK (status != 'completed' OR (seller_confirmed = 1 AND buyer_confirmed = 1))
                );

                CREATE INDEX IF NOT EXISTS idx_listings_status ON listings (status);
                CREATE INDEX IF NOT EXISTS idx_listings_owner ON listings (owner_id);
                CREATE INDEX IF NOT EXISTS idx_offers_listing ON offers (listing_id, status);
                CREATE INDEX IF NOT EXISTS idx_offers_bidder ON offers (bidder_id);
                CREATE INDEX IF NOT EXISTS idx_offer_items_offer ON offer_items (offer_id);
                CREATE UNIQUE INDEX IF NOT EXISTS idx_confirmations_live_offer
                    ON trade_confirmations (offer_id) WHERE status != 'cancelled';
                """
            )

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        # Autocommit mode; transaction() issues BEGIN/COMMIT itself.
        async with aiosqlite.connect(self.path, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    async def _begin(self, db: aiosqlite.Connection) -> None:
        for attempt in range(1, self.retries + 1):
            try:
                await db.execute("BEGIN IMMEDIATE")
                return
            except sqlite3.OperationalError as exc:
                if "locked" not in str(exc) or attempt == self.retries:
                    raise
                _log.warning("Ledger is locked, retrying transaction (attempt %s)", attempt)
                await asyncio.sleep(0.05 * attempt)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of statements as one atomic unit.

        Any exception raised inside the block rolls every statement back.
        """

        async with self._lock:
            async with self._connect() as db:
                await self._begin(db)
                try:
                    yield db
                except BaseException:
                    await db.execute("ROLLBACK")
                    raise
                await db.execute("COMMIT")

    # -- listings -----------------------------------------------------------

    async def fetch_listing(self, db: aiosqlite.Connection, listing_id: str) -> Optional[Listing]:
        cursor = await db.execute(
            f"SELECT {_LISTING_COLUMNS} FROM listings l WHERE l.id = ?", (listing_id,)
        )
        row = await cursor.fetchone()
        return Listing.from_row(row) if row else None

    async def insert_listing(
        self, db: aiosqlite.Connection, listing_id: str, owner_id: int, draft: ListingDraft
    ) -> None:
        await db.execute(
            "INSERT INTO listings(id, owner_id, item_id, quantity, asking_price, accepts_items,\n"
            "accepts_partial_offers, kind, note) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                listing_id,
                owner_id,
                draft.item_id,
                draft.quantity,
                draft.asking_price,
                int(draft.accepts_items),
                int(draft.accepts_partial_offers),
                draft.kind,
                draft.note.strip(),
            ),
        )

    async def update_listing_columns(
        self, db: aiosqlite.Connection, listing_id: str, columns: dict[str, Any]
    ) -> None:
        unknown = set(columns) - _EDITABLE_LISTING_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update listing columns: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = ?" for name in columns)
        values = [int(v) if isinstance(v, bool) else v for v in columns.values()]
        await db.execute(
            f"UPDATE listings SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (*values, listing_id),
        )

    async def set_listing_state(
        self, db: aiosqlite.Connection, listing_id: str, status: str, quantity: Optional[int] = None
    ) -> None:
        if quantity is None:
            await db.execute(
                "UPDATE listings SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (status, listing_id),
            )
        else:
            await db.execute(
                "UPDATE listings SET status = ?, quantity = ?, updated_at = CURRENT_TIMESTAMP\n"
                "WHERE id = ?",
                (status, quantity, listing_id),
            )

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        async with self._connect() as db:
            return await self.fetch_listing(db, listing_id)

    async def list_listings(
        self,
        *,
        statuses: Sequence[str] = (ListingStatus.ACTIVE,),
        owner_id: Optional[int] = None,
        item_ids: Optional[Iterable[int]] = None,
        limit: Optional[int] = None,
        order_by: str = "l.created_at DESC, l.rowid DESC",
    ) -> List[Listing]:
        clauses = [f"l.status IN ({', '.join('?' for _ in statuses)})"]
        params: list[Any] = list(statuses)
        if owner_id is not None:
            clauses.append("l.owner_id = ?")
            params.append(owner_id)
        if item_ids is not None:
            item_ids = list(item_ids)
            if not item_ids:
                return []
            clauses.append(f"l.item_id IN ({', '.join('?' for _ in item_ids)})")
            params.extend(item_ids)
        query = f"SELECT {_LISTING_COLUMNS} FROM listings l WHERE {' AND '.join(clauses)} ORDER BY {order_by}"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [Listing.from_row(row) for row in await cursor.fetchall()]

    async def listing_counts(self, owner_id: int) -> Tuple[int, int, int]:
        """Return ``(total, sold, active)`` listing counts for an owner."""

        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT COUNT(*),\n"
                "COUNT(CASE WHEN status = 'sold' THEN 1 END),\n"
                "COUNT(CASE WHEN status = 'active' THEN 1 END)\n"
                "FROM listings WHERE owner_id = ?",
                (owner_id,),
            )
            row = await cursor.fetchone()
            return row[0], row[1], row[2]

    # -- offers -------------------------------------------------------------

    async def fetch_item_lines(self, db: aiosqlite.Connection, offer_id: str) -> List[ItemLine]:
        cursor = await db.execute(
            "SELECT item_id, quantity FROM offer_items WHERE offer_id = ? ORDER BY id", (offer_id,)
        )
        return [ItemLine(row["item_id"], row["quantity"]) for row in await cursor.fetchall()]

    async def fetch_offer(self, db: aiosqlite.Connection, offer_id: str) -> Optional[Offer]:
        cursor = await db.execute("SELECT * FROM offers WHERE id = ?", (offer_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return Offer.from_row(row, await self.fetch_item_lines(db, offer_id))

    async def insert_offer(
        self,
        db: aiosqlite.Connection,
        offer_id: str,
        listing_id: str,
        bidder_id: int,
        draft: OfferDraft,
    ) -> None:
        await db.execute(
            "INSERT INTO offers(id, listing_id, bidder_id, coin_amount, requested_quantity, message)\n"
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                offer_id,
                listing_id,
                bidder_id,
                draft.coin_amount,
                draft.requested_quantity,
                draft.message.strip(),
            ),
        )
        await db.executemany(
            "INSERT INTO offer_items(offer_id, item_id, quantity) VALUES (?, ?, ?)",
            [(offer_id, line.item_id, line.quantity) for line in draft.item_lines],
        )

    async def set_offer_status(self, db: aiosqlite.Connection, offer_id: str, status: str) -> None:
        await db.execute(
            "UPDATE offers SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (status, offer_id),
        )

    async def reject_pending_offers(
        self, db: aiosqlite.Connection, listing_id: str, *, keep_offer_id: str
    ) -> List[str]:
        """Reject every other pending offer on a listing and return their ids."""

        cursor = await db.execute(
            "SELECT id FROM offers WHERE listing_id = ? AND id != ? AND status = 'pending'",
            (listing_id, keep_offer_id),
        )
        rejected = [row["id"] for row in await cursor.fetchall()]
        await db.execute(
            "UPDATE offers SET status = 'rejected', updated_at = CURRENT_TIMESTAMP\n"
            "WHERE listing_id = ? AND id != ? AND status = 'pending'",
            (listing_id, keep_offer_id),
        )
        return rejected

    async def get_offer(self, offer_id: str) -> Optional[Offer]:
        async with self._connect() as db:
            return await self.fetch_offer(db, offer_id)

    async def list_offers(
        self,
        *,
        listing_id: Optional[str] = None,
        bidder_id: Optional[int] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[Offer]:
        clauses: list[str] = []
        params: list[Any] = []
        if listing_id is not None:
            clauses.append("listing_id = ?")
            params.append(listing_id)
        if bidder_id is not None:
            clauses.append("bidder_id = ?")
            params.append(bidder_id)
        if statuses is not None:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT * FROM offers {where} ORDER BY created_at DESC, rowid DESC", params
            )
            rows = await cursor.fetchall()
            return [Offer.from_row(row, await self.fetch_item_lines(db, row["id"])) for row in rows]

    # -- trade confirmations ------------------------------------------------

    async def insert_confirmation(
        self,
        db: aiosqlite.Connection,
        confirmation_id: str,
        offer_id: str,
        listing_id: str,
        *,
        reserved_quantity: int,
        accepted_quantity: Optional[int] = None,
        holds_listing: bool = False,
    ) -> None:
        await db.execute(
            "INSERT INTO trade_confirmations(\n"
            "    id, offer_id, listing_id, accepted_quantity, reserved_quantity, holds_listing\n"
            ") VALUES (?, ?, ?, ?, ?, ?)",
            (confirmation_id, offer_id, listing_id, accepted_quantity, reserved_quantity, holds_listing),
        )

    async def fetch_confirmation(
        self, db: aiosqlite.Connection, confirmation_id: str
    ) -> Optional[TradeConfirmation]:
        cursor = await db.execute(f"{_CONFIRMATION_SELECT}WHERE tc.id = ?", (confirmation_id,))
        row = await cursor.fetchone()
        return TradeConfirmation.from_row(row) if row else None

    async def set_confirmation_slot(
        self, db: aiosqlite.Connection, confirmation_id: str, side: str
    ) -> None:
        if side not in ("seller", "buyer"):
            raise ValueError(f"Unknown confirmation side: {side}")
        await db.execute(
            f"UPDATE trade_confirmations SET {side}_confirmed = 1, {side}_confirmed_at = CURRENT_TIMESTAMP,\n"
            "updated_at = CURRENT_TIMESTAMP WHERE id = ? AND status = 'pending'",
            (confirmation_id,),
        )

    async def set_confirmation_status(
        self, db: aiosqlite.Connection, confirmation_id: str, status: str
    ) -> None:
        completed = ", completed_at = CURRENT_TIMESTAMP" if status == TradeStatus.COMPLETED else ""
        await db.execute(
            f"UPDATE trade_confirmations SET status = ?, updated_at = CURRENT_TIMESTAMP{completed}\n"
            "WHERE id = ?",
            (status, confirmation_id),
        )

    async def get_confirmation(self, confirmation_id: str) -> Optional[TradeConfirmation]:
        async with self._connect() as db:
            return await self.fetch_confirmation(db, confirmation_id)

    async def list_confirmations(
        self,
        *,
        offer_id: Optional[str] = None,
        user_id: Optional[int] = None,
        statuses: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[TradeConfirmation]:
        clauses: list[str] = []
        params: list[Any] = []
        if offer_id is not None:
            clauses.append("tc.offer_id = ?")
            params.append(offer_id)
        if user_id is not None:
            clauses.append("(l.owner_id = ? OR o.bidder_id = ?)")
            params.extend((user_id, user_id))
        if statuses is not None:
            clauses.append(f"tc.status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        query = _CONFIRMATION_SELECT
        if clauses:
            query += f"WHERE {' AND '.join(clauses)}\n"
        query += "ORDER BY tc.created_at DESC, tc.rowid DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend((limit, offset))
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            return [TradeConfirmation.from_row(row) for row in await cursor.fetchall()]

    async def count_confirmations(self, statuses: Optional[Sequence[str]] = None) -> int:
        query = "SELECT COUNT(*) FROM trade_confirmations"
        params: list[Any] = []
        if statuses is not None:
            query += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        async with self._connect() as db:
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            return row[0]
