"""Listing lifecycle: creation, owner edits, removal and trade reservations."""
from __future__ import annotations

import logging
import secrets
from typing import Any, List, Mapping, Optional, Union

import aiosqlite

from .catalog import ItemCatalog
from .database import Database
from .errors import InvalidState, ListingNotActive, NotFoundOrUnauthorized, ValidationError
from .models import (
    UNLIMITED,
    Listing,
    ListingChanges,
    ListingDraft,
    ListingStatus,
    SellerProfile,
)
from .notifications import NotificationDispatcher

_log = logging.getLogger(__name__)


def new_id() -> str:
    return secrets.token_hex(16)


class ListingManager:
    """Owns listing quantity and status transitions."""

    def __init__(
        self,
        db: Database,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        catalog: Optional[ItemCatalog] = None,
    ) -> None:
        self.db = db
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.catalog = catalog or ItemCatalog()

    async def create_listing(
        self,
        owner_id: int,
        item_id: int,
        quantity: int,
        asking_price: int,
        *,
        accepts_items: bool = False,
        accepts_partial_offers: bool = False,
        kind: str = "selling",
        note: str = "",
    ) -> Listing:
        draft = ListingDraft(
            item_id=item_id,
            quantity=quantity,
            asking_price=asking_price,
            accepts_items=accepts_items,
            accepts_partial_offers=accepts_partial_offers,
            kind=kind,
            note=note,
        )
        draft.validate()

        listing_id = new_id()
        async with self.db.transaction() as conn:
            await self.db.insert_listing(conn, listing_id, owner_id, draft)
            listing = await self.db.fetch_listing(conn, listing_id)

        _log.info("Listing %s created by %s", listing_id, owner_id)
        self.dispatcher.dispatch("listing_created", listing)
        return listing

    async def _owned_active(
        self, conn: aiosqlite.Connection, listing_id: str, owner_id: int
    ) -> Listing:
        listing = await self.db.fetch_listing(conn, listing_id)
        if listing is None or listing.owner_id != owner_id or listing.status != ListingStatus.ACTIVE:
            raise NotFoundOrUnauthorized("Listing not found or not authorized")
        return listing

    async def update_listing(
        self,
        listing_id: str,
        owner_id: int,
        changes: Union[ListingChanges, Mapping[str, Any]],
    ) -> Listing:
        if isinstance(changes, ListingChanges):
            changes.validate()
        else:
            changes = ListingChanges.from_payload(changes)

        async with self.db.transaction() as conn:
            await self._owned_active(conn, listing_id, owner_id)
            await self.db.update_listing_columns(conn, listing_id, changes.as_columns())
            listing = await self.db.fetch_listing(conn, listing_id)

        _log.info("Listing %s updated by %s", listing_id, owner_id)
        self.dispatcher.dispatch("listing_updated", listing)
        return listing

    async def remove_listing(self, listing_id: str, owner_id: int) -> Listing:
        async with self.db.transaction() as conn:
            await self._owned_active(conn, listing_id, owner_id)
            await self.db.set_listing_state(conn, listing_id, ListingStatus.REMOVED)
            listing = await self.db.fetch_listing(conn, listing_id)

        _log.info("Listing %s removed by %s", listing_id, owner_id)
        self.dispatcher.dispatch("listing_removed", listing)
        return listing

    async def close_listing(self, listing_id: str) -> Listing:
        """Force a listing closed on behalf of a moderator."""

        async with self.db.transaction() as conn:
            listing = await self.db.fetch_listing(conn, listing_id)
            if listing is None:
                raise NotFoundOrUnauthorized("Listing not found")
            if listing.status == ListingStatus.SOLD:
                raise InvalidState(f"Listing {listing_id} is already sold")
            if listing.status == ListingStatus.PENDING:
                raise InvalidState(f"Listing {listing_id} is held by an open trade; force-close it first")
            await self.db.set_listing_state(conn, listing_id, ListingStatus.CLOSED)
            listing = await self.db.fetch_listing(conn, listing_id)

        _log.info("Listing %s closed by moderation", listing_id)
        return listing

    # -- transitions used inside other managers' transactions ---------------

    async def reserve_for_trade(
        self, conn: aiosqlite.Connection, listing_id: str, consumed_quantity: int
    ) -> bool:
        """Hold ``consumed_quantity`` units for an accepted offer.

        Returns ``True`` when the reservation exhausted the listing, which then
        moves to ``pending``. Passing :data:`UNLIMITED` reserves everything.
        """

        listing = await self.db.fetch_listing(conn, listing_id)
        if listing is None:
            raise NotFoundOrUnauthorized("Listing not found")
        if listing.status != ListingStatus.ACTIVE:
            raise ListingNotActive(listing_id)

        if listing.is_unlimited:
            if consumed_quantity == UNLIMITED:
                await self.db.set_listing_state(conn, listing_id, ListingStatus.PENDING)
                return True
            return False

        if consumed_quantity <= 0 or consumed_quantity > listing.quantity:
            raise ValidationError(
                f"Cannot reserve {consumed_quantity} of {listing.quantity} remaining units"
            )
        remaining = listing.quantity - consumed_quantity
        if remaining == 0:
            await self.db.set_listing_state(conn, listing_id, ListingStatus.PENDING, 0)
            return True
        await self.db.set_listing_state(conn, listing_id, ListingStatus.ACTIVE, remaining)
        return False

    async def revert_to_active(
        self,
        conn: aiosqlite.Connection,
        listing_id: str,
        restored_quantity: int,
        *,
        releases_listing: bool = True,
    ) -> None:
        """Give reserved units back to a listing after its trade was unwound.

        A ``pending`` listing only reopens when ``releases_listing`` is set,
        i.e. the unwound trade is the one whose reservation exhausted it. Any
        other trade just returns its units while the holder stays open.
        """

        listing = await self.db.fetch_listing(conn, listing_id)
        if listing is None:
            raise NotFoundOrUnauthorized("Listing not found")
        if listing.status not in (ListingStatus.ACTIVE, ListingStatus.PENDING):
            # Removed, closed or sold listings stay down; the units are simply released.
            _log.info("Listing %s is %s, not reactivating", listing_id, listing.status)
            return

        if listing.is_unlimited or restored_quantity == UNLIMITED:
            quantity = UNLIMITED
        else:
            quantity = listing.quantity + restored_quantity
        status = ListingStatus.ACTIVE if releases_listing else listing.status
        await self.db.set_listing_state(conn, listing_id, status, quantity)

    async def settle_sale(
        self, conn: aiosqlite.Connection, listing_id: str, *, holds_listing: bool
    ) -> bool:
        """Mark the listing sold when the completed trade is the one holding all of it."""

        if not holds_listing:
            return False
        listing = await self.db.fetch_listing(conn, listing_id)
        if listing is None or listing.status != ListingStatus.PENDING:
            return False
        await self.db.set_listing_state(conn, listing_id, ListingStatus.SOLD)
        return True

    # -- read models --------------------------------------------------------

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        return await self.db.get_listing(listing_id)

    async def browse_listings(self, limit: Optional[int] = None) -> List[Listing]:
        return await self.db.list_listings(limit=limit)

    async def user_listings(self, owner_id: int) -> List[Listing]:
        return await self.db.list_listings(owner_id=owner_id)

    async def search_listings(self, term: str, limit: int = 20) -> List[Listing]:
        """Find active listings whose item name fuzzily matches ``term``."""

        matches = self.catalog.search(term, limit=limit)
        if not matches:
            return []
        rank = {item_id: position for position, (item_id, _) in enumerate(matches)}
        listings = await self.db.list_listings(item_ids=rank)
        listings.sort(key=lambda listing: rank[listing.item_id])
        return listings

    async def seller_profile(self, owner_id: int) -> SellerProfile:
        total, sold, active = await self.db.listing_counts(owner_id)
        listings = await self.db.list_listings(owner_id=owner_id, limit=10)
        recent_sales = await self.db.list_listings(
            statuses=(ListingStatus.SOLD,),
            owner_id=owner_id,
            limit=5,
            order_by="l.updated_at DESC, l.rowid DESC",
        )
        return SellerProfile(
            owner_id=owner_id,
            total_listings=total,
            total_sales=sold,
            active_listings=active,
            listings=tuple(listings),
            recent_sales=tuple(recent_sales),
        )
