"""Offers against listings and the owner's accept/reject decisions."""
from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

import aiosqlite

from .database import Database
from .errors import ListingNotActive, NotFoundOrUnauthorized, SelfTradeForbidden, ValidationError
from .listings import ListingManager, new_id
from .models import (
    UNLIMITED,
    ItemLine,
    Listing,
    ListingStatus,
    Offer,
    OfferDraft,
    OfferStatus,
    TradeConfirmation,
)
from .notifications import NotificationDispatcher

_log = logging.getLogger(__name__)


def _coerce_item_lines(lines: Iterable[Union[ItemLine, Mapping[str, Any]]]) -> Tuple[ItemLine, ...]:
    return tuple(line if isinstance(line, ItemLine) else ItemLine.from_payload(line) for line in lines)


class OfferManager:
    """Creates offers and resolves them on behalf of the listing owner."""

    def __init__(
        self,
        db: Database,
        listings: ListingManager,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.db = db
        self.listings = listings
        self.dispatcher = dispatcher or listings.dispatcher

    async def create_offer(
        self,
        listing_id: str,
        bidder_id: int,
        coin_amount: int = 0,
        requested_quantity: Optional[int] = None,
        item_lines: Iterable[Union[ItemLine, Mapping[str, Any]]] = (),
        message: str = "",
    ) -> Offer:
        draft = OfferDraft(
            coin_amount=coin_amount,
            requested_quantity=requested_quantity,
            item_lines=_coerce_item_lines(item_lines),
            message=message,
        )
        draft.validate()

        offer_id = new_id()
        async with self.db.transaction() as conn:
            listing = await self.db.fetch_listing(conn, listing_id)
            if listing is None:
                raise NotFoundOrUnauthorized("Listing not found")
            if listing.status != ListingStatus.ACTIVE:
                raise ListingNotActive(listing_id)
            if listing.owner_id == bidder_id:
                raise SelfTradeForbidden()
            if (
                draft.requested_quantity is not None
                and not listing.is_unlimited
                and draft.requested_quantity > listing.quantity
            ):
                raise ValidationError(
                    f"Requested quantity {draft.requested_quantity} exceeds the "
                    f"{listing.quantity} available"
                )
            if draft.item_lines and not listing.accepts_items:
                raise ValidationError("This listing does not accept items in trade")

            await self.db.insert_offer(conn, offer_id, listing_id, bidder_id, draft)
            offer = await self.db.fetch_offer(conn, offer_id)

        _log.info("Offer %s placed on listing %s by %s", offer_id, listing_id, bidder_id)
        self.dispatcher.dispatch("offer_received", listing, offer)
        return offer

    async def _pending_offer_for_owner(
        self, conn: aiosqlite.Connection, offer_id: str, owner_id: int
    ) -> Tuple[Offer, Listing]:
        offer = await self.db.fetch_offer(conn, offer_id)
        if offer is None or offer.status != OfferStatus.PENDING:
            raise NotFoundOrUnauthorized("Offer not found or not authorized")
        listing = await self.db.fetch_listing(conn, offer.listing_id)
        if listing is None or listing.owner_id != owner_id:
            raise NotFoundOrUnauthorized("Offer not found or not authorized")
        return offer, listing

    async def _accept(
        self,
        conn: aiosqlite.Connection,
        offer: Offer,
        listing: Listing,
        consumed_quantity: int,
        accepted_quantity: Optional[int],
    ) -> Tuple[TradeConfirmation, List[Offer]]:
        await self.db.set_offer_status(conn, offer.id, OfferStatus.ACCEPTED)
        exhausted = await self.listings.reserve_for_trade(conn, listing.id, consumed_quantity)

        confirmation_id = new_id()
        await self.db.insert_confirmation(
            conn,
            confirmation_id,
            offer.id,
            listing.id,
            reserved_quantity=consumed_quantity,
            accepted_quantity=accepted_quantity,
            holds_listing=exhausted,
        )

        rejected: List[Offer] = []
        if exhausted:
            for rejected_id in await self.db.reject_pending_offers(conn, listing.id, keep_offer_id=offer.id):
                rejected.append(await self.db.fetch_offer(conn, rejected_id))
        return await self.db.fetch_confirmation(conn, confirmation_id), rejected

    def _announce_acceptance(
        self, confirmation: TradeConfirmation, offer: Offer, listing: Listing, rejected: List[Offer]
    ) -> None:
        _log.info(
            "Offer %s accepted on listing %s, trade %s opened (%s competing offers rejected)",
            offer.id,
            listing.id,
            confirmation.id,
            len(rejected),
        )
        self.dispatcher.dispatch("offer_accepted", listing, offer, confirmation)
        for other in rejected:
            self.dispatcher.dispatch("offer_rejected", listing, other)

    async def accept_offer(self, offer_id: str, owner_id: int) -> str:
        """Accept an offer for everything left on the listing.

        Every other pending offer on the listing is rejected in the same
        transaction. Returns the new trade confirmation id.
        """

        async with self.db.transaction() as conn:
            offer, listing = await self._pending_offer_for_owner(conn, offer_id, owner_id)
            if listing.status != ListingStatus.ACTIVE:
                raise ListingNotActive(listing.id)

            consumed = UNLIMITED if listing.is_unlimited else listing.quantity
            confirmation, rejected = await self._accept(conn, offer, listing, consumed, None)
            offer = await self.db.fetch_offer(conn, offer_id)
            listing = await self.db.fetch_listing(conn, listing.id)

        self._announce_acceptance(confirmation, offer, listing, rejected)
        return confirmation.id

    async def accept_partial_offer(self, offer_id: str, owner_id: int, accepted_quantity: int) -> str:
        """Accept an offer for ``accepted_quantity`` units.

        Competing offers stay pending unless this acceptance exhausts the
        listing.
        """

        if isinstance(accepted_quantity, bool) or not isinstance(accepted_quantity, int):
            raise ValidationError("Accepted quantity must be an integer")
        if accepted_quantity <= 0:
            raise ValidationError("Accepted quantity must be positive")

        async with self.db.transaction() as conn:
            offer, listing = await self._pending_offer_for_owner(conn, offer_id, owner_id)
            if listing.status != ListingStatus.ACTIVE:
                raise ListingNotActive(listing.id)

            if offer.requested_quantity is not None and accepted_quantity > offer.requested_quantity:
                raise ValidationError(
                    f"Accepted quantity {accepted_quantity} exceeds the {offer.requested_quantity} requested"
                )
            if not listing.is_unlimited and accepted_quantity > listing.quantity:
                raise ValidationError(
                    f"Accepted quantity {accepted_quantity} exceeds the {listing.quantity} remaining"
                )

            confirmation, rejected = await self._accept(
                conn, offer, listing, accepted_quantity, accepted_quantity
            )
            offer = await self.db.fetch_offer(conn, offer_id)
            listing = await self.db.fetch_listing(conn, listing.id)

        self._announce_acceptance(confirmation, offer, listing, rejected)
        return confirmation.id

    async def reject_offer(self, offer_id: str, owner_id: int) -> Offer:
        async with self.db.transaction() as conn:
            offer, listing = await self._pending_offer_for_owner(conn, offer_id, owner_id)
            await self.db.set_offer_status(conn, offer_id, OfferStatus.REJECTED)
            offer = await self.db.fetch_offer(conn, offer_id)

        _log.info("Offer %s rejected by %s", offer_id, owner_id)
        self.dispatcher.dispatch("offer_rejected", listing, offer)
        return offer

    # -- read models --------------------------------------------------------

    async def get_offer(self, offer_id: str) -> Optional[Offer]:
        return await self.db.get_offer(offer_id)

    async def listing_offers(self, listing_id: str) -> List[Offer]:
        """Pending offers on an active listing, as shown to everyone."""

        listing = await self.db.get_listing(listing_id)
        if listing is None or listing.status != ListingStatus.ACTIVE:
            raise NotFoundOrUnauthorized("Listing not found")
        return await self.db.list_offers(listing_id=listing_id, statuses=(OfferStatus.PENDING,))

    async def manage_offers(self, listing_id: str, owner_id: int) -> List[Offer]:
        """Pending offers on any listing the caller owns."""

        listing = await self.db.get_listing(listing_id)
        if listing is None or listing.owner_id != owner_id:
            raise NotFoundOrUnauthorized("Listing not found or not authorized")
        return await self.db.list_offers(listing_id=listing_id, statuses=(OfferStatus.PENDING,))

    async def user_offers(self, bidder_id: int) -> List[Offer]:
        return await self.db.list_offers(bidder_id=bidder_id)
