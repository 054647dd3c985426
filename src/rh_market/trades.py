"""Two-party trade confirmation handshake."""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

import aiosqlite

from .database import Database
from .errors import AlreadyConfirmed, InvalidState, NotFoundOrUnauthorized
from .listings import ListingManager
from .models import (
    BUYER,
    SELLER,
    ConfirmationResult,
    OfferStatus,
    TradeConfirmation,
    TradeStatus,
)
from .notifications import NotificationDispatcher

_log = logging.getLogger(__name__)


class TradeCoordinator:
    """Drives a trade confirmation from ``pending`` to ``completed`` or ``cancelled``.

    ``pending`` moves to ``completed`` only once both the seller (listing
    owner) and the buyer (offer creator) have confirmed, and to ``cancelled``
    only while neither has. Moderators can force-close any pending trade.
    """

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

    async def _confirmation_for_party(
        self, conn: aiosqlite.Connection, confirmation_id: str, actor_id: int
    ) -> Tuple[TradeConfirmation, str]:
        confirmation = await self.db.fetch_confirmation(conn, confirmation_id)
        side = confirmation.side_of(actor_id) if confirmation else None
        if side is None:
            raise NotFoundOrUnauthorized("Trade not found or not authorized")
        return confirmation, side

    async def confirm(self, confirmation_id: str, actor_id: int) -> ConfirmationResult:
        async with self.db.transaction() as conn:
            confirmation, side = await self._confirmation_for_party(conn, confirmation_id, actor_id)
            if confirmation.is_confirmed_by(side):
                raise AlreadyConfirmed(confirmation_id, side)
            if confirmation.status != TradeStatus.PENDING:
                raise InvalidState(f"Trade {confirmation_id} is {confirmation.status}")

            await self.db.set_confirmation_slot(conn, confirmation_id, side)
            other = BUYER if side == SELLER else SELLER
            completed = confirmation.is_confirmed_by(other)
            if completed:
                await self.db.set_confirmation_status(conn, confirmation_id, TradeStatus.COMPLETED)
                await self.listings.settle_sale(
                    conn, confirmation.listing_id, holds_listing=confirmation.holds_listing
                )
                confirmation = await self.db.fetch_confirmation(conn, confirmation_id)
                listing = await self.db.fetch_listing(conn, confirmation.listing_id)
                offer = await self.db.fetch_offer(conn, confirmation.offer_id)

        if completed:
            _log.info("Trade %s completed", confirmation_id)
            self.dispatcher.dispatch("trade_completed", confirmation, listing, offer)
            return ConfirmationResult(confirmation_id, side, completed=True, waiting_on=None)

        _log.info("Trade %s confirmed by %s, waiting on %s", confirmation_id, side, other)
        return ConfirmationResult(confirmation_id, side, completed=False, waiting_on=other)

    async def _unwind(self, conn: aiosqlite.Connection, confirmation: TradeConfirmation) -> None:
        await self.db.set_confirmation_status(conn, confirmation.id, TradeStatus.CANCELLED)
        await self.listings.revert_to_active(
            conn,
            confirmation.listing_id,
            confirmation.reserved_quantity,
            releases_listing=confirmation.holds_listing,
        )
        await self.db.set_offer_status(conn, confirmation.offer_id, OfferStatus.PENDING)

    async def cancel(self, confirmation_id: str, actor_id: int) -> TradeConfirmation:
        """Back out of a trade before either side has confirmed it."""

        async with self.db.transaction() as conn:
            confirmation, side = await self._confirmation_for_party(conn, confirmation_id, actor_id)
            if confirmation.status != TradeStatus.PENDING:
                raise InvalidState(f"Trade {confirmation_id} is {confirmation.status}")
            if confirmation.any_confirmed:
                raise InvalidState(
                    f"Trade {confirmation_id} can no longer be cancelled once a side has confirmed"
                )
            await self._unwind(conn, confirmation)
            confirmation = await self.db.fetch_confirmation(conn, confirmation_id)

        _log.info("Trade %s cancelled by the %s", confirmation_id, side)
        return confirmation

    async def force_close(self, confirmation_id: str) -> TradeConfirmation:
        """Unwind a stuck trade on behalf of a moderator, whatever its confirmations."""

        async with self.db.transaction() as conn:
            confirmation = await self.db.fetch_confirmation(conn, confirmation_id)
            if confirmation is None:
                raise NotFoundOrUnauthorized("Trade not found")
            if confirmation.status != TradeStatus.PENDING:
                raise InvalidState(f"Trade {confirmation_id} is {confirmation.status}")
            await self._unwind(conn, confirmation)
            confirmation = await self.db.fetch_confirmation(conn, confirmation_id)

        _log.warning("Trade %s force-closed by moderation", confirmation_id)
        return confirmation

    # -- read models --------------------------------------------------------

    async def get_confirmation(self, confirmation_id: str) -> Optional[TradeConfirmation]:
        return await self.db.get_confirmation(confirmation_id)

    async def pending_trades(self, user_id: int) -> List[TradeConfirmation]:
        return await self.db.list_confirmations(user_id=user_id, statuses=(TradeStatus.PENDING,))

    async def list_trades(self, page: int = 1, limit: int = 20) -> Tuple[List[TradeConfirmation], int]:
        """Return one page of all trades, newest first, plus the total count."""

        page = max(1, page)
        limit = max(1, limit)
        trades = await self.db.list_confirmations(limit=limit, offset=(page - 1) * limit)
        return trades, await self.db.count_confirmations()

    async def count_trades(self, status: Optional[str] = None) -> int:
        return await self.db.count_confirmations(None if status is None else (status,))
