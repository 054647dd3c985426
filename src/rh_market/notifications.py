"""Best-effort Discord notifications for marketplace events."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Set

import aiohttp
import discord

from . import embeds
from .catalog import ItemCatalog
from .models import Listing, Offer, TradeConfirmation

_log = logging.getLogger(__name__)


class Notifier:
    """Receives marketplace events. The base class ignores them all."""

    async def listing_created(self, listing: Listing) -> None:
        pass

    async def listing_updated(self, listing: Listing) -> None:
        pass

    async def listing_removed(self, listing: Listing) -> None:
        pass

    async def offer_received(self, listing: Listing, offer: Offer) -> None:
        pass

    async def offer_accepted(
        self, listing: Listing, offer: Offer, confirmation: TradeConfirmation
    ) -> None:
        pass

    async def offer_rejected(self, listing: Listing, offer: Offer) -> None:
        pass

    async def trade_completed(
        self, confirmation: TradeConfirmation, listing: Listing, offer: Offer
    ) -> None:
        pass


class DiscordWebhookNotifier(Notifier):
    """Posts notification embeds to a Discord channel webhook, pinging the recipient."""

    def __init__(
        self,
        webhook_url: str,
        session: aiohttp.ClientSession,
        *,
        catalog: Optional[ItemCatalog] = None,
        frontend_url: str = "http://localhost:5173",
    ) -> None:
        self.webhook = discord.Webhook.from_url(webhook_url, session=session)
        self.catalog = catalog or ItemCatalog()
        self.frontend_url = frontend_url

    async def _send(self, user_id: int, content: str, embed: discord.Embed) -> None:
        await self.webhook.send(
            content=f"<@{user_id}> {content}",
            embed=embed,
            allowed_mentions=discord.AllowedMentions(everyone=False, roles=False, users=True),
        )

    async def listing_created(self, listing: Listing) -> None:
        embed = embeds.listing_created_embed(
            listing, self.catalog.name_for(listing.item_id), self.frontend_url
        )
        await self._send(
            listing.owner_id, f"Your marketplace {listing.kind} listing has been created!", embed
        )

    async def listing_updated(self, listing: Listing) -> None:
        embed = embeds.listing_updated_embed(
            listing, self.catalog.name_for(listing.item_id), self.frontend_url
        )
        await self._send(
            listing.owner_id, f"Your marketplace {listing.kind} listing has been updated!", embed
        )

    async def listing_removed(self, listing: Listing) -> None:
        embed = embeds.listing_removed_embed(
            listing, self.catalog.name_for(listing.item_id), self.frontend_url
        )
        await self._send(listing.owner_id, "Your marketplace listing has been removed.", embed)

    async def offer_received(self, listing: Listing, offer: Offer) -> None:
        item_names = {line.item_id: self.catalog.name_for(line.item_id) for line in offer.item_lines}
        embed = embeds.offer_received_embed(
            listing, offer, self.catalog.name_for(listing.item_id), item_names, self.frontend_url
        )
        await self._send(listing.owner_id, f"You have a new offer from <@{offer.bidder_id}>!", embed)

    async def offer_accepted(
        self, listing: Listing, offer: Offer, confirmation: TradeConfirmation
    ) -> None:
        embed = embeds.offer_accepted_embed(
            listing,
            offer,
            self.catalog.name_for(listing.item_id),
            self.frontend_url,
            accepted_quantity=confirmation.accepted_quantity,
        )
        await self._send(offer.bidder_id, "Great news! Your offer has been accepted!", embed)

    async def offer_rejected(self, listing: Listing, offer: Offer) -> None:
        embed = embeds.offer_rejected_embed(
            listing, offer, self.catalog.name_for(listing.item_id), self.frontend_url
        )
        await self._send(offer.bidder_id, "Your offer was declined, but don't give up!", embed)

    async def trade_completed(
        self, confirmation: TradeConfirmation, listing: Listing, offer: Offer
    ) -> None:
        embed = embeds.trade_completed_embed(
            confirmation, listing, self.catalog.name_for(listing.item_id), self.frontend_url
        )
        await self._send(confirmation.seller_id, f"Trade with <@{confirmation.buyer_id}> completed!", embed)


class NotificationDispatcher:
    """Runs notifier calls in the background so they never block a transition.

    Delivery failures are logged and dropped.
    """

    def __init__(self, notifier: Optional[Notifier] = None) -> None:
        self.notifier = notifier or Notifier()
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, event: str, *args: Any) -> None:
        handler = getattr(self.notifier, event)
        task = asyncio.create_task(self._deliver(event, handler, *args))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: str, handler, *args: Any) -> None:
        try:
            await handler(*args)
        except (discord.HTTPException, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            _log.warning("Failed to deliver %s notification: %s", event, exc)
        except Exception:
            _log.exception("Notifier raised while handling %s", event)

    async def drain(self) -> None:
        """Wait for every notification scheduled so far."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks))
