"""Process entry point wiring the ledger, notifier and managers together."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from .catalog import ItemCatalog
from .config import Settings, load_settings
from .database import Database
from .listings import ListingManager
from .models import TradeStatus
from .notifications import DiscordWebhookNotifier, NotificationDispatcher, Notifier
from .offers import OfferManager
from .trades import TradeCoordinator

_log = logging.getLogger(__name__)


class Marketplace:
    """Owns the storage handle and HTTP session for the lifetime of the process.

    Use as an async context manager; notifications still in flight are
    awaited on exit.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        db: Optional[Database] = None,
        catalog: Optional[ItemCatalog] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings
        self.db = db or Database(settings.database_path, retries=settings.transaction_retries)
        if catalog is None:
            catalog = (
                ItemCatalog.from_file(settings.item_defs_path)
                if settings.item_defs_path
                else ItemCatalog()
            )
        self.catalog = catalog
        self._notifier = notifier
        self._session: Optional[aiohttp.ClientSession] = None
        self.dispatcher = NotificationDispatcher(notifier)
        self.listings = ListingManager(self.db, dispatcher=self.dispatcher, catalog=self.catalog)
        self.offers = OfferManager(self.db, self.listings, dispatcher=self.dispatcher)
        self.trades = TradeCoordinator(self.db, self.listings, dispatcher=self.dispatcher)

    async def __aenter__(self) -> "Marketplace":
        await self.db.setup()
        if self._notifier is None and self.settings.webhook_url:
            self._session = aiohttp.ClientSession()
            self.dispatcher.notifier = DiscordWebhookNotifier(
                self.settings.webhook_url,
                self._session,
                catalog=self.catalog,
                frontend_url=self.settings.frontend_url,
            )
            _log.info("Discord webhook notifications enabled")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.dispatcher.drain()
        if self._session is not None:
            await self._session.close()
            self._session = None


async def _summarize(settings: Settings) -> None:
    async with Marketplace(settings) as market:
        active = await market.listings.browse_listings()
        pending = await market.trades.count_trades(TradeStatus.PENDING)
        _log.info(
            "Marketplace ledger ready at %s: %s active listings, %s trades awaiting confirmation",
            settings.database_path,
            len(active),
            pending,
        )


def run() -> None:
    logging.basicConfig(level=logging.INFO)
    settings = load_settings()
    asyncio.run(_summarize(settings))


if __name__ == "__main__":
    run()
