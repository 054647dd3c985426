import asyncio
from pathlib import Path

import pytest

from market_helpers import (
    BUYER,
    OTHER_BUYER,
    OUTSIDER,
    SELLER,
    assert_ledger_consistent,
    init_market,
)
from rh_market.errors import (
    ListingNotActive,
    NotFoundOrUnauthorized,
    SelfTradeForbidden,
    ValidationError,
)
from rh_market.models import UNLIMITED, ItemLine, ListingStatus, OfferStatus, TradeStatus

pytestmark = pytest.mark.asyncio


async def test_create_offer(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100, accepts_items=True)

    offer = await market.offers.create_offer(
        listing.id,
        BUYER,
        coin_amount=80,
        requested_quantity=2,
        item_lines=[{"item_id": 20, "quantity": 1}, ItemLine(30, 3)],
        message="Quick trade?",
    )

    assert offer.status == OfferStatus.PENDING
    assert offer.listing_id == listing.id
    assert offer.bidder_id == BUYER
    assert offer.item_lines == (ItemLine(20, 1), ItemLine(30, 3))
    assert await market.offers.get_offer(offer.id) == offer

    await market.dispatcher.drain()
    assert ("offer_received", offer.id) in market.notifier.events


async def test_create_offer_guards(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 2, 100)

    with pytest.raises(NotFoundOrUnauthorized):
        await market.offers.create_offer("missing", BUYER, 10)
    with pytest.raises(SelfTradeForbidden):
        await market.offers.create_offer(listing.id, SELLER, 10)
    with pytest.raises(ValidationError):
        await market.offers.create_offer(listing.id, BUYER, -1)
    with pytest.raises(ValidationError):
        await market.offers.create_offer(listing.id, BUYER, 10, requested_quantity=3)
    with pytest.raises(ValidationError):
        await market.offers.create_offer(listing.id, BUYER, 10, item_lines=[ItemLine(20, 1)])
    with pytest.raises(ValidationError):
        await market.offers.create_offer(listing.id, BUYER, 10, message="x" * 1001)

    await market.listings.remove_listing(listing.id, SELLER)
    with pytest.raises(ListingNotActive):
        await market.offers.create_offer(listing.id, BUYER, 10)

    assert await market.offers.user_offers(BUYER) == []


async def test_offer_on_unlimited_listing_accepts_any_quantity(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, UNLIMITED, 5)
    offer = await market.offers.create_offer(listing.id, BUYER, 500, requested_quantity=100)
    assert offer.requested_quantity == 100


async def test_accept_offer_reserves_everything_and_rejects_competitors(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100)
    winner = await market.offers.create_offer(listing.id, BUYER, 100)
    loser = await market.offers.create_offer(listing.id, OTHER_BUYER, 90)

    confirmation_id = await market.offers.accept_offer(winner.id, SELLER)

    confirmation = await market.trades.get_confirmation(confirmation_id)
    assert confirmation.status == TradeStatus.PENDING
    assert confirmation.offer_id == winner.id
    assert confirmation.seller_id == SELLER
    assert confirmation.buyer_id == BUYER
    assert confirmation.accepted_quantity is None
    assert confirmation.reserved_quantity == 5
    assert not confirmation.any_confirmed

    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.PENDING, 0)
    assert (await market.offers.get_offer(winner.id)).status == OfferStatus.ACCEPTED
    assert (await market.offers.get_offer(loser.id)).status == OfferStatus.REJECTED

    await market.dispatcher.drain()
    assert ("offer_accepted", winner.id) in market.notifier.events
    assert ("offer_rejected", loser.id) in market.notifier.events
    await assert_ledger_consistent(market.db)


async def test_accept_offer_on_unlimited_listing(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, UNLIMITED, 100)
    offer = await market.offers.create_offer(listing.id, BUYER, 100)

    confirmation_id = await market.offers.accept_offer(offer.id, SELLER)

    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.PENDING, UNLIMITED)
    assert (await market.trades.get_confirmation(confirmation_id)).reserved_quantity == UNLIMITED


async def test_accept_offer_authorization(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100)
    offer = await market.offers.create_offer(listing.id, BUYER, 100)

    with pytest.raises(NotFoundOrUnauthorized):
        await market.offers.accept_offer(offer.id, OUTSIDER)
    with pytest.raises(NotFoundOrUnauthorized):
        await market.offers.accept_offer(offer.id, BUYER)
    with pytest.raises(NotFoundOrUnauthorized):
        await market.offers.accept_offer("missing", SELLER)

    await market.offers.reject_offer(offer.id, SELLER)
    with pytest.raises(NotFoundOrUnauthorized):
        await market.offers.accept_offer(offer.id, SELLER)

    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.ACTIVE, 5)
    assert await market.trades.list_trades() == ([], 0)


async def test_accept_offer_on_closed_listing_is_refused(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100)
    offer = await market.offers.create_offer(listing.id, BUYER, 100)
    await market.listings.close_listing(listing.id)

    with pytest.raises(ListingNotActive):
        await market.offers.accept_offer(offer.id, SELLER)
    with pytest.raises(ListingNotActive):
        await market.offers.accept_partial_offer(offer.id, SELLER, 1)
    assert (await market.offers.get_offer(offer.id)).status == OfferStatus.PENDING


async def test_partial_accept_keeps_competitors_pending(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100, accepts_partial_offers=True)
    first = await market.offers.create_offer(listing.id, BUYER, 40, requested_quantity=2)
    second = await market.offers.create_offer(listing.id, OTHER_BUYER, 60, requested_quantity=3)

    confirmation_id = await market.offers.accept_partial_offer(first.id, SELLER, 2)

    confirmation = await market.trades.get_confirmation(confirmation_id)
    assert confirmation.accepted_quantity == 2
    assert confirmation.reserved_quantity == 2
    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.ACTIVE, 3)
    assert (await market.offers.get_offer(second.id)).status == OfferStatus.PENDING
    assert [offer.id for offer in await market.offers.listing_offers(listing.id)] == [second.id]


async def test_second_offer_takes_what_a_partial_accept_left(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 10, 100, accepts_partial_offers=True)
    first = await market.offers.create_offer(listing.id, BUYER, 40, requested_quantity=4)
    second = await market.offers.create_offer(listing.id, OTHER_BUYER, 60, requested_quantity=6)

    first_trade = await market.offers.accept_partial_offer(first.id, SELLER, 4)
    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.ACTIVE, 6)
    assert (await market.offers.get_offer(second.id)).status == OfferStatus.PENDING

    second_trade = await market.offers.accept_offer(second.id, SELLER)
    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.PENDING, 0)
    held = await market.trades.get_confirmation(second_trade)
    assert (held.reserved_quantity, held.accepted_quantity, held.holds_listing) == (6, None, True)
    assert (await market.trades.get_confirmation(first_trade)).holds_listing is False
    await assert_ledger_consistent(market.db)

    for actor in (SELLER, OTHER_BUYER):
        await market.trades.confirm(second_trade, actor)
    assert (await market.listings.get_listing(listing.id)).status == ListingStatus.SOLD
    await assert_ledger_consistent(market.db)


async def test_partial_accept_that_exhausts_listing_rejects_the_rest(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 3, 100)
    first = await market.offers.create_offer(listing.id, BUYER, 40)
    second = await market.offers.create_offer(listing.id, OTHER_BUYER, 60)

    await market.offers.accept_partial_offer(first.id, SELLER, 3)

    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.PENDING, 0)
    assert (await market.offers.get_offer(second.id)).status == OfferStatus.REJECTED
    await market.dispatcher.drain()
    assert ("offer_rejected", second.id) in market.notifier.events
    await assert_ledger_consistent(market.db)


@pytest.mark.parametrize("accepted", [0, -1, 4, True])
async def test_partial_accept_rejects_bad_quantities(tmp_path: Path, accepted):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 3, 100)
    offer = await market.offers.create_offer(listing.id, BUYER, 40)

    with pytest.raises(ValidationError):
        await market.offers.accept_partial_offer(offer.id, SELLER, accepted)

    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.ACTIVE, 3)
    assert (await market.offers.get_offer(offer.id)).status == OfferStatus.PENDING


async def test_partial_accept_cannot_exceed_requested_quantity(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100)
    offer = await market.offers.create_offer(listing.id, BUYER, 40, requested_quantity=2)

    with pytest.raises(ValidationError):
        await market.offers.accept_partial_offer(offer.id, SELLER, 3)


async def test_reject_offer(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100)
    offer = await market.offers.create_offer(listing.id, BUYER, 100)

    with pytest.raises(NotFoundOrUnauthorized):
        await market.offers.reject_offer(offer.id, BUYER)

    rejected = await market.offers.reject_offer(offer.id, SELLER)
    assert rejected.status == OfferStatus.REJECTED
    with pytest.raises(NotFoundOrUnauthorized):
        await market.offers.reject_offer(offer.id, SELLER)

    await market.dispatcher.drain()
    assert market.notifier.events[-1] == ("offer_rejected", offer.id)


async def test_offer_read_models(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100)
    first = await market.offers.create_offer(listing.id, BUYER, 10)
    second = await market.offers.create_offer(listing.id, OTHER_BUYER, 20)
    await market.offers.reject_offer(first.id, SELLER)

    assert [offer.id for offer in await market.offers.manage_offers(listing.id, SELLER)] == [second.id]
    with pytest.raises(NotFoundOrUnauthorized):
        await market.offers.manage_offers(listing.id, BUYER)
    assert [offer.id for offer in await market.offers.user_offers(BUYER)] == [first.id]

    await market.listings.remove_listing(listing.id, SELLER)
    with pytest.raises(NotFoundOrUnauthorized):
        await market.offers.listing_offers(listing.id)
    assert [offer.id for offer in await market.offers.manage_offers(listing.id, SELLER)] == [second.id]


async def test_concurrent_accepts_open_one_trade(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100)
    first = await market.offers.create_offer(listing.id, BUYER, 100)
    second = await market.offers.create_offer(listing.id, OTHER_BUYER, 100)

    results = await asyncio.gather(
        market.offers.accept_offer(first.id, SELLER),
        market.offers.accept_offer(second.id, SELLER),
        return_exceptions=True,
    )

    confirmations = [result for result in results if isinstance(result, str)]
    failures = [result for result in results if isinstance(result, Exception)]
    assert len(confirmations) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], (NotFoundOrUnauthorized, ListingNotActive))

    trades, total = await market.trades.list_trades()
    assert total == 1
    assert trades[0].id == confirmations[0]
    await assert_ledger_consistent(market.db)


async def test_concurrent_partial_accepts_never_oversell(tmp_path: Path):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 3, 100)
    first = await market.offers.create_offer(listing.id, BUYER, 100)
    second = await market.offers.create_offer(listing.id, OTHER_BUYER, 100)

    results = await asyncio.gather(
        market.offers.accept_partial_offer(first.id, SELLER, 2),
        market.offers.accept_partial_offer(second.id, SELLER, 2),
        return_exceptions=True,
    )

    assert sum(isinstance(result, str) for result in results) == 1
    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.ACTIVE, 1)
    await assert_ledger_consistent(market.db)


async def test_failed_confirmation_insert_rolls_back_accept(tmp_path: Path, monkeypatch):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100)
    offer = await market.offers.create_offer(listing.id, BUYER, 100)
    other = await market.offers.create_offer(listing.id, OTHER_BUYER, 100)

    async def broken_insert(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(market.db, "insert_confirmation", broken_insert)
    with pytest.raises(RuntimeError):
        await market.offers.accept_offer(offer.id, SELLER)

    current = await market.listings.get_listing(listing.id)
    assert (current.status, current.quantity) == (ListingStatus.ACTIVE, 5)
    assert (await market.offers.get_offer(offer.id)).status == OfferStatus.PENDING
    assert (await market.offers.get_offer(other.id)).status == OfferStatus.PENDING
    assert await market.trades.count_trades() == 0

    await market.dispatcher.drain()
    assert not any(event == "offer_accepted" for event, _ in market.notifier.events)
    await assert_ledger_consistent(market.db)


async def test_failed_competitor_rejection_rolls_back_accept(tmp_path: Path, monkeypatch):
    market = await init_market(tmp_path)
    listing = await market.listings.create_listing(SELLER, 10, 5, 100)
    offer = await market.offers.create_offer(listing.id, BUYER, 100)
    await market.offers.create_offer(listing.id, OTHER_BUYER, 100)

    async def broken_reject(*args, **kwargs):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(market.db, "reject_pending_offers", broken_reject)
    with pytest.raises(RuntimeError):
        await market.offers.accept_offer(offer.id, SELLER)

    assert await market.trades.count_trades() == 0
    assert (await market.listings.get_listing(listing.id)).quantity == 5
    await assert_ledger_consistent(market.db)
