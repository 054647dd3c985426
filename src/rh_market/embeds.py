"""Embed builder utilities for marketplace notifications."""
from __future__ import annotations

import re

import discord

from .models import UNLIMITED, Listing, Offer, TradeConfirmation

FOOTER_TEXT = "Marketplace Notification"
SANITIZED_CHAR_LIMIT = 1000

SELLING_COLOR = 0x00FF00
BUYING_COLOR = 0x0099FF
UPDATED_COLOR = 0xFFA500
REMOVED_COLOR = 0xFF0000
DECLINED_COLOR = 0xFF9900
COMPLETED_COLOR = 0xFFD700

_MARKDOWN = re.compile(r"([*_`~|\\])")
_MASS_MENTION = re.compile(r"@(everyone|here)", re.IGNORECASE)
_HANDLE_MENTION = re.compile(r"@([a-zA-Z0-9_]+)")
_CHANNEL_MENTION = re.compile(r"<#\d+>")
_ROLE_MENTION = re.compile(r"<@&\d+>")
_USER_MENTION = re.compile(r"<@!?\d+>")


def format_quantity(quantity: int) -> str:
    return "∞" if quantity == UNLIMITED else str(quantity)


def sanitize_for_discord(text: str) -> str:
    """Neutralize markdown and pings in user-supplied text."""

    if not text:
        return text
    text = _MARKDOWN.sub(r"\\\1", text)
    text = _CHANNEL_MENTION.sub("[channel]", text)
    text = _ROLE_MENTION.sub("[role]", text)
    text = _USER_MENTION.sub("[user]", text)
    # A zero-width space after "@" breaks the ping.
    text = _MASS_MENTION.sub("@\u200b\\1", text)
    text = _HANDLE_MENTION.sub("@\u200b\\1", text)
    return text[:SANITIZED_CHAR_LIMIT]


def marketplace_url(frontend_url: str, listing_id: str | None = None) -> str:
    base = f"{frontend_url.rstrip('/')}/marketplace"
    return f"{base}?listing={listing_id}" if listing_id else base


def info_embed(title: str, description: str | None = None, *, color: int = 0x2B2D31) -> discord.Embed:
    embed = discord.Embed(
        title=title,
        description=description or "",
        color=color,
        timestamp=discord.utils.utcnow(),
    )
    embed.set_footer(text=FOOTER_TEXT)
    return embed


def _kind_labels(listing: Listing) -> tuple[str, str]:
    if listing.kind == "buying":
        return "Buying Request", "💰 Offering Price"
    return "Selling Listing", "💰 Asking Price"


def _add_listing_fields(embed: discord.Embed, listing: Listing, item_name: str) -> None:
    _, price_label = _kind_labels(listing)
    embed.add_field(name="📦 Item", value=item_name, inline=True)
    embed.add_field(name="🔢 Quantity", value=format_quantity(listing.quantity), inline=True)
    embed.add_field(name=price_label, value=f"{listing.asking_price} coins", inline=True)
    embed.add_field(name="🔄 Accepts Trades", value="Yes" if listing.accepts_items else "No", inline=True)
    if listing.note:
        embed.add_field(name="📝 Notes", value=sanitize_for_discord(listing.note), inline=False)


def listing_created_embed(listing: Listing, item_name: str, frontend_url: str) -> discord.Embed:
    verb, _ = _kind_labels(listing)
    action = "looking to buy" if listing.kind == "buying" else "selling"
    embed = info_embed(
        f"🛍️ New {verb} Created",
        f"Your {listing.kind} listing for **{item_name}** has been created successfully! "
        f"You are {action} this item.",
        color=BUYING_COLOR if listing.kind == "buying" else SELLING_COLOR,
    )
    _add_listing_fields(embed, listing, item_name)
    embed.add_field(
        name="🔗 Direct Link",
        value=f"[View on Marketplace]({marketplace_url(frontend_url, listing.id)})",
        inline=False,
    )
    return embed


def listing_updated_embed(listing: Listing, item_name: str, frontend_url: str) -> discord.Embed:
    verb, _ = _kind_labels(listing)
    embed = info_embed(
        f"✏️ {verb} Updated",
        f"Your {listing.kind} listing for **{item_name}** has been updated successfully!",
        color=UPDATED_COLOR,
    )
    _add_listing_fields(embed, listing, item_name)
    embed.add_field(
        name="🔗 Direct Link",
        value=f"[View on Marketplace]({marketplace_url(frontend_url, listing.id)})",
        inline=False,
    )
    return embed


def listing_removed_embed(listing: Listing, item_name: str, frontend_url: str) -> discord.Embed:
    embed = info_embed(
        "🗑️ Listing Removed",
        f"Your listing for **{item_name}** has been removed.",
        color=REMOVED_COLOR,
    )
    embed.add_field(name="📦 Item", value=item_name, inline=True)
    embed.add_field(name="🔢 Quantity", value=format_quantity(listing.quantity), inline=True)
    embed.add_field(name="💰 Asking Price", value=f"{listing.asking_price} coins", inline=True)
    embed.add_field(
        name="🔗 Marketplace",
        value=f"[Browse Other Listings]({marketplace_url(frontend_url)})",
        inline=False,
    )
    return embed


def _offer_summary(offer: Offer, item_names: dict[int, str]) -> str:
    parts = []
    if offer.coin_amount:
        parts.append(f"{offer.coin_amount} coins")
    for line in offer.item_lines:
        parts.append(f"{line.quantity}x {item_names.get(line.item_id, 'Unknown Item')}")
    return " + ".join(parts) or "Nothing offered"


def offer_received_embed(
    listing: Listing,
    offer: Offer,
    item_name: str,
    item_names: dict[int, str],
    frontend_url: str,
) -> discord.Embed:
    embed = info_embed(
        "🤝 New Offer Received",
        f"You received a new offer for your **{item_name}** listing!",
        color=BUYING_COLOR,
    )
    embed.add_field(
        name="📦 Your Item", value=f"{format_quantity(listing.quantity)}x {item_name}", inline=True
    )
    embed.add_field(name="👤 Bidder", value=f"<@{offer.bidder_id}>", inline=True)
    embed.add_field(name="💰 Offer", value=_offer_summary(offer, item_names), inline=True)
    if offer.requested_quantity is not None:
        embed.add_field(name="🔢 Requested", value=str(offer.requested_quantity), inline=True)
    if offer.message:
        embed.add_field(name="💬 Message", value=sanitize_for_discord(offer.message), inline=False)
    embed.add_field(
        name="🔗 View Listing",
        value=f"[Open in Marketplace]({marketplace_url(frontend_url, listing.id)})",
        inline=False,
    )
    return embed


def offer_accepted_embed(
    listing: Listing,
    offer: Offer,
    item_name: str,
    frontend_url: str,
    *,
    accepted_quantity: int | None = None,
) -> discord.Embed:
    quantity = accepted_quantity if accepted_quantity is not None else offer.requested_quantity
    label = f"{format_quantity(quantity)}x {item_name}" if quantity is not None else f"All {item_name}"
    embed = info_embed(
        "✅ Offer Accepted",
        f"Your offer for **{item_name}** has been accepted! Confirm the trade once the items change hands.",
        color=SELLING_COLOR,
    )
    embed.add_field(name="📦 Item", value=label, inline=True)
    if offer.coin_amount:
        embed.add_field(name="💰 Your Offer", value=f"{offer.coin_amount} coins", inline=True)
    embed.add_field(
        name="🔗 Marketplace",
        value=f"[Browse More Items]({marketplace_url(frontend_url)})",
        inline=False,
    )
    return embed


def offer_rejected_embed(listing: Listing, offer: Offer, item_name: str, frontend_url: str) -> discord.Embed:
    embed = info_embed(
        "❌ Offer Declined",
        f"Your offer for **{item_name}** was declined.",
        color=DECLINED_COLOR,
    )
    embed.add_field(
        name="📦 Item", value=f"{format_quantity(listing.quantity)}x {item_name}", inline=True
    )
    if offer.coin_amount:
        embed.add_field(name="💰 Your Offer", value=f"{offer.coin_amount} coins", inline=True)
    embed.add_field(
        name="🔗 View Listing",
        value=f"[Make Another Offer]({marketplace_url(frontend_url, listing.id)})",
        inline=False,
    )
    return embed


def trade_completed_embed(
    confirmation: TradeConfirmation, listing: Listing, item_name: str, frontend_url: str
) -> discord.Embed:
    embed = info_embed(
        "🎉 Trade Completed",
        f"<@{confirmation.seller_id}> and <@{confirmation.buyer_id}> both confirmed the trade "
        f"for **{item_name}**.",
        color=COMPLETED_COLOR,
    )
    if confirmation.accepted_quantity is not None:
        embed.add_field(name="🔢 Quantity", value=str(confirmation.accepted_quantity), inline=True)
    embed.add_field(name="💰 Asking Price", value=f"{listing.asking_price} coins", inline=True)
    embed.add_field(
        name="🔗 Marketplace",
        value=f"[Browse More Items]({marketplace_url(frontend_url)})",
        inline=False,
    )
    return embed
