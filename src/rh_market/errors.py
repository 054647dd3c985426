"""Marketplace error taxonomy.

Every error carries a stable ``code`` so callers can map rejected operations
to a response without parsing messages.
"""
from __future__ import annotations


class MarketError(Exception):
    """Base class for recoverable marketplace failures."""

    code = "market_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(MarketError):
    code = "validation_error"


class NotFoundOrUnauthorized(MarketError):
    """Entity missing, owned by someone else, or in the wrong status for the verb."""

    code = "not_found"

    def __init__(self, message: str = "Not found or not authorized") -> None:
        super().__init__(message)


class SelfTradeForbidden(MarketError):
    code = "self_trade_forbidden"

    def __init__(self, message: str = "Cannot make offers on your own listings") -> None:
        super().__init__(message)


class ListingNotActive(MarketError):
    code = "listing_not_active"

    def __init__(self, listing_id: str) -> None:
        super().__init__(f"Listing {listing_id} is not active")
        self.listing_id = listing_id


class AlreadyConfirmed(MarketError):
    code = "already_confirmed"

    def __init__(self, confirmation_id: str, side: str) -> None:
        super().__init__(f"The {side} already confirmed trade {confirmation_id}")
        self.confirmation_id = confirmation_id
        self.side = side


class InvalidState(MarketError):
    code = "invalid_state"
