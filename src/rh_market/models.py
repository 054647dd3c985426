"""Records and validated inputs for listings, offers and trade confirmations."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Iterable, Mapping, Optional, Tuple

from .errors import ValidationError

#: Quantity sentinel for listings without a stock limit.
UNLIMITED = -1
TEXT_CHAR_LIMIT = 1000
LISTING_KINDS = ("selling", "buying")


class ListingStatus:
    ACTIVE = "active"
    PENDING = "pending"
    SOLD = "sold"
    REMOVED = "removed"
    CLOSED = "closed"


class OfferStatus:
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class TradeStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


SELLER = "seller"
BUYER = "buyer"


@dataclass(frozen=True)
class Listing:
    id: str
    owner_id: int
    item_id: int
    quantity: int
    asking_price: int
    accepts_items: bool
    accepts_partial_offers: bool
    kind: str
    note: str
    status: str
    created_at: str
    updated_at: str
    offer_count: int = 0

    @property
    def is_unlimited(self) -> bool:
        return self.quantity == UNLIMITED

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Listing":
        keys = row.keys()
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            item_id=row["item_id"],
            quantity=row["quantity"],
            asking_price=row["asking_price"],
            accepts_items=bool(row["accepts_items"]),
            accepts_partial_offers=bool(row["accepts_partial_offers"]),
            kind=row["kind"],
            note=row["note"] or "",
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            offer_count=row["offer_count"] if "offer_count" in keys else 0,
        )


@dataclass(frozen=True)
class ItemLine:
    """An in-kind item put forward as part of an offer."""

    item_id: int
    quantity: int

    def validate(self) -> None:
        _require_int("item_id", self.item_id)
        _require_int("quantity", self.quantity)
        if self.quantity <= 0:
            raise ValidationError("Offered item quantity must be positive")

    @classmethod
    def from_payload(cls, payload: Any) -> "ItemLine":
        if not isinstance(payload, Mapping):
            raise ValidationError("Item offers must be objects with item_id and quantity")
        data = _take_known_keys(payload, ("item_id", "quantity"), required=("item_id", "quantity"))
        line = cls(**data)
        line.validate()
        return line


@dataclass(frozen=True)
class Offer:
    id: str
    listing_id: str
    bidder_id: int
    coin_amount: int
    requested_quantity: Optional[int]
    message: str
    status: str
    created_at: str
    updated_at: str
    item_lines: Tuple[ItemLine, ...] = ()

    @classmethod
    def from_row(cls, row: Mapping[str, Any], item_lines: Iterable[ItemLine] = ()) -> "Offer":
        return cls(
            id=row["id"],
            listing_id=row["listing_id"],
            bidder_id=row["bidder_id"],
            coin_amount=row["coin_amount"],
            requested_quantity=row["requested_quantity"],
            message=row["message"] or "",
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            item_lines=tuple(item_lines),
        )


@dataclass(frozen=True)
class TradeConfirmation:
    id: str
    offer_id: str
    listing_id: str
    seller_id: int
    buyer_id: int
    seller_confirmed: bool
    buyer_confirmed: bool
    seller_confirmed_at: Optional[str]
    buyer_confirmed_at: Optional[str]
    accepted_quantity: Optional[int]
    reserved_quantity: int
    status: str
    completed_at: Optional[str]
    created_at: str
    updated_at: str
    # True when this trade's reservation moved the listing to pending.
    holds_listing: bool = False

    def side_of(self, user_id: int) -> Optional[str]:
        """Return which slot ``user_id`` owns, or ``None`` for outsiders."""

        if user_id == self.seller_id:
            return SELLER
        if user_id == self.buyer_id:
            return BUYER
        return None

    def is_confirmed_by(self, side: str) -> bool:
        return self.seller_confirmed if side == SELLER else self.buyer_confirmed

    @property
    def any_confirmed(self) -> bool:
        return self.seller_confirmed or self.buyer_confirmed

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TradeConfirmation":
        return cls(
            id=row["id"],
            offer_id=row["offer_id"],
            listing_id=row["listing_id"],
            seller_id=row["seller_id"],
            buyer_id=row["buyer_id"],
            seller_confirmed=bool(row["seller_confirmed"]),
            buyer_confirmed=bool(row["buyer_confirmed"]),
            seller_confirmed_at=row["seller_confirmed_at"],
            buyer_confirmed_at=row["buyer_confirmed_at"],
            accepted_quantity=row["accepted_quantity"],
            reserved_quantity=row["reserved_quantity"],
            status=row["status"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            holds_listing=bool(row["holds_listing"]),
        )


@dataclass(frozen=True)
class ConfirmationResult:
    """Outcome of a single ``confirm`` call."""

    confirmation_id: str
    side: str
    completed: bool
    waiting_on: Optional[str]


@dataclass(frozen=True)
class SellerProfile:
    owner_id: int
    total_listings: int
    total_sales: int
    active_listings: int
    listings: Tuple[Listing, ...]
    recent_sales: Tuple[Listing, ...]

    @property
    def success_rate(self) -> int:
        if self.total_listings == 0:
            return 0
        return round(self.total_sales / self.total_listings * 100)


def _require_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")


def _require_bool(name: str, value: Any) -> None:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be true or false")


def _require_text(name: str, value: Any) -> None:
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be text")
    if len(value) > TEXT_CHAR_LIMIT:
        raise ValidationError(f"{name} is limited to {TEXT_CHAR_LIMIT} characters")


def _take_known_keys(
    payload: Mapping[str, Any], allowed: Iterable[str], *, required: Iterable[str] = ()
) -> dict[str, Any]:
    allowed = tuple(allowed)
    unknown = sorted(set(payload) - set(allowed))
    if unknown:
        raise ValidationError(f"Unknown fields: {', '.join(map(str, unknown))}")
    missing = [name for name in required if name not in payload]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
    return {name: payload[name] for name in allowed if name in payload}


def validate_quantity(quantity: Any) -> None:
    _require_int("quantity", quantity)
    if quantity <= 0 and quantity != UNLIMITED:
        raise ValidationError("Quantity must be positive or unlimited")


def validate_price(price: Any) -> None:
    _require_int("asking_price", price)
    if price <= 0:
        raise ValidationError("Asking price must be positive")


@dataclass(frozen=True)
class ListingDraft:
    """Validated input for a new listing."""

    item_id: int
    quantity: int
    asking_price: int
    accepts_items: bool = False
    accepts_partial_offers: bool = False
    kind: str = "selling"
    note: str = ""

    def validate(self) -> None:
        _require_int("item_id", self.item_id)
        validate_quantity(self.quantity)
        validate_price(self.asking_price)
        _require_bool("accepts_items", self.accepts_items)
        _require_bool("accepts_partial_offers", self.accepts_partial_offers)
        if self.kind not in LISTING_KINDS:
            raise ValidationError(f"Listing kind must be one of {', '.join(LISTING_KINDS)}")
        _require_text("note", self.note)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ListingDraft":
        names = [f.name for f in fields(cls)]
        data = _take_known_keys(payload, names, required=("item_id", "quantity", "asking_price"))
        draft = cls(**data)
        draft.validate()
        return draft


@dataclass(frozen=True)
class ListingChanges:
    """Owner-editable listing fields; ``None`` leaves a field untouched."""

    quantity: Optional[int] = None
    asking_price: Optional[int] = None
    accepts_items: Optional[bool] = None
    accepts_partial_offers: Optional[bool] = None
    note: Optional[str] = None

    def validate(self) -> None:
        if self.quantity is not None:
            validate_quantity(self.quantity)
        if self.asking_price is not None:
            validate_price(self.asking_price)
        if self.accepts_items is not None:
            _require_bool("accepts_items", self.accepts_items)
        if self.accepts_partial_offers is not None:
            _require_bool("accepts_partial_offers", self.accepts_partial_offers)
        if self.note is not None:
            _require_text("note", self.note)
        if not self.as_columns():
            raise ValidationError("No listing fields to update")

    def as_columns(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ListingChanges":
        data = _take_known_keys(payload, [f.name for f in fields(cls)])
        changes = cls(**data)
        changes.validate()
        return changes


@dataclass(frozen=True)
class OfferDraft:
    """Validated input for a new offer."""

    coin_amount: int = 0
    requested_quantity: Optional[int] = None
    item_lines: Tuple[ItemLine, ...] = field(default_factory=tuple)
    message: str = ""

    def validate(self) -> None:
        _require_int("coin_amount", self.coin_amount)
        if self.coin_amount < 0:
            raise ValidationError("Coin offer cannot be negative")
        if self.requested_quantity is not None:
            _require_int("requested_quantity", self.requested_quantity)
            if self.requested_quantity <= 0:
                raise ValidationError("Requested quantity must be positive")
        for line in self.item_lines:
            if not isinstance(line, ItemLine):
                raise ValidationError("Item offers must be item lines")
            line.validate()
        _require_text("message", self.message)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "OfferDraft":
        data = _take_known_keys(payload, [f.name for f in fields(cls)])
        raw_lines = data.pop("item_lines", None) or []
        if not isinstance(raw_lines, (list, tuple)):
            raise ValidationError("item_lines must be a list")
        draft = cls(item_lines=tuple(ItemLine.from_payload(line) for line in raw_lines), **data)
        draft.validate()
        return draft
