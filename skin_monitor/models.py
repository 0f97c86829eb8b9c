"""Domain records shared by the pipeline stages.

Items mirror the persisted ``item`` table. Change events are ephemeral: the
diff produces them and the router consumes them within one poll cycle.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


class Exterior(str, Enum):
    """Wear tier of a skin. Values are the database codes."""

    FN = "FN"
    MW = "MW"
    FT = "FT"
    WW = "WW"
    BS = "BS"

    @property
    def long_name(self) -> str:
        return _EXTERIOR_LONG_NAMES[self]

    @classmethod
    def parse(cls, value: str) -> "Exterior":
        """Accept a code ("FT") or the site's long name ("Field-Tested")."""
        text = (value or "").strip()
        try:
            return cls(text.upper())
        except ValueError:
            pass
        for ext, long_name in _EXTERIOR_LONG_NAMES.items():
            if long_name.lower() == text.lower():
                return ext
        raise ValueError(f"invalid exterior {value!r} (expected FN, MW, FT, WW or BS)")


_EXTERIOR_LONG_NAMES = {
    Exterior.FN: "Factory New",
    Exterior.MW: "Minimal Wear",
    Exterior.FT: "Field-Tested",
    Exterior.WW: "Well-Worn",
    Exterior.BS: "Battle-Scarred",
}


@dataclass(frozen=True)
class Item:
    order_id: int
    name: str
    kind: Optional[str]
    exterior: Optional[Exterior]
    price: int
    has_sold: bool = False
    is_stattrak: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("item name must not be empty")
        # kind and exterior are both None for a Vanilla item
        if (self.kind is None) != (self.exterior is None):
            raise ValueError(
                f"item #{self.order_id}: kind and exterior must both be present or both absent"
            )

    @property
    def is_vanilla(self) -> bool:
        return self.kind is None

    def display_name(self) -> str:
        prefix = "StatTrak™ " if self.is_stattrak else ""
        if self.kind is None:
            return f"{prefix}{self.name} | Vanilla"
        return f"{prefix}{self.name} | {self.kind} ({self.exterior.long_name})"


# ---- Change events -----------------------------------------------------------

@dataclass(frozen=True)
class Created:
    item: Item
    kind = "created"

    @property
    def order_id(self) -> int:
        return self.item.order_id

    @property
    def new_value(self) -> Any:
        return self.item.price


@dataclass(frozen=True)
class Removed:
    order_id: int
    kind = "removed"

    @property
    def new_value(self) -> Any:
        return None


@dataclass(frozen=True)
class PriceChanged:
    order_id: int
    old: int
    new: int
    kind = "price_changed"

    @property
    def new_value(self) -> Any:
        return self.new


@dataclass(frozen=True)
class SoldStatusChanged:
    order_id: int
    new_value: bool
    kind = "sold_status_changed"


@dataclass(frozen=True)
class StattrakChanged:
    order_id: int
    new_value: bool
    kind = "stattrak_changed"


@dataclass(frozen=True)
class ExteriorChanged:
    order_id: int
    old: Optional[Exterior]
    new: Optional[Exterior]
    kind = "exterior_changed"

    @property
    def new_value(self) -> Any:
        return self.new.value if self.new is not None else None


ChangeEvent = Union[
    Created, Removed, PriceChanged, SoldStatusChanged, StattrakChanged, ExteriorChanged
]

EVENT_KINDS = (
    Created.kind,
    Removed.kind,
    PriceChanged.kind,
    SoldStatusChanged.kind,
    StattrakChanged.kind,
    ExteriorChanged.kind,
)


# ---- Subscriptions & messages ------------------------------------------------

class Channel(str, Enum):
    """Delivery channels; each one is served by its own gateway."""

    MOBILE_PUSH = "mobile-push"
    WEB_PUSH = "web-push"


@dataclass(frozen=True)
class SubscriptionFilter:
    """Criteria a change needs to satisfy; unset fields match anything."""

    max_price: Optional[int] = None
    min_price: Optional[int] = None
    name_contains: Optional[str] = None
    kinds: Optional[frozenset] = None
    exteriors: Optional[frozenset] = None
    stattrak: Optional[bool] = None
    events: Optional[frozenset] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SubscriptionFilter":
        data = data or {}

        def _set(key: str) -> Optional[frozenset]:
            values = data.get(key)
            return frozenset(values) if values else None

        exteriors = _set("exteriors")
        if exteriors is not None:
            exteriors = frozenset(Exterior.parse(e) for e in exteriors)
        events = _set("events")
        if events is not None:
            unknown = events - set(EVENT_KINDS)
            if unknown:
                raise ValueError(f"unknown event kinds in filter: {sorted(unknown)}")
        return cls(
            max_price=data.get("max_price"),
            min_price=data.get("min_price"),
            name_contains=data.get("name_contains") or None,
            kinds=_set("kinds"),
            exteriors=exteriors,
            stattrak=data.get("stattrak"),
            events=events,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.max_price is not None:
            out["max_price"] = self.max_price
        if self.min_price is not None:
            out["min_price"] = self.min_price
        if self.name_contains:
            out["name_contains"] = self.name_contains
        if self.kinds:
            out["kinds"] = sorted(self.kinds)
        if self.exteriors:
            out["exteriors"] = sorted(e.value for e in self.exteriors)
        if self.stattrak is not None:
            out["stattrak"] = self.stattrak
        if self.events:
            out["events"] = sorted(self.events)
        return out

    def matches(self, event: ChangeEvent, item: Optional[Item]) -> bool:
        if self.events is not None and event.kind not in self.events:
            return False
        needs_item = any(
            v is not None
            for v in (self.max_price, self.min_price, self.name_contains,
                      self.kinds, self.exteriors, self.stattrak)
        )
        if not needs_item:
            return True
        if item is None:
            return False
        if self.max_price is not None and item.price > self.max_price:
            return False
        if self.min_price is not None and item.price < self.min_price:
            return False
        if self.name_contains and self.name_contains.lower() not in item.name.lower():
            return False
        if self.kinds is not None and item.kind not in self.kinds:
            return False
        if self.exteriors is not None and item.exterior not in self.exteriors:
            return False
        if self.stattrak is not None and item.is_stattrak != self.stattrak:
            return False
        return True


@dataclass(frozen=True)
class Subscription:
    id: str
    channel: Channel
    endpoint: str
    filter: SubscriptionFilter = field(default_factory=SubscriptionFilter)
    active: bool = True


def idempotency_key(event: ChangeEvent, subscription_id: str) -> str:
    raw = f"{event.order_id}|{event.kind}|{event.new_value}|{subscription_id}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class NotificationMessage:
    subscription_id: str
    channel: Channel
    endpoint: str
    payload: Dict[str, Any] = field(hash=False, compare=False)
    idempotency_key: str = ""


__all__ = [
    "Exterior",
    "Item",
    "Created",
    "Removed",
    "PriceChanged",
    "SoldStatusChanged",
    "StattrakChanged",
    "ExteriorChanged",
    "ChangeEvent",
    "EVENT_KINDS",
    "Channel",
    "SubscriptionFilter",
    "Subscription",
    "idempotency_key",
    "NotificationMessage",
]
