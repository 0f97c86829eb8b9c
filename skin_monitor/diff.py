"""Compute change events between two snapshots keyed by order_id."""

from __future__ import annotations

from typing import List, Mapping, Optional

from .models import (
    ChangeEvent,
    Created,
    ExteriorChanged,
    Item,
    PriceChanged,
    Removed,
    SoldStatusChanged,
    StattrakChanged,
)


def _compare(old: Item, new: Item) -> List[ChangeEvent]:
    events: List[ChangeEvent] = []
    if old.price != new.price:
        events.append(PriceChanged(new.order_id, old.price, new.price))
    if old.has_sold != new.has_sold:
        events.append(SoldStatusChanged(new.order_id, new.has_sold))
    if old.is_stattrak != new.is_stattrak:
        events.append(StattrakChanged(new.order_id, new.is_stattrak))
    if old.exterior != new.exterior:
        events.append(ExteriorChanged(new.order_id, old.exterior, new.exterior))
    return events


def diff_snapshots(
    previous: Optional[Mapping[int, Item]],
    current: Mapping[int, Item],
) -> List[ChangeEvent]:
    """
    Full outer join of both snapshots on order_id.

    ``previous`` is None when nothing was ever persisted; that first pass only
    establishes the baseline and reports nothing. Events are ordered by
    ascending order_id, and per item by price, sold, stattrak, exterior.
    """
    if previous is None:
        return []

    events: List[ChangeEvent] = []
    for order_id in sorted(set(previous) | set(current)):
        old = previous.get(order_id)
        new = current.get(order_id)
        if old is None:
            events.append(Created(new))
        elif new is None:
            events.append(Removed(order_id))
        else:
            events.extend(_compare(old, new))
    return events


__all__ = ["diff_snapshots"]
