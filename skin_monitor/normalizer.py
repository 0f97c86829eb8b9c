"""Turn raw listing records into canonical :class:`Item` objects.

Each raw record is a mapping with the keys ``order_id``, ``name``, ``kind``,
``exterior``, ``price``, ``has_sold`` and ``is_stattrak``. A bad record is
logged and skipped; it never aborts the rest of the snapshot.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Mapping, Optional

from .models import Exterior, Item

logger = logging.getLogger(__name__)

_INT_RE = re.compile(r"-?[0-9]+")


class NormalizationError(ValueError):
    """Raised when a raw record cannot be turned into an Item."""


def _parse_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise NormalizationError(f"{field_name} must be numeric, found {value!r}")
    if isinstance(value, int):
        return value
    text = str(value if value is not None else "").strip().replace(",", "")
    if not _INT_RE.fullmatch(text):
        raise NormalizationError(f"{field_name} must be numeric, found {value!r}")
    return int(text)


def _parse_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    text = str(value).strip().lower()
    if text in ("1", "true", "yes"):
        return True
    if text in ("", "0", "false", "no"):
        return False
    raise NormalizationError(f"invalid boolean {value!r}")


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_record(raw: Mapping[str, Any]) -> Item:
    """Validate one raw record and return the canonical Item."""
    if raw.get("order_id") is None:
        raise NormalizationError("order_id is missing")
    order_id = _parse_int(raw.get("order_id"), "order_id")

    name = _clean_text(raw.get("name"))
    if not name:
        raise NormalizationError(f"#{order_id}: name is empty")

    kind = _clean_text(raw.get("kind"))
    exterior_raw = _clean_text(raw.get("exterior"))
    if (kind is None) != (exterior_raw is None):
        raise NormalizationError(
            f"#{order_id}: kind and exterior must both be present or both absent "
            f"(kind={kind!r}, exterior={exterior_raw!r})"
        )
    exterior: Optional[Exterior] = None
    if exterior_raw is not None:
        try:
            exterior = Exterior.parse(exterior_raw)
        except ValueError as e:
            raise NormalizationError(f"#{order_id}: {e}") from e

    if raw.get("price") is None:
        raise NormalizationError(f"#{order_id}: price is missing")
    price = _parse_int(raw.get("price"), "price")
    if price < 0:
        raise NormalizationError(f"#{order_id}: price must not be negative")

    try:
        return Item(
            order_id=order_id,
            name=name,
            kind=kind,
            exterior=exterior,
            price=price,
            has_sold=_parse_bool(raw.get("has_sold")),
            is_stattrak=_parse_bool(raw.get("is_stattrak")),
        )
    except ValueError as e:
        raise NormalizationError(f"#{order_id}: {e}") from e


def _complete_sold_marker(
    raw: Mapping[str, Any], previous: Optional[Mapping[int, Item]]
) -> Optional[Dict[str, Any]]:
    """
    Sold listings only show an order id and a price on the site.
    Fill in the descriptive fields from the last persisted item.
    Returns None when the item was never seen before.
    """
    try:
        order_id = _parse_int(raw.get("order_id"), "order_id")
    except NormalizationError:
        return dict(raw)  # let normalize_record report it
    known = (previous or {}).get(order_id)
    if known is None:
        return None
    return {
        "order_id": order_id,
        "name": known.name,
        "kind": known.kind,
        "exterior": known.exterior.value if known.exterior else None,
        "price": raw.get("price") if raw.get("price") is not None else known.price,
        "has_sold": True,
        "is_stattrak": known.is_stattrak,
    }


def normalize_snapshot(
    records: Iterable[Mapping[str, Any]],
    previous: Optional[Mapping[int, Item]] = None,
) -> Dict[int, Item]:
    """Normalize a whole snapshot, keyed by order_id. Bad records are skipped."""
    items: Dict[int, Item] = {}
    skipped = 0
    for raw in records:
        if _parse_bool_quiet(raw.get("has_sold")) and not _clean_text(raw.get("name")):
            completed = _complete_sold_marker(raw, previous)
            if completed is None:
                logger.debug("Skipping sold listing #%s never seen before", raw.get("order_id"))
                continue
            raw = completed
        try:
            item = normalize_record(raw)
        except NormalizationError as e:
            skipped += 1
            logger.warning("Skipping malformed listing record: %s", e)
            continue
        if item.order_id in items:
            skipped += 1
            logger.warning("Skipping duplicate listing for order #%d", item.order_id)
            continue
        items[item.order_id] = item

    if skipped:
        logger.info("Normalized %d items (%d skipped)", len(items), skipped)
    return items


def _parse_bool_quiet(value: Any) -> bool:
    try:
        return _parse_bool(value)
    except NormalizationError:
        return False


__all__ = ["NormalizationError", "normalize_record", "normalize_snapshot"]
