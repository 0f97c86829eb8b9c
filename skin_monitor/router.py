"""Match change events against subscriptions and build channel messages."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .models import (
    Channel,
    ChangeEvent,
    Created,
    ExteriorChanged,
    Item,
    NotificationMessage,
    PriceChanged,
    Removed,
    SoldStatusChanged,
    StattrakChanged,
    Subscription,
    idempotency_key,
)

logger = logging.getLogger(__name__)


class DedupCache:
    """
    Bounded set of recently emitted idempotency keys with a fixed TTL.

    The oldest entries are evicted first once ``max_entries`` is reached.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        while self._entries:
            key, stamp = next(iter(self._entries.items()))
            if now - stamp < self.ttl_seconds:
                break
            self._entries.popitem(last=False)

    def seen(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            self._purge(now)
            return key in self._entries

    def add(self, key: str) -> None:
        with self._lock:
            now = self._clock()
            self._purge(now)
            self._entries.pop(key, None)
            self._entries[key] = now
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._purge(self._clock())
            return len(self._entries)


def _yen(amount: int) -> str:
    return f"{amount:,} 円"


def build_payload(event: ChangeEvent, item: Optional[Item]) -> dict:
    """Title/body/data for one change event, shared by every channel."""
    label = item.display_name() if item else f"注文 #{event.order_id}"

    if isinstance(event, Created):
        title = f"{label} が新たに追加されました"
        body = f"販売価格: {_yen(event.item.price)}"
    elif isinstance(event, Removed):
        title = f"{label} が削除されました"
        body = "サイトから掲載がなくなりました。"
    elif isinstance(event, PriceChanged):
        title = f"{label} の価格が変更されました"
        body = f"{_yen(event.old)}から {_yen(event.new)}になりました。"
    elif isinstance(event, SoldStatusChanged):
        title = f"{label} が売約済みになりました" if event.new_value else f"{label} が再び販売中になりました"
        body = "売約済みになりました。" if event.new_value else "再び購入できるようになりました。"
    elif isinstance(event, StattrakChanged):
        title = f"{label} の StatTrak™ 表示が変更されました"
        body = "StatTrak™ になりました。" if event.new_value else "StatTrak™ ではなくなりました。"
    elif isinstance(event, ExteriorChanged):
        old = event.old.long_name if event.old else "Vanilla"
        new = event.new.long_name if event.new else "Vanilla"
        title = f"{label} の外装が変更されました"
        body = f"{old} から {new} になりました。"
    else:
        raise TypeError(f"unsupported change event: {event!r}")

    data = {
        "event": event.kind,
        "order_id": str(event.order_id),
        "new_value": "" if event.new_value is None else str(event.new_value),
    }
    if item is not None:
        data["price"] = str(item.price)
    return {"title": title, "body": body, "data": data}


class NotificationRouter:
    """
    Turns change events into one message per matching subscription.

    A message whose idempotency key was emitted within the dedup TTL is
    dropped. Keys of the returned messages are added to the cache once the
    whole batch has been routed; a failing call leaves the cache untouched.
    """

    def __init__(self, cache: DedupCache, channels: Optional[Collection[Channel]] = None):
        self.cache = cache
        # Channels with a gateway; None means every channel is deliverable.
        self.channels = frozenset(channels) if channels is not None else None

    def route(
        self,
        events: Sequence[ChangeEvent],
        subscriptions: Iterable[Subscription],
        items: Mapping[int, Item],
    ) -> List[NotificationMessage]:
        subscriptions = [s for s in subscriptions if s.active]
        messages: List[NotificationMessage] = []
        # keys reach the cache only once every event has been routed
        emitted: Set[str] = set()
        skipped_channels: Dict[Channel, int] = {}

        for event in events:
            item = event.item if isinstance(event, Created) else items.get(event.order_id)
            payload = None
            for sub in subscriptions:
                if self.channels is not None and sub.channel not in self.channels:
                    skipped_channels[sub.channel] = skipped_channels.get(sub.channel, 0) + 1
                    continue
                if not sub.filter.matches(event, item):
                    continue
                key = idempotency_key(event, sub.id)
                if key in emitted or self.cache.seen(key):
                    logger.info(
                        "Dropping duplicate %s for order #%d to subscription %s",
                        event.kind, event.order_id, sub.id,
                    )
                    continue
                if payload is None:
                    payload = build_payload(event, item)
                emitted.add(key)
                messages.append(
                    NotificationMessage(
                        subscription_id=sub.id,
                        channel=sub.channel,
                        endpoint=sub.endpoint,
                        payload=payload,
                        idempotency_key=key,
                    )
                )

        for m in messages:
            self.cache.add(m.idempotency_key)
        for channel, count in skipped_channels.items():
            logger.warning("No gateway configured for %s; skipped %d matches", channel.value, count)
        logger.debug("Routed %d events into %d messages", len(events), len(messages))
        return messages

    def forget(self, messages: Iterable[NotificationMessage]) -> None:
        """Drop keys of messages that never reached the dispatcher."""
        for m in messages:
            self.cache.discard(m.idempotency_key)


__all__ = ["DedupCache", "NotificationRouter", "build_payload"]
