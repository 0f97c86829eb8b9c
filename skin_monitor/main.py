from __future__ import annotations

import hashlib
import json
import logging
import signal
import sqlite3
import sys
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from . import config, scraper
from .db import Database
from .diff import diff_snapshots
from .dispatcher import Delivery, Dispatcher
from .models import (
    ChangeEvent,
    Channel,
    NotificationMessage,
    Subscription,
    SubscriptionFilter,
)
from .normalizer import normalize_snapshot
from .notifier import FcmGateway, Gateway, WebPushGateway
from .ratelimit import TokenBucket
from .router import DedupCache, NotificationRouter

Fetcher = Callable[[], List[Mapping[str, Any]]]


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def setup_error_reporting() -> None:
    """Send ERROR log records to Sentry when SENTRY_DSN is configured."""
    logger = logging.getLogger(__name__)
    if not config.SENTRY_DSN:
        logger.info("Error reporting disabled (SENTRY_DSN not set).")
        return
    sentry_sdk.init(
        dsn=config.SENTRY_DSN,
        integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
    )
    logger.info("Error reporting enabled.")


@dataclass
class CycleResult:
    events: List[ChangeEvent]
    messages: List[NotificationMessage]
    deliveries: List["Future[Delivery]"] = field(default_factory=list)
    bootstrap: bool = False


def poll_once(
    db: Database,
    router: NotificationRouter,
    dispatcher: Dispatcher,
    fetch: Fetcher = scraper.fetch_listings,
) -> Optional[CycleResult]:
    """Perform one fetch-diff-notify cycle. Returns None when the cycle was aborted."""
    logger = logging.getLogger(__name__)

    try:
        records = fetch()
    except scraper.FetchError as e:
        logger.error("Fetch failed, cycle aborted: %s", e)
        return None
    if not records:
        logger.warning("No listings returned from the site; skipping this cycle.")
        return None

    messages: List[NotificationMessage] = []
    try:
        subscriptions = db.get_active_subscriptions()
        with db.snapshot_transaction() as tx:
            previous = tx.load_snapshot()
            current = normalize_snapshot(records, previous)
            if not current:
                logger.warning("None of the %d listings were usable; skipping this cycle.", len(records))
                return None

            events = diff_snapshots(previous, current)
            items = dict(previous or {})
            items.update(current)
            messages = router.route(events, subscriptions, items)
            tx.save_snapshot(current)
    except Exception:
        # Nothing was committed; let the next cycle emit these again.
        router.forget(messages)
        logger.exception("Poll cycle aborted; persisted state left unchanged.")
        return None

    if previous is None:
        logger.info("No baseline yet; stored %d items as baseline.", len(current))
    elif events:
        logger.info("Detected %d changes, dispatching %d messages.", len(events), len(messages))
    else:
        logger.info("No listing changes detected this cycle.")

    deliveries = dispatcher.submit_all(messages)
    return CycleResult(events, messages, deliveries, bootstrap=previous is None)


def run_forever(
    db: Database,
    router: NotificationRouter,
    dispatcher: Dispatcher,
    interval_seconds: float,
    stop: threading.Event,
    fetch: Fetcher = scraper.fetch_listings,
) -> None:
    """Run one cycle per interval until ``stop`` is set."""
    logger = logging.getLogger(__name__)
    while not stop.is_set():
        try:
            poll_once(db, router, dispatcher, fetch)
        except Exception:
            logger.exception("Unexpected error during poll cycle.")
        if stop.wait(interval_seconds):
            break
    logger.info("Scheduler stopped.")


# ---- Wiring ------------------------------------------------------------------

def build_gateways() -> Dict[Channel, Gateway]:
    gateways: Dict[Channel, Gateway] = {}
    if config.FCM_SERVER_KEY:
        gateways[Channel.MOBILE_PUSH] = FcmGateway(config.FCM_SERVER_KEY, config.FCM_ENDPOINT)
    if config.VAPID_PRIVATE_KEY:
        gateways[Channel.WEB_PUSH] = WebPushGateway(config.VAPID_PRIVATE_KEY, config.VAPID_CLAIM_SUBJECT)
    return gateways


def build_dispatcher(db: Database, gateways: Mapping[Channel, Gateway]) -> Dispatcher:
    rate_limits = {
        Channel.MOBILE_PUSH: TokenBucket(config.MOBILE_PUSH_RATE, config.MOBILE_PUSH_BURST),
        Channel.WEB_PUSH: TokenBucket(config.WEB_PUSH_RATE, config.WEB_PUSH_BURST),
    }
    return Dispatcher(
        gateways,
        db.record_dead_letter,
        max_retries=config.MAX_DISPATCH_RETRIES,
        timeout=config.DISPATCH_TIMEOUT_SECONDS,
        backoff_base=config.BACKOFF_BASE_SECONDS,
        backoff_max=config.BACKOFF_MAX_SECONDS,
        workers=config.DISPATCH_WORKERS,
        rate_limits=rate_limits,
    )


def load_subscriptions_file(path: str) -> List[Subscription]:
    """
    Read subscriptions from a JSON list such as::

        [{"id": "phone", "channel": "mobile-push", "endpoint": "<token>",
          "filter": {"max_price": 20000, "kinds": ["Redline"]}}]

    A web-push endpoint may be given as the PushSubscription object itself.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    subs: List[Subscription] = []
    for entry in data:
        endpoint = entry["endpoint"]
        if not isinstance(endpoint, str):
            endpoint = json.dumps(endpoint, sort_keys=True)
        subs.append(
            Subscription(
                id=str(entry["id"]),
                channel=Channel(entry["channel"]),
                endpoint=endpoint,
                filter=SubscriptionFilter.from_dict(entry.get("filter")),
                active=bool(entry.get("active", True)),
            )
        )
    return subs


def seed_subscriptions(db: Database) -> None:
    """Register subscriptions declared in the environment (seeded from env)."""
    logger = logging.getLogger(__name__)
    subs: List[Subscription] = [
        Subscription(
            id="fcm-" + hashlib.sha1(token.encode("utf-8")).hexdigest()[:12],
            channel=Channel.MOBILE_PUSH,
            endpoint=token,
        )
        for token in config.FCM_REGISTRATION_IDS
    ]
    if config.SUBSCRIPTIONS_FILE:
        subs.extend(load_subscriptions_file(config.SUBSCRIPTIONS_FILE))
    if subs:
        db.upsert_subscriptions(subs)
        logger.info("Seeded %d subscriptions.", len(subs))
    if not db.get_active_subscriptions():
        logger.warning("No active subscriptions; changes will be tracked but nobody is notified.")


def main() -> int:
    """Initialise and run the monitoring loop. Returns the process exit code."""
    setup_logging()
    setup_error_reporting()
    logger = logging.getLogger(__name__)

    try:
        config.validate()
        logger.info("Initializing database…")
        db = Database(config.sqlite_path())
        db.init_db()
        seed_subscriptions(db)
    except (RuntimeError, ValueError, KeyError, OSError, sqlite3.Error) as e:
        logger.critical("Startup failed: %s", e)
        return 1

    gateways = build_gateways()
    dispatcher = build_dispatcher(db, gateways)
    router = NotificationRouter(
        DedupCache(config.DEDUP_TTL_SECONDS, config.DEDUP_MAX_ENTRIES),
        channels=dispatcher.channels,
    )

    stop = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Received signal %d, shutting down…", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info(
        "Starting skin monitor for %s every %d seconds (channels: %s).",
        config.SITE_URL,
        config.POLL_INTERVAL_SECONDS,
        ", ".join(sorted(c.value for c in gateways)),
    )
    try:
        run_forever(db, router, dispatcher, config.POLL_INTERVAL_SECONDS, stop)
    finally:
        dispatcher.shutdown(wait=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
