"""SQLite persistence layer for the skin monitor.

Holds the last known listing snapshot (``item``), the subscription registry
and the dead-letter log. The snapshot is only ever read and replaced inside
one ``BEGIN IMMEDIATE`` transaction per poll cycle.
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional

from .models import (
    Channel,
    Exterior,
    Item,
    NotificationMessage,
    Subscription,
    SubscriptionFilter,
)

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


class SnapshotTransaction:
    """Read-then-write access to the persisted snapshot within one transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def load_snapshot(self) -> Optional[Dict[int, Item]]:
        """Return the last committed snapshot, or None if no baseline exists yet."""
        cur = self._conn.execute("SELECT 1 FROM snapshot_meta WHERE id = 1")
        if cur.fetchone() is None:
            return None
        cur = self._conn.execute(
            "SELECT order_id, name, kind, exterior, price, has_sold, is_stattrak FROM item"
        )
        result: Dict[int, Item] = {}
        for row in cur.fetchall():
            order_id, name, kind, exterior, price, has_sold, is_stattrak = row
            result[int(order_id)] = Item(
                order_id=int(order_id),
                name=name,
                kind=kind,
                exterior=Exterior(exterior) if exterior else None,
                price=int(price),
                has_sold=bool(has_sold),
                is_stattrak=bool(is_stattrak),
            )
        return result

    def save_snapshot(self, items: Mapping[int, Item]) -> None:
        """Replace the persisted snapshot with ``items`` and mark the baseline."""
        rows = [
            (
                it.order_id,
                it.name,
                it.kind,
                it.exterior.value if it.exterior else None,
                it.price,
                int(it.has_sold),
                int(it.is_stattrak),
            )
            for it in items.values()
        ]
        self._conn.execute("DELETE FROM item")
        self._conn.executemany("""
            INSERT INTO item (order_id, name, kind, exterior, price, has_sold, is_stattrak)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, rows)
        self._conn.execute("""
            INSERT INTO snapshot_meta (id, updated_at, item_count) VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                updated_at = excluded.updated_at,
                item_count = excluded.item_count
        """, (_utcnow(), len(rows)))


class Database:
    """Handle on the SQLite file; every call opens its own connection."""

    def __init__(self, path: str):
        self.path = path

    def _get_connection(self) -> sqlite3.Connection:
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._transaction() as conn:
            conn.execute("""
              CREATE TABLE IF NOT EXISTS item (
                order_id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                kind TEXT NULL,
                exterior TEXT NULL CHECK (exterior IN ('BS', 'WW', 'FT', 'MW', 'FN')),
                price INTEGER NOT NULL,
                has_sold INTEGER NOT NULL DEFAULT 0,
                is_stattrak INTEGER NOT NULL DEFAULT 0,
                CHECK ((kind IS NULL) = (exterior IS NULL))
              )
            """)
            conn.execute("""
              CREATE TABLE IF NOT EXISTS snapshot_meta (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                updated_at TEXT NOT NULL,
                item_count INTEGER NOT NULL
              )
            """)
            conn.execute("""
              CREATE TABLE IF NOT EXISTS subscription (
                id TEXT PRIMARY KEY,
                channel TEXT NOT NULL CHECK (channel IN ('mobile-push', 'web-push')),
                endpoint TEXT NOT NULL,
                filter_json TEXT NOT NULL DEFAULT '{}',
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
              )
            """)
            conn.execute("""
              CREATE TABLE IF NOT EXISTS dead_letter (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                idempotency_key TEXT NOT NULL,
                subscription_id TEXT NOT NULL,
                channel TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                attempts INTEGER NOT NULL,
                reason TEXT NOT NULL,
                failed_at TEXT NOT NULL
              )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_dead_letter_key ON dead_letter(idempotency_key)"
            )

    # ---- Snapshot ------------------------------------------------------------

    @contextmanager
    def snapshot_transaction(self) -> Iterator[SnapshotTransaction]:
        """
        Atomic read-then-write of the snapshot for one poll cycle.
        Commits when the block exits normally, rolls back on any exception.
        """
        with self._transaction() as conn:
            yield SnapshotTransaction(conn)

    def get_snapshot(self) -> Optional[Dict[int, Item]]:
        with self.snapshot_transaction() as tx:
            return tx.load_snapshot()

    # ---- Subscription registry -----------------------------------------------

    def upsert_subscriptions(self, subscriptions: Iterable[Subscription]) -> None:
        now = _utcnow()
        rows = [
            (
                s.id,
                s.channel.value,
                s.endpoint,
                json.dumps(s.filter.to_dict(), sort_keys=True),
                int(s.active),
                now,
            )
            for s in subscriptions
        ]
        with self._transaction() as conn:
            conn.executemany("""
                INSERT INTO subscription (id, channel, endpoint, filter_json, active, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    channel     = excluded.channel,
                    endpoint    = excluded.endpoint,
                    filter_json = excluded.filter_json,
                    active      = excluded.active
            """, rows)

    def get_active_subscriptions(self) -> List[Subscription]:
        conn = self._get_connection()
        try:
            cur = conn.execute(
                "SELECT id, channel, endpoint, filter_json FROM subscription "
                "WHERE active = 1 ORDER BY id"
            )
            rows = cur.fetchall()
        finally:
            conn.close()

        result: List[Subscription] = []
        for sid, channel, endpoint, filter_json in rows:
            try:
                flt = SubscriptionFilter.from_dict(json.loads(filter_json or "{}"))
            except ValueError:
                logger.error("Subscription %s has an invalid filter; ignoring it", sid)
                continue
            result.append(Subscription(id=sid, channel=Channel(channel), endpoint=endpoint, filter=flt))
        return result

    def deactivate_subscription(self, subscription_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("UPDATE subscription SET active = 0 WHERE id = ?", (subscription_id,))

    # ---- Dead letters ----------------------------------------------------------

    def record_dead_letter(self, message: NotificationMessage, attempts: int, reason: str) -> None:
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO dead_letter (
                  idempotency_key, subscription_id, channel, endpoint,
                  payload_json, attempts, reason, failed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                message.idempotency_key,
                message.subscription_id,
                message.channel.value,
                message.endpoint,
                json.dumps(message.payload, ensure_ascii=False, sort_keys=True),
                int(attempts),
                reason,
                _utcnow(),
            ))

    def get_dead_letters(self) -> List[dict]:
        conn = self._get_connection()
        try:
            cur = conn.execute("""
                SELECT idempotency_key, subscription_id, channel, attempts, reason, failed_at
                FROM dead_letter
                ORDER BY id ASC
            """)
            rows = cur.fetchall()
        finally:
            conn.close()
        return [
            {
                "idempotency_key": r[0],
                "subscription_id": r[1],
                "channel": r[2],
                "attempts": r[3],
                "reason": r[4],
                "failed_at": r[5],
            }
            for r in rows
        ]


__all__ = ["Database", "SnapshotTransaction"]
