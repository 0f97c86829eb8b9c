"""
Skin shop listing monitor.

This package polls the skin shop listing page, diffs every snapshot against
the last persisted one in SQLite, routes the resulting change events to
subscriptions and delivers them over mobile push (FCM) and browser push
(Web Push).  See README.md for details.
"""

__all__ = [
    "config",
    "db",
    "diff",
    "dispatcher",
    "main",
    "models",
    "normalizer",
    "notifier",
    "ratelimit",
    "router",
    "scraper",
    "utils",
]
