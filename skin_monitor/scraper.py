"""Fetch the skin shop listing page and split it into raw listing records.

The listing section is plain text. Every listing starts with a ``★`` line,
followed by the item line and the price line::

    ★
    AK-47 | Redline (Field-Tested) #1234
    販売価格: 12,345円

Vanilla knives read ``Karambit (Vanilla) #1234`` and sold listings lose their
name: ``(売約済み) #1234``. Records are returned as plain dicts; validation
is the normalizer's job.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Dict, Iterable, List, Optional

import requests
from bs4 import BeautifulSoup

from .config import FETCH_TIMEOUT_SECONDS, SITE_URL
from .utils import HTTPError, get_http_session, retryable_request

logger = logging.getLogger(__name__)

LISTING_SELECTOR = "html > body > div.contents > div.inner > div.main > section"
SECTION_MARK = "★"
STATTRAK_PREFIXES = ("StatTrak™ ", "StatTrak ")

SOLD_RE = re.compile(r"\(売約済み\)\s*#(\d+)")
VANILLA_RE = re.compile(r"^(.+?)\s*\(Vanilla\)\s*#(\d+)")
SKIN_RE = re.compile(r"^(.+?)\s*\(([-A-Za-z ]+)\)\s*#(\d+)")
PRICE_RE = re.compile(r"販売価格[:：]\s*([0-9,]+)\s*円")


class FetchError(Exception):
    """The listing page could not be fetched or has no listing section."""


class ListingFormatError(ValueError):
    """One listing section does not match any known item line format."""


@retryable_request
def _get(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    """Thin wrapper around session.get with retry policy from utils.retryable_request."""
    return session.get(url, **kwargs)


def _strip_stattrak(name: str) -> tuple[str, bool]:
    for prefix in STATTRAK_PREFIXES:
        if name.startswith(prefix):
            return name[len(prefix):].strip(), True
    return name, False


def parse_listing(item_line: str, price_line: str) -> Dict[str, Any]:
    """Parse one listing section into a raw record."""
    item_line = item_line.strip()
    match = PRICE_RE.search(price_line)
    if not match:
        raise ListingFormatError(f"no price found in {price_line!r}")
    price = match.group(1).replace(",", "")

    parts = item_line.split(" | ")
    if len(parts) == 1:
        sold = SOLD_RE.search(parts[0])
        if sold:
            return {"order_id": sold.group(1), "name": None, "kind": None,
                    "exterior": None, "price": price, "has_sold": True, "is_stattrak": False}
        vanilla = VANILLA_RE.match(parts[0])
        if not vanilla:
            raise ListingFormatError(f"invalid item line {item_line!r}")
        name, stattrak = _strip_stattrak(vanilla.group(1).strip())
        return {"order_id": vanilla.group(2), "name": name, "kind": None,
                "exterior": None, "price": price, "has_sold": False, "is_stattrak": stattrak}

    if len(parts) == 2:
        skin = SKIN_RE.match(parts[1].strip())
        if not skin:
            raise ListingFormatError(f"invalid item line {item_line!r}")
        name, stattrak = _strip_stattrak(parts[0].strip())
        return {"order_id": skin.group(3), "name": name, "kind": skin.group(1).strip(),
                "exterior": skin.group(2).strip(), "price": price, "has_sold": False,
                "is_stattrak": stattrak}

    raise ListingFormatError(f"invalid item line {item_line!r}")


def parse_listing_lines(lines: Iterable[str]) -> List[Dict[str, Any]]:
    """Walk the text lines of the listing section; corrupt sections are skipped."""
    records: List[Dict[str, Any]] = []
    text = [line.strip() for line in lines if line and line.strip()]

    i = 0
    while i < len(text):
        if text[i] != SECTION_MARK:
            i += 1
            continue
        section = text[i + 1:i + 3]
        if len(section) < 2 or SECTION_MARK in section:
            logger.warning("Found corrupted listing section after line %d.", i)
            i += 1
            continue
        try:
            records.append(parse_listing(section[0], section[1]))
        except ListingFormatError as e:
            logger.warning("Found corrupted listing section: %s", e)
        i += 3
    return records


def parse_listing_page(html: str) -> List[Dict[str, Any]]:
    soup = BeautifulSoup(html, "html.parser")
    section = soup.select_one(LISTING_SELECTOR)
    if section is None:
        raise FetchError("listing section not found on the page")
    return parse_listing_lines(section.stripped_strings)


def fetch_listings(
    url: str = SITE_URL,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = FETCH_TIMEOUT_SECONDS,
) -> List[Dict[str, Any]]:
    """Fetch the listing page and return its raw records. Raises FetchError."""
    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True

    try:
        start = time.monotonic()
        try:
            resp = _get(session, url, timeout=timeout)
        except (requests.RequestException, HTTPError) as e:
            raise FetchError(f"failed to fetch {url}: {e}") from e
        logger.info(
            "Fetched %s with status %s in %.2fs", url, resp.status_code, time.monotonic() - start
        )
        # requests falls back to ISO-8859-1 for text/* without a charset
        if not resp.encoding or resp.encoding.lower() == "iso-8859-1":
            resp.encoding = resp.apparent_encoding
        records = parse_listing_page(resp.text)
        logger.info("Parsed %d listing records", len(records))
        return records
    finally:
        if close_session:
            session.close()


__all__ = [
    "FetchError",
    "ListingFormatError",
    "fetch_listings",
    "parse_listing",
    "parse_listing_lines",
    "parse_listing_page",
]
