from __future__ import annotations

import datetime as dt
import logging
from typing import Any, List, Optional

import feedparser
import requests
from dateutil import parser as dateparser
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cleaner import html_to_text
from .models import FeedItem, ParsedFeed
from .errors import FeedFetchError


logger = logging.getLogger(__name__)


USER_AGENT = "feed-to-podcast/0.1 (+https://github.com/)"
ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5"


def build_session(max_retries: int = 2) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=max_retries,
        backoff_factor=1.0,
        status_forcelist=[408, 429, 500, 502, 503, 504],
        allowed_methods=["GET", "HEAD"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": USER_AGENT, "Accept": ACCEPT})
    return session


def parse_datetime(value: Optional[str]) -> dt.datetime:
    """Parse a feed date; missing or garbled dates become "now" in UTC."""
    if value:
        try:
            v = dateparser.parse(value)
            if v is not None:
                if v.tzinfo is None:
                    v = v.replace(tzinfo=dt.timezone.utc)
                return v.astimezone(dt.timezone.utc)
        except (ValueError, OverflowError):
            logger.debug("Unparseable feed date", extra={"value": value})
    return dt.datetime.now(dt.timezone.utc)


def to_iso(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).isoformat(timespec="seconds")


def _entry_content(e: Any) -> str:
    content = getattr(e, "content", None)
    if content:
        try:
            return content[0].value or ""
        except (IndexError, AttributeError, KeyError):
            return ""
    return ""


def parse_feed_document(url: str, body: bytes) -> ParsedFeed:
    parsed = feedparser.parse(body)
    meta = parsed.feed or {}
    title = meta.get("title")
    if parsed.bozo:
        if not parsed.entries and not title:
            raise FeedFetchError(url, f"not a feed: {parsed.bozo_exception}")
        logger.warning("Feed parse warning", extra={"url": url, "detail": str(parsed.bozo_exception)})

    items: List[FeedItem] = []
    for e in parsed.entries:
        published = getattr(e, "published", "") or getattr(e, "updated", "")
        summary = getattr(e, "summary", "") or ""
        items.append(
            FeedItem(
                title=(getattr(e, "title", "") or "").strip(),
                link=(getattr(e, "link", "") or "").strip(),
                pub_date=to_iso(parse_datetime(published)),
                summary=html_to_text(summary),
                content=html_to_text(_entry_content(e)),
            )
        )
    return ParsedFeed(
        url=url,
        title=title,
        description=meta.get("subtitle") or meta.get("description"),
        items=items,
    )


def fetch_feed(url: str, timeout: float = 30.0, session: Optional[requests.Session] = None) -> ParsedFeed:
    """Download and parse one RSS/Atom document."""
    session = session or build_session()
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise FeedFetchError(url, f"request failed: {e}") from e
    if resp.status_code >= 400:
        raise FeedFetchError(url, f"HTTP {resp.status_code}")

    feed = parse_feed_document(url, resp.content)
    logger.info("Fetched feed entries", extra={"url": url, "count": len(feed.items)})
    return feed
