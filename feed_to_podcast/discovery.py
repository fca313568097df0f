from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

from .errors import InvalidInputError
from .fetcher import fetch_feed
from .models import Feed, ParsedFeed
from .storage import Database


logger = logging.getLogger(__name__)


FetchFn = Callable[..., ParsedFeed]


@dataclass
class DiscoveryResult:
    feed: Feed
    new_article_count: int


@dataclass
class PollSummary:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    new_articles: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)
    cancelled: bool = False


def validate_feed_url(url: Optional[str]) -> str:
    u = (url or "").strip()
    if not u:
        raise InvalidInputError("feed URL is empty")
    parsed = urlparse(u)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInputError(f"not an http(s) URL: {u}")
    return u


def read_feed_urls_file(path: str) -> List[str]:
    """One URL per line; blank lines and '#' comments are ignored."""
    if not path or not os.path.exists(path):
        return []
    urls: List[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            s = line.split("#", 1)[0].strip()
            if s:
                urls.append(s)
    return urls


class FeedDiscovery:
    def __init__(self, db: Database, fetch: FetchFn = fetch_feed, timeout: float = 30.0):
        self.db = db
        self.fetch = fetch
        self.timeout = timeout

    def discover_feed(self, url: str) -> DiscoveryResult:
        url = validate_feed_url(url)
        parsed = self.fetch(url, timeout=self.timeout)

        feed = self.db.get_feed_by_url(url)
        if feed is None:
            feed = self.db.save_feed(url, title=parsed.title, description=parsed.description, active=True)
            logger.info("New feed registered", extra={"url": url, "feed_id": feed.id})
        elif not feed.title and parsed.title:
            self.db.update_feed_metadata(feed.id, parsed.title, parsed.description)

        new_count = 0
        for item in parsed.items:
            if not item.title or not item.link:
                logger.warning(
                    "Skipping feed item without title or link",
                    extra={"url": url, "title": item.title, "link": item.link},
                )
                continue
            _, created = self.db.save_article(
                feed.id,
                item.title,
                item.link,
                item.pub_date,
                description=item.summary or None,
                content=item.content or None,
            )
            if created:
                new_count += 1

        if new_count:
            self.db.update_feed_last_updated(feed.id)
        logger.info("Feed discovered", extra={"url": url, "items": len(parsed.items), "new_articles": new_count})
        return DiscoveryResult(feed=self.db.get_feed(feed.id) or feed, new_article_count=new_count)

    def add_feed_url(self, url: str) -> Tuple[Feed, bool]:
        """Register a feed from the admin side. Returns (feed, created)."""
        url = validate_feed_url(url)
        existing = self.db.get_feed_by_url(url)
        if existing is not None:
            return existing, False
        return self.discover_feed(url).feed, True

    def poll_targets(self, feed_urls_file: Optional[str] = None) -> List[str]:
        """Active feed URLs plus those listed in the URL file, deduplicated in order."""
        urls = [f.url for f in self.db.list_feeds()]
        if feed_urls_file:
            urls.extend(read_feed_urls_file(feed_urls_file))
        seen = set()
        out: List[str] = []
        for u in urls:
            if u not in seen:
                seen.add(u)
                out.append(u)
        return out

    def poll_feeds(self, urls: List[str], cancel_event: Optional[threading.Event] = None) -> PollSummary:
        summary = PollSummary()
        for url in urls:
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                break
            known = self.db.get_feed_by_url(url.strip())
            if known is not None and not known.active:
                summary.skipped += 1
                continue
            try:
                result = self.discover_feed(url)
            except Exception as e:  # noqa: BLE001
                summary.failed += 1
                summary.errors.append((url, str(e)))
                logger.warning("Feed poll failed", extra={"url": url, "error": str(e)})
                continue
            summary.succeeded += 1
            summary.new_articles += result.new_article_count

        logger.info(
            "Feed poll done",
            extra={
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "new_articles": summary.new_articles,
            },
        )
        return summary
