"""Typed records for the rows kept in the podcast database."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_FAILED = "failed"
QUEUE_STATUSES = (QUEUE_PENDING, QUEUE_PROCESSING, QUEUE_FAILED)

REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_APPROVED, REQUEST_REJECTED)


@dataclass
class Feed:
    id: str
    url: str
    created_at: str
    title: Optional[str] = None
    description: Optional[str] = None
    last_updated: Optional[str] = None
    active: bool = True


@dataclass
class Article:
    id: str
    feed_id: str
    title: str
    link: str
    pub_date: str
    discovered_at: str
    description: Optional[str] = None
    content: Optional[str] = None
    processed: bool = False


@dataclass
class Episode:
    id: str
    article_id: str
    title: str
    audio_path: str
    created_at: str
    description: Optional[str] = None
    duration: Optional[int] = None
    file_size: Optional[int] = None


@dataclass
class EpisodeDetail:
    """An Episode joined with the Article and Feed it came from."""

    episode: Episode
    article: Article
    feed: Feed


@dataclass
class TTSQueueItem:
    id: str
    item_id: str
    script_text: str
    created_at: str
    retry_count: int = 0
    last_attempted_at: Optional[str] = None
    status: str = QUEUE_PENDING


@dataclass
class FeedRequest:
    id: str
    url: str
    created_at: str
    status: str = REQUEST_PENDING
    requested_by: Optional[str] = None
    request_message: Optional[str] = None
    reviewed_at: Optional[str] = None
    reviewed_by: Optional[str] = None
    admin_notes: Optional[str] = None


@dataclass
class FeedItem:
    """One entry of a parsed remote feed, before it becomes an Article."""

    title: str
    link: str
    pub_date: str
    summary: str = ""
    content: str = ""


@dataclass
class ParsedFeed:
    url: str
    title: Optional[str] = None
    description: Optional[str] = None
    items: List[FeedItem] = field(default_factory=list)
