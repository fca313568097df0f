"""SQLite store for feeds, articles, episodes, the TTS retry queue and feed requests."""
from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .errors import PersistenceError
from .models import (
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    QUEUE_STATUSES,
    REQUEST_PENDING,
    REQUEST_STATUSES,
    Article,
    Episode,
    EpisodeDetail,
    Feed,
    FeedRequest,
    TTSQueueItem,
)


logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL UNIQUE,
    title TEXT,
    description TEXT,
    last_updated TEXT,
    created_at TEXT NOT NULL,
    active BOOLEAN DEFAULT 1
);

CREATE TABLE IF NOT EXISTS articles (
    id TEXT PRIMARY KEY,
    feed_id TEXT NOT NULL,
    title TEXT NOT NULL,
    link TEXT NOT NULL UNIQUE,
    description TEXT,
    content TEXT,
    pub_date TEXT NOT NULL,
    discovered_at TEXT NOT NULL,
    processed BOOLEAN DEFAULT 0,
    FOREIGN KEY(feed_id) REFERENCES feeds(id)
);

CREATE TABLE IF NOT EXISTS episodes (
    id TEXT PRIMARY KEY,
    article_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    audio_path TEXT NOT NULL,
    duration INTEGER,
    file_size INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY(article_id) REFERENCES articles(id)
);

CREATE TABLE IF NOT EXISTS tts_queue (
    id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL,
    script_text TEXT NOT NULL,
    retry_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    last_attempted_at TEXT,
    status TEXT DEFAULT 'pending' CHECK (status IN ('pending', 'processing', 'failed'))
);

CREATE TABLE IF NOT EXISTS feed_requests (
    id TEXT PRIMARY KEY,
    url TEXT NOT NULL,
    requested_by TEXT,
    request_message TEXT,
    status TEXT DEFAULT 'pending' CHECK (status IN ('pending', 'approved', 'rejected')),
    created_at TEXT NOT NULL,
    reviewed_at TEXT,
    reviewed_by TEXT,
    admin_notes TEXT
);

CREATE INDEX IF NOT EXISTS idx_articles_feed_id ON articles(feed_id);
CREATE INDEX IF NOT EXISTS idx_articles_pub_date ON articles(pub_date);
CREATE INDEX IF NOT EXISTS idx_articles_processed ON articles(processed);
CREATE INDEX IF NOT EXISTS idx_episodes_article_id ON episodes(article_id);
CREATE INDEX IF NOT EXISTS idx_feeds_active ON feeds(active);
CREATE INDEX IF NOT EXISTS idx_tts_queue_status ON tts_queue(status);
CREATE INDEX IF NOT EXISTS idx_tts_queue_created_at ON tts_queue(created_at);
CREATE INDEX IF NOT EXISTS idx_feed_requests_status ON feed_requests(status);
"""


def ensure_dirs(*paths: str) -> None:
    for p in paths:
        if p:
            os.makedirs(p, exist_ok=True)


def sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def stable_item_id(link: Optional[str], title: Optional[str] = None) -> str:
    """Deterministic article id for a feed entry.

    Feeds do not carry a usable id of their own, so the id is keyed on the
    link, or on the title when the link is missing. The same entry maps to the
    same id across polls.
    """
    basis = (link or "").strip() or (title or "").strip()
    if not basis:
        raise ValueError("stable_item_id needs a link or a title")
    return sha256(basis)[:32]


def _feed(row: sqlite3.Row) -> Feed:
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        description=row["description"],
        last_updated=row["last_updated"],
        created_at=row["created_at"],
        active=bool(row["active"]),
    )


def _article(row: sqlite3.Row) -> Article:
    return Article(
        id=row["id"],
        feed_id=row["feed_id"],
        title=row["title"],
        link=row["link"],
        description=row["description"],
        content=row["content"],
        pub_date=row["pub_date"],
        discovered_at=row["discovered_at"],
        processed=bool(row["processed"]),
    )


def _episode(row: sqlite3.Row) -> Episode:
    return Episode(
        id=row["id"],
        article_id=row["article_id"],
        title=row["title"],
        description=row["description"],
        audio_path=row["audio_path"],
        duration=row["duration"],
        file_size=row["file_size"],
        created_at=row["created_at"],
    )


def _queue_item(row: sqlite3.Row) -> TTSQueueItem:
    return TTSQueueItem(
        id=row["id"],
        item_id=row["item_id"],
        script_text=row["script_text"],
        retry_count=row["retry_count"],
        created_at=row["created_at"],
        last_attempted_at=row["last_attempted_at"],
        status=row["status"],
    )


def _feed_request(row: sqlite3.Row) -> FeedRequest:
    return FeedRequest(
        id=row["id"],
        url=row["url"],
        requested_by=row["requested_by"],
        request_message=row["request_message"],
        status=row["status"],
        created_at=row["created_at"],
        reviewed_at=row["reviewed_at"],
        reviewed_by=row["reviewed_by"],
        admin_notes=row["admin_notes"],
    )


class Database:
    """SQLite wrapper shared by the scheduler thread and its callers.

    One connection, guarded by a re-entrant lock. Rows are mapped to the
    records in models.py before they leave this class.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            ensure_dirs(os.path.dirname(os.path.abspath(db_path)))
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON;")
        if db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode = WAL;")
            self.conn.execute("PRAGMA synchronous = NORMAL;")
        self.conn.executescript(SCHEMA)
        self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self.conn
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                raise PersistenceError(str(e)) from e
            except Exception:
                self.conn.rollback()
                raise

    def _query(self, sql: str, params: Tuple[Any, ...] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params: Tuple[Any, ...] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # Feeds

    def save_feed(
        self,
        url: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        active: bool = True,
        last_updated: Optional[str] = None,
    ) -> Feed:
        feed = Feed(
            id=new_id(),
            url=url,
            title=title,
            description=description,
            last_updated=last_updated,
            created_at=now_iso(),
            active=active,
        )
        with self._tx() as c:
            c.execute(
                "INSERT INTO feeds (id, url, title, description, last_updated, created_at, active)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (feed.id, feed.url, feed.title, feed.description, feed.last_updated, feed.created_at, int(active)),
            )
        return feed

    def get_feed(self, feed_id: str) -> Optional[Feed]:
        row = self._query_one("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return _feed(row) if row else None

    def get_feed_by_url(self, url: str) -> Optional[Feed]:
        row = self._query_one("SELECT * FROM feeds WHERE url = ?", (url,))
        return _feed(row) if row else None

    def list_feeds(self, include_inactive: bool = False) -> List[Feed]:
        if include_inactive:
            rows = self._query("SELECT * FROM feeds ORDER BY created_at DESC")
        else:
            rows = self._query("SELECT * FROM feeds WHERE active = 1 ORDER BY created_at DESC")
        return [_feed(r) for r in rows]

    def update_feed_last_updated(self, feed_id: str, when: Optional[str] = None) -> None:
        with self._tx() as c:
            c.execute("UPDATE feeds SET last_updated = ? WHERE id = ?", (when or now_iso(), feed_id))

    def update_feed_metadata(self, feed_id: str, title: Optional[str], description: Optional[str]) -> None:
        with self._tx() as c:
            c.execute(
                "UPDATE feeds SET title = COALESCE(?, title), description = COALESCE(?, description) WHERE id = ?",
                (title, description, feed_id),
            )

    def set_feed_active(self, feed_id: str, active: bool) -> bool:
        with self._tx() as c:
            cur = c.execute("UPDATE feeds SET active = ? WHERE id = ?", (int(active), feed_id))
        return cur.rowcount > 0

    def delete_feed(self, feed_id: str) -> Tuple[bool, List[str]]:
        """Delete a feed and everything attached to its articles.

        Returns whether the feed existed and the audio filenames of the deleted
        episodes, so the caller can remove the files.
        """
        with self._tx() as c:
            audio = [
                r["audio_path"]
                for r in c.execute(
                    "SELECT e.audio_path FROM episodes e JOIN articles a ON e.article_id = a.id"
                    " WHERE a.feed_id = ?",
                    (feed_id,),
                ).fetchall()
            ]
            c.execute(
                "DELETE FROM episodes WHERE article_id IN (SELECT id FROM articles WHERE feed_id = ?)",
                (feed_id,),
            )
            c.execute(
                "DELETE FROM tts_queue WHERE item_id IN (SELECT id FROM articles WHERE feed_id = ?)",
                (feed_id,),
            )
            c.execute("DELETE FROM articles WHERE feed_id = ?", (feed_id,))
            cur = c.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            existed = cur.rowcount > 0
        return existed, audio

    # Articles

    def save_article(
        self,
        feed_id: str,
        title: str,
        link: str,
        pub_date: str,
        description: Optional[str] = None,
        content: Optional[str] = None,
        processed: bool = False,
    ) -> Tuple[str, bool]:
        """Insert an article unless its link is already known.

        Returns (article id, created). A duplicate link is a no-op that returns
        the id of the stored article.
        """
        article_id = stable_item_id(link, title)
        with self._tx() as c:
            cur = c.execute(
                "INSERT OR IGNORE INTO articles"
                " (id, feed_id, title, link, description, content, pub_date, discovered_at, processed)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (article_id, feed_id, title, link, description, content, pub_date, now_iso(), int(processed)),
            )
            if cur.rowcount == 0:
                row = c.execute("SELECT id FROM articles WHERE link = ?", (link,)).fetchone()
                return row["id"], False
        return article_id, True

    def get_article(self, article_id: str) -> Optional[Article]:
        row = self._query_one("SELECT * FROM articles WHERE id = ?", (article_id,))
        return _article(row) if row else None

    def get_unprocessed_articles(self, limit: Optional[int] = None, since: Optional[str] = None) -> List[Article]:
        """Unprocessed articles of active feeds, newest first."""
        sql = (
            "SELECT a.* FROM articles a JOIN feeds f ON a.feed_id = f.id"
            " WHERE a.processed = 0 AND f.active = 1"
        )
        params: List[Any] = []
        if since:
            sql += " AND a.pub_date >= ?"
            params.append(since)
        sql += " ORDER BY a.pub_date DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_article(r) for r in self._query(sql, tuple(params))]

    def list_articles(self, feed_id: Optional[str] = None) -> List[Article]:
        if feed_id:
            rows = self._query("SELECT * FROM articles WHERE feed_id = ? ORDER BY pub_date DESC", (feed_id,))
        else:
            rows = self._query("SELECT * FROM articles ORDER BY pub_date DESC")
        return [_article(r) for r in rows]

    # Episodes

    def save_episode(
        self,
        article_id: str,
        title: str,
        audio_path: str,
        description: Optional[str] = None,
        duration: Optional[int] = None,
        file_size: Optional[int] = None,
        mark_processed: bool = False,
    ) -> Episode:
        """Insert an episode; with mark_processed the article flips in the same transaction."""
        if not article_id or not title or not audio_path:
            raise PersistenceError("article_id, title and audio_path are required")
        ep = Episode(
            id=new_id(),
            article_id=article_id,
            title=title,
            description=description,
            audio_path=audio_path,
            duration=duration,
            file_size=file_size,
            created_at=now_iso(),
        )
        with self._tx() as c:
            c.execute(
                "INSERT INTO episodes (id, article_id, title, description, audio_path, duration, file_size, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (ep.id, ep.article_id, ep.title, ep.description, ep.audio_path, ep.duration, ep.file_size, ep.created_at),
            )
            if mark_processed:
                c.execute("UPDATE articles SET processed = 1 WHERE id = ?", (article_id,))
        return ep

    def get_episode_for_article(self, article_id: str) -> Optional[Episode]:
        row = self._query_one(
            "SELECT * FROM episodes WHERE article_id = ? ORDER BY created_at DESC LIMIT 1", (article_id,)
        )
        return _episode(row) if row else None

    def list_episodes(self) -> List[Episode]:
        return [_episode(r) for r in self._query("SELECT * FROM episodes ORDER BY created_at DESC")]

    def list_episodes_with_articles(self) -> List[EpisodeDetail]:
        rows = self._query(
            """
            SELECT
                e.id AS e_id, e.article_id AS e_article_id, e.title AS e_title,
                e.description AS e_description, e.audio_path AS e_audio_path,
                e.duration AS e_duration, e.file_size AS e_file_size, e.created_at AS e_created_at,
                a.id AS a_id, a.feed_id AS a_feed_id, a.title AS a_title, a.link AS a_link,
                a.description AS a_description, a.content AS a_content, a.pub_date AS a_pub_date,
                a.discovered_at AS a_discovered_at, a.processed AS a_processed,
                f.id AS f_id, f.url AS f_url, f.title AS f_title, f.description AS f_description,
                f.last_updated AS f_last_updated, f.created_at AS f_created_at, f.active AS f_active
            FROM episodes e
            JOIN articles a ON e.article_id = a.id
            JOIN feeds f ON a.feed_id = f.id
            ORDER BY e.created_at DESC
            """
        )
        out: List[EpisodeDetail] = []
        for r in rows:
            sub = {k: {p[2:]: r[p] for p in r.keys() if p.startswith(k)} for k in ("e_", "a_", "f_")}
            out.append(
                EpisodeDetail(
                    episode=Episode(**sub["e_"]),
                    article=Article(**{**sub["a_"], "processed": bool(sub["a_"]["processed"])}),
                    feed=Feed(**{**sub["f_"], "active": bool(sub["f_"]["active"])}),
                )
            )
        return out

    # TTS retry queue

    def enqueue_tts(self, item_id: str, script_text: str, retry_count: int = 0) -> str:
        queue_id = new_id()
        with self._tx() as c:
            c.execute(
                "INSERT INTO tts_queue (id, item_id, script_text, retry_count, created_at, status)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (queue_id, item_id, script_text, int(retry_count), now_iso(), QUEUE_PENDING),
            )
        logger.info("Added to TTS queue", extra={"item_id": item_id, "queue_id": queue_id, "retry_count": retry_count})
        return queue_id

    def get_pending_queue_items(self, limit: int = 10) -> List[TTSQueueItem]:
        rows = self._query(
            "SELECT * FROM tts_queue WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (QUEUE_PENDING, int(limit)),
        )
        return [_queue_item(r) for r in rows]

    def get_queue_item(self, queue_id: str) -> Optional[TTSQueueItem]:
        row = self._query_one("SELECT * FROM tts_queue WHERE id = ?", (queue_id,))
        return _queue_item(row) if row else None

    def list_queue_items(self, status: Optional[str] = None) -> List[TTSQueueItem]:
        if status:
            rows = self._query("SELECT * FROM tts_queue WHERE status = ? ORDER BY created_at ASC", (status,))
        else:
            rows = self._query("SELECT * FROM tts_queue ORDER BY created_at ASC")
        return [_queue_item(r) for r in rows]

    def queued_item_ids(self) -> Set[str]:
        return {r["item_id"] for r in self._query("SELECT DISTINCT item_id FROM tts_queue")}

    def update_queue_item(self, queue_id: str, status: str, retry_count: Optional[int] = None) -> None:
        if status not in QUEUE_STATUSES:
            raise ValueError(f"unknown queue status: {status}")
        with self._tx() as c:
            if retry_count is None:
                c.execute(
                    "UPDATE tts_queue SET status = ?, last_attempted_at = ? WHERE id = ?",
                    (status, now_iso(), queue_id),
                )
            else:
                c.execute(
                    "UPDATE tts_queue SET status = ?, retry_count = ?, last_attempted_at = ? WHERE id = ?",
                    (status, int(retry_count), now_iso(), queue_id),
                )

    def remove_queue_item(self, queue_id: str) -> None:
        with self._tx() as c:
            c.execute("DELETE FROM tts_queue WHERE id = ?", (queue_id,))

    def purge_failed_queue_items(self) -> int:
        with self._tx() as c:
            cur = c.execute("DELETE FROM tts_queue WHERE status = ?", (QUEUE_FAILED,))
        return cur.rowcount

    def reset_stale_processing(self) -> int:
        """Put rows left in 'processing' by an interrupted drain back to 'pending'."""
        with self._tx() as c:
            cur = c.execute(
                "UPDATE tts_queue SET status = ? WHERE status = ?", (QUEUE_PENDING, QUEUE_PROCESSING)
            )
        if cur.rowcount:
            logger.warning("Reset stale TTS queue rows", extra={"count": cur.rowcount})
        return cur.rowcount

    # Feed requests

    def submit_feed_request(
        self, url: str, requested_by: Optional[str] = None, request_message: Optional[str] = None
    ) -> FeedRequest:
        req = FeedRequest(
            id=new_id(),
            url=url,
            requested_by=requested_by,
            request_message=request_message,
            status=REQUEST_PENDING,
            created_at=now_iso(),
        )
        with self._tx() as c:
            c.execute(
                "INSERT INTO feed_requests (id, url, requested_by, request_message, status, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?)",
                (req.id, req.url, req.requested_by, req.request_message, req.status, req.created_at),
            )
        logger.info("Feed request submitted", extra={"url": url, "request_id": req.id})
        return req

    def get_feed_request(self, request_id: str) -> Optional[FeedRequest]:
        row = self._query_one("SELECT * FROM feed_requests WHERE id = ?", (request_id,))
        return _feed_request(row) if row else None

    def list_feed_requests(self, status: Optional[str] = None) -> List[FeedRequest]:
        if status:
            rows = self._query("SELECT * FROM feed_requests WHERE status = ? ORDER BY created_at DESC", (status,))
        else:
            rows = self._query("SELECT * FROM feed_requests ORDER BY created_at DESC")
        return [_feed_request(r) for r in rows]

    def review_feed_request(
        self,
        request_id: str,
        status: str,
        reviewed_by: Optional[str] = None,
        admin_notes: Optional[str] = None,
    ) -> bool:
        """Move a pending request to approved/rejected. Reviewed requests are left alone."""
        if status not in REQUEST_STATUSES or status == REQUEST_PENDING:
            raise ValueError(f"cannot review a request to status {status!r}")
        with self._tx() as c:
            cur = c.execute(
                "UPDATE feed_requests SET status = ?, reviewed_at = ?, reviewed_by = ?, admin_notes = ?"
                " WHERE id = ? AND status = ?",
                (status, now_iso(), reviewed_by, admin_notes, request_id, REQUEST_PENDING),
            )
        return cur.rowcount > 0

    # Stats

    def stats(self) -> Dict[str, Any]:
        def count(sql: str, params: Tuple[Any, ...] = ()) -> int:
            row = self._query_one(sql, params)
            return int(row[0]) if row else 0

        queue = {s: count("SELECT COUNT(*) FROM tts_queue WHERE status = ?", (s,)) for s in QUEUE_STATUSES}
        return {
            "total_feeds": count("SELECT COUNT(*) FROM feeds"),
            "active_feeds": count("SELECT COUNT(*) FROM feeds WHERE active = 1"),
            "inactive_feeds": count("SELECT COUNT(*) FROM feeds WHERE active = 0"),
            "total_articles": count("SELECT COUNT(*) FROM articles"),
            "processed_articles": count("SELECT COUNT(*) FROM articles WHERE processed = 1"),
            "pending_articles": count("SELECT COUNT(*) FROM articles WHERE processed = 0"),
            "total_episodes": count("SELECT COUNT(*) FROM episodes"),
            "tts_queue": queue,
            "pending_feed_requests": count("SELECT COUNT(*) FROM feed_requests WHERE status = ?", (REQUEST_PENDING,)),
        }
