from __future__ import annotations

import datetime as dt
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Optional

from .chunker import split_into_chunks
from .config import AppConfig
from .discovery import FeedDiscovery
from .errors import BatchCancelled, PersistenceError, QueuedForRetry, RetriesExhausted, SynthesisError
from .fetcher import to_iso
from .models import Article, Episode, TTSQueueItem
from .storage import Database
from .tts import probe_audio
from .tts_queue import RetryQueue


logger = logging.getLogger(__name__)


DESCRIPTION_CHARS = 200


@dataclass
class BatchSummary:
    feeds_ok: int = 0
    feeds_failed: int = 0
    new_articles: int = 0
    episodes_created: int = 0
    articles_failed: int = 0
    articles_queued: int = 0
    queue_recovered: int = 0
    queue_failed: int = 0
    cancelled: bool = False


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def episode_description(script: str) -> str:
    chunks = split_into_chunks(script, DESCRIPTION_CHARS)
    return chunks[0] if chunks else ""


class EpisodePipeline:
    def __init__(
        self,
        db: Database,
        discovery: FeedDiscovery,
        llm: Any,
        queue: RetryQueue,
        publisher: Any,
        cfg: AppConfig,
    ):
        self.db = db
        self.discovery = discovery
        self.llm = llm
        self.queue = queue
        self.publisher = publisher
        self.cfg = cfg

    def _since(self) -> Optional[str]:
        hours = self.cfg.batch.max_article_age_hours
        if not hours:
            return None
        return to_iso(dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=hours))

    def _republish(self) -> None:
        try:
            self.publisher.republish()
        except Exception as e:  # noqa: BLE001
            logger.error("RSS republish failed", extra={"error": str(e)})

    def _finalize(self, article: Article, title: str, script: str, filename: str) -> Episode:
        """Persist the episode and flip the article, only for audio that is really there."""
        path = os.path.join(self.cfg.paths.audio_dir, filename)
        size, duration = probe_audio(path)
        if size == 0:
            raise SynthesisError(f"audio file {filename} is missing or empty")
        ep = self.db.save_episode(
            article.id,
            title,
            filename,
            description=episode_description(script),
            duration=duration,
            file_size=size,
            mark_processed=True,
        )
        logger.info("Episode saved", extra={"article_id": article.id, "episode_id": ep.id, "bytes": size})
        self._republish()
        return ep

    def on_recovered(self, item: TTSQueueItem, filename: str) -> None:
        """Finish the episode for an article whose audio came out of the retry queue."""
        article = self.db.get_article(item.item_id)
        if article is None:
            logger.warning("Recovered audio has no article", extra={"item_id": item.item_id, "file": filename})
            return
        if article.processed:
            return
        self._finalize(article, article.title, item.script_text, filename)

    def generate_episode(self, article: Article, cancel_event: Optional[threading.Event] = None) -> Episode:
        feed = self.db.get_feed(article.feed_id)
        if feed is None:
            raise PersistenceError(f"feed {article.feed_id} of article {article.id} not found")

        category = self.llm.classify(f"{feed.title or ''}\n{article.title}\n{article.link}")
        script = self.llm.generate_script(feed.title, [article])
        title = f"{category}: {article.title}"
        filename = self.queue.generate(article.id, script, cancel_event=cancel_event, title=title)
        return self._finalize(article, title, script, filename)

    def _process(self, limit: Optional[int], cancel_event: Optional[threading.Event]) -> BatchSummary:
        summary = BatchSummary()

        drained = self.queue.drain(
            self.cfg.batch.queue_drain_limit, on_recovered=self.on_recovered, cancel_event=cancel_event
        )
        summary.queue_recovered = drained.recovered
        summary.queue_failed = drained.failed
        if drained.cancelled or _cancelled(cancel_event):
            summary.cancelled = True
            return summary

        limit = limit or self.cfg.batch.article_limit
        queued = self.db.queued_item_ids()
        articles = [a for a in self.db.get_unprocessed_articles(limit, since=self._since()) if a.id not in queued]
        logger.info("Processing unprocessed articles", extra={"count": len(articles)})

        for article in articles:
            if _cancelled(cancel_event):
                summary.cancelled = True
                break
            try:
                self.generate_episode(article, cancel_event)
                summary.episodes_created += 1
            except BatchCancelled:
                summary.cancelled = True
                break
            except QueuedForRetry as e:
                summary.articles_queued += 1
                logger.warning(
                    "TTS failed, article left for the retry queue",
                    extra={"article_id": article.id, "queue_id": e.queue_id},
                )
            except RetriesExhausted as e:
                summary.articles_failed += 1
                logger.error("TTS retries exhausted", extra={"article_id": article.id, "error": str(e)})
            except Exception as e:  # noqa: BLE001
                summary.articles_failed += 1
                logger.error(
                    "Episode generation failed",
                    extra={"article_id": article.id, "error_type": type(e).__name__, "error": str(e)},
                )

        if summary.cancelled:
            logger.warning("Batch cancelled", extra={"episodes_created": summary.episodes_created})
        return summary

    def process_unprocessed_articles(
        self, limit: Optional[int] = None, cancel_event: Optional[threading.Event] = None
    ) -> int:
        return self._process(limit, cancel_event).episodes_created

    def run_batch(self, cancel_event: Optional[threading.Event] = None, limit: Optional[int] = None) -> BatchSummary:
        logger.info("Batch started")
        poll = self.discovery.poll_feeds(self.discovery.poll_targets(self.cfg.paths.feed_urls_file), cancel_event)
        if poll.cancelled:
            summary = BatchSummary(cancelled=True)
        else:
            summary = self._process(limit, cancel_event)
        summary.feeds_ok = poll.succeeded
        summary.feeds_failed = poll.failed
        summary.new_articles = poll.new_articles

        self._republish()
        logger.info("Batch finished", extra=dict(summary.__dict__))
        return summary
