"""Operator actions with structured results, shared by the CLI and any HTTP front end."""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .config import AppConfig
from .discovery import FeedDiscovery, validate_feed_url
from .errors import InvalidInputError
from .models import REQUEST_APPROVED, REQUEST_PENDING, REQUEST_REJECTED, REQUEST_STATUSES
from .scheduler import BatchScheduler
from .storage import Database
from .tts_queue import RetryQueue


logger = logging.getLogger(__name__)


OK = "OK"
CREATED = "CREATED"
EXISTS = "EXISTS"
DELETED = "DELETED"
UPDATED = "UPDATED"
TRIGGERED = "TRIGGERED"
SKIPPED = "SKIPPED"
NOT_FOUND = "NOT_FOUND"
INVALID = "INVALID"
ERROR = "ERROR"

SECRET_MASK = "***SET***"
SECRET_ENV_VARS = ("OPENAI_API_KEY", "ADMIN_PASSWORD")


@dataclass
class AdminResult:
    ok: bool
    result: str
    message: str = ""
    data: Any = None


def _ok(result: str, message: str = "", data: Any = None) -> AdminResult:
    return AdminResult(True, result, message, data)


def _fail(result: str, message: str) -> AdminResult:
    return AdminResult(False, result, message)


class AdminService:
    def __init__(
        self,
        db: Database,
        discovery: FeedDiscovery,
        queue: RetryQueue,
        publisher: Any,
        cfg: AppConfig,
        scheduler: Optional[BatchScheduler] = None,
    ):
        self.db = db
        self.discovery = discovery
        self.queue = queue
        self.publisher = publisher
        self.cfg = cfg
        self.scheduler = scheduler

    # Feeds

    def list_feeds(self, include_inactive: bool = True) -> AdminResult:
        return _ok(OK, data=self.db.list_feeds(include_inactive=include_inactive))

    def add_feed(self, url: str) -> AdminResult:
        try:
            feed, created = self.discovery.add_feed_url(url)
        except InvalidInputError as e:
            return _fail(INVALID, str(e))
        except Exception as e:  # noqa: BLE001
            logger.error("Adding feed failed", extra={"url": url, "error": str(e)})
            return _fail(ERROR, str(e))
        if created:
            return _ok(CREATED, "feed added", feed)
        return _ok(EXISTS, "feed already registered", feed)

    def delete_feed(self, feed_id: str) -> AdminResult:
        existed, audio_files = self.db.delete_feed(feed_id)
        if not existed:
            return _fail(NOT_FOUND, f"feed {feed_id} not found")
        for name in audio_files:
            path = os.path.join(self.cfg.paths.audio_dir, name)
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                logger.warning("Could not remove audio file", extra={"path": path, "error": str(e)})
        self.publisher.republish()
        logger.info("Feed deleted", extra={"feed_id": feed_id, "episodes": len(audio_files)})
        return _ok(DELETED, f"feed deleted with {len(audio_files)} episodes")

    def toggle_feed(self, feed_id: str, active: Optional[bool] = None) -> AdminResult:
        feed = self.db.get_feed(feed_id)
        if feed is None:
            return _fail(NOT_FOUND, f"feed {feed_id} not found")
        new_state = (not feed.active) if active is None else active
        self.db.set_feed_active(feed_id, new_state)
        return _ok(UPDATED, "feed activated" if new_state else "feed deactivated", self.db.get_feed(feed_id))

    def list_articles(self, feed_id: Optional[str] = None) -> AdminResult:
        if feed_id and self.db.get_feed(feed_id) is None:
            return _fail(NOT_FOUND, f"feed {feed_id} not found")
        return _ok(OK, data=self.db.list_articles(feed_id))

    # Episodes

    def list_episodes(self) -> AdminResult:
        return _ok(OK, data=self.db.list_episodes_with_articles())

    # Feed requests

    def submit_feed_request(
        self, url: str, requested_by: Optional[str] = None, request_message: Optional[str] = None
    ) -> AdminResult:
        try:
            url = validate_feed_url(url)
        except InvalidInputError as e:
            return _fail(INVALID, str(e))
        req = self.db.submit_feed_request(url, requested_by, request_message)
        return _ok(CREATED, "request submitted", req)

    def list_feed_requests(self, status: Optional[str] = None) -> AdminResult:
        if status and status not in REQUEST_STATUSES:
            return _fail(INVALID, f"unknown status {status}")
        return _ok(OK, data=self.db.list_feed_requests(status))

    def approve_feed_request(
        self, request_id: str, reviewed_by: Optional[str] = None, admin_notes: Optional[str] = None
    ) -> AdminResult:
        req = self.db.get_feed_request(request_id)
        if req is None:
            return _fail(NOT_FOUND, f"request {request_id} not found")
        if req.status != REQUEST_PENDING:
            return _fail(INVALID, f"request already {req.status}")
        added = self.add_feed(req.url)
        if not added.ok:
            return added
        self.db.review_feed_request(request_id, REQUEST_APPROVED, reviewed_by, admin_notes)
        return _ok(UPDATED, "request approved", {"request": self.db.get_feed_request(request_id), "feed": added.data})

    def reject_feed_request(
        self, request_id: str, reviewed_by: Optional[str] = None, admin_notes: Optional[str] = None
    ) -> AdminResult:
        req = self.db.get_feed_request(request_id)
        if req is None:
            return _fail(NOT_FOUND, f"request {request_id} not found")
        if not self.db.review_feed_request(request_id, REQUEST_REJECTED, reviewed_by, admin_notes):
            return _fail(INVALID, f"request already {req.status}")
        return _ok(UPDATED, "request rejected", self.db.get_feed_request(request_id))

    # Batch

    def _no_scheduler(self) -> AdminResult:
        return _fail(INVALID, "batch scheduler is not running in this process")

    def trigger_batch(self) -> AdminResult:
        if self.scheduler is None:
            return self._no_scheduler()
        if self.scheduler.trigger_manual_run():
            return _ok(TRIGGERED, "batch started")
        return _ok(SKIPPED, "batch already running")

    def scheduler_status(self) -> AdminResult:
        if self.scheduler is None:
            return self._no_scheduler()
        return _ok(OK, data=self.scheduler.status())

    def enable_scheduler(self) -> AdminResult:
        if self.scheduler is None:
            return self._no_scheduler()
        self.scheduler.enable()
        return _ok(UPDATED, "scheduler enabled", self.scheduler.status())

    def disable_scheduler(self) -> AdminResult:
        if self.scheduler is None:
            return self._no_scheduler()
        self.scheduler.disable()
        return _ok(UPDATED, "scheduler disabled", self.scheduler.status())

    def force_stop(self) -> AdminResult:
        if self.scheduler is None:
            return self._no_scheduler()
        if self.scheduler.force_stop():
            return _ok(UPDATED, "stop requested")
        return _ok(SKIPPED, "no batch is running")

    # Queue

    def list_failed_queue_items(self) -> AdminResult:
        return _ok(OK, data=self.queue.list_failed())

    def requeue(self, queue_id: str) -> AdminResult:
        if self.queue.requeue(queue_id):
            return _ok(UPDATED, "item requeued")
        return _fail(NOT_FOUND, f"no failed queue item {queue_id}")

    # Overview

    def stats(self) -> AdminResult:
        data: Dict[str, Any] = self.db.stats()
        if self.scheduler is not None:
            data["scheduler"] = dataclasses.asdict(self.scheduler.status())
        return _ok(OK, data=data)

    def env_summary(self) -> AdminResult:
        data: Dict[str, Any] = dataclasses.asdict(self.cfg)
        env: Dict[str, str] = {}
        for name in (self.cfg.llm.api_key_env, *SECRET_ENV_VARS):
            env[name] = SECRET_MASK if os.environ.get(name) else "NOT SET"
        data["secrets"] = env
        return _ok(OK, data=data)
