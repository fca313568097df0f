from __future__ import annotations

import dataclasses
import json
import logging
import signal
import threading
from dataclasses import dataclass
from typing import Any, Optional

import click

from .admin import AdminResult, AdminService
from .config import AppConfig, load_config, validate_config
from .discovery import FeedDiscovery
from .llm import LLMClient
from .logger import setup_logging
from .pipeline import EpisodePipeline
from .rss import PodcastPublisher
from .scheduler import BatchScheduler
from .storage import Database, ensure_dirs
from .tts import build_synthesizer
from .tts_queue import RetryQueue


logger = logging.getLogger(__name__)


@dataclass
class App:
    cfg: AppConfig
    db: Database
    discovery: FeedDiscovery
    queue: RetryQueue
    publisher: PodcastPublisher
    pipeline: EpisodePipeline
    admin: AdminService

    def close(self) -> None:
        self.db.close()


def build_app(cfg: AppConfig, llm: Any = None, synthesizer: Any = None) -> App:
    ensure_dirs(cfg.paths.data_dir, cfg.paths.public_dir, cfg.paths.audio_dir)
    db = Database(cfg.paths.db_path)
    discovery = FeedDiscovery(db, timeout=cfg.batch.feed_timeout_seconds)
    publisher = PodcastPublisher(db, cfg)
    queue = RetryQueue(db, synthesizer or build_synthesizer(cfg), publisher, max_retries=cfg.tts.max_retries)
    pipeline = EpisodePipeline(db, discovery, llm or LLMClient(cfg.llm), queue, publisher, cfg)
    admin = AdminService(db, discovery, queue, publisher, cfg)
    return App(cfg, db, discovery, queue, publisher, pipeline, admin)


def build_scheduler(app: App) -> BatchScheduler:
    batch = app.cfg.batch
    return BatchScheduler(
        lambda cancel: app.pipeline.run_batch(cancel),
        interval_seconds=batch.interval_hours * 3600,
        initial_delay_seconds=batch.initial_delay_seconds,
        enabled=batch.enabled,
        disable_initial_run=batch.disable_initial_run,
    )


def _echo(data: Any) -> None:
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        data = dataclasses.asdict(data)
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _emit(result: AdminResult) -> None:
    _echo(result)
    if not result.ok:
        raise SystemExit(1)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging in text format")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """Turn RSS feeds into a narrated podcast feed."""
    cfg = load_config(config_path)
    if verbose:
        setup_logging("DEBUG", "text")
    else:
        setup_logging(cfg.logging.level, cfg.logging.format)

    problems = validate_config(cfg)
    if problems:
        for msg in problems:
            logger.error("Config error: %s", msg)
        raise SystemExit(1)

    app = build_app(cfg)
    ctx.obj = app
    ctx.call_on_close(app.close)


@cli.command()
@click.pass_obj
def serve(app: App) -> None:
    """Run the batch scheduler until interrupted."""
    scheduler = build_scheduler(app)
    app.admin.scheduler = scheduler
    app.db.reset_stale_processing()
    app.publisher.republish()

    stop = threading.Event()

    def _handle(signum: int, _frame: Any) -> None:
        logger.info("Signal received, shutting down", extra={"signal": signum})
        stop.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)

    scheduler.start()
    logger.info("Scheduler running", extra=dataclasses.asdict(scheduler.status()))
    while not stop.wait(1.0):
        pass
    scheduler.shutdown(wait=True, timeout=120)


@cli.command()
@click.option("--limit", type=int, default=None, help="Max articles to turn into episodes")
@click.pass_obj
def run(app: App, limit: Optional[int]) -> None:
    """Run one batch now and wait for it."""
    app.db.reset_stale_processing()
    _echo(app.pipeline.run_batch(limit=limit))


@cli.command()
@click.pass_obj
def stats(app: App) -> None:
    """Counts of feeds, articles, episodes and queue rows."""
    _emit(app.admin.stats())


@cli.command()
@click.pass_obj
def env(app: App) -> None:
    """Effective settings, secrets masked."""
    _emit(app.admin.env_summary())


@cli.command()
@click.pass_obj
def rss(app: App) -> None:
    """Regenerate the podcast feed document."""
    click.echo(app.publisher.republish())


@cli.group()
def feeds() -> None:
    """Manage subscribed feeds."""


@feeds.command("add")
@click.argument("url")
@click.pass_obj
def feeds_add(app: App, url: str) -> None:
    _emit(app.admin.add_feed(url))


@feeds.command("list")
@click.option("--active-only", is_flag=True)
@click.pass_obj
def feeds_list(app: App, active_only: bool) -> None:
    _emit(app.admin.list_feeds(include_inactive=not active_only))


@feeds.command("remove")
@click.argument("feed_id")
@click.pass_obj
def feeds_remove(app: App, feed_id: str) -> None:
    _emit(app.admin.delete_feed(feed_id))


@feeds.command("toggle")
@click.argument("feed_id")
@click.option("--active/--inactive", default=None, help="Set explicitly instead of flipping")
@click.pass_obj
def feeds_toggle(app: App, feed_id: str, active: Optional[bool]) -> None:
    _emit(app.admin.toggle_feed(feed_id, active))


@feeds.command("articles")
@click.argument("feed_id", required=False)
@click.pass_obj
def feeds_articles(app: App, feed_id: Optional[str]) -> None:
    _emit(app.admin.list_articles(feed_id))


@cli.group()
def requests() -> None:
    """Review feed requests."""


@requests.command("submit")
@click.argument("url")
@click.option("--by", "requested_by", default=None)
@click.option("--message", default=None)
@click.pass_obj
def requests_submit(app: App, url: str, requested_by: Optional[str], message: Optional[str]) -> None:
    _emit(app.admin.submit_feed_request(url, requested_by, message))


@requests.command("list")
@click.option("--status", type=click.Choice(["pending", "approved", "rejected"]), default=None)
@click.pass_obj
def requests_list(app: App, status: Optional[str]) -> None:
    _emit(app.admin.list_feed_requests(status))


@requests.command("approve")
@click.argument("request_id")
@click.option("--by", "reviewed_by", default=None)
@click.option("--notes", default=None)
@click.pass_obj
def requests_approve(app: App, request_id: str, reviewed_by: Optional[str], notes: Optional[str]) -> None:
    _emit(app.admin.approve_feed_request(request_id, reviewed_by, notes))


@requests.command("reject")
@click.argument("request_id")
@click.option("--by", "reviewed_by", default=None)
@click.option("--notes", default=None)
@click.pass_obj
def requests_reject(app: App, request_id: str, reviewed_by: Optional[str], notes: Optional[str]) -> None:
    _emit(app.admin.reject_feed_request(request_id, reviewed_by, notes))


@cli.group()
def queue() -> None:
    """Inspect the TTS retry queue."""


@queue.command("failed")
@click.pass_obj
def queue_failed(app: App) -> None:
    _emit(app.admin.list_failed_queue_items())


@queue.command("requeue")
@click.argument("queue_id")
@click.pass_obj
def queue_requeue(app: App, queue_id: str) -> None:
    _emit(app.admin.requeue(queue_id))


@queue.command("purge")
@click.pass_obj
def queue_purge(app: App) -> None:
    _echo({"purged": app.queue.purge_failed()})


def main() -> None:
    cli(prog_name="feed-to-podcast")


if __name__ == "__main__":
    main()
