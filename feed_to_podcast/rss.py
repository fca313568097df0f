from __future__ import annotations

import datetime as dt
import email.utils
import html
import logging
import os
import tempfile
import threading
from typing import List, Optional

from dateutil import parser as dateparser

from .config import AppConfig, PodcastConfig
from .models import EpisodeDetail
from .storage import Database, ensure_dirs


logger = logging.getLogger(__name__)


AUDIO_URL_PREFIX = "podcast_audio"

_write_lock = threading.Lock()


def rfc2822(dt_obj: dt.datetime) -> str:
    if dt_obj.tzinfo is None:
        dt_obj = dt_obj.replace(tzinfo=dt.timezone.utc)
    return email.utils.format_datetime(dt_obj)


def _pub_date(value: Optional[str]) -> str:
    try:
        parsed = dateparser.parse(value) if value else None
    except (ValueError, OverflowError):
        parsed = None
    return rfc2822(parsed or dt.datetime.now(dt.timezone.utc))


def format_duration(seconds: int) -> str:
    h, rest = divmod(int(seconds), 3600)
    m, s = divmod(rest, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


def audio_url(base_url: str, audio_path: str) -> str:
    return f"{base_url.rstrip('/')}/{AUDIO_URL_PREFIX}/{audio_path}"


def render_rss(podcast: PodcastConfig, episodes: List[EpisodeDetail], feed_url: str) -> str:
    rss_head = (
        "<?xml version=\"1.0\" encoding=\"UTF-8\"?>\n"
        "<rss version=\"2.0\"\n"
        "     xmlns:itunes=\"http://www.itunes.com/dtds/podcast-1.0.dtd\"\n"
        "     xmlns:atom=\"http://www.w3.org/2005/Atom\">\n"
        "  <channel>\n"
        f"    <title>{html.escape(podcast.title)}</title>\n"
        f"    <link>{html.escape(podcast.link)}</link>\n"
        f"    <description>{html.escape(podcast.description)}</description>\n"
        f"    <language>{html.escape(podcast.language)}</language>\n"
        f"    <lastBuildDate>{rfc2822(dt.datetime.now(dt.timezone.utc))}</lastBuildDate>\n"
        f"    <ttl>{html.escape(podcast.ttl)}</ttl>\n"
        f"    <atom:link href=\"{html.escape(feed_url)}\" rel=\"self\" type=\"application/rss+xml\" />\n"
        f"    <itunes:author>{html.escape(podcast.author)}</itunes:author>\n"
        f"    <itunes:category text=\"{html.escape(podcast.categories)}\" />\n"
        "    <itunes:explicit>false</itunes:explicit>\n"
    )
    if podcast.image_url:
        img = html.escape(podcast.image_url)
        rss_head += f"    <itunes:image href=\"{img}\" />\n"
        rss_head += (
            "    <image>\n"
            f"      <url>{img}</url>\n"
            f"      <title>{html.escape(podcast.title)}</title>\n"
            f"      <link>{html.escape(podcast.link)}</link>\n"
            "    </image>\n"
        )

    rss_items = []
    for d in episodes:
        ep = d.episode
        duration = ""
        if ep.duration:
            duration = f"<itunes:duration>{format_duration(ep.duration)}</itunes:duration>\n"
        item_xml = f"""
    <item>
      <title>{html.escape(ep.title)}</title>
      <link>{html.escape(d.article.link)}</link>
      <guid isPermaLink="false">{html.escape(ep.id)}</guid>
      <pubDate>{_pub_date(ep.created_at)}</pubDate>
      <enclosure url="{html.escape(audio_url(podcast.base_url, ep.audio_path))}" length="{int(ep.file_size or 0)}" type="audio/mpeg" />
      {duration}      <description><![CDATA[{ep.description or d.article.title}]]></description>
    </item>
"""
        rss_items.append(item_xml)

    rss_tail = "  </channel>\n</rss>\n"
    return rss_head + "".join(rss_items) + rss_tail


class PodcastPublisher:
    """Regenerates the podcast RSS document from every episode with playable audio."""

    def __init__(self, db: Database, cfg: AppConfig):
        self.db = db
        self.cfg = cfg

    def feed_url(self) -> str:
        return f"{self.cfg.podcast.base_url.rstrip('/')}/{self.cfg.paths.feed_filename}"

    def _has_audio(self, d: EpisodeDetail) -> bool:
        path = os.path.join(self.cfg.paths.audio_dir, d.episode.audio_path)
        return os.path.isfile(path) and os.path.getsize(path) > 0

    def republish(self) -> str:
        episodes = self.db.list_episodes_with_articles()
        playable = [d for d in episodes if self._has_audio(d)]
        if len(playable) != len(episodes):
            logger.warning(
                "Episodes without audio left out of feed",
                extra={"skipped": len(episodes) - len(playable)},
            )
        xml = render_rss(self.cfg.podcast, playable, self.feed_url())

        out_path = self.cfg.paths.feed_path
        out_dir = os.path.dirname(os.path.abspath(out_path))
        ensure_dirs(out_dir)
        with _write_lock:
            fd, tmp_path = tempfile.mkstemp(prefix=".podcast-", suffix=".xml", dir=out_dir)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(xml)
                os.replace(tmp_path, out_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        logger.info("RSS written", extra={"path": out_path, "episodes": len(playable)})
        return out_path
