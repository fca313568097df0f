from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml


CONFIG_PATH_ENV = "FEED_TO_PODCAST_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"


@dataclass
class PodcastConfig:
    title: str
    link: str
    description: str
    language: str
    author: str
    categories: str
    ttl: str
    base_url: str
    image_url: str


@dataclass
class LLMConfig:
    endpoint: str
    model: str
    api_key_env: str
    timeout_seconds: float
    script_max_chars: int

    @property
    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)


@dataclass
class TTSConfig:
    host: str
    speaker_id: int
    chunk_chars: int
    timeout_seconds: float
    max_retries: int
    ffmpeg_path: str
    bitrate: str


@dataclass
class BatchConfig:
    enabled: bool
    disable_initial_run: bool
    initial_delay_seconds: float
    interval_hours: float
    article_limit: int
    queue_drain_limit: int
    max_article_age_hours: Optional[float]
    feed_timeout_seconds: float


@dataclass
class PathsConfig:
    data_dir: str
    db_path: str
    public_dir: str
    audio_dir: str
    feed_filename: str
    feed_urls_file: str

    @property
    def feed_path(self) -> str:
        return os.path.join(self.public_dir, self.feed_filename)


@dataclass
class LoggingConfig:
    level: str
    format: str


@dataclass
class AppConfig:
    podcast: PodcastConfig
    llm: LLMConfig
    tts: TTSConfig
    batch: BatchConfig
    paths: PathsConfig
    logging: LoggingConfig


def _env(key: str, default: Any) -> Any:
    v = os.environ.get(key)
    return v if v not in (None, "") else default


def _as_bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def _opt_float(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    return float(v)


def resolve_config_path(path: Optional[str] = None) -> str:
    return path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH


def load_config(path: Optional[str] = None) -> AppConfig:
    """Read the YAML settings file; a missing file means all defaults."""
    path = resolve_config_path(path)
    data: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    return config_from_dict(data)


def config_from_dict(data: Dict[str, Any]) -> AppConfig:
    podcast = data.get("podcast", {}) or {}
    llm = data.get("llm", {}) or {}
    tts = data.get("tts", {}) or {}
    batch = data.get("batch", {}) or {}
    paths = data.get("paths", {}) or {}
    logging_cfg = data.get("logging", {}) or {}

    data_dir = paths.get("data_dir", "data")
    public_dir = paths.get("public_dir", "public")

    return AppConfig(
        podcast=PodcastConfig(
            title=podcast.get("title", "Feed Podcast"),
            link=podcast.get("link", "http://localhost/podcast"),
            description=podcast.get("description", "Narrated episodes generated from RSS feeds"),
            language=podcast.get("language", "ja"),
            author=podcast.get("author", "admin"),
            categories=podcast.get("categories", "Technology"),
            ttl=str(podcast.get("ttl", "60")),
            base_url=_env("PODCAST_BASE_URL", podcast.get("base_url", "http://localhost:3000")),
            image_url=podcast.get("image_url", ""),
        ),
        llm=LLMConfig(
            endpoint=_env("OPENAI_API_ENDPOINT", llm.get("endpoint", "https://api.openai.com/v1")),
            model=_env("OPENAI_MODEL_NAME", llm.get("model", "gpt-4o-mini")),
            api_key_env=llm.get("api_key_env", "OPENAI_API_KEY"),
            timeout_seconds=float(llm.get("timeout_seconds", 120)),
            script_max_chars=int(llm.get("script_max_chars", 2000)),
        ),
        tts=TTSConfig(
            host=_env("VOICEVOX_HOST", tts.get("host", "http://localhost:50021")),
            speaker_id=int(_env("VOICEVOX_SPEAKER_ID", tts.get("speaker_id", 3))),
            chunk_chars=int(tts.get("chunk_chars", 50)),
            timeout_seconds=float(tts.get("timeout_seconds", 180)),
            max_retries=int(tts.get("max_retries", 2)),
            ffmpeg_path=tts.get("ffmpeg_path", "ffmpeg"),
            bitrate=str(tts.get("bitrate", "128k")),
        ),
        batch=BatchConfig(
            enabled=_as_bool(batch.get("enabled", True)),
            disable_initial_run=_as_bool(_env("DISABLE_INITIAL_BATCH", batch.get("disable_initial_run", False))),
            initial_delay_seconds=float(batch.get("initial_delay_seconds", 10)),
            interval_hours=float(batch.get("interval_hours", 6)),
            article_limit=int(batch.get("article_limit", 10)),
            queue_drain_limit=int(batch.get("queue_drain_limit", 10)),
            max_article_age_hours=_opt_float(batch.get("max_article_age_hours", 48)),
            feed_timeout_seconds=float(batch.get("feed_timeout_seconds", 30)),
        ),
        paths=PathsConfig(
            data_dir=data_dir,
            db_path=paths.get("db_path", os.path.join(data_dir, "podcast.db")),
            public_dir=public_dir,
            audio_dir=paths.get("audio_dir", os.path.join(public_dir, "podcast_audio")),
            feed_filename=paths.get("feed_filename", "podcast.xml"),
            feed_urls_file=_env("FEED_URLS_FILE", paths.get("feed_urls_file", "feed_urls.txt")),
        ),
        logging=LoggingConfig(
            level=logging_cfg.get("level", "INFO"),
            format=logging_cfg.get("format", "json"),
        ),
    )


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value or "")
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_config(cfg: AppConfig) -> List[str]:
    """Return every problem found; the caller decides that any problem is fatal."""
    problems: List[str] = []

    if not cfg.llm.api_key:
        problems.append(f"env var '{cfg.llm.api_key_env}' (OpenAI API key) is not set")
    if not _is_http_url(cfg.llm.endpoint):
        problems.append(f"llm.endpoint '{cfg.llm.endpoint}' is not an http(s) URL")
    if not _is_http_url(cfg.tts.host):
        problems.append(f"tts.host '{cfg.tts.host}' is not an http(s) URL")
    if not _is_http_url(cfg.podcast.base_url):
        problems.append(f"podcast.base_url '{cfg.podcast.base_url}' is not an http(s) URL")

    if cfg.tts.chunk_chars <= 0:
        problems.append("tts.chunk_chars must be positive")
    if cfg.tts.max_retries < 0:
        problems.append("tts.max_retries must not be negative")
    if cfg.tts.timeout_seconds <= 0 or cfg.llm.timeout_seconds <= 0:
        problems.append("timeouts must be positive")
    if cfg.batch.interval_hours <= 0:
        problems.append("batch.interval_hours must be positive")
    if cfg.batch.article_limit <= 0 or cfg.batch.queue_drain_limit <= 0:
        problems.append("batch limits must be positive")
    if cfg.batch.max_article_age_hours is not None and cfg.batch.max_article_age_hours <= 0:
        problems.append("batch.max_article_age_hours must be positive when set")

    return problems
