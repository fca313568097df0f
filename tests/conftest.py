"""Shared fixtures: temp-dir config and database, fake TTS engine and transcoder."""
from unittest.mock import MagicMock

import pytest

from feed_to_podcast.config import config_from_dict
from feed_to_podcast.storage import Database


class FakeTranscoder:
    """Stands in for ffmpeg: copies bytes instead of encoding."""

    def __init__(self):
        self.concat_calls = []

    def transcode(self, src, dst):
        with open(src, "rb") as f_in, open(dst, "wb") as f_out:
            f_out.write(f_in.read())

    def concat(self, parts, dst):
        self.concat_calls.append(list(parts))
        with open(dst, "wb") as f_out:
            for p in parts:
                with open(p, "rb") as f_in:
                    f_out.write(f_in.read())


def make_engine():
    engine = MagicMock()
    engine.query.side_effect = lambda text: {"text": text}
    engine.synthesize.side_effect = lambda q: q["text"].encode("utf-8")
    return engine


@pytest.fixture
def cfg(tmp_path):
    return config_from_dict(
        {
            "podcast": {"base_url": "https://pod.example.com"},
            "batch": {"max_article_age_hours": None},
            "paths": {
                "data_dir": str(tmp_path / "data"),
                "db_path": str(tmp_path / "data" / "test.db"),
                "public_dir": str(tmp_path / "public"),
                "audio_dir": str(tmp_path / "public" / "podcast_audio"),
                "feed_urls_file": str(tmp_path / "feed_urls.txt"),
            },
        }
    )


@pytest.fixture
def db(cfg):
    database = Database(cfg.paths.db_path)
    yield database
    database.close()


@pytest.fixture
def engine():
    return make_engine()


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def synthesizer(cfg, engine, transcoder, monkeypatch):
    from feed_to_podcast.tts import AudioSynthesizer

    monkeypatch.setattr("feed_to_podcast.tts.tag_audio", lambda *a, **k: None)
    return AudioSynthesizer(engine, transcoder, cfg.paths.audio_dir, chunk_chars=50)
