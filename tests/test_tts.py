"""Tests for the synthesis adapter, the engine client and the ffmpeg wrapper."""
import os
import subprocess
import threading
from unittest.mock import MagicMock

import pytest
import requests

from feed_to_podcast.errors import BatchCancelled, SynthesisError, ValidationError


LONG_SCRIPT = "最初の文です。二番目の文はもう少し長くなります。三番目の文で終わりです。" * 3


def test_single_chunk_skips_concat(cfg, synthesizer, engine, transcoder):
    name = synthesizer.synthesize("item-1", "短い原稿です。")

    assert name == "item-1.mp3"
    assert engine.query.call_count == 1
    assert transcoder.concat_calls == []
    assert os.listdir(cfg.paths.audio_dir) == ["item-1.mp3"]


def test_multi_chunk_keeps_order_and_cleans_up(cfg, synthesizer, transcoder):
    name = synthesizer.synthesize("item-2", LONG_SCRIPT)

    path = os.path.join(cfg.paths.audio_dir, name)
    with open(path, "rb") as f:
        audio = f.read().decode("utf-8")
    assert audio == LONG_SCRIPT
    assert len(transcoder.concat_calls) == 1
    assert len(transcoder.concat_calls[0]) > 1
    assert os.listdir(cfg.paths.audio_dir) == ["item-2.mp3"]


def test_chunk_failure_fails_whole_item(cfg, synthesizer, engine):
    calls = {"n": 0}

    def flaky(q):
        calls["n"] += 1
        if calls["n"] == 2:
            raise SynthesisError("engine down")
        return b"wav"

    engine.synthesize.side_effect = flaky

    with pytest.raises(SynthesisError):
        synthesizer.synthesize("item-3", LONG_SCRIPT)

    assert os.listdir(cfg.paths.audio_dir) == []


def test_empty_script_is_validation_error(synthesizer, engine):
    with pytest.raises(ValidationError):
        synthesizer.synthesize("item-4", "   ")
    engine.query.assert_not_called()


def test_cancel_between_chunks(cfg, synthesizer):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(BatchCancelled):
        synthesizer.synthesize("item-5", LONG_SCRIPT, cancel_event=cancel)

    assert os.listdir(cfg.paths.audio_dir) == []


def test_tag_failure_is_not_fatal(cfg, engine, transcoder, monkeypatch):
    from mutagen import MutagenError

    from feed_to_podcast.tts import AudioSynthesizer

    def broken(*args, **kwargs):
        raise MutagenError("bad file")

    monkeypatch.setattr("feed_to_podcast.tts.EasyID3", broken)
    synth = AudioSynthesizer(engine, transcoder, cfg.paths.audio_dir)

    assert synth.synthesize("item-6", "原稿です。") == "item-6.mp3"


def _response(ok=True, status=200, json_data=None, content=b""):
    resp = MagicMock()
    resp.ok = ok
    resp.status_code = status
    resp.json.return_value = json_data
    resp.content = content
    return resp


def test_voicevox_two_step_calls():
    from feed_to_podcast.tts import VoicevoxEngine

    session = MagicMock()
    session.post.side_effect = [
        _response(json_data={"accent_phrases": []}),
        _response(content=b"RIFFdata"),
    ]
    engine = VoicevoxEngine("http://voicevox:50021/", 3, timeout=5, session=session)

    query = engine.query("こんにちは")
    wav = engine.synthesize(query)

    assert wav == b"RIFFdata"
    first, second = session.post.call_args_list
    assert first.args[0] == "http://voicevox:50021/audio_query"
    assert first.kwargs["params"] == {"text": "こんにちは", "speaker": 3}
    assert second.args[0] == "http://voicevox:50021/synthesis"
    assert second.kwargs["json"] == {"accent_phrases": []}
    assert second.kwargs["timeout"] == 5


def test_voicevox_errors_are_synthesis_errors():
    from feed_to_podcast.tts import VoicevoxEngine

    session = MagicMock()
    engine = VoicevoxEngine("http://voicevox:50021", 1, session=session)

    session.post.side_effect = requests.Timeout("slow")
    with pytest.raises(SynthesisError):
        engine.query("text")

    session.post.side_effect = None
    session.post.return_value = _response(ok=False, status=500)
    with pytest.raises(SynthesisError):
        engine.query("text")

    session.post.return_value = _response(content=b"")
    with pytest.raises(SynthesisError):
        engine.synthesize({})


def test_ffmpeg_failures(monkeypatch, tmp_path):
    from feed_to_podcast.tts import FfmpegTranscoder

    t = FfmpegTranscoder("ffmpeg", timeout=1)

    monkeypatch.setattr(
        "feed_to_podcast.tts.subprocess.run",
        lambda *a, **k: subprocess.CompletedProcess(a[0], 1, "", "boom"),
    )
    with pytest.raises(SynthesisError, match="boom"):
        t.transcode("in.wav", "out.mp3")

    def missing(*a, **k):
        raise FileNotFoundError("ffmpeg")

    monkeypatch.setattr("feed_to_podcast.tts.subprocess.run", missing)
    with pytest.raises(SynthesisError, match="not found"):
        t.transcode("in.wav", "out.mp3")

    def slow(*a, **k):
        raise subprocess.TimeoutExpired("ffmpeg", 1)

    monkeypatch.setattr("feed_to_podcast.tts.subprocess.run", slow)
    dst = str(tmp_path / "joined.mp3")
    with pytest.raises(SynthesisError, match="timed out"):
        t.concat([str(tmp_path / "a.mp3"), str(tmp_path / "b.mp3")], dst)
    assert not os.path.exists(dst + ".txt")


def test_ffmpeg_concat_list(monkeypatch, tmp_path):
    from feed_to_podcast.tts import FfmpegTranscoder

    seen = {}

    def fake_run(cmd, **kwargs):
        list_path = cmd[cmd.index("-i") + 1]
        with open(list_path, encoding="utf-8") as f:
            seen["list"] = f.read()
        seen["cmd"] = cmd
        return subprocess.CompletedProcess(cmd, 0, "", "")

    monkeypatch.setattr("feed_to_podcast.tts.subprocess.run", fake_run)
    parts = [str(tmp_path / "a.mp3"), str(tmp_path / "b.mp3")]
    FfmpegTranscoder().concat(parts, str(tmp_path / "out.mp3"))

    assert seen["list"].splitlines() == [f"file '{parts[0]}'", f"file '{parts[1]}'"]
    assert "copy" in seen["cmd"]


def test_probe_audio_missing_and_unreadable(tmp_path):
    from feed_to_podcast.tts import probe_audio

    assert probe_audio(str(tmp_path / "nope.mp3")) == (0, None)

    junk = tmp_path / "junk.mp3"
    junk.write_bytes(b"not really audio")
    size, duration = probe_audio(str(junk))
    assert size == len(b"not really audio")
    assert duration is None
