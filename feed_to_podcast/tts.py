from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import threading
from typing import Any, Dict, List, Optional, Tuple

import requests
from mutagen import MutagenError
from mutagen.easyid3 import EasyID3
from mutagen.id3 import ID3NoHeaderError
from mutagen.mp3 import MP3

from .chunker import DEFAULT_CHUNK_CHARS, split_into_chunks
from .config import AppConfig
from .errors import BatchCancelled, SynthesisError, ValidationError
from .storage import ensure_dirs


logger = logging.getLogger(__name__)


class VoicevoxEngine:
    """HTTP client for a VOICEVOX-compatible engine.

    Synthesis is two calls: /audio_query turns text into synthesis
    parameters, /synthesis turns those parameters into WAV bytes.
    """

    def __init__(self, host: str, speaker_id: int, timeout: float = 180.0, session: Optional[requests.Session] = None):
        self.host = host.rstrip("/")
        self.speaker_id = speaker_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, path: str, **kwargs: Any) -> requests.Response:
        try:
            resp = self.session.post(f"{self.host}{path}", timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise SynthesisError(f"TTS engine timed out on {path} after {self.timeout}s") from e
        except requests.RequestException as e:
            raise SynthesisError(f"TTS engine request to {path} failed: {e}") from e
        if not resp.ok:
            raise SynthesisError(f"TTS engine {path} returned HTTP {resp.status_code}")
        return resp

    def query(self, text: str) -> Dict[str, Any]:
        resp = self._post("/audio_query", params={"text": text, "speaker": self.speaker_id})
        try:
            return resp.json()
        except ValueError as e:
            raise SynthesisError("TTS engine returned an invalid audio query") from e

    def synthesize(self, audio_query: Dict[str, Any]) -> bytes:
        resp = self._post("/synthesis", params={"speaker": self.speaker_id}, json=audio_query)
        if not resp.content:
            raise SynthesisError("TTS engine returned an empty audio buffer")
        return resp.content


class FfmpegTranscoder:
    def __init__(self, ffmpeg_path: str = "ffmpeg", bitrate: str = "128k", timeout: float = 300.0):
        self.ffmpeg_path = ffmpeg_path
        self.bitrate = bitrate
        self.timeout = timeout

    def _run(self, args: List[str]) -> None:
        cmd = [self.ffmpeg_path, "-hide_banner", "-loglevel", "error", "-y", *args]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise SynthesisError(f"ffmpeg not found at '{self.ffmpeg_path}'") from e
        except subprocess.TimeoutExpired as e:
            raise SynthesisError(f"ffmpeg timed out after {self.timeout}s") from e
        if result.returncode != 0:
            raise SynthesisError(f"ffmpeg failed: {result.stderr.strip()[:500]}")

    def transcode(self, src: str, dst: str) -> None:
        self._run(["-i", src, "-codec:a", "libmp3lame", "-b:a", self.bitrate, dst])

    def concat(self, parts: List[str], dst: str) -> None:
        list_path = dst + ".txt"
        with open(list_path, "w", encoding="utf-8") as f:
            for p in parts:
                abs_path = os.path.abspath(p).replace("'", "'\\''")
                f.write(f"file '{abs_path}'\n")
        try:
            self._run(["-f", "concat", "-safe", "0", "-i", list_path, "-c", "copy", dst])
        finally:
            if os.path.exists(list_path):
                os.remove(list_path)


def tag_audio(path: str, title: str, artist: str) -> None:
    try:
        try:
            tags = EasyID3(path)
        except ID3NoHeaderError:
            tags = EasyID3()
            tags.save(path)
            tags = EasyID3(path)
        tags["title"] = title
        if artist:
            tags["artist"] = artist
        tags.save()
    except (MutagenError, OSError) as e:
        logger.warning("Could not write ID3 tags", extra={"path": path, "error": str(e)})


def probe_audio(path: str) -> Tuple[int, Optional[int]]:
    """(size in bytes, duration in whole seconds or None)."""
    size = os.path.getsize(path) if os.path.exists(path) else 0
    duration: Optional[int] = None
    if size:
        try:
            duration = int(round(MP3(path).info.length))
        except (MutagenError, OSError):
            duration = None
    return size, duration


class AudioSynthesizer:
    """Turns a script into one MP3 in the audio directory, chunk by chunk."""

    def __init__(
        self,
        engine: Any,
        transcoder: Any,
        audio_dir: str,
        chunk_chars: int = DEFAULT_CHUNK_CHARS,
        artist: str = "",
    ):
        self.engine = engine
        self.transcoder = transcoder
        self.audio_dir = audio_dir
        self.chunk_chars = chunk_chars
        self.artist = artist

    def output_path(self, item_id: str) -> str:
        return os.path.join(self.audio_dir, f"{item_id}.mp3")

    def synthesize(
        self,
        item_id: str,
        script_text: str,
        cancel_event: Optional[threading.Event] = None,
        title: Optional[str] = None,
    ) -> str:
        """Synthesize `script_text` into `<item_id>.mp3` and return that filename.

        Any chunk failure fails the whole item; per-chunk files live in a
        private temp directory that is removed on every path.
        """
        if not item_id:
            raise ValidationError("item_id is required")
        chunks = split_into_chunks(script_text or "", self.chunk_chars)
        if not chunks:
            raise ValidationError(f"empty script for {item_id}")

        ensure_dirs(self.audio_dir)
        work_dir = tempfile.mkdtemp(prefix=f".tts-{item_id}-", dir=self.audio_dir)
        logger.info("Synthesizing chunks", extra={"item_id": item_id, "chunks": len(chunks)})
        try:
            parts: List[str] = []
            for idx, chunk in enumerate(chunks):
                if cancel_event is not None and cancel_event.is_set():
                    raise BatchCancelled(f"cancelled while synthesizing {item_id}")
                wav = self.engine.synthesize(self.engine.query(chunk))
                wav_path = os.path.join(work_dir, f"chunk_{idx:04d}.wav")
                with open(wav_path, "wb") as f:
                    f.write(wav)
                mp3_path = os.path.join(work_dir, f"chunk_{idx:04d}.mp3")
                self.transcoder.transcode(wav_path, mp3_path)
                os.remove(wav_path)
                parts.append(mp3_path)

            if len(parts) == 1:
                joined = parts[0]
            else:
                joined = os.path.join(work_dir, "joined.mp3")
                self.transcoder.concat(parts, joined)

            if not os.path.exists(joined) or os.path.getsize(joined) == 0:
                raise SynthesisError(f"synthesized audio for {item_id} is empty")

            final_path = self.output_path(item_id)
            os.replace(joined, final_path)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        tag_audio(final_path, title or item_id, self.artist)
        logger.info(
            "Audio file written",
            extra={"item_id": item_id, "file": os.path.basename(final_path), "bytes": os.path.getsize(final_path)},
        )
        return os.path.basename(final_path)


def build_synthesizer(cfg: AppConfig) -> AudioSynthesizer:
    return AudioSynthesizer(
        engine=VoicevoxEngine(cfg.tts.host, cfg.tts.speaker_id, timeout=cfg.tts.timeout_seconds),
        transcoder=FfmpegTranscoder(cfg.tts.ffmpeg_path, cfg.tts.bitrate, timeout=cfg.tts.timeout_seconds),
        audio_dir=cfg.paths.audio_dir,
        chunk_chars=cfg.tts.chunk_chars,
        artist=cfg.podcast.title,
    )
