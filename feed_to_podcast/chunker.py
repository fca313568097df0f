"""Split narration scripts into pieces small enough for one synthesis request.

Chunks are contiguous slices of the input with surrounding whitespace
trimmed, so joining them gives back the script minus that whitespace.
"""
from __future__ import annotations

import re
from typing import List, Pattern


DEFAULT_CHUNK_CHARS = 50

SENTENCE_ENDINGS = ".!?。！？\n"
CLAUSE_BREAKS = "、，,;；:："
# Japanese particles; a break right after one is a natural pause
PARTICLES = "はがをにでともへ"
CLOSERS = "」』）)\"'"


def _after(chars: str, trailing: str = "") -> Pattern[str]:
    c = re.escape(chars)
    t = f"[{re.escape(trailing)}]*" if trailing else ""
    return re.compile(f"[^{c}]*[{c}]+{t}|[^{c}]+")


_LEVELS: List[Pattern[str]] = [
    _after(SENTENCE_ENDINGS, CLOSERS),
    _after(CLAUSE_BREAKS),
    _after(PARTICLES),
    re.compile(r"\S+\s*|\s+"),
]


def _pieces(text: str, level: int, max_len: int) -> List[str]:
    if len(text.strip()) <= max_len:
        return [text]
    if level >= len(_LEVELS):
        return [text[i : i + max_len] for i in range(0, len(text), max_len)]

    parts = _LEVELS[level].findall(text)
    if len(parts) <= 1:
        return _pieces(text, level + 1, max_len)

    out: List[str] = []
    for p in parts:
        if len(p.strip()) > max_len:
            out.extend(_pieces(p, level + 1, max_len))
        else:
            out.append(p)
    return out


def split_into_chunks(text: str, max_len: int = DEFAULT_CHUNK_CHARS) -> List[str]:
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    if not text or not text.strip():
        return []

    chunks: List[str] = []
    buf = ""
    for piece in _pieces(text, 0, max_len):
        if buf.strip() and len((buf + piece).strip()) > max_len:
            chunks.append(buf.strip())
            buf = piece
        else:
            buf += piece
    if buf.strip():
        chunks.append(buf.strip())
    return chunks
