from __future__ import annotations

import html
import logging
import re
from typing import List

from bs4 import BeautifulSoup


logger = logging.getLogger(__name__)


EMOJI_PATTERN = re.compile(
    "[\U0001F600-\U0001F64F]"  # emoticons
    "|[\U0001F300-\U0001F5FF]"  # symbols & pictographs
    "|[\U0001F680-\U0001F6FF]"  # transport & map
    "|[\U0001F1E0-\U0001F1FF]"  # flags
    "|[\U00002700-\U000027BF]"  # dingbats
    "|[\U0001F900-\U0001F9FF]"  # supplemental symbols and pictographs
    "|[\U00002600-\U000026FF]",  # misc symbols
    flags=re.UNICODE,
)

URL_PATTERN = re.compile(r"https?://\S+")


def strip_emoji(text: str) -> str:
    return EMOJI_PATTERN.sub("", text)


def html_to_text(content_html: str) -> str:
    """Plain text of a feed summary/content field, one paragraph per line."""
    if not content_html:
        return ""
    if "<" not in content_html:
        return re.sub(r"[ \t]+", " ", html.unescape(content_html)).strip()

    soup = BeautifulSoup(content_html, "html.parser")
    for tag in soup.find_all(["img", "figure", "figcaption", "script", "style", "noscript"]):
        tag.decompose()

    parts: List[str] = []
    for el in soup.find_all(["p", "h1", "h2", "h3", "li", "blockquote"]):
        t = el.get_text(" ", strip=True)
        if t:
            parts.append(t)
    if not parts:
        whole = soup.get_text("\n", strip=True)
        parts = [x.strip() for x in re.split(r"\n+", whole) if x.strip()]

    return "\n".join(re.sub(r"[ \t]+", " ", html.unescape(p)).strip() for p in parts)


def strip_markdown(text: str) -> str:
    t = text
    # Images before links: ![alt](url) -> alt
    t = re.sub(r"!\[([^\]]*)\]\(([^)]+)\)", r"\1", t)
    t = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r"\1", t)
    t = t.replace("**", "").replace("__", "").replace("`", "")
    t = re.sub(r"^\s{0,3}#{1,6}\s+", "", t, flags=re.MULTILINE)
    t = re.sub(r"^\s*>\s?", "", t, flags=re.MULTILINE)
    t = re.sub(r"^\s*[\-*•]\s+", "", t, flags=re.MULTILINE)
    return t


def clean_for_speech(text: str) -> str:
    """Drop what a speech engine would read out literally: Markdown, URLs, emoji."""
    t = strip_markdown(text or "")
    t = URL_PATTERN.sub("", t)
    t = strip_emoji(t)
    lines = [re.sub(r"[ \t]+", " ", ln).strip() for ln in t.splitlines()]
    cleaned = "\n".join(ln for ln in lines if ln)
    logger.debug("Cleaned script for speech", extra={"orig_len": len(text or ""), "clean_len": len(cleaned)})
    return cleaned
