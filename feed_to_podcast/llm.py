from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from openai import OpenAI, OpenAIError

from .cleaner import clean_for_speech
from .config import LLMConfig
from .errors import InvalidInputError, LLMError


logger = logging.getLogger(__name__)


CLASSIFY_SYSTEM_PROMPT = (
    "You label news articles for a podcast.\n"
    "Answer with one short category name (for example: Technology, Business, "
    "Science, Politics, Entertainment, Sports, Lifestyle).\n"
    "Return the category only, no punctuation or explanation."
)

SCRIPT_SYSTEM_PROMPT = (
    "You are a podcast host.\n"
    "Write a short narration script that introduces the listed articles to listeners.\n"
    "Hard rules:\n"
    "- Work only from the titles given; do not invent facts.\n"
    "- Do not read out URLs.\n"
    "- Plain text only, no Markdown, no emoji.\n"
    "- Keep it to roughly 300 characters per article."
)


class LLMClient:
    def __init__(self, cfg: LLMConfig, client: Optional[Any] = None):
        self.cfg = cfg
        if client is None:
            client = OpenAI(api_key=cfg.api_key, base_url=cfg.endpoint, timeout=cfg.timeout_seconds)
        self.client = client

    def _complete(self, system_prompt: str, user_prompt: str, temperature: float) -> str:
        try:
            resp = self.client.chat.completions.create(
                model=self.cfg.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
            )
        except OpenAIError as e:
            raise LLMError(f"LLM request failed: {e}") from e
        out = resp.choices[0].message.content if resp and resp.choices else None
        out = (out or "").strip()
        if not out:
            raise LLMError("LLM returned an empty answer")
        return out

    def classify(self, text: str) -> str:
        if not text or not text.strip():
            raise InvalidInputError("nothing to classify")
        label = self._complete(CLASSIFY_SYSTEM_PROMPT, text.strip(), temperature=0.0)
        label = label.splitlines()[0].strip().strip(".:\"'")
        if not label:
            raise LLMError("LLM returned an empty category")
        logger.debug("Classified article", extra={"category": label})
        return label

    def generate_script(self, feed_title: Optional[str], items: Sequence[Any]) -> str:
        """Narration for `items`; only their titles and links are sent."""
        lines = []
        for it in items:
            title = (getattr(it, "title", "") or "").strip()
            link = (getattr(it, "link", "") or "").strip()
            if title and link:
                lines.append(f"- {title} ({link})")
        if not lines:
            raise InvalidInputError("no item with both a title and a link")

        prompt = f"Feed: {feed_title or 'unknown'}\nArticles:\n" + "\n".join(lines)
        raw = self._complete(SCRIPT_SYSTEM_PROMPT, prompt, temperature=0.7)
        script = clean_for_speech(raw)[: self.cfg.script_max_chars].strip()
        if not script:
            raise LLMError("LLM script is empty after cleanup")
        logger.info("Generated script", extra={"items": len(lines), "chars": len(script)})
        return script
