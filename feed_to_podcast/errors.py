from __future__ import annotations

from typing import Optional


class PodcastError(Exception):
    """Base class for everything the batch pipeline raises on purpose."""


class InvalidInputError(PodcastError):
    """Rejected up front (bad URL, empty text). Never retried."""


class ValidationError(InvalidInputError):
    pass


class TransientError(PodcastError):
    """An external call failed in a way that may succeed later."""


class FeedFetchError(TransientError):
    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{url}: {message}")
        self.url = url


class LLMError(TransientError):
    pass


class SynthesisError(TransientError):
    pass


class QueuedForRetry(SynthesisError):
    def __init__(self, item_id: str, queue_id: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"TTS failed for {item_id}, added to retry queue ({queue_id})")
        self.item_id = item_id
        self.queue_id = queue_id
        self.cause = cause


class PersistenceError(PodcastError):
    pass


class TerminalFailure(PodcastError):
    pass


class RetriesExhausted(TerminalFailure):
    def __init__(self, item_id: str, attempts: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"TTS failed for {item_id} after {attempts} attempts")
        self.item_id = item_id
        self.attempts = attempts
        self.cause = cause


class BatchCancelled(PodcastError):
    pass
