from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .errors import BatchCancelled, QueuedForRetry, RetriesExhausted, SynthesisError, ValidationError
from .models import QUEUE_FAILED, QUEUE_PENDING, QUEUE_PROCESSING, TTSQueueItem
from .storage import Database


logger = logging.getLogger(__name__)


DEFAULT_MAX_RETRIES = 2

RecoveredCallback = Callable[[TTSQueueItem, str], None]


@dataclass
class DrainSummary:
    attempted: int = 0
    recovered: int = 0
    requeued: int = 0
    failed: int = 0
    cancelled: bool = False


class RetryQueue:
    """Persisted retries for synthesis calls that failed transiently.

    A row is retried by `drain` until `retry_count` reaches `max_retries`;
    the attempt after that marks it failed for good.
    """

    def __init__(self, db: Database, synthesizer: Any, publisher: Any = None, max_retries: int = DEFAULT_MAX_RETRIES):
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.db = db
        self.synthesizer = synthesizer
        self.publisher = publisher
        self.max_retries = max_retries

    def enqueue(self, item_id: str, script_text: str, retry_count: int = 0) -> str:
        return self.db.enqueue_tts(item_id, script_text, retry_count)

    def generate(
        self,
        item_id: str,
        script_text: str,
        retry_count: int = 0,
        cancel_event: Optional[threading.Event] = None,
        title: Optional[str] = None,
    ) -> str:
        """Synthesize now; on a transient failure park the script in the queue.

        Raises QueuedForRetry when a row was created and RetriesExhausted when
        `retry_count` is already past the cap. ValidationError is never queued.
        """
        try:
            return self.synthesizer.synthesize(item_id, script_text, cancel_event=cancel_event, title=title)
        except (ValidationError, BatchCancelled):
            raise
        except SynthesisError as e:
            if retry_count > self.max_retries:
                logger.error(
                    "TTS retries exhausted",
                    extra={"item_id": item_id, "retry_count": retry_count, "error": str(e)},
                )
                raise RetriesExhausted(item_id, retry_count + 1, cause=e) from e
            queue_id = self.enqueue(item_id, script_text, retry_count)
            raise QueuedForRetry(item_id, queue_id, cause=e) from e

    def drain(
        self,
        max_items: int = 10,
        on_recovered: Optional[RecoveredCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> DrainSummary:
        """Retry up to `max_items` pending rows, oldest first."""
        summary = DrainSummary()
        items = self.db.get_pending_queue_items(max_items)
        if not items:
            return summary
        logger.info("Draining TTS queue", extra={"count": len(items)})

        for item in items:
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                break
            summary.attempted += 1
            self.db.update_queue_item(item.id, QUEUE_PROCESSING)
            try:
                filename = self.synthesizer.synthesize(
                    item.item_id, item.script_text, cancel_event=cancel_event
                )
            except BatchCancelled:
                # The attempt never finished; it does not count against the cap
                self.db.update_queue_item(item.id, QUEUE_PENDING)
                summary.cancelled = True
                break
            except ValidationError as e:
                self.db.update_queue_item(item.id, QUEUE_FAILED)
                summary.failed += 1
                logger.error("Queued script is not synthesizable", extra={"queue_id": item.id, "error": str(e)})
                continue
            except Exception as e:  # noqa: BLE001
                self._record_failure(item, e, summary)
                continue

            self.db.remove_queue_item(item.id)
            summary.recovered += 1
            logger.info("TTS queue item recovered", extra={"queue_id": item.id, "item_id": item.item_id})
            if on_recovered is not None:
                try:
                    on_recovered(item, filename)
                except Exception as e:  # noqa: BLE001
                    logger.error(
                        "Could not finish episode for recovered item",
                        extra={"item_id": item.item_id, "error": str(e)},
                    )
            self._republish()

        logger.info(
            "TTS queue drain done",
            extra={
                "attempted": summary.attempted,
                "recovered": summary.recovered,
                "requeued": summary.requeued,
                "failed": summary.failed,
            },
        )
        return summary

    def _record_failure(self, item: TTSQueueItem, error: Exception, summary: DrainSummary) -> None:
        if item.retry_count >= self.max_retries:
            self.db.update_queue_item(item.id, QUEUE_FAILED)
            summary.failed += 1
            logger.error(
                "TTS queue item failed permanently",
                extra={"queue_id": item.id, "item_id": item.item_id, "retry_count": item.retry_count, "error": str(error)},
            )
        else:
            self.db.update_queue_item(item.id, QUEUE_PENDING, retry_count=item.retry_count + 1)
            summary.requeued += 1
            logger.warning(
                "TTS retry failed, will try again",
                extra={"queue_id": item.id, "item_id": item.item_id, "retry_count": item.retry_count + 1, "error": str(error)},
            )

    def _republish(self) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher.republish()
        except Exception as e:  # noqa: BLE001
            logger.error("RSS republish after queue recovery failed", extra={"error": str(e)})

    # Operator actions

    def list_failed(self) -> List[TTSQueueItem]:
        return self.db.list_queue_items(QUEUE_FAILED)

    def requeue(self, queue_id: str) -> bool:
        item = self.db.get_queue_item(queue_id)
        if item is None or item.status != QUEUE_FAILED:
            return False
        self.db.update_queue_item(queue_id, QUEUE_PENDING, retry_count=0)
        logger.info("Failed TTS item requeued", extra={"queue_id": queue_id, "item_id": item.item_id})
        return True

    def purge_failed(self) -> int:
        n = self.db.purge_failed_queue_items()
        logger.info("Purged failed TTS items", extra={"count": n})
        return n
