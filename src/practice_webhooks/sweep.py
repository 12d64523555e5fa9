import asyncio
import logging
from datetime import timedelta

from practice_webhooks.config import Settings
from practice_webhooks.metrics import QUEUE_DEPTH
from practice_webhooks.queue import EventQueue
from practice_webhooks.store import WebhookEventStore, isoformat, utcnow

logger = logging.getLogger(__name__)


async def enqueue_due(store: WebhookEventStore, queue: EventQueue, settings: Settings) -> int:
    """Offer due retries and stale never-dispatched events to the worker pool."""
    now = utcnow()
    stale_before = isoformat(now - timedelta(seconds=settings.dispatch_grace_seconds))
    event_ids = await store.undispatched(stale_before) + await store.due_for_retry(isoformat(now))
    enqueued = 0
    for event_id in event_ids:
        if await queue.put(event_id):
            enqueued += 1
    QUEUE_DEPTH.set(queue.qsize())
    return enqueued


async def retry_sweep(store: WebhookEventStore, queue: EventQueue, settings: Settings) -> None:
    while True:
        try:
            enqueued = await enqueue_due(store, queue, settings)
        except Exception:
            logger.exception("Retry sweep failed")
        else:
            if enqueued:
                logger.info("Retry sweep enqueued %d events", enqueued)
        await asyncio.sleep(settings.retry_sweep_interval_seconds)
