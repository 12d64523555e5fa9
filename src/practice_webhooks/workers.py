import logging

from practice_webhooks.dispatcher import EventDispatcher
from practice_webhooks.metrics import QUEUE_DEPTH
from practice_webhooks.queue import EventQueue
from practice_webhooks.store import WebhookEventStore, isoformat, utcnow

logger = logging.getLogger(__name__)


async def worker(queue: EventQueue, dispatcher: EventDispatcher) -> None:
    while True:
        event_id = await queue.get()
        QUEUE_DEPTH.set(queue.qsize())
        try:
            await dispatcher.dispatch(event_id)
        except Exception:
            logger.exception("Dispatch crashed for event %s", event_id)
        finally:
            queue.task_done(event_id)


async def load_pending(queue: EventQueue, store: WebhookEventStore) -> int:
    now = isoformat(utcnow())
    event_ids = await store.undispatched(now) + await store.due_for_retry(now)
    for event_id in event_ids:
        await queue.put(event_id)
    if event_ids:
        logger.info("Recovered %d pending webhook events", len(event_ids))
    return len(event_ids)
