import json
import logging
import time
import traceback
from collections.abc import Mapping
from enum import StrEnum

from pydantic import ValidationError

from practice_webhooks.domain_events import DomainEventPublisher
from practice_webhooks.events import StripeEventType, decode_event
from practice_webhooks.handlers import Handler, HandlerContext
from practice_webhooks.metrics import (
    DISPATCH_TOTAL,
    EXHAUSTED_TOTAL,
    PROCESSING_DURATION,
    PROCESSING_ERRORS_TOTAL,
)
from practice_webhooks.retry import RetryPolicy
from practice_webhooks.store import WebhookEvent, WebhookEventStore

logger = logging.getLogger(__name__)


class DispatchOutcome(StrEnum):
    PROCESSED = "processed"
    UNHANDLED = "unhandled"
    ALREADY_PROCESSED = "already_processed"
    RETRY_SCHEDULED = "retry_scheduled"
    EXHAUSTED = "exhausted"
    NOT_FOUND = "not_found"


class EventDispatcher:
    """Runs the handler for one stored webhook event and records the result.

    The handler's writes and the ``processed`` flag are committed together on
    the store's connection; on failure both are rolled back and the attempt is
    recorded for retry instead. Safe to call repeatedly for the same event.
    """

    def __init__(
        self,
        store: WebhookEventStore,
        handlers: Mapping[StripeEventType, Handler],
        policy: RetryPolicy,
    ) -> None:
        self._store = store
        self._handlers = handlers
        self._policy = policy

    async def dispatch(self, event_id: str) -> DispatchOutcome:
        record = await self._store.get_by_id(event_id)
        if record is None:
            logger.error("Webhook event not found: %s", event_id)
            outcome = DispatchOutcome.NOT_FOUND
        elif record.processed:
            logger.info("Webhook event already processed: %s", record.stripe_event_id)
            outcome = DispatchOutcome.ALREADY_PROCESSED
        else:
            outcome = await self._run(record)
        DISPATCH_TOTAL.labels(outcome=outcome).inc()
        return outcome

    async def _run(self, record: WebhookEvent) -> DispatchOutcome:
        try:
            event = decode_event(json.loads(record.payload))
        except (json.JSONDecodeError, ValidationError) as e:
            return await self._reject(record, e, traceback.format_exc())
        if event.event_type is None:
            logger.info("Unhandled webhook event type %s (%s)", record.event_type, record.stripe_event_id)
            return await self._finish(record, DispatchOutcome.UNHANDLED)

        conn = self._store.conn
        # Handlers read and merge rows inside the write lock, so two events
        # for the same record never interleave.
        await conn.execute("BEGIN IMMEDIATE")
        start = time.monotonic()
        try:
            current = await self._store.get_by_id(record.id)
            if current is None or current.processed:
                await conn.rollback()
                logger.info("Webhook event %s was processed concurrently", record.stripe_event_id)
                return DispatchOutcome.ALREADY_PROCESSED
            context = HandlerContext(
                conn=conn,
                events=DomainEventPublisher(conn, record.stripe_event_id),
                stripe_event_id=record.stripe_event_id,
                previous_attributes=event.previous_attributes,
            )
            await self._handlers[event.event_type](event.payload, context)
            return await self._finish(record, DispatchOutcome.PROCESSED)
        except Exception as e:
            await conn.rollback()
            return await self._fail(record, e, traceback.format_exc())
        finally:
            PROCESSING_DURATION.observe(time.monotonic() - start)

    async def _finish(self, record: WebhookEvent, outcome: DispatchOutcome) -> DispatchOutcome:
        if not await self._store.mark_processed(record.id):
            logger.info("Webhook event %s was processed concurrently", record.stripe_event_id)
            return DispatchOutcome.ALREADY_PROCESSED
        logger.info("Processed webhook event %s (%s)", record.stripe_event_id, record.event_type)
        return outcome

    async def _reject(self, record: WebhookEvent, error: Exception, stack: str) -> DispatchOutcome:
        PROCESSING_ERRORS_TOTAL.inc()
        EXHAUSTED_TOTAL.inc()
        await self._store.mark_exhausted(record.id, f"Undecodable payload: {error}", stack)
        logger.error(
            "Stored payload of webhook event %s (%s) cannot be decoded, not retrying",
            record.stripe_event_id,
            record.event_type,
            exc_info=error,
        )
        return DispatchOutcome.EXHAUSTED

    async def _fail(self, record: WebhookEvent, error: Exception, stack: str) -> DispatchOutcome:
        PROCESSING_ERRORS_TOTAL.inc()
        updated = await self._store.record_failure(record.id, str(error) or type(error).__name__, stack, self._policy)
        if updated is None:
            return DispatchOutcome.NOT_FOUND
        if updated.processed:
            return DispatchOutcome.ALREADY_PROCESSED
        if updated.exhausted:
            EXHAUSTED_TOTAL.inc()
            logger.error(
                "Webhook event %s (%s) exhausted after %d attempts, manual intervention required: %s",
                record.stripe_event_id,
                record.event_type,
                updated.retry_count,
                error,
                exc_info=error,
            )
            return DispatchOutcome.EXHAUSTED
        logger.warning(
            "Failed to process webhook event %s (%s) attempt=%d next_retry_at=%s: %s",
            record.stripe_event_id,
            record.event_type,
            updated.retry_count,
            updated.next_retry_at,
            error,
            exc_info=error,
        )
        return DispatchOutcome.RETRY_SCHEDULED
