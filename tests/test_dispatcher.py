import asyncio
import json
from datetime import datetime, timedelta

import aiosqlite
from stripe_payloads import payment_intent, stripe_event

from practice_webhooks.config import Settings
from practice_webhooks.database import open_db
from practice_webhooks.dispatcher import DispatchOutcome, EventDispatcher
from practice_webhooks.domain_events import DomainEventType
from practice_webhooks.events import StripeEventType, decode_event
from practice_webhooks.handlers import HANDLERS, HandlerContext, build_registry
from practice_webhooks.repositories import ConnectedAccountRepository, PaymentIntentRepository
from practice_webhooks.retry import RetryPolicy
from practice_webhooks.store import WebhookEventStore, isoformat, utcnow

SUCCEEDED = StripeEventType.PAYMENT_INTENT_SUCCEEDED


class RecordingHandler:
    def __init__(self, failures: int = 0, delay: float = 0.0) -> None:
        self.calls: list = []
        self.failures = failures
        self.delay = delay

    async def __call__(self, payload, ctx: HandlerContext) -> None:
        self.calls.append(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.calls) <= self.failures:
            raise RuntimeError("downstream unavailable")


def _dispatcher(store: WebhookEventStore, handler=None) -> EventDispatcher:
    handlers = {**HANDLERS, SUCCEEDED: handler} if handler else None
    return EventDispatcher(store, build_registry(handlers), RetryPolicy())


async def _admit(store: WebhookEventStore, event_type: str = "payment_intent.succeeded", obj=None) -> str:
    event = decode_event(stripe_event("evt_1", event_type, obj or payment_intent()))
    return (await store.admit(event, {}, None)).event_id


async def _count(db: aiosqlite.Connection, table: str) -> int:
    async with db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
        return (await cursor.fetchone())[0]


async def test_happy_path_runs_real_handler(store: WebhookEventStore, db: aiosqlite.Connection) -> None:
    await PaymentIntentRepository(db).create("org_1", "pi_1", 5000, "usd")
    await db.commit()
    event_id = await _admit(store)

    outcome = await _dispatcher(store).dispatch(event_id)

    assert outcome == DispatchOutcome.PROCESSED
    event = await store.get_by_id(event_id)
    assert event.processed is True
    assert event.processed_at is not None
    payment = await PaymentIntentRepository(db).get("pi_1")
    assert payment["status"] == "succeeded"
    async with db.execute("SELECT event_type, organization_id, source_event_id FROM domain_events") as cursor:
        rows = [tuple(row) for row in await cursor.fetchall()]
    assert rows == [(DomainEventType.PAYMENT_RECEIVED.value, "org_1", "evt_1")]


async def test_handler_runs_once_and_redispatch_is_noop(store: WebhookEventStore) -> None:
    handler = RecordingHandler()
    dispatcher = _dispatcher(store, handler)
    event_id = await _admit(store)

    assert await dispatcher.dispatch(event_id) == DispatchOutcome.PROCESSED
    before = await store.get_by_id(event_id)
    assert await dispatcher.dispatch(event_id) == DispatchOutcome.ALREADY_PROCESSED

    assert len(handler.calls) == 1
    assert await store.get_by_id(event_id) == before


async def test_handler_receives_typed_payload(store: WebhookEventStore) -> None:
    handler = RecordingHandler()
    event_id = await _admit(store)
    await _dispatcher(store, handler).dispatch(event_id)
    assert handler.calls[0].id == "pi_1"
    assert handler.calls[0].amount == 5000


async def test_unknown_type_is_acknowledged(store: WebhookEventStore) -> None:
    event_id = await _admit(store, "topup.created", {"id": "tu_1"})
    assert await _dispatcher(store).dispatch(event_id) == DispatchOutcome.UNHANDLED
    event = await store.get_by_id(event_id)
    assert event.processed is True
    assert event.retry_count == 0


async def test_missing_record_is_not_found(store: WebhookEventStore) -> None:
    assert await _dispatcher(store).dispatch("nope") == DispatchOutcome.NOT_FOUND


async def test_failure_schedules_retry(store: WebhookEventStore) -> None:
    event_id = await _admit(store)
    before = utcnow()

    outcome = await _dispatcher(store, RecordingHandler(failures=1)).dispatch(event_id)

    assert outcome == DispatchOutcome.RETRY_SCHEDULED
    event = await store.get_by_id(event_id)
    assert event.processed is False
    assert event.retry_count == 1
    assert event.error == "downstream unavailable"
    assert "RuntimeError" in event.error_stack
    next_retry_at = datetime.fromisoformat(event.next_retry_at)
    assert before + timedelta(seconds=59) <= next_retry_at <= utcnow() + timedelta(seconds=61)


async def test_transient_failure_then_recovery(store: WebhookEventStore) -> None:
    handler = RecordingHandler(failures=1)
    dispatcher = _dispatcher(store, handler)
    event_id = await _admit(store)

    assert await dispatcher.dispatch(event_id) == DispatchOutcome.RETRY_SCHEDULED
    due = await store.due_for_retry(isoformat(utcnow() + timedelta(minutes=1, seconds=5)))
    assert due == [event_id]
    assert await dispatcher.dispatch(due[0]) == DispatchOutcome.PROCESSED

    event = await store.get_by_id(event_id)
    assert event.processed is True
    assert event.next_retry_at is None
    assert len(handler.calls) == 2


async def test_exhaustion_after_max_retries(store: WebhookEventStore) -> None:
    dispatcher = _dispatcher(store, RecordingHandler(failures=99))
    event_id = await _admit(store)

    outcomes = [await dispatcher.dispatch(event_id) for _ in range(3)]

    assert outcomes == [
        DispatchOutcome.RETRY_SCHEDULED,
        DispatchOutcome.RETRY_SCHEDULED,
        DispatchOutcome.EXHAUSTED,
    ]
    event = await store.get_by_id(event_id)
    assert event.retry_count == 3
    assert event.next_retry_at is None
    assert event.processed is False
    assert await store.due_for_retry(isoformat(utcnow() + timedelta(days=1))) == []


async def test_failed_handler_writes_are_rolled_back(store: WebhookEventStore, db: aiosqlite.Connection) -> None:
    async def publish_then_fail(payload, ctx: HandlerContext) -> None:
        await ctx.events.publish(DomainEventType.PAYMENT_RECEIVED, {"id": payload.id}, organization_id="org_1")
        raise ValueError("fee lookup failed")

    event_id = await _admit(store)
    assert await _dispatcher(store, publish_then_fail).dispatch(event_id) == DispatchOutcome.RETRY_SCHEDULED
    assert await _count(db, "domain_events") == 0


async def test_domain_events_survive_only_successful_attempt(store: WebhookEventStore, db: aiosqlite.Connection) -> None:
    attempts = []

    async def flaky(payload, ctx: HandlerContext) -> None:
        attempts.append(payload.id)
        await ctx.events.publish(DomainEventType.PAYMENT_RECEIVED, {"id": payload.id})
        if len(attempts) == 1:
            raise RuntimeError("boom")

    dispatcher = _dispatcher(store, flaky)
    event_id = await _admit(store)
    await dispatcher.dispatch(event_id)
    await dispatcher.dispatch(event_id)
    assert await _count(db, "domain_events") == 1


async def test_concurrent_dispatch_marks_processed_once(store: WebhookEventStore, settings: Settings) -> None:
    handler = RecordingHandler(delay=0.05)
    event_id = await _admit(store)
    other = await open_db(settings.db_path)
    try:
        outcomes = await asyncio.gather(
            _dispatcher(store, handler).dispatch(event_id),
            _dispatcher(WebhookEventStore(other), handler).dispatch(event_id),
        )
    finally:
        await other.close()
    assert sorted(outcomes) == [DispatchOutcome.ALREADY_PROCESSED, DispatchOutcome.PROCESSED]
    assert len(handler.calls) == 1
    assert (await store.get_by_id(event_id)).processed is True


async def test_stored_payload_is_not_modified(store: WebhookEventStore) -> None:
    event_id = await _admit(store)
    before = json.loads((await store.get_by_id(event_id)).payload)
    await _dispatcher(store, RecordingHandler(failures=1)).dispatch(event_id)
    assert json.loads((await store.get_by_id(event_id)).payload) == before


async def test_concurrent_events_for_one_account_keep_both_updates(
    store: WebhookEventStore, db: aiosqlite.Connection, settings: Settings
) -> None:
    await ConnectedAccountRepository(db).create("org_1", "acct_1")
    await db.commit()
    ids = []
    for n, capability in enumerate(["card_payments", "transfers"]):
        obj = {"id": capability, "object": "capability", "account": "acct_1", "status": "active"}
        event = decode_event(stripe_event(f"evt_cap_{n}", "capability.updated", obj))
        ids.append((await store.admit(event, {}, None)).event_id)

    other = await open_db(settings.db_path)
    try:
        outcomes = await asyncio.gather(
            _dispatcher(store).dispatch(ids[0]),
            _dispatcher(WebhookEventStore(other)).dispatch(ids[1]),
        )
    finally:
        await other.close()

    assert outcomes == [DispatchOutcome.PROCESSED, DispatchOutcome.PROCESSED]
    account = await ConnectedAccountRepository(db).get("acct_1")
    assert set(account["capabilities"]) == {"card_payments", "transfers"}


async def test_undecodable_payload_is_not_retried(store: WebhookEventStore, db: aiosqlite.Connection) -> None:
    handler = RecordingHandler()
    event_id = await _admit(store)
    broken = stripe_event("evt_1", "payment_intent.succeeded", {"id": "pi_1"})
    await db.execute("UPDATE webhook_events SET payload=? WHERE id=?", (json.dumps(broken), event_id))
    await db.commit()

    outcome = await _dispatcher(store, handler).dispatch(event_id)

    assert outcome == DispatchOutcome.EXHAUSTED
    assert handler.calls == []
    event = await store.get_by_id(event_id)
    assert event.processed is False
    assert event.retry_count == event.max_retries
    assert event.next_retry_at is None
    assert event.error.startswith("Undecodable payload")
    assert [e.id for e in await store.exhausted()] == [event_id]
    assert await store.due_for_retry(isoformat(utcnow() + timedelta(days=1))) == []
