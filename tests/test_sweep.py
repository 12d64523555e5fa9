import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import aiosqlite
import pytest
from stripe_payloads import payment_intent, stripe_event

from practice_webhooks.config import Settings
from practice_webhooks.events import decode_event
from practice_webhooks.queue import DispatchQueue
from practice_webhooks.store import WebhookEventStore, isoformat, utcnow
from practice_webhooks.sweep import enqueue_due, retry_sweep

SETTINGS = Settings(retry_sweep_interval_seconds=30.0, dispatch_grace_seconds=60.0)


async def _admit(store: WebhookEventStore, stripe_event_id: str) -> str:
    event = decode_event(stripe_event(stripe_event_id, "payment_intent.succeeded", payment_intent()))
    return (await store.admit(event, {}, None)).event_id


async def _set(db: aiosqlite.Connection, event_id: str, **fields) -> None:
    assignments = ", ".join(f"{column}=?" for column in fields)
    await db.execute(f"UPDATE webhook_events SET {assignments} WHERE id=?", (*fields.values(), event_id))
    await db.commit()


async def test_enqueue_due_picks_due_retries(store: WebhookEventStore, db: aiosqlite.Connection) -> None:
    due = await _admit(store, "evt_due")
    later = await _admit(store, "evt_later")
    await _set(db, due, retry_count=1, next_retry_at=isoformat(utcnow() - timedelta(seconds=1)))
    await _set(db, later, retry_count=1, next_retry_at=isoformat(utcnow() + timedelta(minutes=2)))

    queue = DispatchQueue(maxsize=10)
    assert await enqueue_due(store, queue, SETTINGS) == 1
    assert await queue.get() == due


async def test_enqueue_due_skips_fresh_undispatched(store: WebhookEventStore) -> None:
    await _admit(store, "evt_fresh")
    queue = DispatchQueue(maxsize=10)
    assert await enqueue_due(store, queue, SETTINGS) == 0


async def test_enqueue_due_recovers_stale_undispatched(store: WebhookEventStore, db: aiosqlite.Connection) -> None:
    stale = await _admit(store, "evt_stale")
    await _set(db, stale, created_at=isoformat(utcnow() - timedelta(minutes=5)))
    queue = DispatchQueue(maxsize=10)
    assert await enqueue_due(store, queue, SETTINGS) == 1
    assert await queue.get() == stale


async def test_enqueue_due_skips_processed_and_exhausted(store: WebhookEventStore, db: aiosqlite.Connection) -> None:
    processed = await _admit(store, "evt_processed")
    exhausted = await _admit(store, "evt_exhausted")
    old = isoformat(utcnow() - timedelta(minutes=5))
    await _set(db, processed, processed=1, created_at=old)
    await _set(db, exhausted, retry_count=3, next_retry_at=None, created_at=old)

    queue = DispatchQueue(maxsize=10)
    assert await enqueue_due(store, queue, SETTINGS) == 0


async def test_enqueue_due_does_not_duplicate_queued_ids(store: WebhookEventStore, db: aiosqlite.Connection) -> None:
    due = await _admit(store, "evt_due")
    await _set(db, due, retry_count=1, next_retry_at=isoformat(utcnow() - timedelta(seconds=1)))
    queue = DispatchQueue(maxsize=10)
    assert await enqueue_due(store, queue, SETTINGS) == 1
    assert await enqueue_due(store, queue, SETTINGS) == 0
    assert queue.qsize() == 1


@patch("practice_webhooks.sweep.asyncio.sleep", new_callable=AsyncMock)
async def test_retry_sweep_runs_until_cancelled(mock_sleep, store: WebhookEventStore, db: aiosqlite.Connection) -> None:
    due = await _admit(store, "evt_due")
    await _set(db, due, retry_count=1, next_retry_at=isoformat(utcnow() - timedelta(seconds=1)))
    queue = DispatchQueue(maxsize=10)
    mock_sleep.side_effect = [None, asyncio.CancelledError()]

    with pytest.raises(asyncio.CancelledError):
        await retry_sweep(store, queue, SETTINGS)

    mock_sleep.assert_called_with(SETTINGS.retry_sweep_interval_seconds)
    assert queue.qsize() == 1


@patch("practice_webhooks.sweep.asyncio.sleep", new_callable=AsyncMock)
async def test_retry_sweep_survives_store_errors(mock_sleep, store: WebhookEventStore) -> None:
    mock_sleep.side_effect = [None, asyncio.CancelledError()]
    with patch("practice_webhooks.sweep.enqueue_due", side_effect=[RuntimeError("locked"), 0]) as mock_enqueue:
        with pytest.raises(asyncio.CancelledError):
            await retry_sweep(store, DispatchQueue(maxsize=10), SETTINGS)
    assert mock_enqueue.call_count == 2
