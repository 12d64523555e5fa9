import json
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal

import aiosqlite

from practice_webhooks.events import VerifiedEvent
from practice_webhooks.retry import RetryPolicy


def utcnow() -> datetime:
    return datetime.now(UTC)


def isoformat(value: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as text.
    return value.astimezone(UTC).isoformat(timespec="microseconds")


@dataclass
class WebhookEvent:
    id: str
    stripe_event_id: str
    event_type: str
    payload: str
    headers: str | None
    url: str | None
    processed: bool
    processed_at: str | None
    error: str | None
    error_stack: str | None
    retry_count: int
    max_retries: int
    next_retry_at: str | None
    created_at: str

    @property
    def exhausted(self) -> bool:
        return not self.processed and self.retry_count >= self.max_retries


@dataclass
class Admission:
    status: Literal["new", "duplicate"]
    event_id: str
    already_processed: bool = False


def _row_to_event(row: aiosqlite.Row) -> WebhookEvent:
    data = dict(row)
    data["processed"] = bool(data["processed"])
    return WebhookEvent(**data)


class WebhookEventStore:
    def __init__(self, conn: aiosqlite.Connection, max_retries: int = 3) -> None:
        self._conn = conn
        self._max_retries = max_retries

    @property
    def conn(self) -> aiosqlite.Connection:
        return self._conn

    async def admit(self, event: VerifiedEvent, headers: dict[str, str], url: str | None) -> Admission:
        event_id = str(uuid.uuid4())
        try:
            await self._conn.execute(
                "INSERT INTO webhook_events(id,stripe_event_id,event_type,payload,headers,url,"
                "processed,retry_count,max_retries,created_at) "
                "VALUES(?,?,?,?,?,?,0,0,?,?)",
                (
                    event_id,
                    event.event_id,
                    event.raw_type,
                    json.dumps(event.document),
                    json.dumps(headers),
                    url,
                    self._max_retries,
                    isoformat(utcnow()),
                ),
            )
            await self._conn.commit()
        except aiosqlite.IntegrityError:
            await self._conn.rollback()
            existing = await self.get_by_stripe_event_id(event.event_id)
            return Admission(status="duplicate", event_id=existing.id, already_processed=existing.processed)
        return Admission(status="new", event_id=event_id)

    async def get_by_id(self, event_id: str) -> WebhookEvent | None:
        async with self._conn.execute("SELECT * FROM webhook_events WHERE id=?", (event_id,)) as cursor:
            row = await cursor.fetchone()
        return _row_to_event(row) if row else None

    async def get_by_stripe_event_id(self, stripe_event_id: str) -> WebhookEvent | None:
        async with self._conn.execute(
            "SELECT * FROM webhook_events WHERE stripe_event_id=?", (stripe_event_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_event(row) if row else None

    async def mark_processed(self, event_id: str) -> bool:
        """Commit the current transaction with the event flagged as processed.

        Returns ``False`` and rolls back when another dispatch got there first,
        discarding whatever the caller wrote in this transaction.
        """
        cursor = await self._conn.execute(
            "UPDATE webhook_events SET processed=1, processed_at=?, next_retry_at=NULL "
            "WHERE id=? AND processed=0",
            (isoformat(utcnow()), event_id),
        )
        if cursor.rowcount == 0:
            await self._conn.rollback()
            return False
        await self._conn.commit()
        return True

    async def record_failure(
        self,
        event_id: str,
        error: str,
        error_stack: str | None,
        policy: RetryPolicy,
    ) -> WebhookEvent | None:
        event = await self.get_by_id(event_id)
        if event is None or event.processed:
            return event
        retry_count = event.retry_count + 1
        next_retry_at = policy.next_retry_at(retry_count, event.max_retries, utcnow())
        await self._conn.execute(
            "UPDATE webhook_events SET retry_count=?, error=?, error_stack=?, next_retry_at=? WHERE id=?",
            (
                retry_count,
                error,
                error_stack,
                isoformat(next_retry_at) if next_retry_at else None,
                event_id,
            ),
        )
        await self._conn.commit()
        return await self.get_by_id(event_id)

    async def mark_exhausted(self, event_id: str, error: str, error_stack: str | None) -> None:
        """Fail an event permanently, leaving it for manual replay."""
        await self._conn.execute(
            "UPDATE webhook_events SET retry_count=max(retry_count, max_retries), error=?, error_stack=?,"
            " next_retry_at=NULL WHERE id=? AND processed=0",
            (error, error_stack, event_id),
        )
        await self._conn.commit()

    async def due_for_retry(self, now: str) -> list[str]:
        async with self._conn.execute(
            "SELECT id FROM webhook_events WHERE processed=0"
            " AND next_retry_at IS NOT NULL AND next_retry_at <= ?"
            " AND retry_count < max_retries"
            " ORDER BY next_retry_at",
            (now,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def undispatched(self, before: str) -> list[str]:
        """Admitted events that have never been attempted, oldest first."""
        async with self._conn.execute(
            "SELECT id FROM webhook_events WHERE processed=0 AND retry_count=0"
            " AND next_retry_at IS NULL AND created_at <= ?"
            " ORDER BY created_at",
            (before,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def exhausted(self, limit: int = 100) -> list[WebhookEvent]:
        async with self._conn.execute(
            "SELECT * FROM webhook_events WHERE processed=0 AND retry_count >= max_retries"
            " ORDER BY created_at LIMIT ?",
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_row_to_event(row) for row in rows]
