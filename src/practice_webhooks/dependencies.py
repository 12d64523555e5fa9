from collections.abc import AsyncIterator
from functools import lru_cache

import aiosqlite
from fastapi import Depends, Request

from practice_webhooks.config import Settings
from practice_webhooks.database import open_db
from practice_webhooks.dispatcher import EventDispatcher
from practice_webhooks.queue import DispatchQueue
from practice_webhooks.retry import RetryPolicy
from practice_webhooks.signature import SignatureVerifier
from practice_webhooks.store import WebhookEventStore


@lru_cache
def get_settings() -> Settings:
    return Settings()


async def get_db(request: Request) -> aiosqlite.Connection:
    return request.app.state.db


async def get_store(
    request: Request,
    db: aiosqlite.Connection = Depends(get_db),
) -> WebhookEventStore:
    return WebhookEventStore(db, max_retries=request.app.state.settings.max_retries)


async def get_queue(request: Request) -> DispatchQueue:
    return request.app.state.queue


async def get_verifier(request: Request) -> SignatureVerifier:
    return request.app.state.verifier


async def get_replay_dispatcher(request: Request) -> AsyncIterator[EventDispatcher]:
    # A private connection keeps the replayed handler's transaction apart from request traffic.
    settings: Settings = request.app.state.settings
    conn = await open_db(settings.db_path)
    try:
        yield EventDispatcher(
            WebhookEventStore(conn, max_retries=settings.max_retries),
            request.app.state.handlers,
            RetryPolicy.from_settings(settings),
        )
    finally:
        await conn.close()
