import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

from fastapi import FastAPI

from practice_webhooks.config import Settings
from practice_webhooks.database import open_db
from practice_webhooks.dependencies import get_settings
from practice_webhooks.dispatcher import EventDispatcher
from practice_webhooks.events import StripeEventType
from practice_webhooks.handlers import Handler, build_registry
from practice_webhooks.logging_setup import configure_logging
from practice_webhooks.queue import DispatchQueue
from practice_webhooks.retry import RetryPolicy
from practice_webhooks.router import router
from practice_webhooks.signature import SignatureVerifier
from practice_webhooks.store import WebhookEventStore
from practice_webhooks.sweep import retry_sweep
from practice_webhooks.workers import load_pending, worker

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    handlers: Mapping[StripeEventType, Handler] | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    registry = build_registry(handlers)
    policy = RetryPolicy.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level, settings.log_format)
        if not settings.stripe_webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET is not set, every delivery will be rejected")
        app.state.ready = False
        app.state.db = await open_db(settings.db_path)
        app.state.queue = DispatchQueue(maxsize=settings.queue_maxsize)
        store = WebhookEventStore(app.state.db, max_retries=settings.max_retries)
        await load_pending(app.state.queue, store)
        # Each worker gets its own connection so every dispatch is its own transaction.
        connections = [await open_db(settings.db_path) for _ in range(settings.worker_count)]
        tasks = [
            asyncio.create_task(
                worker(
                    app.state.queue,
                    EventDispatcher(WebhookEventStore(conn, max_retries=settings.max_retries), registry, policy),
                )
            )
            for conn in connections
        ]
        tasks.append(asyncio.create_task(retry_sweep(store, app.state.queue, settings)))
        app.state.ready = True
        yield
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for conn in connections:
            await conn.close()
        await app.state.db.close()

    app = FastAPI(title="practice-webhooks", lifespan=lifespan)
    app.state.settings = settings
    app.state.handlers = registry
    app.state.verifier = SignatureVerifier(settings.stripe_webhook_secret, settings.stripe_signature_tolerance)
    app.include_router(router)
    return app
