import aiosqlite
import pytest
from httpx import ASGITransport, AsyncClient
from stripe_payloads import WEBHOOK_SECRET

from practice_webhooks.app import create_app
from practice_webhooks.config import Settings
from practice_webhooks.database import open_db
from practice_webhooks.dependencies import get_db, get_queue
from practice_webhooks.queue import DispatchQueue
from practice_webhooks.store import WebhookEventStore


@pytest.fixture
def settings(tmp_path: pytest.TempPathFactory) -> Settings:
    return Settings(db_path=str(tmp_path / "test.db"), stripe_webhook_secret=WEBHOOK_SECRET, max_retries=3)


@pytest.fixture
async def db(settings: Settings):
    conn = await open_db(settings.db_path)
    yield conn
    await conn.close()


@pytest.fixture
def store(db: aiosqlite.Connection) -> WebhookEventStore:
    return WebhookEventStore(db, max_retries=3)


@pytest.fixture
def queue(settings: Settings) -> DispatchQueue:
    return DispatchQueue(maxsize=settings.queue_maxsize)


@pytest.fixture
async def client(settings: Settings, db: aiosqlite.Connection, queue: DispatchQueue) -> AsyncClient:
    app = create_app(settings)
    app.state.ready = True
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_queue] = lambda: queue
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
