from dataclasses import dataclass
from typing import Any

import aiosqlite

from practice_webhooks.domain_events import DomainEventPublisher


@dataclass
class HandlerContext:
    conn: aiosqlite.Connection
    events: DomainEventPublisher
    stripe_event_id: str
    previous_attributes: dict[str, Any] | None = None
