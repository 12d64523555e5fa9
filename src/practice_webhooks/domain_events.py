import json
import logging
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)


class DomainEventType(StrEnum):
    ONBOARDING_COMPLETED = "onboarding.completed"
    ONBOARDING_ACCOUNT_UPDATED = "onboarding.account_updated"
    ONBOARDING_ACCOUNT_CAPABILITIES_UPDATED = "onboarding.account_capabilities_updated"
    ONBOARDING_EXTERNAL_ACCOUNT_CREATED = "onboarding.external_account_created"
    ONBOARDING_EXTERNAL_ACCOUNT_UPDATED = "onboarding.external_account_updated"
    ONBOARDING_EXTERNAL_ACCOUNT_DELETED = "onboarding.external_account_deleted"
    PAYMENT_RECEIVED = "payment.received"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELED = "payment.canceled"
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_PAYMENT_SUCCEEDED = "subscription.payment_succeeded"
    SUBSCRIPTION_PAYMENT_FAILED = "subscription.payment_failed"


class DomainEventPublisher:
    """Writes follow-on events to the ``domain_events`` outbox.

    Rows share the dispatcher's transaction, so they only become visible when
    the webhook that produced them is marked processed. Publishing is
    best-effort: a failed write is logged and never fails the handler.
    """

    def __init__(self, conn: aiosqlite.Connection, source_event_id: str | None = None) -> None:
        self._conn = conn
        self._source_event_id = source_event_id

    async def publish(
        self,
        event_type: DomainEventType,
        payload: dict[str, Any],
        organization_id: str | None = None,
        actor_id: str = "stripe-webhook",
        actor_type: str = "webhook",
    ) -> None:
        try:
            await self._conn.execute(
                "INSERT INTO domain_events(id,event_type,actor_id,actor_type,organization_id,"
                "source_event_id,payload,created_at) VALUES(?,?,?,?,?,?,?,?)",
                (
                    str(uuid.uuid4()),
                    str(event_type),
                    actor_id,
                    actor_type,
                    organization_id,
                    self._source_event_id,
                    json.dumps(payload, default=str),
                    datetime.now(UTC).isoformat(),
                ),
            )
        except aiosqlite.Error:
            logger.exception("Failed to publish domain event %s", event_type)
            return
        logger.debug("Published domain event %s org=%s", event_type, organization_id)
