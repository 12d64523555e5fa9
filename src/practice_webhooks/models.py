from pydantic import BaseModel

from practice_webhooks.dispatcher import DispatchOutcome
from practice_webhooks.store import WebhookEvent


class WebhookReceipt(BaseModel):
    received: bool = True
    alreadyProcessed: bool | None = None


class WebhookEventResponse(BaseModel):
    id: str
    stripe_event_id: str
    event_type: str
    processed: bool
    processed_at: str | None
    error: str | None
    retry_count: int
    max_retries: int
    next_retry_at: str | None
    created_at: str
    exhausted: bool

    @classmethod
    def from_event(cls, event: WebhookEvent) -> "WebhookEventResponse":
        return cls(
            id=event.id,
            stripe_event_id=event.stripe_event_id,
            event_type=event.event_type,
            processed=event.processed,
            processed_at=event.processed_at,
            error=event.error,
            retry_count=event.retry_count,
            max_retries=event.max_retries,
            next_retry_at=event.next_retry_at,
            created_at=event.created_at,
            exhausted=event.exhausted,
        )


class ReplayResponse(BaseModel):
    outcome: DispatchOutcome
    event: WebhookEventResponse
