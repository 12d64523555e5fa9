from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from practice_webhooks.events import StripeEventType
from practice_webhooks.handlers import accounts, catalog, payments, subscriptions
from practice_webhooks.handlers.context import HandlerContext

Handler = Callable[[Any, HandlerContext], Awaitable[None]]

HANDLERS: dict[StripeEventType, Handler] = {
    StripeEventType.ACCOUNT_UPDATED: accounts.handle_account_updated,
    StripeEventType.CAPABILITY_UPDATED: accounts.handle_capability_updated,
    StripeEventType.EXTERNAL_ACCOUNT_CREATED: accounts.handle_external_account_created,
    StripeEventType.EXTERNAL_ACCOUNT_UPDATED: accounts.handle_external_account_updated,
    StripeEventType.EXTERNAL_ACCOUNT_DELETED: accounts.handle_external_account_deleted,
    StripeEventType.PAYMENT_INTENT_SUCCEEDED: payments.handle_payment_intent_succeeded,
    StripeEventType.PAYMENT_INTENT_FAILED: payments.handle_payment_intent_failed,
    StripeEventType.PAYMENT_INTENT_CANCELED: payments.handle_payment_intent_canceled,
    StripeEventType.SUBSCRIPTION_CREATED: subscriptions.handle_subscription_created,
    StripeEventType.SUBSCRIPTION_UPDATED: subscriptions.handle_subscription_updated,
    StripeEventType.SUBSCRIPTION_DELETED: subscriptions.handle_subscription_deleted,
    StripeEventType.INVOICE_PAYMENT_SUCCEEDED: subscriptions.handle_invoice_payment_succeeded,
    StripeEventType.INVOICE_PAYMENT_FAILED: subscriptions.handle_invoice_payment_failed,
    StripeEventType.PRODUCT_CREATED: catalog.handle_product_upserted,
    StripeEventType.PRODUCT_UPDATED: catalog.handle_product_upserted,
    StripeEventType.PRODUCT_DELETED: catalog.handle_product_deleted,
    StripeEventType.PRICE_CREATED: catalog.handle_price_upserted,
    StripeEventType.PRICE_UPDATED: catalog.handle_price_upserted,
    StripeEventType.PRICE_DELETED: catalog.handle_price_deleted,
}


def build_registry(handlers: Mapping[StripeEventType, Handler] | None = None) -> dict[StripeEventType, Handler]:
    """Return the event type to handler mapping, refusing one that leaves a type unhandled."""
    registry = dict(HANDLERS if handlers is None else handlers)
    missing = [str(event_type) for event_type in StripeEventType if event_type not in registry]
    if missing:
        raise ValueError(f"No handler registered for: {', '.join(missing)}")
    return registry


__all__ = ["HANDLERS", "Handler", "HandlerContext", "build_registry"]
