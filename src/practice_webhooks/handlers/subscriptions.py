"""Practice subscription lifecycle handlers.

Each handler updates the ``subscriptions`` row and appends a history entry to
``subscription_events``. History rows are unique per (Stripe event, kind), so
a replayed event never records the same transition twice.
"""

import logging

from practice_webhooks.domain_events import DomainEventType
from practice_webhooks.events import Invoice, Subscription
from practice_webhooks.handlers.context import HandlerContext
from practice_webhooks.repositories import SubscriptionRepository, from_timestamp

logger = logging.getLogger(__name__)


def _organization_id(subscription: Subscription) -> str | None:
    metadata = subscription.metadata
    return metadata.get("organization_id") or metadata.get("organizationId") or metadata.get("referenceId")


def _period_fields(subscription: Subscription) -> dict:
    return {
        "stripe_price_id": subscription.price_id,
        "current_period_start": from_timestamp(subscription.current_period_start),
        "current_period_end": from_timestamp(subscription.current_period_end),
        "trial_ends_at": from_timestamp(subscription.trial_end),
        "cancel_at_period_end": int(subscription.cancel_at_period_end),
        "canceled_at": from_timestamp(subscription.canceled_at),
        "ended_at": from_timestamp(subscription.ended_at),
    }


async def handle_subscription_created(subscription: Subscription, ctx: HandlerContext) -> None:
    organization_id = _organization_id(subscription)
    if not organization_id:
        logger.warning("No organization ID in subscription metadata: %s", subscription.id)
        return

    repo = SubscriptionRepository(ctx.conn)
    created = await repo.create_if_absent(
        organization_id=organization_id,
        stripe_subscription_id=subscription.id,
        stripe_customer_id=subscription.customer,
        status=subscription.status,
        **_period_fields(subscription),
    )
    if not created:
        logger.info("Subscription already exists: %s", subscription.id)
        return

    record = await repo.get(subscription.id)
    await repo.add_event(
        record["id"],
        ctx.stripe_event_id,
        "created",
        to_status=subscription.status,
        metadata={"stripe_subscription_id": subscription.id, "stripe_customer_id": subscription.customer},
    )
    await ctx.events.publish(
        DomainEventType.SUBSCRIPTION_CREATED,
        {"subscription_id": record["id"], "stripe_subscription_id": subscription.id, "status": subscription.status},
        organization_id=organization_id,
    )
    logger.info("Created subscription %s for org %s", record["id"], organization_id)


async def handle_subscription_updated(subscription: Subscription, ctx: HandlerContext) -> None:
    repo = SubscriptionRepository(ctx.conn)
    record = await repo.get(subscription.id)
    if record is None:
        logger.warning("Subscription not found in database: %s", subscription.id)
        return

    previous_status = (ctx.previous_attributes or {}).get("status") or record["status"]
    await repo.update(subscription.id, status=subscription.status, **_period_fields(subscription))
    if previous_status != subscription.status:
        await repo.add_event(
            record["id"],
            ctx.stripe_event_id,
            "status_changed",
            from_status=previous_status,
            to_status=subscription.status,
            metadata={"previous_attributes": ctx.previous_attributes},
        )
    logger.info("Updated subscription %s status=%s", record["id"], subscription.status)


async def handle_subscription_deleted(subscription: Subscription, ctx: HandlerContext) -> None:
    repo = SubscriptionRepository(ctx.conn)
    record = await repo.get(subscription.id)
    if record is None:
        logger.warning("Subscription not found in database: %s", subscription.id)
        return

    await repo.update(subscription.id, status="canceled", **_period_fields(subscription))
    await repo.add_event(
        record["id"],
        ctx.stripe_event_id,
        "canceled",
        from_status=record["status"],
        to_status="canceled",
    )
    await ctx.events.publish(
        DomainEventType.SUBSCRIPTION_CANCELED,
        {"subscription_id": record["id"], "stripe_subscription_id": subscription.id},
        organization_id=record["organization_id"],
    )


async def _subscription_for_invoice(invoice: Invoice, ctx: HandlerContext) -> dict | None:
    if not invoice.subscription:
        logger.debug("Invoice %s is not tied to a subscription", invoice.id)
        return None
    record = await SubscriptionRepository(ctx.conn).get(invoice.subscription)
    if record is None:
        logger.warning("Subscription not found for invoice: %s", invoice.id)
    return record


async def handle_invoice_payment_succeeded(invoice: Invoice, ctx: HandlerContext) -> None:
    record = await _subscription_for_invoice(invoice, ctx)
    if record is None:
        return

    repo = SubscriptionRepository(ctx.conn)
    await repo.update(invoice.subscription, status="active")
    await repo.add_event(
        record["id"],
        ctx.stripe_event_id,
        "payment_succeeded",
        from_status=record["status"],
        to_status="active",
        metadata={"invoice_id": invoice.id, "amount_paid": invoice.amount_paid, "currency": invoice.currency},
    )
    await ctx.events.publish(
        DomainEventType.SUBSCRIPTION_PAYMENT_SUCCEEDED,
        {
            "subscription_id": record["id"],
            "invoice_id": invoice.id,
            "amount_paid": invoice.amount_paid,
            "currency": invoice.currency,
        },
        organization_id=record["organization_id"],
    )


async def handle_invoice_payment_failed(invoice: Invoice, ctx: HandlerContext) -> None:
    record = await _subscription_for_invoice(invoice, ctx)
    if record is None:
        return

    error = invoice.last_finalization_error
    repo = SubscriptionRepository(ctx.conn)
    await repo.update(invoice.subscription, status="past_due")
    await repo.add_event(
        record["id"],
        ctx.stripe_event_id,
        "payment_failed",
        from_status=record["status"],
        to_status="past_due",
        error_message=error.message if error else None,
        metadata={
            "invoice_id": invoice.id,
            "amount_due": invoice.amount_due,
            "currency": invoice.currency,
            "attempt_count": invoice.attempt_count,
            "next_payment_attempt": from_timestamp(invoice.next_payment_attempt),
        },
    )
    await ctx.events.publish(
        DomainEventType.SUBSCRIPTION_PAYMENT_FAILED,
        {
            "subscription_id": record["id"],
            "invoice_id": invoice.id,
            "amount_due": invoice.amount_due,
            "attempt_count": invoice.attempt_count,
        },
        organization_id=record["organization_id"],
    )
