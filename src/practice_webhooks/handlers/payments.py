import logging
from datetime import UTC, datetime

from practice_webhooks.domain_events import DomainEventType
from practice_webhooks.events import PaymentIntent
from practice_webhooks.handlers.context import HandlerContext
from practice_webhooks.repositories import PaymentIntentRepository

logger = logging.getLogger(__name__)


async def handle_payment_intent_succeeded(payment_intent: PaymentIntent, ctx: HandlerContext) -> None:
    repo = PaymentIntentRepository(ctx.conn)
    current = await repo.get(payment_intent.id)
    if current is None:
        logger.warning("Payment intent not found in database: %s", payment_intent.id)
        return

    charge = payment_intent.charge
    await repo.update(
        payment_intent.id,
        status="succeeded",
        payment_method_id=payment_intent.payment_method,
        stripe_charge_id=charge.id if charge else None,
        receipt_url=charge.receipt_url if charge else None,
        succeeded_at=current["succeeded_at"] or datetime.now(UTC).isoformat(),
    )
    await ctx.events.publish(
        DomainEventType.PAYMENT_RECEIVED,
        {
            "payment_intent_id": current["id"],
            "stripe_payment_intent_id": payment_intent.id,
            "amount": payment_intent.amount,
            "currency": payment_intent.currency,
            "customer_id": current["customer_id"],
            "receipt_url": charge.receipt_url if charge else None,
        },
        organization_id=current["organization_id"],
    )
    logger.info("Payment succeeded: %s amount=%d %s", payment_intent.id, payment_intent.amount, payment_intent.currency)


async def handle_payment_intent_failed(payment_intent: PaymentIntent, ctx: HandlerContext) -> None:
    repo = PaymentIntentRepository(ctx.conn)
    current = await repo.get(payment_intent.id)
    if current is None:
        logger.warning("Payment intent not found in database: %s", payment_intent.id)
        return

    error = payment_intent.last_payment_error
    await repo.update(
        payment_intent.id,
        status="failed",
        failure_code=error.code if error else None,
        failure_message=error.message if error else None,
    )
    await ctx.events.publish(
        DomainEventType.PAYMENT_FAILED,
        {
            "payment_intent_id": current["id"],
            "stripe_payment_intent_id": payment_intent.id,
            "amount": payment_intent.amount,
            "currency": payment_intent.currency,
            "customer_id": current["customer_id"],
            "error_code": error.code if error else None,
            "error_message": error.message if error else None,
        },
        organization_id=current["organization_id"],
    )


async def handle_payment_intent_canceled(payment_intent: PaymentIntent, ctx: HandlerContext) -> None:
    repo = PaymentIntentRepository(ctx.conn)
    current = await repo.get(payment_intent.id)
    if current is None:
        logger.warning("Payment intent not found in database: %s", payment_intent.id)
        return

    await repo.update(payment_intent.id, status="canceled")
    await ctx.events.publish(
        DomainEventType.PAYMENT_CANCELED,
        {
            "payment_intent_id": current["id"],
            "stripe_payment_intent_id": payment_intent.id,
            "cancellation_reason": payment_intent.cancellation_reason,
        },
        organization_id=current["organization_id"],
    )
