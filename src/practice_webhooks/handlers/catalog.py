"""Plan catalog sync: Stripe products map to plans, prices attach to them."""

import logging

from practice_webhooks.events import Price, Product
from practice_webhooks.handlers.context import HandlerContext
from practice_webhooks.repositories import PlanRepository

logger = logging.getLogger(__name__)


async def handle_product_upserted(product: Product, ctx: HandlerContext) -> None:
    await PlanRepository(ctx.conn).upsert_product(product.id, product.name, product.description, product.active)
    logger.info("Synced plan for product %s", product.id)


async def handle_product_deleted(product: Product, ctx: HandlerContext) -> None:
    if not await PlanRepository(ctx.conn).deactivate(product.id):
        logger.warning("Plan not found for deactivation: %s", product.id)


def _without_price(plan: dict, price_id: str) -> dict:
    fields: dict = {
        "metered_items": [item for item in plan["metered_items"] or [] if item["price_id"] != price_id],
    }
    if plan["stripe_monthly_price_id"] == price_id:
        fields.update(stripe_monthly_price_id=None, monthly_price=None)
    if plan["stripe_yearly_price_id"] == price_id:
        fields.update(stripe_yearly_price_id=None, yearly_price=None)
    return fields


async def handle_price_upserted(price: Price, ctx: HandlerContext) -> None:
    repo = PlanRepository(ctx.conn)
    plan = await repo.get(price.product)
    if plan is None:
        logger.warning("Plan not found for price %s, product %s", price.id, price.product)
        return

    fields = _without_price(plan, price.id)
    if not price.active:
        await repo.update(price.product, **fields)
        return
    if price.metered:
        fields["metered_items"].append(
            {
                "price_id": price.id,
                "meter_name": price.nickname or "metered",
                "type": price.metadata.get("meter_type", "usage"),
            }
        )
    elif price.interval == "month":
        fields.update(stripe_monthly_price_id=price.id, monthly_price=price.unit_amount)
    elif price.interval == "year":
        fields.update(stripe_yearly_price_id=price.id, yearly_price=price.unit_amount)
    else:
        logger.info("No plan updates needed for price %s", price.id)
        return
    await repo.update(price.product, **fields)


async def handle_price_deleted(price: Price, ctx: HandlerContext) -> None:
    repo = PlanRepository(ctx.conn)
    plan = await repo.get(price.product)
    if plan is None:
        logger.warning("Plan not found for deleted price %s", price.id)
        return
    await repo.update(price.product, **_without_price(plan, price.id))
