"""Stripe Connect onboarding handlers.

Keep the ``connected_accounts`` row for a practice in step with its Stripe
account: status flags, requirements, capabilities and payout destinations.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from practice_webhooks.domain_events import DomainEventType
from practice_webhooks.events import Account, Capability, ExternalAccount
from practice_webhooks.handlers.context import HandlerContext
from practice_webhooks.repositories import ConnectedAccountRepository

logger = logging.getLogger(__name__)


async def handle_account_updated(account: Account, ctx: HandlerContext) -> None:
    repo = ConnectedAccountRepository(ctx.conn)
    current = await repo.get(account.id)
    if current is None:
        logger.warning("Connected account not found for Stripe ID %s", account.id)
        return

    now = datetime.now(UTC).isoformat()
    fields: dict[str, Any] = {
        "charges_enabled": int(account.charges_enabled),
        "payouts_enabled": int(account.payouts_enabled),
        "details_submitted": int(account.details_submitted),
        "business_type": account.business_type,
        "requirements": account.requirements,
        "metadata": account.metadata,
        "last_refreshed_at": now,
    }
    if account.capabilities is not None:
        fields["capabilities"] = {**(current["capabilities"] or {}), **account.capabilities}
    completed_now = (
        account.details_submitted and account.charges_enabled and current["onboarding_completed_at"] is None
    )
    if completed_now:
        fields["onboarding_completed_at"] = now
    await repo.update(account.id, **fields)

    organization_id = current["organization_id"]
    await ctx.events.publish(
        DomainEventType.ONBOARDING_ACCOUNT_UPDATED,
        {
            "stripe_account_id": account.id,
            "charges_enabled": account.charges_enabled,
            "payouts_enabled": account.payouts_enabled,
            "details_submitted": account.details_submitted,
            "business_type": account.business_type,
            "previous_charges_enabled": bool(current["charges_enabled"]),
            "previous_payouts_enabled": bool(current["payouts_enabled"]),
            "previous_details_submitted": bool(current["details_submitted"]),
        },
        organization_id=organization_id,
    )
    if completed_now:
        await ctx.events.publish(
            DomainEventType.ONBOARDING_COMPLETED,
            {"stripe_account_id": account.id, "onboarding_completed_at": now},
            organization_id=organization_id,
        )
    logger.info("Synced connected account %s org=%s", account.id, organization_id)


async def handle_capability_updated(capability: Capability, ctx: HandlerContext) -> None:
    if not capability.account:
        logger.error("Account ID missing from capability.updated %s", capability.id)
        return
    repo = ConnectedAccountRepository(ctx.conn)
    current = await repo.get(capability.account)
    if current is None:
        logger.warning("Connected account not found for capability update: %s", capability.account)
        return

    previous = current["capabilities"] or {}
    capabilities = {
        **previous,
        capability.id: {
            "status": capability.status,
            "requirements": capability.requirements,
            "requested": capability.requested,
            "requested_at": capability.requested_at,
        },
    }
    await repo.update(
        capability.account,
        capabilities=capabilities,
        last_refreshed_at=datetime.now(UTC).isoformat(),
    )
    await ctx.events.publish(
        DomainEventType.ONBOARDING_ACCOUNT_CAPABILITIES_UPDATED,
        {
            "stripe_account_id": capability.account,
            "capability_id": capability.id,
            "capability_status": capability.status,
            "requested": capability.requested,
        },
        organization_id=current["organization_id"],
    )


def _external_account_entry(external_account: ExternalAccount) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "id": external_account.id,
        "type": external_account.object,
        "status": external_account.status,
        "metadata": external_account.metadata,
    }
    if external_account.object == "card":
        entry.update(
            brand=external_account.brand,
            last4=external_account.last4,
            exp_month=external_account.exp_month,
            exp_year=external_account.exp_year,
        )
    elif external_account.object == "bank_account":
        entry.update(
            bank_name=external_account.bank_name,
            last4=external_account.last4,
            routing_number=external_account.routing_number,
        )
    return entry


async def _sync_external_account(
    external_account: ExternalAccount,
    ctx: HandlerContext,
    event_type: DomainEventType,
    remove: bool = False,
) -> None:
    if not external_account.account:
        logger.error("Account ID missing from external account event %s", external_account.id)
        return
    repo = ConnectedAccountRepository(ctx.conn)
    current = await repo.get(external_account.account)
    if current is None:
        logger.warning("Connected account not found for external account %s", external_account.account)
        return

    external_accounts = dict(current["external_accounts"] or {})
    if remove:
        external_accounts.pop(external_account.id, None)
    else:
        external_accounts[external_account.id] = _external_account_entry(external_account)
    await repo.update(
        external_account.account,
        external_accounts=external_accounts,
        last_refreshed_at=datetime.now(UTC).isoformat(),
    )
    await ctx.events.publish(
        event_type,
        {
            "stripe_account_id": external_account.account,
            "external_account_id": external_account.id,
            "external_account_type": external_account.object,
            "external_account_status": external_account.status,
        },
        organization_id=current["organization_id"],
    )


async def handle_external_account_created(external_account: ExternalAccount, ctx: HandlerContext) -> None:
    await _sync_external_account(external_account, ctx, DomainEventType.ONBOARDING_EXTERNAL_ACCOUNT_CREATED)


async def handle_external_account_updated(external_account: ExternalAccount, ctx: HandlerContext) -> None:
    await _sync_external_account(external_account, ctx, DomainEventType.ONBOARDING_EXTERNAL_ACCOUNT_UPDATED)


async def handle_external_account_deleted(external_account: ExternalAccount, ctx: HandlerContext) -> None:
    await _sync_external_account(
        external_account, ctx, DomainEventType.ONBOARDING_EXTERNAL_ACCOUNT_DELETED, remove=True
    )
