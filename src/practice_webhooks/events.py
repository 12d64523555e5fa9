"""Typed Stripe event envelope.

Stripe delivers every notification as the same envelope (``id``, ``type``,
``data.object``). The event types this service acts on are enumerated in
:class:`StripeEventType`; each maps to exactly one pydantic model so handlers
receive a validated object instead of a raw document.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class StripeEventType(StrEnum):
    ACCOUNT_UPDATED = "account.updated"
    CAPABILITY_UPDATED = "capability.updated"
    EXTERNAL_ACCOUNT_CREATED = "account.external_account.created"
    EXTERNAL_ACCOUNT_UPDATED = "account.external_account.updated"
    EXTERNAL_ACCOUNT_DELETED = "account.external_account.deleted"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    PRODUCT_CREATED = "product.created"
    PRODUCT_UPDATED = "product.updated"
    PRODUCT_DELETED = "product.deleted"
    PRICE_CREATED = "price.created"
    PRICE_UPDATED = "price.updated"
    PRICE_DELETED = "price.deleted"


class StripeObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str


class Account(StripeObject):
    email: str | None = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    business_type: str | None = None
    requirements: dict[str, Any] | None = None
    capabilities: dict[str, str] | None = None
    metadata: dict[str, str] = {}


class Capability(StripeObject):
    account: str | None = None
    status: str
    requested: bool = False
    requested_at: int | None = None
    requirements: dict[str, Any] | None = None


class ExternalAccount(StripeObject):
    object: str = "unknown"
    account: str | None = None
    status: str | None = None
    last4: str | None = None
    bank_name: str | None = None
    routing_number: str | None = None
    brand: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None
    metadata: dict[str, str] = {}


class PaymentError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str | None = None
    message: str | None = None
    type: str | None = None


class Charge(StripeObject):
    receipt_url: str | None = None


class ChargeList(BaseModel):
    data: list[Charge] = []


class PaymentIntent(StripeObject):
    amount: int
    currency: str
    status: str
    customer: str | None = None
    payment_method: str | None = None
    latest_charge: str | None = None
    charges: ChargeList | None = None
    last_payment_error: PaymentError | None = None
    cancellation_reason: str | None = None
    metadata: dict[str, str] = {}

    @property
    def charge(self) -> Charge | None:
        if self.charges and self.charges.data:
            return self.charges.data[0]
        if self.latest_charge:
            return Charge(id=self.latest_charge)
        return None


class Price(StripeObject):
    product: str
    active: bool = True
    unit_amount: int | None = None
    currency: str | None = None
    nickname: str | None = None
    recurring: dict[str, Any] | None = None
    metadata: dict[str, str] = {}

    @field_validator("product", mode="before")
    @classmethod
    def _expanded_product(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("id")
        return value

    @property
    def interval(self) -> str | None:
        return (self.recurring or {}).get("interval")

    @property
    def metered(self) -> bool:
        return (self.recurring or {}).get("usage_type") == "metered"


class SubscriptionItem(StripeObject):
    price: Price | None = None


class SubscriptionItemList(BaseModel):
    data: list[SubscriptionItem] = []


class Subscription(StripeObject):
    customer: str
    status: str
    current_period_start: int | None = None
    current_period_end: int | None = None
    trial_end: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    ended_at: int | None = None
    items: SubscriptionItemList | None = None
    metadata: dict[str, str] = {}

    @property
    def price_id(self) -> str | None:
        if self.items and self.items.data and self.items.data[0].price:
            return self.items.data[0].price.id
        return None


class Invoice(StripeObject):
    subscription: str | None = None
    customer: str | None = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: str | None = None
    attempt_count: int = 0
    next_payment_attempt: int | None = None
    last_finalization_error: PaymentError | None = None


class Product(StripeObject):
    name: str = ""
    description: str | None = None
    active: bool = True
    metadata: dict[str, str] = {}


EventPayload = (
    Account | Capability | ExternalAccount | PaymentIntent | Subscription | Invoice | Product | Price
)

PAYLOAD_MODELS: dict[StripeEventType, type[StripeObject]] = {
    StripeEventType.ACCOUNT_UPDATED: Account,
    StripeEventType.CAPABILITY_UPDATED: Capability,
    StripeEventType.EXTERNAL_ACCOUNT_CREATED: ExternalAccount,
    StripeEventType.EXTERNAL_ACCOUNT_UPDATED: ExternalAccount,
    StripeEventType.EXTERNAL_ACCOUNT_DELETED: ExternalAccount,
    StripeEventType.PAYMENT_INTENT_SUCCEEDED: PaymentIntent,
    StripeEventType.PAYMENT_INTENT_FAILED: PaymentIntent,
    StripeEventType.PAYMENT_INTENT_CANCELED: PaymentIntent,
    StripeEventType.SUBSCRIPTION_CREATED: Subscription,
    StripeEventType.SUBSCRIPTION_UPDATED: Subscription,
    StripeEventType.SUBSCRIPTION_DELETED: Subscription,
    StripeEventType.INVOICE_PAYMENT_SUCCEEDED: Invoice,
    StripeEventType.INVOICE_PAYMENT_FAILED: Invoice,
    StripeEventType.PRODUCT_CREATED: Product,
    StripeEventType.PRODUCT_UPDATED: Product,
    StripeEventType.PRODUCT_DELETED: Product,
    StripeEventType.PRICE_CREATED: Price,
    StripeEventType.PRICE_UPDATED: Price,
    StripeEventType.PRICE_DELETED: Price,
}


class StripeEventData(BaseModel):
    object: dict[str, Any]
    previous_attributes: dict[str, Any] | None = None


class StripeEventEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    created: int | None = None
    livemode: bool = False
    account: str | None = None
    data: StripeEventData


@dataclass(frozen=True)
class VerifiedEvent:
    event_id: str
    raw_type: str
    event_type: StripeEventType | None
    payload: EventPayload | dict[str, Any]
    previous_attributes: dict[str, Any] | None = None
    account: str | None = None
    document: dict[str, Any] = field(default_factory=dict)


def decode_event(document: dict[str, Any]) -> VerifiedEvent:
    """Validate a Stripe event document into a :class:`VerifiedEvent`.

    Types outside :class:`StripeEventType` keep their ``data.object`` as a
    plain dict and ``event_type`` is ``None``. Raises ``pydantic.ValidationError``
    when the envelope, or the object of a known type, is malformed.
    """
    envelope = StripeEventEnvelope.model_validate(document)
    try:
        event_type = StripeEventType(envelope.type)
    except ValueError:
        event_type = None
        payload: EventPayload | dict[str, Any] = envelope.data.object
    else:
        payload = PAYLOAD_MODELS[event_type].model_validate(envelope.data.object)
    return VerifiedEvent(
        event_id=envelope.id,
        raw_type=envelope.type,
        event_type=event_type,
        payload=payload,
        previous_attributes=envelope.data.previous_attributes,
        account=envelope.account,
        document=document,
    )
