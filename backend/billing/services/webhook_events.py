"""Typed Stripe webhook events

A verified event is parsed into exactly one of the variants in
``EVENT_VARIANTS``. Event types the reconciler does not act on become
``Unrecognized`` so they are acknowledged and logged instead of raising.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from billing.services.stripe_gateway import list_data, stripe_id, stripe_value, to_datetime, to_plain


def _metadata(obj: Any) -> Dict[str, str]:
    metadata = to_plain(stripe_value(obj, "metadata")) or {}
    return {str(k): str(v) for k, v in metadata.items() if v is not None}


def _first_item(subscription: Any) -> Any:
    items = list_data(stripe_value(subscription, "items"))
    return items[0] if items else None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """The fields of a Stripe subscription the reconciler reads"""
    subscription_id: str
    customer_id: Optional[str] = None
    status: Optional[str] = None
    item_id: Optional[str] = None
    price_id: Optional[str] = None
    recurring_interval: Optional[str] = None  # Stripe vocabulary: 'month', 'year'
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    created: Optional[int] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_stripe(cls, obj: Any) -> "SubscriptionSnapshot":
        item = _first_item(obj)
        price = stripe_value(item, "price")
        recurring = stripe_value(price, "recurring")
        # Newer API versions report billing periods on the subscription item
        period_start = stripe_value(obj, "current_period_start") or stripe_value(item, "current_period_start")
        period_end = stripe_value(obj, "current_period_end") or stripe_value(item, "current_period_end")
        return cls(
            subscription_id=stripe_value(obj, "id"),
            customer_id=stripe_id(stripe_value(obj, "customer")),
            status=stripe_value(obj, "status"),
            item_id=stripe_value(item, "id"),
            price_id=stripe_id(price),
            recurring_interval=stripe_value(recurring, "interval"),
            current_period_start=to_datetime(period_start),
            current_period_end=to_datetime(period_end),
            cancel_at_period_end=bool(stripe_value(obj, "cancel_at_period_end", False)),
            created=stripe_value(obj, "created"),
            metadata=_metadata(obj),
        )

    @property
    def billing_interval(self) -> Optional[str]:
        if not self.recurring_interval:
            return None
        return "yearly" if self.recurring_interval == "year" else "monthly"


@dataclass(frozen=True)
class InvoiceSnapshot:
    """The fields of a Stripe invoice the reconciler reads"""
    invoice_id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount_paid: int = 0
    currency: str = "usd"
    status: Optional[str] = None
    invoice_pdf: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    @classmethod
    def from_stripe(cls, obj: Any) -> "InvoiceSnapshot":
        subscription = stripe_value(obj, "subscription")
        if subscription is None:
            # Newer API versions nest the subscription under the invoice parent
            details = stripe_value(stripe_value(obj, "parent"), "subscription_details")
            subscription = stripe_value(details, "subscription")
        return cls(
            invoice_id=stripe_value(obj, "id"),
            customer_id=stripe_id(stripe_value(obj, "customer")),
            subscription_id=stripe_id(subscription),
            amount_paid=int(stripe_value(obj, "amount_paid", 0)),
            currency=stripe_value(obj, "currency", "usd"),
            status=stripe_value(obj, "status"),
            invoice_pdf=stripe_value(obj, "invoice_pdf"),
            period_start=to_datetime(stripe_value(obj, "period_start")),
            period_end=to_datetime(stripe_value(obj, "period_end")),
        )


# ============================================================================
# EVENT VARIANTS
# ============================================================================

@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    event_type: str


@dataclass(frozen=True)
class CheckoutCompleted(WebhookEvent):
    session_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    metadata: Dict[str, str]


@dataclass(frozen=True)
class SubscriptionUpdated(WebhookEvent):
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionDeleted(WebhookEvent):
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class InvoiceCreated(WebhookEvent):
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class InvoicePaymentSucceeded(WebhookEvent):
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class InvoicePaymentFailed(WebhookEvent):
    invoice: InvoiceSnapshot


@dataclass(frozen=True)
class Unrecognized(WebhookEvent):
    pass


EVENT_VARIANTS = (
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoiceCreated,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    Unrecognized,
)


def _checkout_completed(event_id, event_type, obj):
    return CheckoutCompleted(
        event_id=event_id,
        event_type=event_type,
        session_id=stripe_value(obj, "id"),
        customer_id=stripe_id(stripe_value(obj, "customer")),
        subscription_id=stripe_id(stripe_value(obj, "subscription")),
        metadata=_metadata(obj),
    )


def _subscription_event(variant):
    def parse(event_id, event_type, obj):
        return variant(event_id, event_type, SubscriptionSnapshot.from_stripe(obj))
    return parse


def _invoice_event(variant):
    def parse(event_id, event_type, obj):
        return variant(event_id, event_type, InvoiceSnapshot.from_stripe(obj))
    return parse


PARSERS = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.updated": _subscription_event(SubscriptionUpdated),
    "customer.subscription.deleted": _subscription_event(SubscriptionDeleted),
    "invoice.created": _invoice_event(InvoiceCreated),
    "invoice.payment_succeeded": _invoice_event(InvoicePaymentSucceeded),
    "invoice.payment_failed": _invoice_event(InvoicePaymentFailed),
}


def parse_event(raw: Any) -> WebhookEvent:
    """Turn a verified Stripe event (StripeObject or dict) into a typed variant"""
    event_id = stripe_value(raw, "id")
    event_type = stripe_value(raw, "type", "")
    obj = stripe_value(stripe_value(raw, "data"), "object")
    parser = PARSERS.get(event_type)
    if parser is None or obj is None:
        return Unrecognized(event_id, event_type)
    return parser(event_id, event_type, obj)
