"""Shared Stripe-backed helpers: customers, duplicate cleanup, subscription writes

Two writers touch a local Subscription row:

* provisional writers (plan change, cancel, reactivate) update the row right
  after a successful provider call so the UI reflects the change at once;
* the webhook reconciler is authoritative and overwrites whatever a
  provisional write left behind.

Both go through ``apply_subscription_state`` so the row always records which
tier wrote it last.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from billing.core.errors import BillingError
from billing.models.invoice import Invoice
from billing.models.plan import Plan
from billing.models.subscription import Subscription
from billing.models.user import User
from billing.services.stripe_gateway import StripeGateway, stripe_value

logger = logging.getLogger(__name__)

PROVISIONAL = "provisional"
AUTHORITATIVE = "webhook"


# ============================================================================
# CUSTOMERS
# ============================================================================

def get_or_create_customer(gateway: StripeGateway, user: User, db: Session, email: Optional[str] = None) -> str:
    """Return the user's Stripe customer id, creating and persisting it on first use.

    ``email`` overrides the stored address for the new customer.
    """
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer = gateway.create_customer(user.id, email or user.email, user.name)
    user.stripe_customer_id = stripe_value(customer, "id")
    db.commit()

    logger.info(f"Created Stripe customer {user.stripe_customer_id} for user {user.id}")
    return user.stripe_customer_id


# ============================================================================
# ACTIVE SUBSCRIPTIONS
# ============================================================================

def _newest_first(subscriptions: List[Any]) -> List[Any]:
    return sorted(subscriptions, key=lambda s: stripe_value(s, "created", 0), reverse=True)


def get_active_subscription(gateway: StripeGateway, customer_id: str) -> Optional[Any]:
    """Most recently created active Stripe subscription for a customer, if any"""
    subscriptions = _newest_first(gateway.list_subscriptions(customer_id, status="active"))
    return subscriptions[0] if subscriptions else None


def cleanup_duplicate_subscriptions(gateway: StripeGateway, customer_id: str) -> Dict[str, Any]:
    """Cancel every active subscription for the customer except the newest one.

    Individual cancel failures are logged and skipped so one bad subscription
    does not block the rest.
    """
    active = _newest_first(gateway.list_subscriptions(customer_id, status="active"))
    if not active:
        return {"kept": None, "canceled": [], "failed": []}

    kept = stripe_value(active[0], "id")
    canceled, failed = [], []
    for duplicate in active[1:]:
        duplicate_id = stripe_value(duplicate, "id")
        try:
            gateway.cancel_subscription(duplicate_id)
            canceled.append(duplicate_id)
            logger.info(f"Canceled duplicate subscription {duplicate_id} for customer {customer_id} (kept {kept})")
        except BillingError as e:
            failed.append(duplicate_id)
            logger.warning(f"Failed to cancel duplicate subscription {duplicate_id}: {e}")

    return {"kept": kept, "canceled": canceled, "failed": failed}


# ============================================================================
# LOCAL SUBSCRIPTION STATE
# ============================================================================

def apply_subscription_state(sub: Subscription, source: str, **fields):
    """Write fields onto a subscription row, skipping values that are None"""
    for name, value in fields.items():
        if value is not None:
            setattr(sub, name, value)
    sub.state_source = source


def apply_plan(sub: Subscription, plan: Plan):
    # The legacy slug column must always match plan_id
    sub.plan_id = plan.id
    sub.plan = plan.slug


def get_current_subscription(user_id: str, db: Session) -> Optional[Subscription]:
    """The user's newest subscription row, preferring one that still grants access"""
    rows = db.query(Subscription).filter(
        Subscription.user_id == user_id
    ).order_by(Subscription.created_at.desc()).all()
    for row in rows:
        if row.is_active:
            return row
    return rows[0] if rows else None


# ============================================================================
# SERIALIZATION
# ============================================================================

def _iso(value):
    return value.isoformat() if value else None


def subscription_to_dict(sub: Subscription) -> Dict[str, Any]:
    plan = sub.catalog_plan
    return {
        "id": sub.id,
        "stripe_subscription_id": sub.stripe_subscription_id,
        "status": sub.status,
        "plan": sub.plan,
        "plan_id": sub.plan_id,
        "billing_interval": sub.billing_interval,
        "current_period_start": _iso(sub.current_period_start),
        "current_period_end": _iso(sub.current_period_end),
        "cancel_at_period_end": sub.cancel_at_period_end,
        "state_source": sub.state_source,
        "plan_details": {"id": plan.id, "name": plan.name, "slug": plan.slug} if plan else None,
    }


def invoice_to_dict(invoice: Invoice) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "stripe_invoice_id": invoice.stripe_invoice_id,
        "amount_paid": invoice.amount_paid,
        "currency": invoice.currency,
        "status": invoice.status,
        "invoice_pdf": invoice.invoice_pdf,
        "period_start": _iso(invoice.period_start),
        "period_end": _iso(invoice.period_end),
        "created_at": _iso(invoice.created_at),
    }
