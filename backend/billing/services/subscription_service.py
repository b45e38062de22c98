"""User-facing subscription operations

Every local write in this module is provisional: it follows a successful
Stripe call so the UI updates immediately, and the webhook reconciler later
overwrites it with Stripe's view.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from billing.core.errors import (
    NoActiveSubscriptionError, PlanNotPurchasableError, SubscriptionNotCancelingError,
    SubscriptionNotFoundError, UserNotFoundError
)
from billing.models.user import User
from billing.services.plan_change_service import PlanChangeOperator
from billing.services.plan_service import require_plan
from billing.services.stripe_gateway import StripeGateway, stripe_value
from billing.services.stripe_service import (
    PROVISIONAL, apply_subscription_state, cleanup_duplicate_subscriptions,
    get_active_subscription, get_current_subscription, subscription_to_dict
)

logger = logging.getLogger(__name__)


def _require_user(user_id: str, db: Session) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise UserNotFoundError(user_id)
    return user


def get_user_subscription(user_id: str, db: Session) -> Optional[Dict[str, Any]]:
    sub = get_current_subscription(user_id, db)
    return subscription_to_dict(sub) if sub else None


def cancel_subscription(user_id: str, gateway: StripeGateway, db: Session) -> Dict[str, Any]:
    """Schedule cancellation at the end of the current period"""
    sub = get_current_subscription(user_id, db)
    if not sub:
        raise SubscriptionNotFoundError()

    gateway.update_subscription(sub.stripe_subscription_id, cancel_at_period_end=True)
    apply_subscription_state(sub, PROVISIONAL, cancel_at_period_end=True)
    db.commit()
    db.refresh(sub)

    logger.info(f"User {user_id} scheduled cancellation of subscription {sub.stripe_subscription_id}")
    return subscription_to_dict(sub)


def reactivate_subscription(user_id: str, gateway: StripeGateway, db: Session) -> Dict[str, Any]:
    """Undo a scheduled cancellation"""
    sub = get_current_subscription(user_id, db)
    if not sub:
        raise SubscriptionNotFoundError()
    if not sub.cancel_at_period_end:
        raise SubscriptionNotCancelingError()

    gateway.update_subscription(sub.stripe_subscription_id, cancel_at_period_end=False)
    apply_subscription_state(sub, PROVISIONAL, cancel_at_period_end=False)
    db.commit()
    db.refresh(sub)

    logger.info(f"User {user_id} reactivated subscription {sub.stripe_subscription_id}")
    return subscription_to_dict(sub)


def resolve_active_subscription_id(user: User, gateway: StripeGateway, db: Session) -> str:
    """Active Stripe subscription id for the user: local row first, then a Stripe lookup"""
    sub = get_current_subscription(user.id, db)
    if sub and sub.is_active:
        return sub.stripe_subscription_id

    if user.stripe_customer_id:
        remote = get_active_subscription(gateway, user.stripe_customer_id)
        if remote is not None:
            return stripe_value(remote, "id")

    raise NoActiveSubscriptionError()


def change_plan_for_user(
    user_id: str,
    plan_id: str,
    billing_interval: str,
    gateway: StripeGateway,
    db: Session
) -> Dict[str, Any]:
    user = _require_user(user_id, db)
    plan = require_plan(plan_id, db)

    new_price_id = plan.price_id_for(billing_interval)
    if not new_price_id:
        raise PlanNotPurchasableError(
            f"Plan has no Stripe price for {billing_interval} billing. Sync plans with Stripe first.",
            {"plan_id": plan_id, "billing_interval": billing_interval}
        )

    subscription_id = resolve_active_subscription_id(user, gateway, db)
    local = PlanChangeOperator(gateway).change_plan(subscription_id, new_price_id, plan.id, billing_interval, db)

    return {
        "success": True,
        "message": f"Switched to {plan.name} ({billing_interval})",
        "subscription": subscription_to_dict(local) if local else None,
    }


def cleanup_user_subscriptions(user_id: str, gateway: StripeGateway, db: Session) -> Dict[str, Any]:
    user = _require_user(user_id, db)
    if not user.stripe_customer_id:
        return {"canceled": 0, "kept": None}

    result = cleanup_duplicate_subscriptions(gateway, user.stripe_customer_id)
    return {"canceled": len(result["canceled"]), "kept": result["kept"], "failed": result["failed"]}
