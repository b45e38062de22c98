"""Checkout initiator: starts a Stripe hosted checkout for a customer with no subscription"""
import logging
from typing import Dict, Optional

from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.errors import (
    ExistingSubscriptionError, PlanNotFoundError, PlanNotPurchasableError,
    ProviderNotConfiguredError, UserNotFoundError
)
from billing.core.metrics import checkout_sessions_counter
from billing.models.plan import Plan
from billing.models.user import User
from billing.services.stripe_gateway import StripeGateway, stripe_value
from billing.services.stripe_service import (
    cleanup_duplicate_subscriptions, get_active_subscription, get_or_create_customer
)

logger = logging.getLogger(__name__)


class CheckoutInitiator:
    def __init__(self, gateway: StripeGateway, frontend_url: Optional[str] = None):
        self.gateway = gateway
        self.frontend_url = (frontend_url or settings.FRONTEND_URL).rstrip("/")

    def create_checkout_session(
        self,
        user_id: str,
        email: str,
        plan_id: str,
        billing_interval: str,
        db: Session
    ) -> Dict[str, str]:
        """Create a hosted checkout session and return its id and redirect URL.

        No local subscription row is written here; the row is created when the
        checkout.session.completed webhook arrives. The session metadata is the
        only link that webhook has back to the user and plan.

        Raises:
            ExistingSubscriptionError: the customer already has an active
                subscription (duplicates are cleaned up first)
        """
        if not self.gateway.configured:
            raise ProviderNotConfiguredError()

        plan = db.query(Plan).filter(Plan.id == plan_id).first()
        if not plan:
            raise PlanNotFoundError(plan_id)
        if not plan.is_active:
            raise PlanNotPurchasableError("This plan is no longer available", {"plan_id": plan_id})

        price_id = plan.price_id_for(billing_interval)
        if not price_id:
            raise PlanNotPurchasableError(
                f"Plan has no Stripe price for {billing_interval} billing. Sync plans with Stripe first.",
                {"plan_id": plan_id, "billing_interval": billing_interval}
            )

        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFoundError(user_id)

        customer_id = get_or_create_customer(self.gateway, user, db, email=email)

        existing = get_active_subscription(self.gateway, customer_id)
        if existing is not None:
            cleanup = cleanup_duplicate_subscriptions(self.gateway, customer_id)
            checkout_sessions_counter.labels(result="conflict").inc()
            logger.info(
                f"User {user_id} already has active subscription {cleanup['kept']}; "
                f"canceled {len(cleanup['canceled'])} duplicate(s)"
            )
            raise ExistingSubscriptionError(
                "You already have an active subscription. Use the change-plan option to switch plans.",
                {"subscription_id": cleanup["kept"]}
            )

        metadata = {"user_id": str(user_id), "plan_id": plan.id, "billing_interval": billing_interval}
        session = self.gateway.create_checkout_session(
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=f"{self.frontend_url}/dashboard?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.frontend_url}/pricing",
            metadata=metadata,
            subscription_data={"metadata": metadata},
            allow_promotion_codes=True,
            billing_address_collection="auto",
            payment_method_collection="always",
        )
        checkout_sessions_counter.labels(result="created").inc()
        logger.info(f"Created checkout session {stripe_value(session, 'id')} for user {user_id}, plan {plan.slug} ({billing_interval})")

        return {"session_id": stripe_value(session, "id"), "url": stripe_value(session, "url")}
