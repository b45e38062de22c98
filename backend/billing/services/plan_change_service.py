"""Plan-change operator: swaps the price on an existing Stripe subscription"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from billing.core.errors import NoActiveSubscriptionError, PlanNotFoundError, ProviderNotConfiguredError
from billing.core.metrics import plan_changes_counter
from billing.models.plan import Plan
from billing.models.subscription import Subscription
from billing.services.stripe_gateway import StripeGateway
from billing.services.stripe_service import PROVISIONAL, apply_plan, apply_subscription_state
from billing.services.webhook_events import SubscriptionSnapshot

logger = logging.getLogger(__name__)


class PlanChangeOperator:
    def __init__(self, gateway: StripeGateway):
        self.gateway = gateway

    def change_plan(
        self,
        current_subscription_id: str,
        new_price_id: str,
        plan_id: str,
        billing_interval: str,
        db: Session
    ) -> Optional[Subscription]:
        """Replace the subscription's single priced item with ``new_price_id``.

        Stripe prorates the change mid-cycle. The new plan id and interval are
        also written to the subscription's metadata as a fallback for webhook
        plan resolution. The local row is updated provisionally; the following
        customer.subscription.updated webhook is authoritative.
        """
        if not self.gateway.configured:
            raise ProviderNotConfiguredError()

        plan = db.query(Plan).filter(Plan.id == plan_id).first()
        if not plan:
            raise PlanNotFoundError(plan_id)

        current = SubscriptionSnapshot.from_stripe(self.gateway.retrieve_subscription(current_subscription_id))
        if not current.item_id:
            raise NoActiveSubscriptionError(f"Subscription {current_subscription_id} has no priced item to change")

        updated = SubscriptionSnapshot.from_stripe(self.gateway.update_subscription(
            current_subscription_id,
            items=[{"id": current.item_id, "price": new_price_id}],
            proration_behavior="create_prorations",
            metadata={"plan_id": plan.id, "billing_interval": billing_interval},
        ))
        plan_changes_counter.inc()
        logger.info(f"Changed subscription {current_subscription_id} to plan {plan.slug} ({billing_interval})")

        local = db.query(Subscription).filter(
            Subscription.stripe_subscription_id == current_subscription_id
        ).first()
        if not local:
            logger.warning(f"No local row for subscription {current_subscription_id}; waiting for webhook")
            return None

        apply_plan(local, plan)
        apply_subscription_state(
            local, PROVISIONAL,
            billing_interval=billing_interval,
            status=updated.status,
            current_period_end=updated.current_period_end,
        )
        db.commit()
        db.refresh(local)
        return local
