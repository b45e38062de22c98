"""Subscription self-service routes"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing.core.security import require_auth
from billing.db.session import get_db
from billing.schemas.subscriptions import ChangePlanRequest
from billing.services.stripe_gateway import StripeGateway, get_stripe_gateway
from billing.services.subscription_service import (
    cancel_subscription, change_plan_for_user, get_user_subscription, reactivate_subscription
)

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])


@router.get("/status")
def get_subscription_status(user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    return {"subscription": get_user_subscription(user_id, db)}


@router.post("/cancel")
def cancel(
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    """Cancel at the end of the current billing period"""
    return {"subscription": cancel_subscription(user_id, gateway, db)}


@router.post("/reactivate")
def reactivate(
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    return {"subscription": reactivate_subscription(user_id, gateway, db)}


@router.post("/change-plan")
def change_plan(
    change_request: ChangePlanRequest,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    return change_plan_for_user(user_id, change_request.plan_id, change_request.billing_interval, gateway, db)
