"""Stripe API routes: checkout, plan change, payment methods and the webhook"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.security import get_current_user, require_auth
from billing.db.session import get_db
from billing.models.user import User
from billing.schemas.subscriptions import ChangePlanRequest, CheckoutRequest, SetDefaultPaymentMethodRequest
from billing.services import billing_service
from billing.services.checkout_service import CheckoutInitiator
from billing.services.stripe_gateway import StripeGateway, get_stripe_gateway
from billing.services.subscription_service import change_plan_for_user, cleanup_user_subscriptions
from billing.services.webhook_reconciler import WebhookReconciler

router = APIRouter(prefix="/api/stripe", tags=["stripe"])
logger = logging.getLogger(__name__)


@router.get("/config")
def get_stripe_config():
    """Publishable key for the frontend"""
    if not settings.STRIPE_PUBLISHABLE_KEY:
        raise HTTPException(503, "Stripe is not configured")
    return {"publishable_key": settings.STRIPE_PUBLISHABLE_KEY}


@router.post("/create-checkout-session")
def create_checkout_session(
    checkout_request: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    """Start a hosted checkout. Responds 409 EXISTING_SUBSCRIPTION when the user already subscribes."""
    return CheckoutInitiator(gateway).create_checkout_session(
        user.id, user.email, checkout_request.plan_id, checkout_request.billing_interval, db
    )


@router.post("/change-plan")
def change_plan(
    change_request: ChangePlanRequest,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    return change_plan_for_user(user_id, change_request.plan_id, change_request.billing_interval, gateway, db)


@router.post("/cleanup-subscriptions")
def cleanup_subscriptions(
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    """Cancel duplicate active subscriptions, keeping the newest"""
    return cleanup_user_subscriptions(user_id, gateway, db)


@router.post("/create-portal-session")
def create_portal_session(
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    return {"url": billing_service.create_portal_session(user_id, gateway, db)}


@router.post("/create-setup-intent")
def create_setup_intent(
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    return billing_service.create_setup_intent(user_id, gateway, db)


@router.get("/payment-methods")
def list_payment_methods(
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    return {"payment_methods": billing_service.list_payment_methods(user_id, gateway, db)}


@router.post("/set-default-payment-method")
def set_default_payment_method(
    request_data: SetDefaultPaymentMethodRequest,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    billing_service.set_default_payment_method(user_id, request_data.payment_method_id, gateway, db)
    return {"success": True}


@router.delete("/payment-methods/{payment_method_id}")
def delete_payment_method(
    payment_method_id: str,
    user_id: str = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    billing_service.delete_payment_method(user_id, payment_method_id, gateway, db)
    return {"success": True}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    """Handle Stripe webhook events

    Note: the body must reach this route as raw bytes for signature verification.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return WebhookReconciler(gateway, settings.STRIPE_WEBHOOK_SECRET).handle(payload, sig_header, db)
