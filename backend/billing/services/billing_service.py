"""Billing account: portal, payment methods and invoice history"""
import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.errors import NoBillingAccountError, PaymentMethodOwnershipError, UserNotFoundError
from billing.models.invoice import Invoice
from billing.models.user import User
from billing.services.stripe_gateway import StripeGateway, stripe_id, stripe_value
from billing.services.stripe_service import get_or_create_customer, invoice_to_dict

logger = logging.getLogger(__name__)


def _require_user(user_id: str, db: Session) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise UserNotFoundError(user_id)
    return user


def _require_customer(user: User) -> str:
    if not user.stripe_customer_id:
        raise NoBillingAccountError()
    return user.stripe_customer_id


def create_portal_session(user_id: str, gateway: StripeGateway, db: Session) -> str:
    customer_id = _require_customer(_require_user(user_id, db))
    session = gateway.create_portal_session(customer_id, f"{settings.FRONTEND_URL.rstrip('/')}/billing")
    return stripe_value(session, "url")


def create_setup_intent(user_id: str, gateway: StripeGateway, db: Session) -> Dict[str, str]:
    """Setup intent for saving a card; creates the Stripe customer if needed"""
    user = _require_user(user_id, db)
    customer_id = get_or_create_customer(gateway, user, db)
    intent = gateway.create_setup_intent(customer_id)
    return {"client_secret": stripe_value(intent, "client_secret")}


def list_payment_methods(user_id: str, gateway: StripeGateway, db: Session) -> List[Dict[str, Any]]:
    user = _require_user(user_id, db)
    if not user.stripe_customer_id:
        return []

    customer = gateway.retrieve_customer(user.stripe_customer_id)
    invoice_settings = stripe_value(customer, "invoice_settings", {})
    default_id = stripe_id(stripe_value(invoice_settings, "default_payment_method"))

    methods = []
    for pm in gateway.list_payment_methods(user.stripe_customer_id):
        card = stripe_value(pm, "card", {})
        methods.append({
            "id": stripe_value(pm, "id"),
            "brand": stripe_value(card, "brand"),
            "last4": stripe_value(card, "last4"),
            "exp_month": stripe_value(card, "exp_month"),
            "exp_year": stripe_value(card, "exp_year"),
            "is_default": stripe_value(pm, "id") == default_id,
        })
    return methods


def set_default_payment_method(user_id: str, payment_method_id: str, gateway: StripeGateway, db: Session):
    """Make the card the customer's default and apply it to every active subscription"""
    customer_id = _require_customer(_require_user(user_id, db))
    _require_owned_payment_method(customer_id, payment_method_id, gateway)

    gateway.update_customer(customer_id, invoice_settings={"default_payment_method": payment_method_id})
    for sub in gateway.list_subscriptions(customer_id, status="active"):
        gateway.update_subscription(stripe_value(sub, "id"), default_payment_method=payment_method_id)

    logger.info(f"User {user_id} set default payment method {payment_method_id}")


def delete_payment_method(user_id: str, payment_method_id: str, gateway: StripeGateway, db: Session):
    customer_id = _require_customer(_require_user(user_id, db))
    _require_owned_payment_method(customer_id, payment_method_id, gateway)
    gateway.detach_payment_method(payment_method_id)
    logger.info(f"User {user_id} removed payment method {payment_method_id}")


def _require_owned_payment_method(customer_id: str, payment_method_id: str, gateway: StripeGateway):
    pm = gateway.retrieve_payment_method(payment_method_id)
    if stripe_id(stripe_value(pm, "customer")) != customer_id:
        raise PaymentMethodOwnershipError()


def list_invoices(user_id: str, db: Session) -> List[Dict[str, Any]]:
    invoices = db.query(Invoice).filter(
        Invoice.user_id == user_id
    ).order_by(Invoice.created_at.desc()).all()
    return [invoice_to_dict(invoice) for invoice in invoices]
