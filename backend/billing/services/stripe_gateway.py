"""Stripe gateway

All calls to the Stripe API go through a ``StripeGateway`` instance that is
constructed from settings and handed to each billing component. The API key
travels with every request instead of living in the module-global
``stripe.api_key``. When no secret key is configured the application gets an
``UnconfiguredStripeGateway`` whose every operation raises
``ProviderNotConfiguredError``.
"""
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import stripe
from stripe import SignatureVerificationError, StripeError

from billing.core.config import settings
from billing.core.errors import (
    InvalidWebhookSignature, ProviderNotConfiguredError, ProviderUnavailableError
)
from billing.core.metrics import provider_errors_counter

logger = logging.getLogger(__name__)

# Stripe's recurring interval vocabulary, keyed by our billing interval
RECURRING_INTERVALS = {"monthly": "month", "yearly": "year"}


# ============================================================================
# STRIPE OBJECT ACCESS HELPER
# ============================================================================

def stripe_value(obj: Any, key: str, default=None):
    """Safely extract a value from a Stripe object or a plain dict.

    Item access is tried first: on dicts ``obj.items`` is the dict method,
    not a subscription's line items.
    """
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, default)
    return default if value is None else value


def stripe_id(obj: Any) -> Optional[str]:
    """Return the id of an expanded object, or the value itself if it is already an id"""
    if obj is None or isinstance(obj, str):
        return obj
    return stripe_value(obj, "id")


def to_plain(obj: Any) -> Any:
    """Return a plain dict for a Stripe object.

    Stripe objects are not mappings and refuse iteration, so anything that
    walks keys (``dict()``, ``.items()``, JSON columns) needs the converted form.
    """
    to_dict = getattr(obj, "to_dict", None)
    return to_dict() if callable(to_dict) else obj


def list_data(result: Any) -> List[Any]:
    return list(stripe_value(result, "data", []) or [])


def to_datetime(timestamp: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe unix timestamp (seconds) to an aware UTC datetime"""
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


# ============================================================================
# GATEWAY
# ============================================================================

class StripeGateway:
    """Thin wrapper over the Stripe SDK used by every billing component"""

    configured = True

    def __init__(self, api_key: str, currency: str = "usd"):
        self.api_key = api_key
        self.currency = currency

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, api_key=self.api_key, **kwargs)
        except StripeError as e:
            provider_errors_counter.labels(operation=operation).inc()
            message = getattr(e, "user_message", None) or str(e)
            logger.error(f"Stripe {operation} failed: {message}")
            raise ProviderUnavailableError(
                f"Payment provider request failed: {message}",
                {"operation": operation}
            ) from e

    # Products & prices

    def find_product_for_plan(self, plan_id: str) -> Optional[Any]:
        result = self._call(
            "product.search", stripe.Product.search,
            query=f"metadata['plan_id']:'{plan_id}'", limit=1
        )
        products = list_data(result)
        return products[0] if products else None

    def create_product(self, plan_id: str, name: str, description: Optional[str], active: bool) -> Any:
        params = {"name": name, "active": active, "metadata": {"plan_id": plan_id}}
        if description:
            params["description"] = description
        return self._call("product.create", stripe.Product.create, **params)

    def update_product(self, product_id: str, name: str, description: Optional[str], active: bool) -> Any:
        params = {"name": name, "active": active}
        if description:
            params["description"] = description
        return self._call("product.update", stripe.Product.modify, product_id, **params)

    def create_price(self, product_id: str, plan_id: str, unit_amount: int, billing_interval: str) -> Any:
        return self._call(
            "price.create", stripe.Price.create,
            product=product_id,
            unit_amount=unit_amount,
            currency=self.currency,
            recurring={"interval": RECURRING_INTERVALS[billing_interval]},
            metadata={"plan_id": plan_id, "interval": billing_interval},
        )

    # Customers

    def create_customer(self, user_id: str, email: str, name: Optional[str] = None) -> Any:
        params = {"email": email, "metadata": {"user_id": str(user_id)}}
        if name:
            params["name"] = name
        return self._call("customer.create", stripe.Customer.create, **params)

    def retrieve_customer(self, customer_id: str) -> Any:
        return self._call("customer.retrieve", stripe.Customer.retrieve, customer_id)

    def update_customer(self, customer_id: str, **fields) -> Any:
        return self._call("customer.update", stripe.Customer.modify, customer_id, **fields)

    # Subscriptions

    def list_subscriptions(self, customer_id: str, status: str = "active", limit: int = 100) -> List[Any]:
        result = self._call(
            "subscription.list", stripe.Subscription.list,
            customer=customer_id, status=status, limit=limit
        )
        return list_data(result)

    def retrieve_subscription(self, subscription_id: str) -> Any:
        return self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)

    def update_subscription(self, subscription_id: str, **fields) -> Any:
        return self._call("subscription.update", stripe.Subscription.modify, subscription_id, **fields)

    def cancel_subscription(self, subscription_id: str) -> Any:
        return self._call("subscription.cancel", stripe.Subscription.cancel, subscription_id)

    # Hosted sessions

    def create_checkout_session(self, **params) -> Any:
        return self._call("checkout_session.create", stripe.checkout.Session.create, **params)

    def create_portal_session(self, customer_id: str, return_url: str) -> Any:
        return self._call(
            "portal_session.create", stripe.billing_portal.Session.create,
            customer=customer_id, return_url=return_url
        )

    def create_setup_intent(self, customer_id: str) -> Any:
        return self._call(
            "setup_intent.create", stripe.SetupIntent.create,
            customer=customer_id, payment_method_types=["card"], usage="off_session"
        )

    # Payment methods

    def list_payment_methods(self, customer_id: str) -> List[Any]:
        result = self._call(
            "payment_method.list", stripe.PaymentMethod.list,
            customer=customer_id, type="card"
        )
        return list_data(result)

    def retrieve_payment_method(self, payment_method_id: str) -> Any:
        return self._call("payment_method.retrieve", stripe.PaymentMethod.retrieve, payment_method_id)

    def detach_payment_method(self, payment_method_id: str) -> Any:
        return self._call("payment_method.detach", stripe.PaymentMethod.detach, payment_method_id)

    # Webhooks

    def construct_event(self, payload: bytes, sig_header: str, webhook_secret: str) -> Any:
        """Verify the signature over the raw body and return the parsed event"""
        try:
            return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise InvalidWebhookSignature("Invalid payload")
        except SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise InvalidWebhookSignature("Invalid signature")


class UnconfiguredStripeGateway(StripeGateway):
    """Gateway used when no Stripe secret key is set"""

    configured = False

    def __init__(self, currency: str = "usd"):
        super().__init__(api_key="", currency=currency)

    def _call(self, operation: str, func, *args, **kwargs):
        raise ProviderNotConfiguredError()

    def construct_event(self, payload: bytes, sig_header: str, webhook_secret: str) -> Any:
        raise ProviderNotConfiguredError()


def build_gateway(secret_key: str, currency: str = "usd") -> StripeGateway:
    if not secret_key:
        return UnconfiguredStripeGateway(currency=currency)
    return StripeGateway(secret_key, currency=currency)


_gateway: Optional[StripeGateway] = None


def get_stripe_gateway() -> StripeGateway:
    """Dependency: process-wide gateway built lazily from settings"""
    global _gateway
    if _gateway is None:
        _gateway = build_gateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_CURRENCY)
        if not _gateway.configured:
            logger.warning("Stripe not configured - billing operations will fail with 503")
    return _gateway
