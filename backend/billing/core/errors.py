"""Billing error taxonomy.

Every error raised on a user-triggered path derives from ``BillingError`` and
carries the HTTP status and machine-readable code the API responds with.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing errors"""

    status_code = 500
    code = "BILLING_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# Configuration

class ProviderNotConfiguredError(BillingError):
    status_code = 503
    code = "PROVIDER_NOT_CONFIGURED"

    def __init__(self, message: str = "Stripe is not configured"):
        super().__init__(message)


class WebhookNotConfiguredError(BillingError):
    status_code = 400
    code = "WEBHOOK_NOT_CONFIGURED"

    def __init__(self, message: str = "Webhook secret not configured"):
        super().__init__(message)


# NotFound

class NotFoundError(BillingError):
    status_code = 404
    code = "NOT_FOUND"


class PlanNotFoundError(NotFoundError):
    def __init__(self, plan_id: str):
        super().__init__("Plan not found", {"plan_id": plan_id})


class SubscriptionNotFoundError(NotFoundError):
    def __init__(self, message: str = "No subscription found"):
        super().__init__(message)


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__("User not found", {"user_id": user_id})


# Conflict

class ExistingSubscriptionError(BillingError):
    """The customer already has an active subscription; use the plan-change path."""

    status_code = 409
    code = "EXISTING_SUBSCRIPTION"


# Validation

class ValidationError(BillingError):
    status_code = 400
    code = "VALIDATION_ERROR"


class SlugConflictError(ValidationError):
    code = "SLUG_CONFLICT"

    def __init__(self, slug: str):
        super().__init__(f"A plan with slug '{slug}' already exists", {"slug": slug})


class PlanNotPurchasableError(ValidationError):
    code = "PLAN_NOT_PURCHASABLE"


class NoBillingAccountError(ValidationError):
    code = "NO_BILLING_ACCOUNT"

    def __init__(self, message: str = "No billing account found"):
        super().__init__(message)


class NoActiveSubscriptionError(ValidationError):
    code = "NO_SUBSCRIPTION"

    def __init__(self, message: str = "No active subscription found. Please subscribe to a plan first."):
        super().__init__(message)


class SubscriptionNotCancelingError(ValidationError):
    code = "NOT_SET_TO_CANCEL"

    def __init__(self, message: str = "Subscription is not set to cancel"):
        super().__init__(message)


# Authorization

class PaymentMethodOwnershipError(BillingError):
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Payment method does not belong to this account"):
        super().__init__(message)


# ExternalUnavailable

class ProviderUnavailableError(BillingError):
    status_code = 502
    code = "PROVIDER_UNAVAILABLE"


# Unauthenticated webhook request

class InvalidWebhookSignature(BillingError):
    status_code = 400
    code = "INVALID_SIGNATURE"
