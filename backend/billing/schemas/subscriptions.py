"""Pydantic schemas for subscriptions"""
from typing import Literal

from pydantic import BaseModel

BillingInterval = Literal["monthly", "yearly"]


class CheckoutRequest(BaseModel):
    plan_id: str
    billing_interval: BillingInterval = "monthly"


class ChangePlanRequest(BaseModel):
    plan_id: str
    billing_interval: BillingInterval = "monthly"


class SetDefaultPaymentMethodRequest(BaseModel):
    payment_method_id: str
