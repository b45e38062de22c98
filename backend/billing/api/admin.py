"""Admin API routes: plan catalog management and webhook dead letters"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from billing.core.config import settings
from billing.core.security import require_admin
from billing.db.session import get_db
from billing.models.user import User
from billing.schemas.plans import PlanCreate, PlanUpdate
from billing.services.catalog_sync import CatalogSynchronizer
from billing.services.plan_service import (
    create_plan, delete_plan, get_all_plans, plan_to_dict, update_plan
)
from billing.services.stripe_gateway import StripeGateway, get_stripe_gateway
from billing.services.webhook_reconciler import WebhookReconciler, list_webhook_events

router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


@router.get("/plans")
def list_all_plans(admin_user: User = Depends(require_admin), db: Session = Depends(get_db)):
    """All plans, including inactive ones"""
    return {"plans": [plan_to_dict(plan) for plan in get_all_plans(db)]}


@router.post("/plans", status_code=201)
def create_plan_endpoint(
    request_data: PlanCreate,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    plan = create_plan(request_data.model_dump(), db, gateway=gateway)
    logger.info(f"Admin {admin_user.id} created plan {plan.slug}")
    return {"plan": plan_to_dict(plan)}


@router.put("/plans/{plan_id}")
def update_plan_endpoint(
    plan_id: str,
    request_data: PlanUpdate,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    plan = update_plan(plan_id, request_data.model_dump(exclude_unset=True), db)
    logger.info(f"Admin {admin_user.id} updated plan {plan.slug}")
    return {"plan": plan_to_dict(plan)}


@router.delete("/plans/{plan_id}")
def delete_plan_endpoint(plan_id: str, admin_user: User = Depends(require_admin), db: Session = Depends(get_db)):
    """Soft delete: the plan is deactivated, never removed"""
    plan = delete_plan(plan_id, db)
    return {"message": "Plan deactivated", "plan": plan_to_dict(plan)}


@router.post("/plans/sync")
def sync_all_plans_endpoint(
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    report = CatalogSynchronizer(gateway).sync_all_plans(db)
    return report.to_dict()


@router.post("/plans/{plan_id}/sync")
def sync_plan_endpoint(
    plan_id: str,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    plan = CatalogSynchronizer(gateway).sync_plan(plan_id, db)
    return {"plan": plan_to_dict(plan)}


@router.get("/webhook-events")
def list_webhook_events_endpoint(
    outcome: Optional[str] = Query(None, description="processed, ignored, dropped or failed"),
    limit: int = Query(100, ge=1, le=500),
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    return {"events": list_webhook_events(db, outcome=outcome, limit=limit)}


@router.post("/webhook-events/{event_id}/replay")
def replay_webhook_event(
    event_id: str,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway)
):
    """Dispatch a dropped or failed event again"""
    logger.info(f"Admin {admin_user.id} replaying webhook event {event_id}")
    return WebhookReconciler(gateway, settings.STRIPE_WEBHOOK_SECRET).replay(event_id, db)
