"""Plan catalog: the local source of truth for sellable plans"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from billing.core.errors import BillingError, PlanNotFoundError, SlugConflictError
from billing.models.plan import Plan
from billing.services.catalog_sync import CatalogSynchronizer
from billing.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

PLAN_FIELDS = (
    "name", "slug", "description", "price_monthly", "price_yearly", "features",
    "max_users", "max_team_members", "is_popular", "is_active", "sort_order",
)

DEFAULT_PLANS = [
    {
        "name": "Starter",
        "slug": "starter",
        "description": "Perfect for individuals and small projects",
        "price_monthly": 1900,
        "price_yearly": 18200,
        "features": ["Up to 1,000 users", "Basic analytics", "Email support", "1 team member"],
        "max_users": 1000,
        "max_team_members": 1,
        "is_popular": False,
        "sort_order": 1,
    },
    {
        "name": "Professional",
        "slug": "professional",
        "description": "Best for growing businesses",
        "price_monthly": 4900,
        "price_yearly": 47000,
        "features": [
            "Up to 10,000 users", "Advanced analytics", "Priority support",
            "5 team members", "Custom integrations",
        ],
        "max_users": 10000,
        "max_team_members": 5,
        "is_popular": True,
        "sort_order": 2,
    },
    {
        "name": "Enterprise",
        "slug": "enterprise",
        "description": "For large organizations",
        "price_monthly": 9900,
        "price_yearly": 95000,
        "features": [
            "Unlimited users", "Enterprise analytics", "24/7 phone support",
            "Unlimited team members", "Custom integrations", "SLA guarantee",
        ],
        "max_users": None,
        "max_team_members": None,
        "is_popular": False,
        "sort_order": 3,
    },
]


def get_active_plans(db: Session) -> List[Plan]:
    return db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.sort_order.asc()).all()


def get_all_plans(db: Session) -> List[Plan]:
    return db.query(Plan).order_by(Plan.sort_order.asc()).all()


def get_plan(plan_id: str, db: Session) -> Optional[Plan]:
    return db.query(Plan).filter(Plan.id == plan_id).first()


def get_plan_by_slug(slug: str, db: Session) -> Optional[Plan]:
    return db.query(Plan).filter(Plan.slug == slug).first()


def require_plan(plan_id: str, db: Session) -> Plan:
    plan = get_plan(plan_id, db)
    if not plan:
        raise PlanNotFoundError(plan_id)
    return plan


def find_plan_by_price(price_id: str, db: Session):
    """Resolve a Stripe price id to (plan, billing_interval), or (None, None)"""
    if not price_id:
        return None, None
    plan = db.query(Plan).filter(
        (Plan.stripe_price_id_monthly == price_id) | (Plan.stripe_price_id_yearly == price_id)
    ).first()
    if not plan:
        return None, None
    return plan, "yearly" if plan.stripe_price_id_yearly == price_id else "monthly"


def create_plan(
    data: Dict[str, Any],
    db: Session,
    gateway: Optional[StripeGateway] = None,
    sync_with_stripe: bool = True
) -> Plan:
    """Create a plan and, when Stripe is configured, try to sync it right away.

    A failed sync is logged; the plan is still created and can be synced later.
    """
    if get_plan_by_slug(data["slug"], db):
        raise SlugConflictError(data["slug"])

    plan = Plan(**{k: v for k, v in data.items() if k in PLAN_FIELDS})
    if plan.features is None:
        plan.features = []
    db.add(plan)
    db.commit()
    db.refresh(plan)
    logger.info(f"Created plan {plan.slug} ({plan.id})")

    if sync_with_stripe and gateway is not None and gateway.configured:
        try:
            plan = CatalogSynchronizer(gateway).sync_plan(plan.id, db)
        except BillingError as e:
            db.rollback()
            logger.error(f"Failed to sync new plan {plan.slug} with Stripe: {e}")
            plan = require_plan(plan.id, db)

    return plan


def update_plan(plan_id: str, data: Dict[str, Any], db: Session) -> Plan:
    """Apply a partial update; only keys present in ``data`` change"""
    plan = require_plan(plan_id, db)

    new_slug = data.get("slug")
    if new_slug and new_slug != plan.slug and get_plan_by_slug(new_slug, db):
        raise SlugConflictError(new_slug)

    # Prices are immutable once created on Stripe; amounts are not rotated
    for amount_field, price_field in (("price_monthly", "stripe_price_id_monthly"),
                                      ("price_yearly", "stripe_price_id_yearly")):
        new_amount = data.get(amount_field)
        if new_amount is not None and new_amount != getattr(plan, amount_field) and getattr(plan, price_field):
            logger.warning(
                f"Plan {plan.slug}: {amount_field} changed to {new_amount} but Stripe price "
                f"{getattr(plan, price_field)} keeps the old amount"
            )

    for key, value in data.items():
        if key in PLAN_FIELDS:
            setattr(plan, key, value)

    db.commit()
    db.refresh(plan)
    return plan


def delete_plan(plan_id: str, db: Session) -> Plan:
    """Soft delete: subscriptions and invoices keep resolving the plan"""
    plan = require_plan(plan_id, db)
    plan.is_active = False
    db.commit()
    logger.info(f"Deactivated plan {plan.slug} ({plan.id})")
    return plan


def seed_default_plans(db: Session) -> int:
    """Insert the starter/professional/enterprise trio if the catalog is empty.

    Any existing plan, active or not, counts as already seeded.
    """
    if db.query(Plan).first() is not None:
        logger.info("Plans already exist, skipping seed")
        return 0

    for data in DEFAULT_PLANS:
        create_plan(data, db, sync_with_stripe=False)

    logger.info(f"Seeded {len(DEFAULT_PLANS)} default plans")
    return len(DEFAULT_PLANS)


def plan_to_dict(plan: Plan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "slug": plan.slug,
        "description": plan.description,
        "price_monthly": plan.price_monthly,
        "price_yearly": plan.price_yearly,
        "features": plan.features or [],
        "max_users": plan.max_users,
        "max_team_members": plan.max_team_members,
        "is_active": plan.is_active,
        "is_popular": plan.is_popular,
        "sort_order": plan.sort_order,
        "stripe_price_id_monthly": plan.stripe_price_id_monthly,
        "stripe_price_id_yearly": plan.stripe_price_id_yearly,
    }
