"""Catalog synchronizer: projects local plans onto Stripe products and prices

Products are looked up by the ``plan_id`` metadata tag and updated in place.
Prices are immutable: a price id already stored on the plan is never touched,
and a missing one is created and persisted before the next price is attempted,
so repeated syncs never create a second monthly or yearly price.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from billing.core.errors import PlanNotFoundError, ProviderNotConfiguredError
from billing.core.logging import catalog_logger
from billing.core.metrics import catalog_sync_counter
from billing.models.plan import Plan
from billing.services.stripe_gateway import StripeGateway, stripe_value

logger = catalog_logger

PRICE_FIELDS = (
    ("monthly", "price_monthly", "stripe_price_id_monthly"),
    ("yearly", "price_yearly", "stripe_price_id_yearly"),
)


@dataclass
class SyncReport:
    synced: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CatalogSynchronizer:
    def __init__(self, gateway: StripeGateway):
        self.gateway = gateway

    def sync_plan(self, plan_id: str, db: Session) -> Plan:
        if not self.gateway.configured:
            raise ProviderNotConfiguredError()

        plan = db.query(Plan).filter(Plan.id == plan_id).first()
        if not plan:
            raise PlanNotFoundError(plan_id)

        product = self.gateway.find_product_for_plan(plan.id)
        if product is not None:
            product_id = stripe_value(product, "id")
            self.gateway.update_product(product_id, plan.name, plan.description, plan.is_active)
            logger.info(f"Updated Stripe product {product_id} for plan {plan.slug}")
        else:
            product = self.gateway.create_product(plan.id, plan.name, plan.description, plan.is_active)
            product_id = stripe_value(product, "id")
            logger.info(f"Created Stripe product {product_id} for plan {plan.slug}")

        for interval, amount_field, price_field in PRICE_FIELDS:
            if getattr(plan, price_field):
                continue
            price = self.gateway.create_price(product_id, plan.id, getattr(plan, amount_field), interval)
            setattr(plan, price_field, stripe_value(price, "id"))
            db.commit()
            logger.info(f"Created {interval} Stripe price {getattr(plan, price_field)} for plan {plan.slug}")

        db.refresh(plan)
        return plan

    def sync_all_plans(self, db: Session) -> SyncReport:
        """Sync every active plan that is missing a price id; one failure never blocks the rest"""
        report = SyncReport()
        if not self.gateway.configured:
            logger.warning("Stripe not configured, skipping plan sync")
            return report

        plans = db.query(Plan).filter(Plan.is_active.is_(True)).order_by(Plan.sort_order.asc()).all()
        for plan in plans:
            if plan.stripe_price_id_monthly and plan.stripe_price_id_yearly:
                report.skipped.append(plan.id)
                catalog_sync_counter.labels(result="skipped").inc()
                continue
            try:
                self.sync_plan(plan.id, db)
                report.synced.append(plan.id)
                catalog_sync_counter.labels(result="synced").inc()
            except Exception as e:
                db.rollback()
                logger.error(f"Failed to sync plan {plan.slug}: {e}", exc_info=True)
                report.failed.append({"plan_id": plan.id, "name": plan.name, "error": str(e)})
                catalog_sync_counter.labels(result="failed").inc()

        logger.info(
            f"Plan sync finished: {len(report.synced)} synced, "
            f"{len(report.failed)} failed, {len(report.skipped)} skipped"
        )
        return report
