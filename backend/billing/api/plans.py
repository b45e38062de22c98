"""Public plan catalog routes"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing.db.session import get_db
from billing.services.plan_service import get_active_plans, plan_to_dict, require_plan

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("")
def list_plans(db: Session = Depends(get_db)):
    """Active plans ordered by sort order"""
    return {"plans": [plan_to_dict(plan) for plan in get_active_plans(db)]}


@router.get("/{plan_id}")
def get_plan(plan_id: str, db: Session = Depends(get_db)):
    return {"plan": plan_to_dict(require_plan(plan_id, db))}
