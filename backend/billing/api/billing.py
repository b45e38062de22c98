"""Billing history routes"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from billing.core.security import require_auth
from billing.db.session import get_db
from billing.services.billing_service import list_invoices

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/invoices")
def get_invoices(user_id: str = Depends(require_auth), db: Session = Depends(get_db)):
    """Invoices for the current user, newest first"""
    return {"invoices": list_invoices(user_id, db)}
