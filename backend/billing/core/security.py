"""Authentication dependencies

Login and session creation belong to the authentication service; these
dependencies only resolve the ``session_id`` cookie it sets.
"""

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from billing.core.logging import api_access_logger, security_logger
from billing.db.redis import get_session
from billing.db.session import get_db
from billing.models.user import User


def require_auth(request: Request) -> str:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        security_logger.info(f"Expired or unknown session on {request.url.path}")
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def get_current_user(user_id: str = Depends(require_auth), db: Session = Depends(get_db)) -> User:
    """Dependency: the authenticated user's row"""
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        security_logger.warning(f"Session points to missing user {user_id}")
        raise HTTPException(401, "User no longer exists. Please log in again.")
    return user


def require_admin(request: Request, user: User = Depends(get_current_user)) -> User:
    """Dependency: Require admin role"""
    if not user.is_admin:
        security_logger.warning(f"Non-admin user {user.id} denied access to {request.url.path}")
        raise HTTPException(403, "Admin access required")
    return user


def log_api_access(request: Request, status_code: int, duration_ms: float):
    api_access_logger.info(
        f"{request.method} {request.url.path} -> {status_code} ({duration_ms:.1f}ms) "
        f"client={request.client.host if request.client else 'unknown'}"
    )
