"""
Dependencies for database sessions, admin authentication and shared dispatch services.
"""
import secrets
from typing import Generator, Optional
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from app.database import SessionLocal
from app.jobs.scheduler import DispatchScheduler
from app.models.db import Campaign
from app.services.status_reconciler import StatusReconciler
from app.services.task_store import TaskStore
from app.utils import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)

def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()

def require_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Guard for dispatch administration endpoints.

    The expected token is read from ``app.config.ADMIN_API_TOKEN`` at call
    time so tests can monkeypatch it. When no token is configured the
    endpoints are disabled (503) rather than left open.
    """
    from app import config

    expected = config.ADMIN_API_TOKEN
    if not expected:
        logger.warning("Admin endpoint called but ADMIN_API_TOKEN is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is disabled (ADMIN_API_TOKEN not configured)",
        )
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(credentials.credentials, expected):
        token = credentials.credentials
        logger.warning(
            "Admin authentication failed",
            token_prefix=token[:6] + "..." if len(token) > 6 else token,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )
    return credentials.credentials

def _state_attr(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dispatch services not initialized",
        )
    return value

def get_task_store(request: Request) -> TaskStore:
    return _state_attr(request, "task_store")

def get_reconciler(request: Request) -> StatusReconciler:
    return _state_attr(request, "status_reconciler")

def get_scheduler(request: Request) -> DispatchScheduler:
    return _state_attr(request, "dispatch_scheduler")

def get_campaign_or_404(campaign_id: int, db: Session = Depends(get_db)) -> Campaign:
    """
    Fetch a non-deleted campaign.

    Raises:
        HTTPException: 404 if the campaign doesn't exist or was deleted
    """
    campaign = db.query(Campaign).filter(
        Campaign.id == campaign_id,
        Campaign.is_deleted == False,  # noqa: E712
    ).first()
    if not campaign:
        logger.warning("Campaign not found", campaign_id=campaign_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Campaign with id {campaign_id} not found",
        )
    return campaign
