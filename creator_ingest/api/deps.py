"""
Dependencies for database sessions, shared resources and cron authentication.
"""
import secrets
from typing import Generator, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from creator_ingest import config
from creator_ingest.database import SessionLocal
from creator_ingest.resources import Resources
from creator_ingest.utils import get_logger

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

def get_resources(request: Request) -> Resources:
    """Shared resources built in the app lifespan (or by the test harness)."""
    resources = getattr(request.app.state, "resources", None)
    if resources is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service resources not initialized",
        )
    return resources

def verify_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """
    Guard for scheduler-triggered mutating endpoints.

    When ``CRON_SECRET`` is configured the caller must send
    ``Authorization: Bearer <CRON_SECRET>``; otherwise the endpoint is open.
    """
    expected = config.CRON_SECRET
    if not expected:
        return
    supplied = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(supplied, expected):
        logger.warning("Cron authentication failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing cron secret",
            headers={"WWW-Authenticate": "Bearer"},
        )
