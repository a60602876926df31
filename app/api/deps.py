"""
Dependencies for authentication, database sessions, and shared service handles.
"""
import hmac
from typing import Generator, Optional
from fastapi import Depends, HTTPException, status, Header, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from app import config
from app.database import SessionLocal
from app.models.db import User
from app.models.db.enums import UserRole
from app.services.ledger_client import LedgerClientRegistry
from app.utils import get_logger

logger = get_logger(__name__)
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)

_ledger_registry = LedgerClientRegistry()

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

def _key_prefix(api_key: str) -> str:
    return api_key[:10] + "..." if len(api_key) > 10 else api_key

def _lookup_user(db: Session, api_key: str) -> Optional[User]:
    return db.query(User).filter(
        User.api_key == api_key,
        User.is_active == True
    ).first()

def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Extract and validate user from API key.
    Used by the browser extension and by admin tooling.

    Args:
        credentials: Bearer token credentials from Authorization header
        db: Database session

    Returns:
        User: Authenticated user object

    Raises:
        HTTPException: If API key is invalid or user is inactive
    """
    api_key = credentials.credentials

    logger.debug(
        "User authentication attempt",
        api_key_prefix=_key_prefix(api_key)
    )

    user = _lookup_user(db, api_key)

    if not user:
        logger.warning(
            "Authentication failed: invalid or inactive API key",
            api_key_prefix=_key_prefix(api_key)
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or inactive API key",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.info(
        "User authenticated successfully",
        user_id=user.id,
        user_role=user.role
    )

    return user

def require_admin(
    current_user: User = Depends(get_current_user)
) -> User:
    """
    Dependency that requires ADMIN role.

    Args:
        current_user: Current authenticated user

    Returns:
        User: Admin user object

    Raises:
        HTTPException: If user is not an admin
    """
    if current_user.role != UserRole.ADMIN:
        logger.warning(
            "Access denied: admin required",
            user_id=current_user.id,
            user_role=current_user.role
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return current_user

def require_cron_or_admin(
    x_cron_secret: Optional[str] = Header(None, alias="X-Cron-Secret"),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    db: Session = Depends(get_db)
) -> Optional[User]:
    """Hybrid auth for cron-triggered endpoints.

    Allows either:
      1. ``X-Cron-Secret`` matching ``CRON_SECRET`` (external cron, worker)
      2. Admin Bearer API key (manual runs from the dashboard)

    Returns the admin user for path 2 and ``None`` for the cron path.
    """
    expected = config.CRON_SECRET
    if x_cron_secret and expected and hmac.compare_digest(x_cron_secret, expected):
        logger.debug("Cron secret accepted")
        return None

    if credentials is not None:
        user = _lookup_user(db, credentials.credentials)
        if user and user.role == UserRole.ADMIN:
            return user
        logger.warning(
            "Cron endpoint access denied: bearer is not an active admin",
            api_key_prefix=_key_prefix(credentials.credentials)
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    logger.warning("Cron endpoint access denied: no valid credentials", secret_present=bool(x_cron_secret))
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Valid cron secret or admin API key required",
        headers={"WWW-Authenticate": "Bearer"}
    )

def get_ledger_registry(request: Request) -> LedgerClientRegistry:
    """Ledger client cache; the app may pin its own on ``app.state.ledger_registry``."""
    registry = getattr(request.app.state, "ledger_registry", None)  # type: ignore[attr-defined]
    return registry if registry is not None else _ledger_registry
