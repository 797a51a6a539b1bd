"""
Admin authentication for the update endpoints

Sessions are issued by the storefront; this daemon only verifies the bearer
token it signed, loads the admin row named by the token's subject, and
re-checks the admin's password before destructive operations.
"""
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from starlette.concurrency import run_in_threadpool

from pars.config import Settings, get_settings
from pars.models import AdminUser
from pars.services.update_orchestrator import UpdateOrchestrator

logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

bearer_scheme = HTTPBearer(auto_error=False)


def get_orchestrator(request: Request) -> UpdateOrchestrator:
    """The orchestrator created at startup and stored on the app"""
    return request.app.state.orchestrator


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
    orchestrator: UpdateOrchestrator = Depends(get_orchestrator),
) -> AdminUser:
    """Resolve the bearer token to an admin user, or fail with 401 / 403"""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.access_token_algorithm],
        )
    except JWTError as e:
        logger.warning("invalid_access_token", error=str(e))
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    user = await orchestrator.admin_users.get(str(user_id))
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not user.is_admin:
        logger.warning("admin_access_denied", user_id=user.id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden: Admin access required"
        )

    return user


async def verify_admin_password(user: AdminUser, password: str) -> None:
    """
    Re-check the admin's password against the stored bcrypt hash

    Raises:
        HTTPException: 400 when the user has no password, 401 when it does not match
    """
    if not user.password_hash:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User password not found")

    try:
        valid = await run_in_threadpool(pwd_context.verify, password, user.password_hash)
    except ValueError as e:
        logger.warning("unreadable_password_hash", user_id=user.id, error=str(e))
        valid = False

    if not valid:
        logger.warning("admin_password_rejected", user_id=user.id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid password")
