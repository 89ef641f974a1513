"""
Permission-based access control dependencies for FastAPI.
Provides reusable dependency functions to protect routes with bearer tokens
and hierarchical permission checks.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from loguru import logger
from sqlalchemy.orm import Session

from auth.models import User

# ==================== SERVICES AND SESSIONS ====================


def get_services(request: Request):
    """Dependency: the component container built by the app factory"""
    return request.app.state.services


def get_db(request: Request):
    """Dependency: a session that commits on success and rolls back on error"""
    yield from request.app.state.database.get_db()


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    """Dependency: the token from an `Authorization: Bearer ...` header, if any"""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


# ==================== DEPENDENCY FUNCTIONS ====================


def require_permissions(*permissions: str):
    """
    Dependency factory: require a valid bearer token whose user holds every
    permission given (a parent permission covers its children).
    """

    def _require_permissions(
        token: Optional[str] = Depends(bearer_token),
        db: Session = Depends(get_db),
        services=Depends(get_services),
    ) -> User:
        return services.strategies["bearer"].authenticate(db, {"token": token, "required": permissions})

    return _require_permissions


def get_optional_user(
    token: Optional[str] = Depends(bearer_token),
    db: Session = Depends(get_db),
    services=Depends(get_services),
) -> Optional[User]:
    """Dependency: the bearer's user, or None for anonymous callers"""
    if token is None:
        return None
    return services.strategies["bearer-optional"].authenticate(db, {"token": token})


def verify_same_origin(request: Request, services=Depends(get_services)):
    """
    Dependency: reject form posts from foreign origins when HTTP_ORIGIN is set.
    """
    expected = services.config.http_origin
    if not expected:
        return

    origin = request.headers.get("origin") or request.headers.get("referer") or ""
    if origin != expected and not origin.startswith(expected.rstrip("/") + "/"):
        logger.warning(f"[ORIGIN] Rejected request from origin {origin!r}")
        raise HTTPException(status_code=403, detail="Cross-origin request rejected")


# ==================== COMMONLY USED DEPENDENCIES ====================

require_user = require_permissions()
