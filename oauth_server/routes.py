"""
FastAPI endpoints of the authorization server and the mapping of protocol
errors onto HTTP responses.
"""

import base64
import binascii
from typing import Optional
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Form, Header, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger
from sqlalchemy.orm import Session

from auth.exceptions import AuthError, Forbidden, InvalidToken, TransientStoreError
from auth.models import User
from auth.rbac_dependencies import bearer_token, get_db, get_services, require_user, verify_same_origin
from oauth_server.server import build_redirect

router = APIRouter(prefix="/oauth", tags=["oauth"])


# ==================== ERROR MAPPING ====================


async def handle_auth_error(request: Request, exc: AuthError):
    """
    - verified redirect uri: send the error back to the client
    - bearer failures: 401/403 with a generic body
    - /oauth endpoints: RFC 6749 error body
    - everything else: {"detail": description}
    """
    if exc.redirect_uri:
        logger.info(f"[OAUTH] Redirecting {exc.error} back to client")
        return RedirectResponse(build_redirect(exc.redirect_uri, error=exc.error, state=exc.state), status_code=302)

    if isinstance(exc, InvalidToken):
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"}, headers={"WWW-Authenticate": "Bearer"})

    if isinstance(exc, Forbidden):
        return JSONResponse(
            status_code=403,
            content={"detail": "Forbidden"},
            headers={"WWW-Authenticate": 'Bearer error="insufficient_scope"'},
        )

    headers = {"Retry-After": "1"} if isinstance(exc, TransientStoreError) else None

    if request.url.path.startswith(router.prefix):
        status_code = exc.status_code
        # Only the token endpoint answers a failed client authentication with 401
        if request.url.path != f"{router.prefix}/token" and not isinstance(exc, TransientStoreError):
            status_code = 400
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.error, "error_description": exc.description},
            headers=headers,
        )

    return JSONResponse(status_code=exc.status_code, content={"detail": exc.description}, headers=headers)


def basic_client_credentials(authorization: Optional[str]):
    """client_id and client_secret from an HTTP Basic header (RFC 6749 section 2.3.1)"""
    if not authorization:
        return None, None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "basic":
        return None, None
    try:
        decoded = base64.b64decode(value.strip()).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None, None
    client_id, _, client_secret = decoded.partition(":")
    return unquote(client_id), unquote(client_secret)


# ==================== AUTHORIZATION ====================


@router.get("/authorize")
def authorize(
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    response_type: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    services=Depends(get_services),
):
    """Redirect with a code right away, or hand back a consent transaction."""
    result = services.server.authorize(db, user, client_id, redirect_uri, response_type, scope, state)
    if not result.consent_required:
        return RedirectResponse(result.redirect_to, status_code=302)

    return {
        "transaction_id": result.transaction_id,
        "client": {"id": result.client.id, "name": result.client.name},
        "scopes": result.scopes,
        "user": user.to_dict(),
    }


@router.post("/decision", dependencies=[Depends(verify_same_origin)])
def decision(
    transaction_id: Optional[str] = Form(None),
    allow: Optional[str] = Form(None),
    cancel: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    user: User = Depends(require_user),
    db: Session = Depends(get_db),
    services=Depends(get_services),
):
    allowed = allow is not None and cancel is None
    target = services.server.decide(db, user, transaction_id, allowed, scope)
    return RedirectResponse(target, status_code=303)


# ==================== TOKEN ====================


@router.post("/token")
def token(
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    services=Depends(get_services),
):
    if client_id is None and client_secret is None:
        client_id, client_secret = basic_client_credentials(authorization)

    client = services.strategies["local-client"].authenticate(
        db, {"client_id": client_id, "client_secret": client_secret}
    )
    body = services.server.token(db, client, grant_type, code, redirect_uri)
    return JSONResponse(content=body)


@router.post("/revoke")
def revoke(
    user: User = Depends(require_user),
    token: Optional[str] = Depends(bearer_token),
    db: Session = Depends(get_db),
    services=Depends(get_services),
):
    """Revoke the bearer token used for this request (logout)."""
    revoked = services.engine.revoke(db, token)
    logger.info(f"[TOKEN] User {user.id} revoked their token")
    return {"revoked": revoked}
