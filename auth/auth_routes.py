"""
FastAPI authentication endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from loguru import logger
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from auth.exceptions import InvalidResetCode
from auth.models import User
from auth.rbac_dependencies import get_db, get_optional_user, get_services, verify_same_origin

router = APIRouter(prefix="/auth", tags=["auth"])

# ==================== REQUEST MODELS ====================


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    locale: Optional[str] = None


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    code: str
    password: Optional[str] = Field(default=None, min_length=8)


class RequestPasswordResetRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    code: str
    password: str = Field(..., min_length=8)


class LoginRequest(BaseModel):
    email: str
    password: str


# ==================== HELPER FUNCTIONS ====================


def get_client_ip(request: Request) -> str:
    """Extract client IP from request"""
    if request.client:
        return request.client.host
    return "unknown"


# ==================== REGISTRATION ====================


@router.post("/register", status_code=status.HTTP_201_CREATED, dependencies=[Depends(verify_same_origin)])
def register(data: RegisterRequest, db: Session = Depends(get_db), services=Depends(get_services)):
    """Register a new user; a verification code is mailed to the address."""
    user = services.users.register(db, data.name, data.email, data.locale)
    return {
        "success": True,
        "user_id": user.id,
        "message": "Registration successful. Please check your email to verify your account.",
    }


@router.post("/verify-email", dependencies=[Depends(verify_same_origin)])
def verify_email(data: VerifyEmailRequest, db: Session = Depends(get_db), services=Depends(get_services)):
    """Verify the email address, optionally setting the first password."""
    user = services.users.verify_email(db, data.email, data.code, data.password)
    return {"success": True, "user": user.to_dict()}


# ==================== PASSWORD RESET ====================


@router.post("/request-password-reset", dependencies=[Depends(verify_same_origin)])
def request_password_reset(
    data: RequestPasswordResetRequest,
    request: Request,
    db: Session = Depends(get_db),
    services=Depends(get_services),
):
    """Start a password reset. The answer never reveals whether the email exists."""
    services.users.init_password_reset(db, data.email)
    logger.info(f"[RESET_PWD] Reset requested from {get_client_ip(request)}")
    return {
        "success": True,
        "message": "If an account with that email exists, a reset code has been sent.",
    }


@router.post("/reset-password", dependencies=[Depends(verify_same_origin)])
def reset_password(data: ResetPasswordRequest, db: Session = Depends(get_db), services=Depends(get_services)):
    user = services.users.find_by_email(db, data.email)
    if user is None:
        raise InvalidResetCode()
    services.users.update_password(db, user, data.password, data.code)
    return {"success": True, "message": "Password reset successful"}


# ==================== LOGIN ====================


@router.post("/login", dependencies=[Depends(verify_same_origin)])
def login(data: LoginRequest, request: Request, db: Session = Depends(get_db), services=Depends(get_services)):
    """Exchange email and password for a bearer token not tied to any client."""
    user = services.strategies["local-user"].authenticate(db, {"email": data.email, "password": data.password})
    issued = services.engine.issue_user_token(db, user)
    logger.info(f"[LOGIN] User {user.id} logged in from {get_client_ip(request)}")
    return issued.to_response(services.engine.clock())


@router.get("/me")
def me(user: Optional[User] = Depends(get_optional_user)):
    """The current user, or null for anonymous callers."""
    return {"user": user.to_dict() if user is not None else None}
