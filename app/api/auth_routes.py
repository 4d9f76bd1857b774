"""Auth API: operator login and current operator."""

import secrets

from fastapi import APIRouter, Depends, HTTPException

from app.config import get_settings
from app.schemas import LoginRequest, TokenResponse, UserInfo
from app.services.auth import create_access_token, get_current_user, hash_password, verify_password

router = APIRouter(prefix="/auth", tags=["auth"])
settings = get_settings()

_admin_hash = hash_password(settings.admin_password)


@router.post("/login", response_model=TokenResponse)
async def login(data: LoginRequest):
    """Authenticate the configured operator and return a JWT."""
    email_ok = secrets.compare_digest(data.email.strip().lower().encode(), settings.admin_email.lower().encode())
    password_ok = verify_password(data.password, _admin_hash)
    if not (email_ok and password_ok):
        raise HTTPException(401, "Invalid credentials")

    token = create_access_token({"sub": settings.admin_email, "role": "admin"})
    return TokenResponse(
        access_token=token,
        expires_in=settings.jwt_expire_minutes * 60,
    )


@router.get("/me", response_model=UserInfo)
async def get_me(user: dict = Depends(get_current_user)):
    return UserInfo(
        email=user.get("sub", ""),
        role=user.get("role", "operator"),
    )
