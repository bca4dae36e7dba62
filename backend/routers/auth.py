# routers/auth.py — Authentication endpoints with token revocation
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    get_current_user, CurrentUser, check_password_policy, MIN_PASSWORD_LENGTH,
    ACCESS_TOKEN_EXPIRE_MINUTES,
)
from database import get_db_session
from models import Profile

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, max_length=200)
    avatar_url: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)


def _profile_dict(profile: Profile) -> dict:
    return {
        "id": profile.id,
        "email": profile.email,
        "full_name": profile.full_name or "",
        "avatar_url": profile.avatar_url,
    }


def _build_token_response(profile: Profile) -> TokenResponse:
    token_data = {"sub": profile.id, "email": profile.email}
    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        refresh_token=AuthService.create_refresh_token(token_data),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_profile_dict(profile),
    )


async def _load_profile(user_id: str, db: AsyncSession) -> Profile:
    result = await db.execute(select(Profile).where(Profile.id == user_id))
    profile = result.scalar_one_or_none()
    if not profile:
        raise HTTPException(status_code=404, detail="User not found")
    return profile


@router.post("/register", response_model=TokenResponse)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new account"""
    profile = await AuthService.register_user(user_data, db)
    return _build_token_response(profile)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive tokens"""
    profile = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not profile:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _build_token_response(profile)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Exchange a refresh token for a new token pair"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token type. Expected refresh token.")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise HTTPException(status_code=401, detail="Refresh token has been revoked")

    result = await db.execute(select(Profile).where(Profile.id == payload.get("sub")))
    profile = result.scalar_one_or_none()
    if not profile or not profile.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return _build_token_response(profile)


@router.post("/logout")
async def logout(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Revoke the access token used for this request"""
    if user.token_jti:
        expires_at = (
            datetime.fromtimestamp(user.token_exp, tz=timezone.utc)
            if user.token_exp else datetime.now(timezone.utc)
        )
        await AuthService.revoke_token(user.token_jti, user.id, expires_at, db)
    return {"status": "logged_out", "message": "Session terminated"}


@router.get("/me")
async def get_current_user_info(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Current profile. Also links any team memberships created for this email."""
    profile = await _load_profile(user.id, db)
    linked = await AuthService.ensure_profile_setup(profile, db)
    await db.commit()
    return {**_profile_dict(profile), "is_active": profile.is_active, "linked_memberships": linked}


@router.patch("/me")
async def update_profile(
    data: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    profile = await _load_profile(user.id, db)
    if data.full_name is not None:
        profile.full_name = data.full_name
    if data.avatar_url is not None:
        profile.avatar_url = data.avatar_url or None
    await db.commit()
    await db.refresh(profile)
    return _profile_dict(profile)


@router.post("/change-password")
async def change_password(
    password_data: PasswordChange,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Change current user's password"""
    try:
        check_password_policy(password_data.new_password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    profile = await _load_profile(user.id, db)
    if not AuthService.verify_password(password_data.current_password, profile.password_hash):
        raise HTTPException(status_code=401, detail="Current password is incorrect")

    profile.password_hash = AuthService.hash_password(password_data.new_password)
    await db.commit()
    return {"status": "password_changed", "message": "Password updated successfully"}
