# auth.py — Authentication for the Kanban service
# Features:
# - JWT access/refresh tokens with JTI for revocation
# - bcrypt password hashing and a minimal password policy
# - Brute force protection
# - Profile bootstrap on sign-in (settings row, team-member linking)

import os
import uuid
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import Profile, RevokedToken, TeamMember, UserSettings, utcnow

logger = logging.getLogger("kanban.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
MIN_PASSWORD_LENGTH = 8
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer()

# In-memory brute force tracker, per process
_login_attempts: Dict[str, list] = defaultdict(list)


def _guard_login(email: str) -> None:
    """429 once an address has MAX_LOGIN_ATTEMPTS failures inside the lockout window"""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
    recent = [t for t in _login_attempts[email] if t > cutoff]
    _login_attempts[email] = recent
    if len(recent) >= MAX_LOGIN_ATTEMPTS:
        logger.warning(f"Login locked for {email}")
        raise HTTPException(429, f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.")


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

PASSWORD_RULES = (
    (lambda v: len(v) >= MIN_PASSWORD_LENGTH, f"Password must be at least {MIN_PASSWORD_LENGTH} characters"),
    (lambda v: any(c.isupper() for c in v), "Password must contain at least one uppercase letter"),
    (lambda v: any(c.isdigit() for c in v), "Password must contain at least one digit"),
)


def check_password_policy(v: str) -> str:
    for rule, message in PASSWORD_RULES:
        if not rule(v):
            raise ValueError(message)
    return v


class UserRegister(BaseModel):
    email: EmailStr
    password: str
    full_name: str = ""

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return check_password_policy(v)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class CurrentUser(BaseModel):
    id: str
    email: str
    full_name: str
    avatar_url: Optional[str] = None
    is_active: bool
    token_jti: Optional[str] = None
    token_exp: Optional[int] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.email.split("@")[0]


class RefreshRequest(BaseModel):
    refresh_token: str


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password, token and profile handling"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
        """Non-raising variant for websocket handshakes"""
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except JWTError:
            return None
        if payload.get("type") != "access":
            return None
        return payload

    @staticmethod
    async def find_by_email(email: str, db: AsyncSession) -> Optional[Profile]:
        stmt = select(Profile).where(func.lower(Profile.email) == email.lower())
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> Profile:
        email = user_data.email.lower()
        if await AuthService.find_by_email(email, db) is not None:
            raise HTTPException(status_code=400, detail="User already exists")

        profile = Profile(
            email=email,
            full_name=user_data.full_name or email.split("@")[0],
            password_hash=AuthService.hash_password(user_data.password),
            is_active=True,
        )
        db.add(profile)
        await db.flush()
        await AuthService.ensure_profile_setup(profile, db)
        await db.commit()
        await db.refresh(profile)

        logger.info(f"Registered profile {profile.id[:8]}")
        return profile

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[Profile]:
        email = email.lower()
        _guard_login(email)

        profile = await AuthService.find_by_email(email, db)
        if not profile or not AuthService.verify_password(password, profile.password_hash):
            _login_attempts[email].append(datetime.now(timezone.utc))
            return None

        if not profile.is_active or profile.deleted_at is not None:
            return None

        _login_attempts.pop(email, None)

        profile.last_login_at = utcnow()
        await AuthService.ensure_profile_setup(profile, db)
        await db.commit()
        return profile

    @staticmethod
    async def ensure_profile_setup(profile: Profile, db: AsyncSession) -> int:
        """Create the settings row if missing and link pending team memberships.

        Returns the number of team-member rows linked to the profile.
        Does not commit.
        """
        settings_stmt = select(UserSettings.id).where(UserSettings.user_id == profile.id)
        if (await db.execute(settings_stmt)).scalar_one_or_none() is None:
            db.add(UserSettings(user_id=profile.id))
        return await AuthService.link_team_members(profile, db)

    @staticmethod
    async def link_team_members(profile: Profile, db: AsyncSession) -> int:
        """Attach team-member rows whose email matches this profile (case-insensitive)"""
        stmt = select(TeamMember).where(
            func.lower(TeamMember.email) == profile.email.lower(),
            TeamMember.auth_user_id.is_(None),
        )
        result = await db.execute(stmt)
        members = result.scalars().all()
        for member in members:
            member.auth_user_id = profile.id
        if members:
            logger.info(f"Linked {len(members)} team membership(s) to profile {profile.id[:8]}")
        return len(members)

    @staticmethod
    async def is_token_revoked(jti: str, db: AsyncSession) -> bool:
        stmt = select(RevokedToken).where(RevokedToken.jti == jti)
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def revoke_token(jti: str, user_id: str, expires_at: datetime, db: AsyncSession) -> None:
        db.add(RevokedToken(jti=jti, user_id=user_id, expires_at=expires_at))
        await db.commit()


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    jti = payload.get("jti")
    if jti and await AuthService.is_token_revoked(jti, db):
        raise HTTPException(status_code=401, detail="Token has been revoked")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    stmt = select(Profile).where(Profile.id == user_id)
    result = await db.execute(stmt)
    profile = result.scalar_one_or_none()

    if not profile or not profile.is_active or profile.deleted_at is not None:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return CurrentUser(
        id=profile.id,
        email=profile.email,
        full_name=profile.full_name or "",
        avatar_url=profile.avatar_url,
        is_active=profile.is_active,
        token_jti=jti,
        token_exp=payload.get("exp"),
    )
