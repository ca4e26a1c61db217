# auth.py — Authentication for the issue tracker
# Features:
# - Signed, short-lived JWT session tokens (never renewed in place)
# - bcrypt password hashing and password policy (min 12 chars)
# - Owner / member credential disambiguation
# - Bearer-token gate producing an immutable AuthContext
# - Capability and role dependency factories backed by the permission resolver

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Tuple

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from context import AuthContext
from database import get_db_session
from errors import AuthenticationFailure, AuthorizationFailure
from models import (
    AuditEventType, AuditLog, Company, User, UserRole, UserStatus, utcnow,
)
from permissions import Capability, Mode, authorize, has_role, seed_capabilities
from validators import conflict_on_integrity_error, ensure_unique_company_email, normalise_email

logger = logging.getLogger("issue-tracker.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
MIN_PASSWORD_LENGTH = 12
# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72

security = HTTPBearer(auto_error=False)


def validate_password_policy(v: str) -> str:
    if len(v) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(v.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    if not any(c.isupper() for c in v):
        raise ValueError("Password must contain at least one uppercase letter")
    if not any(c.isdigit() for c in v):
        raise ValueError("Password must contain at least one digit")
    return v


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class CompanyRegister(BaseModel):
    company_name: str
    company_description: Optional[str] = None
    name: str
    email: EmailStr
    password: str

    @field_validator("company_name", "name")
    @classmethod
    def validate_required_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Field is required")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_policy(v)


class UserLogin(BaseModel):
    email: EmailStr
    password: str
    # Members of several companies pick the one they are logging into
    company_id: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class PasswordChange(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_policy(v)


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Credential verification and session token issue"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            return False

    @staticmethod
    def claims_for(user: User) -> Dict[str, Any]:
        return {
            "sub": user.id,
            "company_id": user.company_id,
            "role": user.role.value if isinstance(user.role, UserRole) else user.role,
        }

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise AuthenticationFailure("Token expired")
        except JWTError:
            raise AuthenticationFailure("Invalid token")

    @staticmethod
    async def register_company(data: CompanyRegister, db: AsyncSession) -> Tuple[Company, User]:
        """Create a company and its owner account (admin, every capability)"""
        email = normalise_email(data.email)
        await ensure_unique_company_email(db, email)

        company = Company(
            id=str(uuid.uuid4()),
            name=data.company_name,
            email=email,
            description=data.company_description,
        )
        owner = User(
            id=str(uuid.uuid4()),
            company_id=company.id,
            name=data.name,
            email=email,
            password_hash=AuthService.hash_password(data.password),
            role=UserRole.ADMIN,
            status=UserStatus.ACTIVE,
        )
        seed_capabilities(UserRole.ADMIN).apply_to(owner)
        company.owner_id = owner.id

        async with conflict_on_integrity_error(db, "email", "Company email already exists"):
            db.add(company)
            await db.flush()
            db.add(owner)
            db.add(AuditLog(
                event_type=AuditEventType.COMPANY_REGISTERED,
                user_id=owner.id,
                company_id=company.id,
                resource_type="company",
                resource_id=company.id,
                details={"name": company.name},
            ))
            await db.commit()
        await db.refresh(company)
        await db.refresh(owner)
        logger.info(f"Registered company {company.id} with owner {owner.id}")
        return company, owner

    @staticmethod
    async def find_login_candidate(email: str, db: AsyncSession, company_id: Optional[str] = None) -> Optional[User]:
        """Pick the account a credential refers to.

        Order: the named company first; then the owner whose company email
        matches (unique across tenants); then a member account, but only if
        exactly one company has that email.
        """
        if company_id:
            stmt = select(User).where(User.company_id == company_id, User.email == email)
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

        owner_stmt = (
            select(User)
            .join(Company, Company.owner_id == User.id)
            .where(Company.email == email, User.email == email)
        )
        result = await db.execute(owner_stmt)
        owner = result.scalars().first()
        if owner:
            return owner

        result = await db.execute(select(User).where(User.email == email).limit(2))
        members = result.scalars().all()
        if len(members) == 1:
            return members[0]
        return None

    @staticmethod
    async def authenticate_user(
        email: str, password: str, db: AsyncSession, company_id: Optional[str] = None
    ) -> Optional[User]:
        email = normalise_email(email)
        user = await AuthService.find_login_candidate(email, db, company_id)

        if not user or not AuthService.verify_password(password, user.password_hash):
            logger.info(f"Failed login for {email}")
            return None

        if user.status != UserStatus.ACTIVE:
            logger.info(f"Login refused for inactive user {user.id}")
            return None

        user.last_login_at = utcnow()
        db.add(user)
        db.add(AuditLog(
            event_type=AuditEventType.USER_LOGIN,
            user_id=user.id,
            company_id=user.company_id,
            resource_type="user",
            resource_id=user.id,
        ))
        await db.commit()
        await db.refresh(user)
        return user


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    """Authentication gate: the only place the tenant binding comes from"""
    if credentials is None or not credentials.credentials:
        raise AuthenticationFailure("Not authenticated")

    payload = AuthService.verify_token(credentials.credentials)
    if payload.get("type") != "access":
        raise AuthenticationFailure("Invalid token type")

    try:
        return AuthContext.from_claims(payload)
    except (KeyError, ValueError):
        raise AuthenticationFailure("Invalid token")


async def ensure_authorized(
    db: AsyncSession,
    ctx: AuthContext,
    *capabilities: Capability,
    mode: Mode = Mode.ALL,
) -> None:
    decision = await authorize(db, ctx, capabilities, mode)
    if not decision:
        raise AuthorizationFailure(decision.missing, mode=Mode(mode).value)


def require_capability(*capabilities: Capability, mode: Mode = Mode.ALL):
    """Dependency factory: caller must hold the capabilities (admins always pass)"""
    async def _check(
        ctx: AuthContext = Depends(get_auth_context),
        db: AsyncSession = Depends(get_db_session),
    ) -> AuthContext:
        await ensure_authorized(db, ctx, *capabilities, mode=mode)
        return ctx
    return _check


def require_any_capability(*capabilities: Capability):
    """Dependency factory: caller must hold at least one of the capabilities"""
    return require_capability(*capabilities, mode=Mode.ANY)


async def ensure_role(db: AsyncSession, ctx: AuthContext, *roles: UserRole) -> None:
    if not await has_role(db, ctx, roles):
        required = [r.value for r in roles]
        raise AuthorizationFailure(
            required,
            mode=Mode.ANY.value,
            message=f"Access denied. Required role: {' or '.join(required)}",
        )


def require_role(*roles: UserRole):
    """Dependency factory: caller's current role must be one of roles"""
    async def _check(
        ctx: AuthContext = Depends(get_auth_context),
        db: AsyncSession = Depends(get_db_session),
    ) -> AuthContext:
        await ensure_role(db, ctx, *roles)
        return ctx
    return _check
