# routers/auth.py — Company registration, login and session info
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, CompanyRegister, UserLogin, TokenResponse, PasswordChange,
    ACCESS_TOKEN_EXPIRE_MINUTES, get_auth_context,
)
from context import AuthContext
from database import get_db_session
from errors import AuthenticationFailure, NotFoundError
from models import AuditLog, AuditEventType, Company, User, UserRole
from permissions import CapabilitySet, load_capabilities_best_effort, load_identity

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _build_token_response(user_obj: User, company: Optional[Company] = None) -> TokenResponse:
    """Build token response from a user ORM instance"""
    access_token = AuthService.create_access_token(AuthService.claims_for(user_obj))
    user = {
        "id": user_obj.id,
        "name": user_obj.name,
        "email": user_obj.email,
        "role": user_obj.role.value if isinstance(user_obj.role, UserRole) else user_obj.role,
        "company_id": user_obj.company_id,
        "permissions": CapabilitySet.from_user(user_obj).model_dump(),
    }
    if company is not None:
        user["company"] = {
            "id": company.id,
            "name": company.name,
            "description": company.description,
        }
    return TokenResponse(
        access_token=access_token,
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=user,
    )


@router.post("/register-company", response_model=TokenResponse, status_code=201)
async def register_company(
    data: CompanyRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a company and its owner account"""
    company, owner = await AuthService.register_company(data, db)
    return _build_token_response(owner, company)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive a session token"""
    user = await AuthService.authenticate_user(
        credentials.email, credentials.password, db, credentials.company_id
    )
    if not user:
        raise AuthenticationFailure("Invalid credentials")
    company = await db.get(Company, user.company_id)
    return _build_token_response(user, company)


@router.get("/me")
async def get_current_session(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Identity claims of the current token, plus stored permissions when readable"""
    capabilities = await load_capabilities_best_effort(db, ctx)
    return {
        "id": ctx.identity_id,
        "company_id": ctx.tenant_id,
        "role": ctx.role.value,
        "permissions": capabilities.model_dump() if capabilities else None,
    }


@router.post("/change-password")
async def change_password(
    password_data: PasswordChange,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Change the caller's password"""
    user_obj = await load_identity(db, ctx)
    if not user_obj:
        raise NotFoundError("User")

    if not AuthService.verify_password(password_data.current_password, user_obj.password_hash):
        raise AuthenticationFailure("Current password is incorrect")

    user_obj.password_hash = AuthService.hash_password(password_data.new_password)
    db.add(user_obj)
    db.add(AuditLog(
        event_type=AuditEventType.PASSWORD_CHANGED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="user",
        resource_id=ctx.identity_id,
    ))
    await db.commit()

    return {"status": "password_changed", "message": "Password updated successfully"}
