# routers/users.py — Company member management and own profile
from typing import Optional, List, Dict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, ensure_authorized, get_auth_context, require_capability,
    validate_password_policy,
)
from context import AuthContext
from database import get_db_session
from errors import AuthorizationFailure, NotFoundError
from models import (
    AuditLog, AuditEventType, Company, Issue, Project, User, UserRole, UserStatus,
)
from permissions import Capability, CapabilitySet, has_role, load_identity, seed_capabilities
from tenancy import get_scoped_or_404, scoped_query
from validators import (
    commit_or_conflict, conflict_on_integrity_error, ensure_not_self_delete, ensure_not_self_demotion,
    ensure_unique_email, normalise_email,
)

router = APIRouter(prefix="/api/v1/users", tags=["Users"])

EMAIL_CONFLICT = "User with this email already exists in your company"


# --- Schemas ---

class UserOut(BaseModel):
    id: str
    name: str
    email: str
    role: str
    status: str
    permissions: CapabilitySet
    avatar_url: Optional[str] = None
    last_login_at: Optional[str] = None
    created_at: str
    updated_at: str


class CompanySummary(BaseModel):
    id: str
    name: str
    description: Optional[str] = None


class ProfileOut(BaseModel):
    id: str
    name: str
    email: str
    role: str
    phone: str = ""
    location: str = ""
    website: str = ""
    bio: str = ""
    avatar_url: str = ""
    company: Optional[CompanySummary] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str
    role: UserRole = UserRole.VIEWER
    # Flags given here win over the role defaults
    permissions: Dict[Capability, bool] = Field(default_factory=dict)
    status: UserStatus = UserStatus.ACTIVE

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        return validate_password_policy(v)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[EmailStr] = None
    role: Optional[UserRole] = None
    # Replaces the whole set; flags left out become false
    permissions: Optional[CapabilitySet] = None
    status: Optional[UserStatus] = None
    avatar_url: Optional[str] = None


# --- Helpers ---

def _user_to_out(u: User) -> UserOut:
    return UserOut(
        id=u.id,
        name=u.name,
        email=u.email,
        role=u.role.value if isinstance(u.role, UserRole) else u.role,
        status=u.status.value if isinstance(u.status, UserStatus) else u.status,
        permissions=CapabilitySet.from_user(u),
        avatar_url=u.avatar_url,
        last_login_at=u.last_login_at.isoformat() if u.last_login_at else None,
        created_at=u.created_at.isoformat() if u.created_at else "",
        updated_at=u.updated_at.isoformat() if u.updated_at else "",
    )


async def _profile_out(db: AsyncSession, u: User) -> ProfileOut:
    result = await db.execute(select(Company).where(Company.id == u.company_id))
    company = result.scalar_one_or_none()
    return ProfileOut(
        id=u.id,
        name=u.name,
        email=u.email,
        role=u.role.value if isinstance(u.role, UserRole) else u.role,
        phone=u.phone or "",
        location=u.location or "",
        website=u.website or "",
        bio=u.bio or "",
        avatar_url=u.avatar_url or "",
        company=CompanySummary(
            id=company.id, name=company.name, description=company.description,
        ) if company else None,
    )


async def _ensure_may_grant_role(db: AsyncSession, ctx: AuthContext, role: Optional[UserRole]) -> None:
    """Only admins can hand out the admin role"""
    if role == UserRole.ADMIN and not await has_role(db, ctx, [UserRole.ADMIN]):
        raise AuthorizationFailure(
            [UserRole.ADMIN.value],
            message="Only admins can assign the admin role",
        )


# --- Own profile ---

@router.get("/profile", response_model=ProfileOut)
async def get_profile(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Get the caller's profile"""
    user = await load_identity(db, ctx)
    if not user:
        raise NotFoundError("User")
    return await _profile_out(db, user)


@router.put("/profile", response_model=ProfileOut)
async def update_profile(
    update_data: ProfileUpdate,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Update the caller's profile fields"""
    user = await load_identity(db, ctx)
    if not user:
        raise NotFoundError("User")

    for field_name, value in update_data.model_dump(exclude_unset=True).items():
        if value is None:
            continue
        setattr(user, field_name, value.strip() if field_name != "avatar_url" else value)

    db.add(user)
    await db.commit()
    await db.refresh(user)
    return await _profile_out(db, user)


# --- Company members ---

@router.get("", response_model=List[UserOut])
async def list_users(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    role: Optional[UserRole] = None,
    status: Optional[UserStatus] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """List users in the caller's company"""
    stmt = scoped_query(ctx, User)
    if role:
        stmt = stmt.where(User.role == role)
    if status:
        stmt = stmt.where(User.status == status)
    stmt = stmt.order_by(User.created_at.desc()).offset(offset).limit(limit)

    result = await db.execute(stmt)
    return [_user_to_out(u) for u in result.scalars().all()]


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Get a specific user in the caller's company"""
    target = await get_scoped_or_404(db, ctx, User, user_id, "User")
    return _user_to_out(target)


@router.post("", response_model=UserOut, status_code=201)
async def create_user(
    data: UserCreate,
    ctx: AuthContext = Depends(require_capability(Capability.MANAGE_USERS)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a user in the caller's company"""
    await _ensure_may_grant_role(db, ctx, data.role)

    email = normalise_email(data.email)
    await ensure_unique_email(db, ctx, email)

    new_user = User(
        company_id=ctx.tenant_id,
        name=data.name.strip(),
        email=email,
        password_hash=AuthService.hash_password(data.password),
        role=data.role,
        status=data.status,
    )
    seed_capabilities(data.role, data.permissions).apply_to(new_user)
    db.add(new_user)
    async with conflict_on_integrity_error(db, "email", EMAIL_CONFLICT):
        await db.flush()

    db.add(AuditLog(
        event_type=AuditEventType.USER_CREATED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="user",
        resource_id=new_user.id,
        details={"email": email, "role": data.role.value},
    ))
    await commit_or_conflict(db, "email", EMAIL_CONFLICT)
    await db.refresh(new_user)
    return _user_to_out(new_user)


@router.put("/{user_id}", response_model=UserOut)
async def update_user(
    user_id: str,
    data: UserUpdate,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Update a user in the caller's company"""
    target = await get_scoped_or_404(db, ctx, User, user_id, "User")
    await ensure_authorized(db, ctx, Capability.MANAGE_USERS)
    ensure_not_self_demotion(ctx, target, data.role)
    if data.role is not None and data.role != target.role:
        await _ensure_may_grant_role(db, ctx, data.role)

    old_role = target.role
    if data.name is not None:
        target.name = data.name.strip()
    if data.email is not None:
        email = normalise_email(data.email)
        await ensure_unique_email(db, ctx, email, exclude_id=target.id)
        target.email = email
    if data.role is not None:
        target.role = data.role
    if data.permissions is not None:
        data.permissions.apply_to(target)
    if data.status is not None:
        target.status = data.status
    if data.avatar_url is not None:
        target.avatar_url = data.avatar_url

    db.add(target)
    role_changed = data.role is not None and data.role != old_role
    db.add(AuditLog(
        event_type=AuditEventType.USER_ROLE_CHANGED if role_changed else AuditEventType.USER_UPDATED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="user",
        resource_id=target.id,
        details={
            "fields": sorted(data.model_dump(exclude_unset=True)),
            **({"old_role": UserRole(old_role).value, "new_role": data.role.value} if role_changed else {}),
        },
    ))
    await commit_or_conflict(db, "email", EMAIL_CONFLICT)
    await db.refresh(target)
    return _user_to_out(target)


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a user from the caller's company"""
    ensure_not_self_delete(ctx, user_id)
    target = await get_scoped_or_404(db, ctx, User, user_id, "User")
    await ensure_authorized(db, ctx, Capability.MANAGE_USERS)

    # Detach every reference to the user inside the company
    await db.execute(
        update(Issue)
        .where(Issue.company_id == ctx.tenant_id, Issue.assignee_id == target.id)
        .values(assignee_id=None)
    )
    await db.execute(
        update(Issue)
        .where(Issue.company_id == ctx.tenant_id, Issue.reporter_id == target.id)
        .values(reporter_id=None)
    )
    await db.execute(
        update(Project)
        .where(Project.company_id == ctx.tenant_id, Project.lead_id == target.id)
        .values(lead_id=None)
    )
    projects = (await db.execute(scoped_query(ctx, Project))).scalars().all()
    for project in projects:
        if target.id in (project.member_ids or []):
            project.member_ids = [m for m in project.member_ids if m != target.id]
            db.add(project)
    await db.execute(
        update(Company)
        .where(Company.id == ctx.tenant_id, Company.owner_id == target.id)
        .values(owner_id=None)
    )

    await db.delete(target)
    db.add(AuditLog(
        event_type=AuditEventType.USER_DELETED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="user",
        resource_id=user_id,
        details={"email": target.email},
    ))
    await db.commit()

    return {"user_id": user_id, "status": "deleted", "message": "User deleted successfully"}
