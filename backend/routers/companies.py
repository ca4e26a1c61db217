# routers/companies.py — The caller's own company
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_auth_context, require_role
from context import AuthContext
from database import get_db_session
from errors import NotFoundError
from models import AuditLog, AuditEventType, Company, User, UserRole, UserStatus

router = APIRouter(prefix="/api/v1/companies", tags=["Companies"])


# --- Schemas ---

class CompanyOut(BaseModel):
    id: str
    name: str
    email: str
    description: Optional[str] = None
    owner_id: Optional[str] = None
    member_count: int = 0
    created_at: str


class CompanyUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None


# --- Helpers ---

async def _load_company(db: AsyncSession, ctx: AuthContext) -> Company:
    result = await db.execute(select(Company).where(Company.id == ctx.tenant_id))
    company = result.scalar_one_or_none()
    if not company:
        raise NotFoundError("Company")
    return company


async def _company_to_out(db: AsyncSession, company: Company) -> CompanyOut:
    count_stmt = select(func.count(User.id)).where(
        User.company_id == company.id,
        User.status == UserStatus.ACTIVE,
    )
    member_count = (await db.execute(count_stmt)).scalar() or 0
    return CompanyOut(
        id=company.id,
        name=company.name,
        email=company.email,
        description=company.description,
        owner_id=company.owner_id,
        member_count=member_count,
        created_at=company.created_at.isoformat() if company.created_at else "",
    )


# --- Endpoints ---

@router.get("/current", response_model=CompanyOut)
async def get_current_company(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Get the caller's company"""
    company = await _load_company(db, ctx)
    return await _company_to_out(db, company)


@router.put("/current", response_model=CompanyOut)
async def update_current_company(
    update: CompanyUpdate,
    ctx: AuthContext = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db_session),
):
    """Update the caller's company (admin only)"""
    company = await _load_company(db, ctx)

    changes = update.model_dump(exclude_unset=True)
    if "name" in changes and changes["name"] is not None:
        company.name = changes["name"].strip()
    if "description" in changes:
        company.description = changes["description"]

    db.add(company)
    db.add(AuditLog(
        event_type=AuditEventType.COMPANY_UPDATED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="company",
        resource_id=company.id,
        details={"fields": sorted(changes)},
    ))
    await db.commit()
    await db.refresh(company)
    return await _company_to_out(db, company)
