# routers/projects.py — Company projects
# Features:
# - Issue counts per project in listings
# - Lead and members resolved inside the caller's company
# - Key uniqueness per company
# - Deletion blocked while issues remain; archive toggle instead
# - Writes open to every member of the company
from datetime import datetime, timezone
from typing import Optional, List, Dict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_auth_context
from context import AuthContext
from database import get_db_session
from errors import ValidationFailure
from models import AuditLog, AuditEventType, Issue, Project, ProjectStatus, User
from tenancy import (
    UserRef, expand_users, get_scoped_or_404, resolve_reference, resolve_references, scoped_query,
)
from validators import (
    OPEN_STATUSES, commit_or_conflict, conflict_on_integrity_error, ensure_project_has_no_issues,
    ensure_unique_project_key, normalise_project_key,
)

router = APIRouter(prefix="/api/v1/projects", tags=["Projects"])

KEY_CONFLICT = "Project with this key already exists"


# --- Schemas ---

class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    key: str = Field(..., min_length=1)
    status: ProjectStatus = ProjectStatus.ACTIVE
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    lead_id: Optional[str] = None
    member_ids: Optional[List[str]] = None
    color: Optional[str] = None
    icon: Optional[str] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    key: Optional[str] = None
    status: Optional[ProjectStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    lead_id: Optional[str] = None
    member_ids: Optional[List[str]] = None
    color: Optional[str] = None
    icon: Optional[str] = None


class ProjectOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    key: str
    status: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    lead: Optional[UserRef] = None
    members: List[UserRef] = []
    color: Optional[str] = None
    icon: Optional[str] = None
    issue_count: int = 0
    open_issue_count: int = 0
    created_at: str
    updated_at: str


# --- Helpers ---

async def _issue_counts(db: AsyncSession, ctx: AuthContext, project_ids: List[str]) -> Dict[str, Dict[str, int]]:
    counts = {pid: {"issue_count": 0, "open_issue_count": 0} for pid in project_ids}
    if not project_ids:
        return counts

    base = (
        select(Issue.project_id, func.count(Issue.id))
        .where(Issue.company_id == ctx.tenant_id, Issue.project_id.in_(project_ids))
        .group_by(Issue.project_id)
    )
    for pid, total in (await db.execute(base)).all():
        counts[pid]["issue_count"] = total
    open_stmt = base.where(Issue.status.in_(list(OPEN_STATUSES)))
    for pid, total in (await db.execute(open_stmt)).all():
        counts[pid]["open_issue_count"] = total
    return counts


async def _projects_to_out(db: AsyncSession, ctx: AuthContext, projects: List[Project]) -> List[ProjectOut]:
    user_ids = []
    for p in projects:
        user_ids.append(p.lead_id)
        user_ids.extend(p.member_ids or [])
    users = await expand_users(db, ctx, user_ids)
    counts = await _issue_counts(db, ctx, [p.id for p in projects])

    return [
        ProjectOut(
            id=p.id,
            name=p.name,
            description=p.description,
            key=p.key,
            status=p.status.value if isinstance(p.status, ProjectStatus) else p.status,
            start_date=p.start_date.isoformat() if p.start_date else None,
            end_date=p.end_date.isoformat() if p.end_date else None,
            lead=users.get(p.lead_id) if p.lead_id else None,
            members=[users[m] for m in (p.member_ids or []) if m in users],
            color=p.color,
            icon=p.icon,
            created_at=p.created_at.isoformat() if p.created_at else "",
            updated_at=p.updated_at.isoformat() if p.updated_at else "",
            **counts[p.id],
        )
        for p in projects
    ]


async def _project_to_out(db: AsyncSession, ctx: AuthContext, project: Project) -> ProjectOut:
    return (await _projects_to_out(db, ctx, [project]))[0]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _check_dates(start: Optional[datetime], end: Optional[datetime]) -> None:
    start, end = _aware(start), _aware(end)
    if start and end and end < start:
        raise ValidationFailure("end_date", "End date cannot be before start date")


# --- Endpoints ---

@router.get("", response_model=List[ProjectOut])
async def list_projects(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[ProjectStatus] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    """List projects in the caller's company"""
    stmt = scoped_query(ctx, Project)
    if status:
        stmt = stmt.where(Project.status == status)
    stmt = stmt.order_by(Project.created_at.desc()).offset(offset).limit(limit)

    result = await db.execute(stmt)
    return await _projects_to_out(db, ctx, list(result.scalars().all()))


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(
    project_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    project = await get_scoped_or_404(db, ctx, Project, project_id, "Project")
    return await _project_to_out(db, ctx, project)


@router.post("", response_model=ProjectOut, status_code=201)
async def create_project(
    data: ProjectCreate,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a project. Lead and members default to the caller."""

    key = normalise_project_key(data.key)
    await ensure_unique_project_key(db, ctx, key)
    _check_dates(data.start_date, data.end_date)

    lead_id = data.lead_id or ctx.identity_id
    await resolve_reference(db, ctx, User, lead_id, "lead_id")
    if data.member_ids:
        members = await resolve_references(db, ctx, User, data.member_ids, "member_ids")
        member_ids = [m.id for m in members]
    else:
        member_ids = [ctx.identity_id]

    project = Project(
        company_id=ctx.tenant_id,
        name=data.name.strip(),
        description=data.description,
        key=key,
        status=data.status,
        end_date=data.end_date,
        lead_id=lead_id,
        member_ids=member_ids,
    )
    if data.start_date:
        project.start_date = data.start_date
    if data.color:
        project.color = data.color
    if data.icon:
        project.icon = data.icon
    db.add(project)
    async with conflict_on_integrity_error(db, "key", KEY_CONFLICT):
        await db.flush()

    db.add(AuditLog(
        event_type=AuditEventType.PROJECT_CREATED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="project",
        resource_id=project.id,
        details={"key": key, "name": project.name},
    ))
    await commit_or_conflict(db, "key", KEY_CONFLICT)
    await db.refresh(project)
    return await _project_to_out(db, ctx, project)


@router.put("/{project_id}", response_model=ProjectOut)
async def update_project(
    project_id: str,
    data: ProjectUpdate,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Update a project"""
    project = await get_scoped_or_404(db, ctx, Project, project_id, "Project")

    changes = data.model_dump(exclude_unset=True)
    if data.key is not None:
        key = normalise_project_key(data.key)
        await ensure_unique_project_key(db, ctx, key, exclude_id=project.id)
    if data.name is not None:
        project.name = data.name.strip()
    if "description" in changes:
        project.description = data.description
    if data.status is not None:
        project.status = data.status
    if data.start_date is not None:
        project.start_date = data.start_date
    if "end_date" in changes:
        project.end_date = data.end_date
    _check_dates(project.start_date, project.end_date)
    if "lead_id" in changes:
        if data.lead_id is None:
            project.lead_id = None
        else:
            lead = await resolve_reference(db, ctx, User, data.lead_id, "lead_id")
            project.lead_id = lead.id
    if data.member_ids is not None:
        members = await resolve_references(db, ctx, User, data.member_ids, "member_ids")
        project.member_ids = [m.id for m in members]
    if data.color is not None:
        project.color = data.color
    if data.icon is not None:
        project.icon = data.icon
    # Reference lookups above autoflush; the new key lands last
    if data.key is not None:
        project.key = key

    db.add(project)
    db.add(AuditLog(
        event_type=AuditEventType.PROJECT_UPDATED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="project",
        resource_id=project.id,
        details={"fields": sorted(changes)},
    ))
    await commit_or_conflict(db, "key", KEY_CONFLICT)
    await db.refresh(project)
    return await _project_to_out(db, ctx, project)


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a project that has no issues"""
    project = await get_scoped_or_404(db, ctx, Project, project_id, "Project")
    await ensure_project_has_no_issues(db, ctx, project)

    await db.delete(project)
    db.add(AuditLog(
        event_type=AuditEventType.PROJECT_DELETED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="project",
        resource_id=project_id,
        details={"key": project.key},
    ))
    await db.commit()

    return {"project_id": project_id, "status": "deleted", "message": "Project deleted successfully"}


@router.patch("/{project_id}/archive", response_model=ProjectOut)
async def toggle_archive(
    project_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Archive an active project, or restore an archived one"""
    project = await get_scoped_or_404(db, ctx, Project, project_id, "Project")

    if project.status == ProjectStatus.ARCHIVED:
        project.status = ProjectStatus.ACTIVE
        event = AuditEventType.PROJECT_RESTORED
    else:
        project.status = ProjectStatus.ARCHIVED
        event = AuditEventType.PROJECT_ARCHIVED

    db.add(project)
    db.add(AuditLog(
        event_type=event,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="project",
        resource_id=project.id,
    ))
    await db.commit()
    await db.refresh(project)
    return await _project_to_out(db, ctx, project)
