# routers/issues.py — Issue tracking
# Features:
# - Visibility: without view_all_issues a caller sees only issues they report or are assigned
# - Assignment gated separately from editing (assign_issues)
# - completed_at kept in step with status on every write
# - Reports (view_reports) and CSV export (export_data)
import csv
import io
import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import ensure_authorized, get_auth_context, require_capability
from context import AuthContext
from database import get_db_session
from models import (
    AuditLog, AuditEventType, Issue, IssuePriority, IssueSeverity, IssueStatus, Project, User,
)
from permissions import Capability, authorize
from tenancy import UserRef, expand_users, fetch_scoped_by_ids, get_scoped_or_404, resolve_reference, scoped_query
from validators import COMPLETED_STATUSES, OPEN_STATUSES, apply_status_change

logger = logging.getLogger("issue-tracker.issues")

router = APIRouter(prefix="/api/v1/issues", tags=["Issues"])

EXPORT_COLUMNS = [
    "id", "project_key", "title", "status", "priority", "severity",
    "assignee_email", "reporter_email", "created_at", "completed_at",
]


# --- Schemas ---

def _required_text(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("Field is required")
    return v


class IssueCreate(BaseModel):
    project_id: str
    title: str = Field(..., max_length=200)
    description: str
    status: IssueStatus = IssueStatus.OPEN
    priority: IssuePriority = IssuePriority.MEDIUM
    severity: IssueSeverity = IssueSeverity.MINOR
    assignee_id: Optional[str] = None

    @field_validator("title", "description")
    @classmethod
    def validate_text(cls, v: str) -> str:
        return _required_text(v)


class IssueUpdate(BaseModel):
    project_id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None
    status: Optional[IssueStatus] = None
    priority: Optional[IssuePriority] = None
    severity: Optional[IssueSeverity] = None
    assignee_id: Optional[str] = None

    @field_validator("title", "description")
    @classmethod
    def validate_text(cls, v: Optional[str]) -> Optional[str]:
        return _required_text(v) if v is not None else v


class IssueOut(BaseModel):
    id: str
    project_id: str
    title: str
    description: str
    status: str
    priority: str
    severity: str
    assignee: Optional[UserRef] = None
    reporter: Optional[UserRef] = None
    completed_at: Optional[str] = None
    created_at: str
    updated_at: str


# --- Helpers ---

async def _visibility(db: AsyncSession, ctx: AuthContext) -> list:
    """Extra criteria limiting issues to what the caller may see."""
    if await authorize(db, ctx, Capability.VIEW_ALL_ISSUES):
        return []
    return [or_(Issue.reporter_id == ctx.identity_id, Issue.assignee_id == ctx.identity_id)]


async def _issues_to_out(db: AsyncSession, ctx: AuthContext, issues: List[Issue]) -> List[IssueOut]:
    ids = []
    for i in issues:
        ids.extend([i.assignee_id, i.reporter_id])
    users = await expand_users(db, ctx, ids)
    return [
        IssueOut(
            id=i.id,
            project_id=i.project_id,
            title=i.title,
            description=i.description,
            status=IssueStatus(i.status).value,
            priority=IssuePriority(i.priority).value,
            severity=IssueSeverity(i.severity).value,
            assignee=users.get(i.assignee_id) if i.assignee_id else None,
            reporter=users.get(i.reporter_id) if i.reporter_id else None,
            completed_at=i.completed_at.isoformat() if i.completed_at else None,
            created_at=i.created_at.isoformat() if i.created_at else "",
            updated_at=i.updated_at.isoformat() if i.updated_at else "",
        )
        for i in issues
    ]


async def _issue_to_out(db: AsyncSession, ctx: AuthContext, issue: Issue) -> IssueOut:
    return (await _issues_to_out(db, ctx, [issue]))[0]


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


# --- Endpoints ---

@router.get("", response_model=List[IssueOut])
async def list_issues(
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
    status: Optional[IssueStatus] = None,
    priority: Optional[IssuePriority] = None,
    severity: Optional[IssueSeverity] = None,
    project_id: Optional[str] = None,
    assignee_id: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    """List issues visible to the caller"""
    stmt = scoped_query(ctx, Issue, *await _visibility(db, ctx))
    if status:
        stmt = stmt.where(Issue.status == status)
    if priority:
        stmt = stmt.where(Issue.priority == priority)
    if severity:
        stmt = stmt.where(Issue.severity == severity)
    if project_id:
        stmt = stmt.where(Issue.project_id == project_id)
    if assignee_id:
        stmt = stmt.where(Issue.assignee_id == assignee_id)
    if search:
        stmt = stmt.where(Issue.title.ilike(f"%{search}%"))
    stmt = stmt.order_by(Issue.created_at.desc()).offset(offset).limit(limit)

    result = await db.execute(stmt)
    return await _issues_to_out(db, ctx, list(result.scalars().all()))


@router.get("/stats")
async def issue_stats(
    ctx: AuthContext = Depends(require_capability(Capability.VIEW_REPORTS)),
    db: AsyncSession = Depends(get_db_session),
):
    """Issue counts by status, priority and severity"""
    criteria = [Issue.company_id == ctx.tenant_id, *await _visibility(db, ctx)]

    async def _grouped(column):
        result = await db.execute(
            select(column, func.count(Issue.id)).where(*criteria).group_by(column)
        )
        return {getattr(k, "value", k): n for k, n in result.all()}

    by_status = await _grouped(Issue.status)
    by_priority = await _grouped(Issue.priority)
    by_severity = await _grouped(Issue.severity)

    mine = await db.execute(
        select(func.count(Issue.id)).where(*criteria, Issue.assignee_id == ctx.identity_id)
    )

    return {
        "total": sum(by_status.values()),
        "open": sum(by_status.get(s.value, 0) for s in OPEN_STATUSES),
        "completed": sum(by_status.get(s.value, 0) for s in COMPLETED_STATUSES),
        "assigned_to_me": mine.scalar() or 0,
        "by_status": by_status,
        "by_priority": by_priority,
        "by_severity": by_severity,
    }


@router.get("/export")
async def export_issues(
    ctx: AuthContext = Depends(require_capability(Capability.EXPORT_DATA)),
    db: AsyncSession = Depends(get_db_session),
    project_id: Optional[str] = None,
):
    """Visible issues as CSV"""
    stmt = scoped_query(ctx, Issue, *await _visibility(db, ctx))
    if project_id:
        stmt = stmt.where(Issue.project_id == project_id)
    issues = list((await db.execute(stmt.order_by(Issue.created_at.asc()))).scalars().all())

    projects = await fetch_scoped_by_ids(db, ctx, Project, [i.project_id for i in issues])
    users = await fetch_scoped_by_ids(
        db, ctx, User, [uid for i in issues for uid in (i.assignee_id, i.reporter_id)]
    )

    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    for i in issues:
        project = projects.get(i.project_id)
        assignee = users.get(i.assignee_id)
        reporter = users.get(i.reporter_id)
        writer.writerow([
            i.id,
            project.key if project else "",
            i.title,
            IssueStatus(i.status).value,
            IssuePriority(i.priority).value,
            IssueSeverity(i.severity).value,
            assignee.email if assignee else "",
            reporter.email if reporter else "",
            _iso(i.created_at),
            _iso(i.completed_at),
        ])

    logger.info(f"Exported {len(issues)} issues for company {ctx.tenant_id} by {ctx.identity_id}")
    return Response(
        content=buf.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="issues.csv"'},
    )


@router.get("/{issue_id}", response_model=IssueOut)
async def get_issue(
    issue_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    issue = await get_scoped_or_404(db, ctx, Issue, issue_id, "Issue", *await _visibility(db, ctx))
    return await _issue_to_out(db, ctx, issue)


@router.post("", response_model=IssueOut, status_code=201)
async def create_issue(
    data: IssueCreate,
    ctx: AuthContext = Depends(require_capability(Capability.CREATE_ISSUES)),
    db: AsyncSession = Depends(get_db_session),
):
    """Create an issue; the caller becomes the reporter"""
    project = await resolve_reference(db, ctx, Project, data.project_id, "project_id")

    assignee_id = None
    if data.assignee_id:
        await ensure_authorized(db, ctx, Capability.ASSIGN_ISSUES)
        assignee = await resolve_reference(db, ctx, User, data.assignee_id, "assignee_id")
        assignee_id = assignee.id

    issue = Issue(
        company_id=ctx.tenant_id,
        project_id=project.id,
        title=data.title,
        description=data.description,
        priority=data.priority,
        severity=data.severity,
        assignee_id=assignee_id,
        reporter_id=ctx.identity_id,
    )
    apply_status_change(issue, data.status)
    db.add(issue)
    await db.flush()

    db.add(AuditLog(
        event_type=AuditEventType.ISSUE_CREATED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="issue",
        resource_id=issue.id,
        details={"project_id": project.id, "title": issue.title},
    ))
    await db.commit()
    await db.refresh(issue)
    return await _issue_to_out(db, ctx, issue)


@router.put("/{issue_id}", response_model=IssueOut)
async def update_issue(
    issue_id: str,
    data: IssueUpdate,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Update an issue. Changing the assignee also needs assign_issues."""
    issue = await get_scoped_or_404(db, ctx, Issue, issue_id, "Issue", *await _visibility(db, ctx))
    await ensure_authorized(db, ctx, Capability.EDIT_ISSUES)

    changes = data.model_dump(exclude_unset=True)
    if "assignee_id" in changes and data.assignee_id != issue.assignee_id:
        await ensure_authorized(db, ctx, Capability.ASSIGN_ISSUES)
        if data.assignee_id is None:
            issue.assignee_id = None
        else:
            assignee = await resolve_reference(db, ctx, User, data.assignee_id, "assignee_id")
            issue.assignee_id = assignee.id
    if data.project_id is not None and data.project_id != issue.project_id:
        project = await resolve_reference(db, ctx, Project, data.project_id, "project_id")
        issue.project_id = project.id
    if data.title is not None:
        issue.title = data.title
    if data.description is not None:
        issue.description = data.description
    if data.priority is not None:
        issue.priority = data.priority
    if data.severity is not None:
        issue.severity = data.severity
    if data.status is not None:
        apply_status_change(issue, data.status)

    db.add(issue)
    db.add(AuditLog(
        event_type=AuditEventType.ISSUE_UPDATED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="issue",
        resource_id=issue.id,
        details={"fields": sorted(changes)},
    ))
    await db.commit()
    await db.refresh(issue)
    return await _issue_to_out(db, ctx, issue)


@router.delete("/{issue_id}")
async def delete_issue(
    issue_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db_session),
):
    issue = await get_scoped_or_404(db, ctx, Issue, issue_id, "Issue", *await _visibility(db, ctx))
    await ensure_authorized(db, ctx, Capability.DELETE_ISSUES)

    await db.delete(issue)
    db.add(AuditLog(
        event_type=AuditEventType.ISSUE_DELETED,
        user_id=ctx.identity_id,
        company_id=ctx.tenant_id,
        resource_type="issue",
        resource_id=issue_id,
        details={"title": issue.title},
    ))
    await db.commit()

    return {"issue_id": issue_id, "status": "deleted", "message": "Issue deleted successfully"}
