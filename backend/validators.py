"""
Write-time rules for companies, users, projects and issues.

Each check is independent and raises a field-scoped ``ValidationFailure`` or
a ``ConflictError``. Routers call them right before handing a row to the
session. The uniqueness pre-checks give a readable error in the common case;
under concurrent writes the unique constraints in ``models.py`` decide, and
``commit_or_conflict`` reports the loser.
"""

import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from context import AuthContext
from errors import ConflictError, ValidationFailure
from models import Company, Issue, IssueStatus, Project, User, UserRole, utcnow
from tenancy import scoped_query

logger = logging.getLogger("issue-tracker.validators")

PROJECT_KEY_PATTERN = re.compile(r"^[A-Z][A-Z0-9]*$")
PROJECT_KEY_MAX_LENGTH = 10

COMPLETED_STATUSES = frozenset({IssueStatus.RESOLVED, IssueStatus.CLOSED})
OPEN_STATUSES = frozenset({IssueStatus.OPEN, IssueStatus.IN_PROGRESS})


# ── Normalisation ────────────────────────────────────────────

def normalise_email(email: str) -> str:
    return email.strip().lower()


def normalise_project_key(key: str) -> str:
    normalised = (key or "").strip().upper()
    if not normalised:
        raise ValidationFailure("key", "Project key is required")
    if len(normalised) > PROJECT_KEY_MAX_LENGTH:
        raise ValidationFailure("key", f"Project key cannot exceed {PROJECT_KEY_MAX_LENGTH} characters")
    if not PROJECT_KEY_PATTERN.match(normalised):
        raise ValidationFailure(
            "key",
            "Project key must start with a letter and contain only uppercase letters and numbers",
        )
    return normalised


# ── Uniqueness ───────────────────────────────────────────────

async def ensure_unique_project_key(
    db: AsyncSession, ctx: AuthContext, key: str, exclude_id: Optional[str] = None
) -> None:
    stmt = scoped_query(ctx, Project, Project.key == key)
    if exclude_id:
        stmt = stmt.where(Project.id != exclude_id)
    result = await db.execute(stmt)
    if result.scalars().first() is not None:
        raise ConflictError("key", "Project with this key already exists")


async def ensure_unique_email(
    db: AsyncSession, ctx: AuthContext, email: str, exclude_id: Optional[str] = None
) -> None:
    stmt = scoped_query(ctx, User, User.email == email)
    if exclude_id:
        stmt = stmt.where(User.id != exclude_id)
    result = await db.execute(stmt)
    if result.scalars().first() is not None:
        raise ConflictError("email", "User with this email already exists in your company")


async def ensure_unique_company_email(db: AsyncSession, email: str) -> None:
    result = await db.execute(select(Company).where(Company.email == email))
    if result.scalars().first() is not None:
        raise ConflictError("email", "Company email already exists")


@asynccontextmanager
async def conflict_on_integrity_error(db: AsyncSession, field: str, message: str):
    """Roll back and raise ConflictError if the store rejects a write."""
    try:
        yield
    except IntegrityError as e:
        await db.rollback()
        logger.info(f"Uniqueness conflict on {field}: {e.orig}")
        raise ConflictError(field, message)


async def commit_or_conflict(db: AsyncSession, field: str, message: str) -> None:
    async with conflict_on_integrity_error(db, field, message):
        await db.commit()


# ── Self-protection ──────────────────────────────────────────

def ensure_not_self_delete(ctx: AuthContext, target_id: str) -> None:
    if ctx.is_self(target_id):
        raise ValidationFailure("id", "You cannot delete your own account")


def ensure_not_self_demotion(
    ctx: AuthContext, target: User, new_role: Optional[Union[UserRole, str]]
) -> None:
    if new_role is None or not ctx.is_self(target.id):
        return
    if UserRole(target.role) == UserRole.ADMIN and UserRole(new_role) != UserRole.ADMIN:
        raise ValidationFailure("role", "You cannot change your own admin role")


# ── Associations ─────────────────────────────────────────────

async def count_project_issues(db: AsyncSession, ctx: AuthContext, project_id: str) -> int:
    stmt = select(func.count(Issue.id)).where(
        Issue.company_id == ctx.tenant_id,
        Issue.project_id == project_id,
    )
    result = await db.execute(stmt)
    return result.scalar() or 0


async def ensure_project_has_no_issues(db: AsyncSession, ctx: AuthContext, project: Project) -> None:
    count = await count_project_issues(db, ctx, project.id)
    if count > 0:
        raise ValidationFailure(
            "id",
            f"Cannot delete project with {count} existing issue(s). "
            "Please move or delete issues first.",
        )


# ── Issue lifecycle ──────────────────────────────────────────

def apply_status_change(
    issue: Issue, new_status: Union[IssueStatus, str], now: Optional[datetime] = None
) -> None:
    """Set the status and keep completed_at consistent with it.

    Any transition is allowed. Entering Resolved/Closed stamps completed_at
    unless already stamped; any other status clears it.
    """
    status = IssueStatus(new_status)
    issue.status = status
    if status in COMPLETED_STATUSES:
        if issue.completed_at is None:
            issue.completed_at = now or utcnow()
    else:
        issue.completed_at = None
