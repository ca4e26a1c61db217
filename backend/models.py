# models.py — Database models for the issue tracker
# - UUID string primary keys everywhere
# - Company-scoped tenancy: every tenant-owned row carries company_id
# - Eight boolean capability columns per user, seeded from role defaults
# - Store-enforced uniqueness: (company_id, email), (company_id, key), company email
# - Append-only audit log

import contextvars
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# Set per request by the correlation-id middleware
_request_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "request_id", default=None
)


def set_request_id(request_id: Optional[str]) -> contextvars.Token:
    return _request_id_var.set(request_id)


def reset_request_id(token: contextvars.Token) -> None:
    _request_id_var.reset(token)


def current_request_id() -> Optional[str]:
    return _request_id_var.get()


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    DEVELOPER = "developer"
    QA = "qa"
    VIEWER = "viewer"


class UserStatus(str, PyEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ProjectStatus(str, PyEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    COMPLETED = "completed"


class IssueStatus(str, PyEnum):
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"
    CLOSED = "Closed"


class IssuePriority(str, PyEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class IssueSeverity(str, PyEnum):
    MINOR = "Minor"
    MAJOR = "Major"
    CRITICAL = "Critical"


class AuditEventType(str, PyEnum):
    # Auth events
    COMPANY_REGISTERED = "auth.company.registered"
    USER_LOGIN = "auth.user.login"
    PASSWORD_CHANGED = "auth.password.changed"
    # Company events
    COMPANY_UPDATED = "company.updated"
    # User events
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_ROLE_CHANGED = "user.role_changed"
    USER_DELETED = "user.deleted"
    # Project events
    PROJECT_CREATED = "project.created"
    PROJECT_UPDATED = "project.updated"
    PROJECT_ARCHIVED = "project.archived"
    PROJECT_RESTORED = "project.restored"
    PROJECT_DELETED = "project.deleted"
    # Issue events
    ISSUE_CREATED = "issue.created"
    ISSUE_UPDATED = "issue.updated"
    ISSUE_DELETED = "issue.deleted"


# ============================================================
# COMPANIES (tenants)
# ============================================================

class Company(Base):
    __tablename__ = "companies"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    # Owner accounts log in without naming a company, so this is unique across tenants
    email = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    owner_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    company_id = Column(String, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.VIEWER, nullable=False, index=True)
    status = Column(SQLEnum(UserStatus), default=UserStatus.ACTIVE, nullable=False)

    # Capability set
    can_create_issues = Column(Boolean, default=False, nullable=False)
    can_edit_issues = Column(Boolean, default=False, nullable=False)
    can_delete_issues = Column(Boolean, default=False, nullable=False)
    can_assign_issues = Column(Boolean, default=False, nullable=False)
    can_view_all_issues = Column(Boolean, default=False, nullable=False)
    can_manage_users = Column(Boolean, default=False, nullable=False)
    can_view_reports = Column(Boolean, default=False, nullable=False)
    can_export_data = Column(Boolean, default=False, nullable=False)

    # Profile
    avatar_url = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    location = Column(String, nullable=True)
    website = Column(String, nullable=True)
    bio = Column(Text, nullable=True)

    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("company_id", "email", name="uq_user_company_email"),
        Index("idx_user_company_role", "company_id", "role"),
    )


# ============================================================
# PROJECTS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    company_id = Column(String, ForeignKey("companies.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    key = Column(String(10), nullable=False)
    status = Column(SQLEnum(ProjectStatus), default=ProjectStatus.ACTIVE, nullable=False)
    start_date = Column(DateTime(timezone=True), default=utcnow)
    end_date = Column(DateTime(timezone=True), nullable=True)
    lead_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    member_ids = Column(JSON, nullable=False, default=list)
    color = Column(String, default="#6366f1")
    icon = Column(String, default="📁")
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("company_id", "key", name="uq_project_company_key"),
        Index("idx_project_company_name", "company_id", "name"),
        Index("idx_project_company_status", "company_id", "status"),
    )


# ============================================================
# ISSUES
# ============================================================

class Issue(Base):
    __tablename__ = "issues"

    id = Column(String, primary_key=True, default=new_uuid)
    company_id = Column(String, ForeignKey("companies.id"), nullable=False, index=True)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    status = Column(SQLEnum(IssueStatus), default=IssueStatus.OPEN, nullable=False)
    priority = Column(SQLEnum(IssuePriority), default=IssuePriority.MEDIUM, nullable=False)
    severity = Column(SQLEnum(IssueSeverity), default=IssueSeverity.MINOR, nullable=False)
    assignee_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    # Always set on creation; cleared only when the reporting user is deleted
    reporter_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_issue_company_status", "company_id", "status"),
        Index("idx_issue_company_project", "company_id", "project_id"),
        Index("idx_issue_company_assignee", "company_id", "assignee_id"),
    )


# ============================================================
# AUDIT LOGS (append-only)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    event_type = Column(SQLEnum(AuditEventType), nullable=False, index=True)
    user_id = Column(String, nullable=True, index=True)
    company_id = Column(String, nullable=False, index=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    request_id = Column(String, nullable=True, index=True, default=current_request_id)

    __table_args__ = (
        Index("idx_audit_company_timestamp", "company_id", "timestamp"),
        Index("idx_audit_event_timestamp", "event_type", "timestamp"),
    )
