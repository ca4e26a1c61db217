"""
Capability model and permission resolution.

Every user owns exactly one capability set: eight independent boolean flags
stored as columns on the user row. The set is seeded from the role defaults
below when the user is created and edited explicitly afterwards; the role
table is never consulted again once the user exists.

Authorization always reads the stored flags fresh, because they can change
after a token was issued. The admin role bypasses the flags entirely. That
bypass lives in ``evaluate`` and nowhere else.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, Union

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from context import AuthContext
from models import User, UserRole, UserStatus

logger = logging.getLogger("issue-tracker.permissions")


class Capability(str, Enum):
    CREATE_ISSUES = "create_issues"
    EDIT_ISSUES = "edit_issues"
    DELETE_ISSUES = "delete_issues"
    ASSIGN_ISSUES = "assign_issues"
    VIEW_ALL_ISSUES = "view_all_issues"
    MANAGE_USERS = "manage_users"
    VIEW_REPORTS = "view_reports"
    EXPORT_DATA = "export_data"


class Mode(str, Enum):
    ANY = "any"
    ALL = "all"


# Capability -> column on the users table
CAPABILITY_COLUMNS: Dict[Capability, str] = {cap: f"can_{cap.value}" for cap in Capability}


class CapabilitySet(BaseModel):
    """The persisted eight-flag record. Unsupplied flags are false."""

    create_issues: bool = False
    edit_issues: bool = False
    delete_issues: bool = False
    assign_issues: bool = False
    view_all_issues: bool = False
    manage_users: bool = False
    view_reports: bool = False
    export_data: bool = False

    @classmethod
    def from_user(cls, user: User) -> "CapabilitySet":
        return cls(**{cap.value: bool(getattr(user, column)) for cap, column in CAPABILITY_COLUMNS.items()})

    @classmethod
    def from_granted(cls, granted: Iterable[Capability]) -> "CapabilitySet":
        granted = set(granted)
        return cls(**{cap.value: cap in granted for cap in Capability})

    def apply_to(self, user: User) -> None:
        """Write every flag onto the user row (whole-set replace)."""
        for cap, column in CAPABILITY_COLUMNS.items():
            setattr(user, column, getattr(self, cap.value))

    def grants(self, capability: Capability) -> bool:
        return getattr(self, Capability(capability).value)

    def granted(self) -> FrozenSet[Capability]:
        return frozenset(cap for cap in Capability if self.grants(cap))


# ============================================================
# ROLE DEFAULTS (creation time only)
# ============================================================

ROLE_DEFAULT_CAPABILITIES: Dict[UserRole, FrozenSet[Capability]] = {
    UserRole.ADMIN: frozenset(Capability),
    UserRole.MANAGER: frozenset(Capability),
    UserRole.QA: frozenset({
        Capability.CREATE_ISSUES,
        Capability.EDIT_ISSUES,
        Capability.ASSIGN_ISSUES,
        Capability.VIEW_ALL_ISSUES,
        Capability.VIEW_REPORTS,
    }),
    UserRole.DEVELOPER: frozenset({
        Capability.CREATE_ISSUES,
        Capability.EDIT_ISSUES,
        Capability.VIEW_ALL_ISSUES,
    }),
    UserRole.VIEWER: frozenset({
        Capability.VIEW_ALL_ISSUES,
    }),
}

# Roles whose stored flags are ignored by authorization
BYPASS_ROLES = frozenset({UserRole.ADMIN})


def default_capabilities(role: Union[UserRole, str]) -> CapabilitySet:
    return CapabilitySet.from_granted(ROLE_DEFAULT_CAPABILITIES[UserRole(role)])


def seed_capabilities(role: Union[UserRole, str], overrides: Optional[Mapping[str, bool]] = None) -> CapabilitySet:
    """Role defaults with explicitly supplied flags layered on top."""
    merged = default_capabilities(role).model_dump()
    for name, value in (overrides or {}).items():
        merged[Capability(name).value] = bool(value)
    return CapabilitySet(**merged)


# ============================================================
# RESOLUTION
# ============================================================

Requirement = Union[Capability, str, Iterable[Union[Capability, str]]]


@dataclass(frozen=True)
class Decision:
    granted: bool
    missing: Tuple[Capability, ...] = ()

    def __bool__(self) -> bool:
        return self.granted


def normalise_requirement(required: Requirement) -> Tuple[Capability, ...]:
    if isinstance(required, (Capability, str)):
        required = (required,)
    caps = tuple(dict.fromkeys(Capability(c) for c in required))
    if not caps:
        raise ValueError("At least one capability must be required")
    return caps


def evaluate(
    role: Union[UserRole, str],
    capabilities: CapabilitySet,
    required: Requirement,
    mode: Mode = Mode.ALL,
) -> Decision:
    """Pure authorization rule over a role and a stored capability set."""
    caps = normalise_requirement(required)

    if UserRole(role) in BYPASS_ROLES:
        return Decision(granted=True)

    if Mode(mode) is Mode.ANY:
        if any(capabilities.grants(c) for c in caps):
            return Decision(granted=True)
        return Decision(granted=False, missing=caps)

    missing = tuple(c for c in caps if not capabilities.grants(c))
    return Decision(granted=not missing, missing=missing)


async def load_identity(db: AsyncSession, ctx: AuthContext) -> Optional[User]:
    """Fetch the caller's user row, scoped to the caller's company."""
    stmt = select(User).where(
        User.id == ctx.identity_id,
        User.company_id == ctx.tenant_id,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def authorize(
    db: AsyncSession,
    ctx: AuthContext,
    required: Requirement,
    mode: Mode = Mode.ALL,
) -> Decision:
    caps = normalise_requirement(required)
    user = await load_identity(db, ctx)
    if user is None or user.status != UserStatus.ACTIVE:
        logger.info(f"Denied {[c.value for c in caps]} for unknown or inactive user {ctx.identity_id}")
        return Decision(granted=False, missing=caps)

    decision = evaluate(user.role, CapabilitySet.from_user(user), caps, mode)
    if not decision:
        logger.info(
            f"Denied user={user.id} company={user.company_id} "
            f"missing={[c.value for c in decision.missing]} mode={Mode(mode).value}"
        )
    return decision


async def has_role(db: AsyncSession, ctx: AuthContext, roles: Iterable[UserRole]) -> bool:
    user = await load_identity(db, ctx)
    if user is None or user.status != UserStatus.ACTIVE:
        return False
    return UserRole(user.role) in set(roles)


async def load_capabilities_best_effort(db: AsyncSession, ctx: AuthContext) -> Optional[CapabilitySet]:
    """Stored capability set for display; None when it cannot be read."""
    try:
        user = await load_identity(db, ctx)
    except SQLAlchemyError as e:
        logger.warning(f"Could not load capabilities for {ctx.identity_id}: {e}")
        return None
    return CapabilitySet.from_user(user) if user else None
