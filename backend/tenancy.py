# tenancy.py — Company scoping for every read and write
# The tenant always comes from AuthContext. Client-supplied ids are only ever
# conjoined with it, so an id from another company behaves exactly like an id
# that does not exist.
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from context import AuthContext
from errors import NotFoundError, ValidationFailure
from models import User


def is_valid_id(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def scoped_query(ctx: AuthContext, model, *criteria) -> Select:
    """select(model) bound to the caller's company."""
    return select(model).where(model.company_id == ctx.tenant_id, *criteria)


async def get_scoped(db: AsyncSession, ctx: AuthContext, model, resource_id: str, *criteria):
    if not is_valid_id(resource_id):
        return None
    result = await db.execute(scoped_query(ctx, model, model.id == resource_id, *criteria))
    return result.scalar_one_or_none()


async def get_scoped_or_404(
    db: AsyncSession,
    ctx: AuthContext,
    model,
    resource_id: str,
    resource_name: str,
    *criteria,
):
    obj = await get_scoped(db, ctx, model, resource_id, *criteria)
    if obj is None:
        raise NotFoundError(resource_name)
    return obj


async def resolve_reference(db: AsyncSession, ctx: AuthContext, model, value: Any, field: str):
    """Resolve a client-supplied foreign id inside the caller's company."""
    if not is_valid_id(value):
        raise ValidationFailure(field, "Invalid id format")
    obj = await get_scoped(db, ctx, model, value)
    if obj is None:
        raise ValidationFailure(field, "Referenced record does not exist in this company")
    return obj


async def resolve_references(
    db: AsyncSession, ctx: AuthContext, model, values: Iterable[Any], field: str
) -> List[Any]:
    """Resolve a list of ids; duplicates collapse, order is kept."""
    ids = list(dict.fromkeys(values))
    for value in ids:
        if not is_valid_id(value):
            raise ValidationFailure(field, f"Invalid id format: {value}")
    if not ids:
        return []

    result = await db.execute(scoped_query(ctx, model, model.id.in_(ids)))
    found = {obj.id: obj for obj in result.scalars().all()}
    unknown = [i for i in ids if i not in found]
    if unknown:
        raise ValidationFailure(field, f"Referenced records do not exist in this company: {', '.join(unknown)}")
    return [found[i] for i in ids]


async def fetch_scoped_by_ids(
    db: AsyncSession, ctx: AuthContext, model, ids: Sequence[Optional[str]]
) -> dict:
    """Map id -> row for the ids that exist inside the caller's company."""
    wanted = {i for i in ids if i}
    if not wanted:
        return {}
    result = await db.execute(scoped_query(ctx, model, model.id.in_(wanted)))
    return {obj.id: obj for obj in result.scalars().all()}


class UserRef(BaseModel):
    id: str
    name: str
    email: str


async def expand_users(db: AsyncSession, ctx: AuthContext, ids: Sequence[Optional[str]]) -> Dict[str, UserRef]:
    """Related users for a response; ids outside the caller's company drop out."""
    users = await fetch_scoped_by_ids(db, ctx, User, ids)
    return {uid: UserRef(id=u.id, name=u.name, email=u.email) for uid, u in users.items()}
