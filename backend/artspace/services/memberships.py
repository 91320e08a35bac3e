"""Organization membership lookups for authenticated callers."""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..auth import CallerIdentity

ADMIN_ROLES = ("owner", "admin")
BOOKING_ROLES = ("owner", "admin", "member")
MEMBER_ROLES = ("owner", "admin", "member", "viewer")


async def get_org_membership(
    db: AsyncSession, org_id: uuid.UUID, user_id: uuid.UUID
) -> Optional[models.OrgMember]:
    """Return the membership for ``user_id`` within ``org_id`` if present."""

    result = await db.execute(
        select(models.OrgMember).where(
            models.OrgMember.org_id == org_id,
            models.OrgMember.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def has_org_role(
    db: AsyncSession,
    org_id: uuid.UUID,
    identity: CallerIdentity,
    allowed_roles: tuple[str, ...] = ADMIN_ROLES,
) -> bool:
    """Whether ``identity`` holds an approved membership with one of ``allowed_roles``."""

    if identity.is_service:
        return True
    membership = await get_org_membership(db, org_id, identity.user_id)
    if membership is None or not membership.is_approved:
        return False
    return membership.role.lower() in {role.lower() for role in allowed_roles}


async def require_org_membership_role(
    db: AsyncSession,
    org_id: uuid.UUID,
    identity: CallerIdentity,
    *,
    allowed_roles: tuple[str, ...] = ADMIN_ROLES,
    require_approved: bool = True,
) -> Optional[models.OrgMember]:
    """Ensure ``identity`` can act on ``org_id`` with ``allowed_roles``.

    Service role tokens bypass membership checks. For regular users this verifies
    a matching membership exists, is approved (unless ``require_approved`` is
    ``False``) and that the stored membership role is present in
    ``allowed_roles``.
    """

    if identity.is_service:
        return None

    membership = await get_org_membership(db, org_id, identity.user_id)
    if membership is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to perform this action",
        )

    if require_approved and not membership.is_approved:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your membership has not been approved yet",
        )

    if membership.role.lower() not in {role.lower() for role in allowed_roles}:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to perform this action",
        )

    return membership
