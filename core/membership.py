"""
Organization / membership lookups used by the admin and OAuth routes.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Member, Organization

ADMIN_ROLES = frozenset({"owner", "admin"})


async def get_organization_by_slug(session: AsyncSession, slug: str) -> Optional[Organization]:
    result = await session.execute(select(Organization).where(Organization.slug == slug))
    return result.scalar_one_or_none()


async def get_membership(
    session: AsyncSession,
    organization_id: str,
    user_id: str,
) -> Optional[Member]:
    result = await session.execute(
        select(Member).where(
            Member.organization_id == organization_id,
            Member.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


def is_admin_role(role: Optional[str]) -> bool:
    return role in ADMIN_ROLES
