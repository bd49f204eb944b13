"""
Identity directory — project membership lookups.

Supplies candidate actor ids (for pickers outside the engine) and the base
role the role resolver starts from. Backed by the ``project_members``
table; a deployment that keeps membership elsewhere swaps the
module-level ``identity_directory`` instance.
"""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select

from wirflow.models import db
from wirflow.models.access import ProjectMember

logger = logging.getLogger(__name__)


def _is_active_on(member: ProjectMember, on_date: date) -> bool:
    if member.is_active is False:
        return False
    if member.valid_from and on_date < member.valid_from:
        return False
    if member.valid_to and on_date > member.valid_to:
        return False
    return True


class IdentityDirectory:
    """SQL-backed membership directory."""

    def list_active_members(
        self,
        project_id: str,
        base_role: str | None = None,
        on_date: date | None = None,
    ) -> list[dict]:
        """Return [{actor_id, base_role, profile}] active on ``on_date`` (default today)."""
        on_date = on_date or date.today()
        stmt = select(ProjectMember).where(ProjectMember.project_id == project_id)
        if base_role:
            stmt = stmt.where(ProjectMember.base_role == base_role)
        rows = db.session.execute(stmt.order_by(ProjectMember.actor_id)).scalars().all()
        return [m.to_dict() for m in rows if _is_active_on(m, on_date)]

    def base_role_of(self, project_id: str, actor_id: str, on_date: date | None = None) -> str | None:
        """Return the actor's base role on the project, or None if not a member.

        When an actor holds several active memberships the most recent one wins.
        """
        on_date = on_date or date.today()
        rows = db.session.execute(
            select(ProjectMember)
            .where(
                ProjectMember.project_id == project_id,
                ProjectMember.actor_id == actor_id,
            )
            .order_by(ProjectMember.id.desc())
        ).scalars().all()
        for member in rows:
            if _is_active_on(member, on_date):
                return member.base_role
        return None


identity_directory = IdentityDirectory()
