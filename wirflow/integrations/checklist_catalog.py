"""
Checklist catalog — reference checklist templates.

Consulted only while dispatching a record (item materialization) and by
the checklist picker endpoints; follow-up creation never reads it.
"""

from __future__ import annotations

from sqlalchemy import select

from wirflow.core.exceptions import NotFoundError
from wirflow.models import db
from wirflow.models.checklist import RefChecklist


class ChecklistCatalog:
    """SQL-backed catalog over ``ref_checklists`` / ``ref_checklist_items``."""

    def _visible(self, project_id: str):
        return (RefChecklist.project_id == project_id) | (RefChecklist.project_id.is_(None))

    def list_checklists(self, project_id: str, filters: dict | None = None) -> list[dict]:
        """Return active checklists visible to the project.

        Filters: ``discipline`` (exact), ``q`` (substring of code or title).
        """
        filters = filters or {}
        stmt = select(RefChecklist).where(self._visible(project_id), RefChecklist.is_active.is_(True))
        if filters.get("discipline"):
            stmt = stmt.where(RefChecklist.discipline == filters["discipline"])
        if filters.get("q"):
            like = f"%{filters['q']}%"
            stmt = stmt.where(RefChecklist.code.ilike(like) | RefChecklist.title.ilike(like))
        rows = db.session.execute(stmt.order_by(RefChecklist.code)).scalars().all()
        return [c.to_dict(include_items=True) for c in rows]

    def fetch_items(self, project_id: str, checklist_id: str) -> list[dict]:
        """Return the item templates of one checklist, in sequence order."""
        checklist = db.session.execute(
            select(RefChecklist).where(RefChecklist.id == checklist_id, self._visible(project_id))
        ).scalar_one_or_none()
        if checklist is None:
            raise NotFoundError(resource="RefChecklist", resource_id=checklist_id, project_id=project_id)
        return [it.to_template() for it in checklist.items]


checklist_catalog = ChecklistCatalog()
