"""
WIR Workflow Engine
Reference checklist catalog models.

Models:
    - RefChecklist: reusable checklist template (project-scoped or global)
    - RefChecklistItem: one requirement line of a template

Templates are read-only from the engine's point of view; they are only
consulted at dispatch to materialize WirItem rows.
"""

import json
import uuid
from datetime import datetime, timezone

from wirflow.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class RefChecklist(db.Model):
    """Reusable inspection checklist. project_id NULL = available to all projects."""

    __tablename__ = "ref_checklists"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = db.Column(db.String(64), nullable=True, index=True)
    code = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    discipline = db.Column(db.String(20), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    items = db.relationship(
        "RefChecklistItem",
        backref="checklist",
        order_by="RefChecklistItem.seq",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_items: bool = False) -> dict:
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "code": self.code,
            "title": self.title,
            "discipline": self.discipline,
            "is_active": self.is_active,
            "item_count": len(self.items),
        }
        if include_items:
            d["item_templates"] = [it.to_template() for it in self.items]
        return d


class RefChecklistItem(db.Model):
    """Template line copied into a WirItem when a record is dispatched."""

    __tablename__ = "ref_checklist_items"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    checklist_id = db.Column(
        db.String(36),
        db.ForeignKey("ref_checklists.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    seq = db.Column(db.Integer, nullable=False, default=0)
    code = db.Column(db.String(50), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    requirement = db.Column(db.String(12), nullable=False, default="Optional")
    unit = db.Column(db.String(20), nullable=True)
    tolerance_base = db.Column(db.Float, nullable=True)
    tolerance_plus = db.Column(db.Float, nullable=True)
    tolerance_minus = db.Column(db.Float, nullable=True)
    critical = db.Column(db.Boolean, nullable=False, default=False)
    tags_json = db.Column(db.Text, nullable=False, default="[]")

    @property
    def tags(self) -> list[str]:
        try:
            return sorted(json.loads(self.tags_json or "[]"))
        except (json.JSONDecodeError, TypeError):
            return []

    def to_template(self) -> dict:
        """Shape consumed by the dispatch materializer."""
        return {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "seq": self.seq,
            "code": self.code,
            "name": self.name,
            "requirement": self.requirement,
            "unit": self.unit,
            "tolerance": {
                "base": self.tolerance_base,
                "plus": self.tolerance_plus,
                "minus": self.tolerance_minus,
            },
            "critical": bool(self.critical),
            "tags": self.tags,
        }
