"""
WIR Workflow Engine
Project membership and permission layers.

Models:
    - ProjectMember: actor membership with a base role (identity directory)
    - RolePermissionTemplate: base {view, raise, review, approve} per role
    - ActorPermissionOverride: per-actor deny-only adjustments

A template row with project_id NULL is the global default for that role;
a project row for the same role takes precedence.
"""

from datetime import datetime, timezone

from wirflow.models import db

CAPABILITIES = ("view", "raise", "review", "approve")

# Override tri-state: a NULL column means "absent".
OVERRIDE_VALUES = frozenset({"inherit", "deny"})


def _utcnow():
    return datetime.now(timezone.utc)


class ProjectMember(db.Model):
    """An actor's membership in a project, with validity window."""

    __tablename__ = "project_members"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=False, index=True)
    display_name = db.Column(db.String(150), nullable=True)
    base_role = db.Column(db.String(50), nullable=False, comment="Contractor | PMC | IH-PMT | Consultant | Client ...")
    valid_from = db.Column(db.Date, nullable=True)
    valid_to = db.Column(db.Date, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("project_id", "actor_id", "base_role", name="uq_project_member_role"),
    )

    def to_dict(self) -> dict:
        return {
            "actor_id": self.actor_id,
            "base_role": self.base_role,
            "profile": {
                "display_name": self.display_name,
                "valid_from": self.valid_from.isoformat() if self.valid_from else None,
                "valid_to": self.valid_to.isoformat() if self.valid_to else None,
            },
        }


class RolePermissionTemplate(db.Model):
    """Base WIR permission matrix for a role."""

    __tablename__ = "role_permission_templates"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=True, index=True)
    base_role = db.Column(db.String(50), nullable=False)
    can_view = db.Column(db.Boolean, nullable=False, default=False)
    can_raise = db.Column(db.Boolean, nullable=False, default=False)
    can_review = db.Column(db.Boolean, nullable=False, default=False)
    can_approve = db.Column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        db.UniqueConstraint("project_id", "base_role", name="uq_role_template_scope"),
    )

    def granted(self) -> frozenset:
        flags = {
            "view": self.can_view,
            "raise": self.can_raise,
            "review": self.can_review,
            "approve": self.can_approve,
        }
        return frozenset(cap for cap, on in flags.items() if on)


class ActorPermissionOverride(db.Model):
    """Per-actor override. Each column is NULL (absent), 'inherit' or 'deny'."""

    __tablename__ = "actor_permission_overrides"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=False, index=True)
    view = db.Column(db.String(10), nullable=True)
    raise_ = db.Column("raise", db.String(10), nullable=True)
    review = db.Column(db.String(10), nullable=True)
    approve = db.Column(db.String(10), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint("project_id", "actor_id", name="uq_actor_override"),
    )

    def snapshot(self) -> dict:
        return {
            "view": self.view,
            "raise": self.raise_,
            "review": self.review,
            "approve": self.approve,
        }
