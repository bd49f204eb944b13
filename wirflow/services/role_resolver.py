"""
WIR Role Resolver — acting capability for an actor on a project.

Two immutable layers are combined per resolution:
    1. base matrix:  {view, raise, review, approve} granted to the base role
    2. override snapshot: per-capability 'inherit' | 'deny' | absent

effective = base[cap] AND override[cap] != 'deny'   (deny-only, never grants)

The acting capability is an exact lookup on the effective set; any set not
listed in ACTING_CAPABILITY_TABLE is ViewerOnly. Sets that include
``raise`` are deliberately left unclassified.

Fail closed: if the base matrix cannot be resolved (no template, unknown
role, lookup error) the result is ViewerOnly. Resolution never raises.

Usage:
    from wirflow.services.role_resolver import ActingCapability, resolve_for_actor

    if resolve_for_actor(project_id, actor_id) in INSPECTOR_CAPABILITIES:
        ...
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from sqlalchemy import select

from wirflow.models import db
from wirflow.models.access import ActorPermissionOverride, CAPABILITIES, RolePermissionTemplate

logger = logging.getLogger(__name__)


class ActingCapability(str, Enum):
    INSPECTOR = "Inspector"
    HOD = "HOD"
    INSPECTOR_HOD = "Inspector+HOD"
    VIEWER_ONLY = "ViewerOnly"


ACTING_CAPABILITY_TABLE: dict[frozenset, ActingCapability] = {
    frozenset({"view", "review"}): ActingCapability.INSPECTOR,
    frozenset({"view", "approve"}): ActingCapability.HOD,
    frozenset({"view", "review", "approve"}): ActingCapability.INSPECTOR_HOD,
}

INSPECTOR_CAPABILITIES = frozenset({ActingCapability.INSPECTOR, ActingCapability.INSPECTOR_HOD})
HOD_CAPABILITIES = frozenset({ActingCapability.HOD, ActingCapability.INSPECTOR_HOD})


# ── Pure composition ─────────────────────────────────────────────────────────


def effective_capabilities(base: frozenset, overrides: dict | None) -> frozenset:
    """Apply a deny-only override snapshot to a base grant set."""
    overrides = overrides or {}
    return frozenset(
        cap for cap in CAPABILITIES
        if cap in base and overrides.get(cap) != "deny"
    )


def derive_acting_capability(effective: frozenset) -> ActingCapability:
    return ACTING_CAPABILITY_TABLE.get(frozenset(effective), ActingCapability.VIEWER_ONLY)


# ── Layer sources (DB-backed defaults) ───────────────────────────────────────


def base_matrix(project_id: str, base_role: str | None) -> frozenset | None:
    """Return the granted capability set for a role, or None if unconfigured.

    A project-scoped template wins over the global (project_id NULL) one.
    """
    if not base_role:
        return None
    rows = db.session.execute(
        select(RolePermissionTemplate).where(
            RolePermissionTemplate.base_role == base_role,
            (RolePermissionTemplate.project_id == project_id)
            | (RolePermissionTemplate.project_id.is_(None)),
        )
    ).scalars().all()
    if not rows:
        return None
    project_rows = [r for r in rows if r.project_id is not None]
    template = project_rows[0] if project_rows else rows[0]
    return template.granted()


def overrides(project_id: str, actor_id: str) -> dict:
    """Return the actor's override snapshot ({} when the actor has none)."""
    row = db.session.execute(
        select(ActorPermissionOverride).where(
            ActorPermissionOverride.project_id == project_id,
            ActorPermissionOverride.actor_id == actor_id,
        )
    ).scalar_one_or_none()
    return row.snapshot() if row else {}


# ── Resolution ───────────────────────────────────────────────────────────────


def resolve_effective(
    project_id: str,
    base_role: str | None,
    actor_id: str,
    *,
    base_source: Callable[[str, str | None], frozenset | None] | None = None,
    override_source: Callable[[str, str], dict] | None = None,
) -> frozenset:
    """Effective capability set; empty when anything cannot be resolved."""
    base_source = base_source or base_matrix
    override_source = override_source or overrides
    try:
        base = base_source(project_id, base_role)
        if base is None:
            logger.info(
                "No permission template for role=%s; failing closed", base_role,
                extra={"project_id": project_id, "actor_id": actor_id},
            )
            return frozenset()
        snapshot = dict(override_source(project_id, actor_id) or {})
    except Exception:
        logger.warning(
            "Permission lookup failed for actor=%s role=%s; failing closed", actor_id, base_role,
            exc_info=True,
            extra={"project_id": project_id, "actor_id": actor_id},
        )
        return frozenset()
    return effective_capabilities(frozenset(base), snapshot)


def resolve_acting_capability(
    project_id: str,
    base_role: str | None,
    actor_id: str,
    **sources,
) -> ActingCapability:
    """RoleResolver entry point: (project, base role, actor) -> acting capability."""
    return derive_acting_capability(resolve_effective(project_id, base_role, actor_id, **sources))


def resolve_for_actor(project_id: str, actor_id: str | None) -> ActingCapability:
    """Resolve using the actor's base role from the identity directory."""
    from wirflow.integrations.identity_directory import identity_directory

    if not actor_id:
        return ActingCapability.VIEWER_ONLY
    try:
        base_role = identity_directory.base_role_of(project_id, actor_id)
    except Exception:
        logger.warning("Identity lookup failed for actor=%s; failing closed", actor_id, exc_info=True)
        return ActingCapability.VIEWER_ONLY
    return resolve_acting_capability(project_id, base_role, actor_id)


def can_raise(project_id: str, actor_id: str | None) -> bool:
    """True when the actor's effective set includes ``raise`` (record creation)."""
    from wirflow.integrations.identity_directory import identity_directory

    if not actor_id:
        return False
    try:
        base_role = identity_directory.base_role_of(project_id, actor_id)
    except Exception:
        logger.warning("Identity lookup failed for actor=%s; failing closed", actor_id, exc_info=True)
        return False
    return "raise" in resolve_effective(project_id, base_role, actor_id)
