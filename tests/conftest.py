"""
Shared pytest fixtures for the WIR workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - members: project memberships + role templates for the standard cast
    - checklist: a Civil checklist with one critical measurement item and
      one optional item
    - gateway: SqlPersistenceGateway writing attachment bytes under tmp_path

Standard cast on project "P1":
    C1   Contractor   view + raise           -> ViewerOnly (may raise records)
    U1   PMC          view + review          -> Inspector
    H1   IH-PMT       view + approve         -> HOD
    IH1  Consultant   view + review + approve -> Inspector+HOD
    V1   Client       view                   -> ViewerOnly
"""

from datetime import datetime

import pytest

from wirflow import create_app
from wirflow.integrations.attachment_storage import LocalAttachmentStorage
from wirflow.integrations.persistence_gateway import SqlPersistenceGateway
from wirflow.models import db as _db
from wirflow.models.access import ProjectMember, RolePermissionTemplate
from wirflow.models.checklist import RefChecklist, RefChecklistItem

PROJECT_ID = "P1"

ROLE_GRANTS = {
    "Contractor": {"can_view": True, "can_raise": True},
    "PMC": {"can_view": True, "can_review": True},
    "IH-PMT": {"can_view": True, "can_approve": True},
    "Consultant": {"can_view": True, "can_review": True, "can_approve": True},
    "Client": {"can_view": True},
}

CAST = {
    "C1": "Contractor",
    "U1": "PMC",
    "H1": "IH-PMT",
    "IH1": "Consultant",
    "V1": "Client",
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """Create the Flask application once per test session."""
    application = create_app("testing")
    application.config["UPLOAD_FOLDER"] = str(tmp_path_factory.mktemp("uploads"))
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Seed fixtures ────────────────────────────────────────────────────────


def seed_role_templates(project_id=None):
    for role, grants in ROLE_GRANTS.items():
        _db.session.add(RolePermissionTemplate(project_id=project_id, base_role=role, **grants))
    _db.session.commit()


def seed_members(project_id=PROJECT_ID, cast=None):
    for actor_id, role in (cast or CAST).items():
        _db.session.add(ProjectMember(
            project_id=project_id, actor_id=actor_id, base_role=role, display_name=f"{actor_id} ({role})",
        ))
    _db.session.commit()


@pytest.fixture()
def members():
    """Global role templates plus the standard cast on P1."""
    seed_role_templates()
    seed_members()
    return dict(CAST)


@pytest.fixture()
def checklist():
    """Civil checklist: CIV-01 Mandatory+critical+measurement, CIV-02 Optional."""
    cl = RefChecklist(project_id=None, code="CL-CIV-SLAB", title="Slab casting", discipline="Civil")
    cl.items = [
        RefChecklistItem(
            seq=1, code="CIV-01", name="Slab thickness", requirement="Mandatory",
            unit="mm", tolerance_base=200, tolerance_plus=5, tolerance_minus=5,
            critical=True, tags_json='["measurement"]',
        ),
        RefChecklistItem(
            seq=2, code="CIV-02", name="Surface finish", requirement="Optional",
            tags_json='["photo"]',
        ),
    ]
    _db.session.add(cl)
    _db.session.commit()
    return cl.id


@pytest.fixture()
def gateway(tmp_path):
    return SqlPersistenceGateway(storage=LocalAttachmentStorage(root=str(tmp_path)))


@pytest.fixture()
def header(checklist):
    """A complete Civil header ready for dispatch."""
    return {
        "title": "Level 3 slab",
        "discipline": "Civil",
        "activity_id": "ACT-100",
        "planned_at": datetime(2026, 11, 2, 9, 30).isoformat(),
        "location": "Block A / L3",
        "checklist_ids": [checklist],
    }


# ── Workflow factory ─────────────────────────────────────────────────────


class WirFactory:
    """Drives records through the lifecycle with the standard cast."""

    def __init__(self, gateway, header):
        self.gateway = gateway
        self.header = header

    def draft(self, creator_id="C1", **overrides):
        from wirflow.services import wir_lifecycle

        return wir_lifecycle.create_wir(PROJECT_ID, creator_id, {**self.header, **overrides}, gateway=self.gateway)

    def submitted(self, inspector_id="U1", **overrides):
        from wirflow.services import wir_lifecycle

        record = self.draft(**overrides)
        return wir_lifecycle.dispatch(PROJECT_ID, record.id, inspector_id, record.creator_id, gateway=self.gateway)

    def item(self, record, code):
        return next(it for it in record.items if it.code == code)

    def recommended(self, recommendation="APPROVE_WITH_COMMENTS", statuses=None, hod_id="H1"):
        """Submitted record with CIV-01 measured; ``statuses`` maps item code -> status."""
        from wirflow.services import wir_lifecycle

        record = self.submitted()
        statuses = statuses or {"CIV-01": "PASS", "CIV-02": "FAIL"}
        updates = {}
        for code, status in statuses.items():
            change = {"status": status}
            if code == "CIV-01":
                change["value"] = "201.5"
            updates[self.item(record, code).id] = change
        wir_lifecycle.runner_update(PROJECT_ID, record.id, "U1", updates, gateway=self.gateway)
        return wir_lifecycle.send_to_hod(
            PROJECT_ID, record.id, hod_id, recommendation, "Minor snags", "U1", gateway=self.gateway,
        )

    def approved(self, recommendation="APPROVE_WITH_COMMENTS", statuses=None):
        from wirflow.services import wir_lifecycle

        record = self.recommended(recommendation=recommendation, statuses=statuses)
        return wir_lifecycle.finalize(PROJECT_ID, record.id, "APPROVE", "OK", "H1", gateway=self.gateway)


@pytest.fixture()
def wirs(members, gateway, header):
    return WirFactory(gateway, header)
