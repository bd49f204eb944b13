"""
WIR Workflow Engine
Work Inspection Request domain models.

Models:
    - WirRecord: the inspection request aggregate (header + lifecycle state)
    - WirChecklistSelection: checklist ids picked while the record is Draft
    - WirItem: a concrete checklist item instance, owned by one record
    - WirItemRun: append-only measurement / status log for an item
    - WirEvidence: attachment reference for an item (capped per item)
    - WirHistory: append-only lifecycle log for a record
    - WirDiscussion: author-owned comments on a record

Runs and history rows are NEVER updated or deleted. The item's
``latest_run`` projection is what readers use for "current" values.
"""

import json
import uuid
from datetime import datetime, timezone

from wirflow.models import db


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

WIR_STATUSES = ("Draft", "Submitted", "Recommended", "Approved", "Rejected")

# Approved and Rejected share a rank: both are terminal, neither follows the other.
STATUS_RANK = {
    "Draft": 0,
    "Submitted": 1,
    "Recommended": 2,
    "Approved": 3,
    "Rejected": 3,
}

TERMINAL_STATUSES = frozenset({"Approved", "Rejected"})

DISCIPLINES = frozenset({"Civil", "MEP", "Finishes"})

RECOMMENDATIONS = frozenset({"APPROVE", "APPROVE_WITH_COMMENTS", "REJECT"})
HOD_OUTCOMES = frozenset({"APPROVE", "REJECT"})

ITEM_STATUSES = frozenset({"PASS", "FAIL", "NA"})
ITEM_REQUIREMENTS = frozenset({"Mandatory", "Optional"})

MEASUREMENT_TAG = "measurement"
EVIDENCE_TAGS = frozenset({"evidence", "document", "photo"})

EVIDENCE_KINDS = frozenset({"photo", "document", "evidence", "other"})

# Engine transitions: which statuses each action may start from.
# ``to`` is None when the action keeps the status or derives it from input.
WIR_TRANSITIONS = {
    "dispatch": {"from": ["Draft"], "to": "Submitted"},
    "runner_update": {"from": ["Submitted"], "to": None},
    "send_to_hod": {"from": ["Submitted"], "to": "Recommended"},
    "finalize": {"from": ["Recommended"], "to": None},
    "reschedule": {"from": ["Submitted"], "to": None},
    "spawn_follow_up": {"from": ["Approved"], "to": None},
}

HISTORY_ACTIONS = frozenset({
    "Created",
    "Updated",
    "Dispatched",
    "RunnerUpdated",
    "Recommended",
    "Approved",
    "Rejected",
    "Rescheduled",
    "FollowUpSpawned",
    "EvidenceAdded",
    "EvidenceDeleted",
    "DiscussionAdded",
    "DiscussionUpdated",
    "DiscussionDeleted",
})

DISCUSSION_BODY_MAX = 2000

# Header fields a caller may change through a Draft patch.
PATCHABLE_HEADER_FIELDS = frozenset({
    "title",
    "discipline",
    "activity_id",
    "planned_at",
    "location",
    "description",
    "contractor_id",
})


# ── WirRecord ────────────────────────────────────────────────────────────────


class WirRecord(db.Model):
    """
    Work Inspection Request.

    ``version`` is the business version of the inspection chain (1 for the
    first dispatch, parent+1 for a follow-up). ``row_version`` is the
    optimistic-concurrency token SQLAlchemy bumps on every UPDATE; a stale
    write raises StaleDataError, which the persistence gateway maps to
    ConflictError.
    """

    __tablename__ = "wir_records"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    code = db.Column(db.String(20), nullable=False, comment="WIR-0001; follow-ups keep the parent code")
    title = db.Column(db.String(200), nullable=False, default="Inspection Request")
    discipline = db.Column(db.String(20), nullable=True, comment="Civil | MEP | Finishes")
    activity_id = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(20), nullable=False, default="Draft")
    version = db.Column(db.Integer, nullable=True, comment="NULL until first dispatch")

    planned_at = db.Column(db.DateTime, nullable=True)
    reschedule_date = db.Column(db.Date, nullable=True)
    reschedule_time = db.Column(db.String(8), nullable=True)
    reschedule_reason = db.Column(db.String(500), nullable=True)
    rescheduled_by_id = db.Column(db.String(64), nullable=True)

    location = db.Column(db.String(200), nullable=True)
    description = db.Column(db.Text, nullable=True)

    # Actors
    creator_id = db.Column(db.String(64), nullable=False)
    bic = db.Column(db.String(64), nullable=True, index=True, comment="Ball-in-court: one actor id or NULL")
    inspector_id = db.Column(db.String(64), nullable=True)
    hod_id = db.Column(db.String(64), nullable=True)
    contractor_id = db.Column(db.String(64), nullable=True)

    # Inspector recommendation
    inspector_recommendation = db.Column(db.String(30), nullable=True)
    inspector_remarks = db.Column(db.String(200), nullable=True)
    inspector_reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # HOD decision
    hod_outcome = db.Column(db.String(10), nullable=True)
    hod_remarks = db.Column(db.String(200), nullable=True)
    hod_decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Follow-up chain
    prev_record_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_records.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_follow_up = db.Column(db.Boolean, nullable=False, default=False)

    row_version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    items = db.relationship(
        "WirItem",
        backref="record",
        order_by="WirItem.sequence",
        cascade="all, delete-orphan",
    )
    checklist_selections = db.relationship(
        "WirChecklistSelection",
        backref="record",
        cascade="all, delete-orphan",
    )
    history = db.relationship(
        "WirHistory",
        backref="record",
        order_by="WirHistory.id",
        cascade="all, delete-orphan",
    )
    discussions = db.relationship(
        "WirDiscussion",
        backref="record",
        order_by="WirDiscussion.created_at",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        db.Index("ix_wir_project_code", "project_id", "code"),
        db.UniqueConstraint("project_id", "code", "version", name="uq_wir_code_version"),
        # One chain root per code; follow-ups share their root's code.
        db.Index(
            "uq_wir_root_code", "project_id", "code", unique=True,
            postgresql_where=db.text("is_follow_up = false"),
            sqlite_where=db.text("is_follow_up = 0"),
        ),
    )
    __mapper_args__ = {"version_id_col": row_version}

    @property
    def checklist_ids(self) -> list[str]:
        return sorted(sel.checklist_id for sel in self.checklist_selections)

    @property
    def failed_items(self) -> list["WirItem"]:
        return [it for it in self.items if it.inspector_status == "FAIL"]

    def to_dict(self, include_items: bool = False) -> dict:
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "code": self.code,
            "title": self.title,
            "discipline": self.discipline,
            "activity_id": self.activity_id,
            "status": self.status,
            "version": self.version,
            "planned_at": _iso(self.planned_at),
            "reschedule": None,
            "location": self.location,
            "description": self.description,
            "creator_id": self.creator_id,
            "bic": self.bic,
            "inspector_id": self.inspector_id,
            "hod_id": self.hod_id,
            "contractor_id": self.contractor_id,
            "inspector_recommendation": self.inspector_recommendation,
            "inspector_remarks": self.inspector_remarks,
            "inspector_reviewed_at": _iso(self.inspector_reviewed_at),
            "hod_outcome": self.hod_outcome,
            "hod_remarks": self.hod_remarks,
            "hod_decided_at": _iso(self.hod_decided_at),
            "prev_record_id": self.prev_record_id,
            "is_follow_up": bool(self.is_follow_up),
            "checklist_ids": self.checklist_ids,
            "item_count": len(self.items),
            "row_version": self.row_version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if self.reschedule_date or self.reschedule_time:
            d["reschedule"] = {
                "date": _iso(self.reschedule_date),
                "time": self.reschedule_time,
                "reason": self.reschedule_reason,
                "by_actor_id": self.rescheduled_by_id,
            }
        if include_items:
            d["items"] = [it.to_dict() for it in self.items]
        return d

    def __repr__(self):
        return f"<WirRecord {self.code} v{self.version} {self.status}>"


# ── Checklist selection ──────────────────────────────────────────────────────


class WirChecklistSelection(db.Model):
    """A checklist chosen for materialization at dispatch."""

    __tablename__ = "wir_checklist_selections"

    id = db.Column(db.Integer, primary_key=True)
    wir_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    checklist_id = db.Column(db.String(36), nullable=False)

    __table_args__ = (
        db.UniqueConstraint("wir_id", "checklist_id", name="uq_wir_checklist"),
    )


# ── WirItem ──────────────────────────────────────────────────────────────────


class WirItem(db.Model):
    """Concrete inspection item, materialized at dispatch or carried by a follow-up."""

    __tablename__ = "wir_items"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    wir_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = db.Column(db.Integer, nullable=False, default=0)
    code = db.Column(db.String(50), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    requirement = db.Column(db.String(12), nullable=False, default="Optional")
    unit = db.Column(db.String(20), nullable=True)
    tolerance_base = db.Column(db.Float, nullable=True)
    tolerance_plus = db.Column(db.Float, nullable=True)
    tolerance_minus = db.Column(db.Float, nullable=True)
    critical = db.Column(db.Boolean, nullable=False, default=False)
    tags_json = db.Column(db.Text, nullable=False, default="[]")

    inspector_status = db.Column(db.String(4), nullable=True, comment="PASS | FAIL | NA")
    inspector_note = db.Column(db.Text, nullable=True)

    source_checklist_id = db.Column(db.String(36), nullable=True)
    carried_from_item_id = db.Column(db.String(36), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    runs = db.relationship(
        "WirItemRun",
        backref="item",
        order_by="WirItemRun.id",
        cascade="all, delete-orphan",
    )
    evidences = db.relationship(
        "WirEvidence",
        backref="item",
        order_by="WirEvidence.created_at",
        cascade="all, delete-orphan",
    )

    @property
    def tags(self) -> frozenset:
        try:
            return frozenset(json.loads(self.tags_json or "[]"))
        except (json.JSONDecodeError, TypeError):
            return frozenset()

    @tags.setter
    def tags(self, values):
        self.tags_json = json.dumps(sorted({str(v).strip().lower() for v in (values or []) if v}))

    @property
    def is_mandatory(self) -> bool:
        return self.requirement == "Mandatory"

    @property
    def latest_run(self):
        return self.runs[-1] if self.runs else None

    @property
    def latest_value(self):
        """Newest numeric measurement, or None if none was recorded."""
        for run in reversed(self.runs):
            if run.value is not None:
                return run.value
        return None

    def to_dict(self) -> dict:
        latest = self.latest_run
        return {
            "id": self.id,
            "wir_id": self.wir_id,
            "sequence": self.sequence,
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
            "tags": sorted(self.tags),
            "inspector_status": self.inspector_status,
            "inspector_note": self.inspector_note,
            "latest_value": self.latest_value,
            "latest_run": latest.to_dict() if latest else None,
            "run_count": len(self.runs),
            "evidences": [e.to_dict() for e in self.evidences],
            "source_checklist_id": self.source_checklist_id,
            "carried_from_item_id": self.carried_from_item_id,
        }


# ── WirItemRun ───────────────────────────────────────────────────────────────


class WirItemRun(db.Model):
    """One inspector submission for an item. Append-only."""

    __tablename__ = "wir_item_runs"

    id = db.Column(db.Integer, primary_key=True)
    wir_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    actor_id = db.Column(db.String(64), nullable=True)
    value = db.Column(db.Float, nullable=True)
    unit = db.Column(db.String(20), nullable=True)
    status = db.Column(db.String(4), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    recorded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wir_id": self.wir_id,
            "item_id": self.item_id,
            "actor_id": self.actor_id,
            "value": self.value,
            "unit": self.unit,
            "status": self.status,
            "comment": self.comment,
            "timestamp": _iso(self.recorded_at),
        }


# ── WirEvidence ──────────────────────────────────────────────────────────────


class WirEvidence(db.Model):
    """Committed attachment for an item."""

    __tablename__ = "wir_evidences"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    wir_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    item_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind = db.Column(db.String(20), nullable=False, default="photo")
    url = db.Column(db.String(500), nullable=False)
    filename = db.Column(db.String(255), nullable=True)
    uploaded_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wir_id": self.wir_id,
            "item_id": self.item_id,
            "kind": self.kind,
            "url": self.url,
            "filename": self.filename,
            "uploaded_by": self.uploaded_by,
            "timestamp": _iso(self.created_at),
        }


# ── WirHistory ───────────────────────────────────────────────────────────────


class WirHistory(db.Model):
    """
    Immutable lifecycle log entry.

    One row per mutating action. ``meta_json`` carries action-specific
    payload (schedule change, carried item ids, committed evidence ...).
    """

    __tablename__ = "wir_history"

    id = db.Column(db.Integer, primary_key=True)
    wir_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action = db.Column(db.String(30), nullable=False)
    actor_id = db.Column(db.String(64), nullable=True)
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=True)
    from_bic = db.Column(db.String(64), nullable=True)
    to_bic = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    meta_json = db.Column(db.Text, nullable=False, default="{}")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    @property
    def meta(self) -> dict:
        try:
            return json.loads(self.meta_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wir_id": self.wir_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "from_bic": self.from_bic,
            "to_bic": self.to_bic,
            "notes": self.notes,
            "meta": self.meta,
            "timestamp": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<WirHistory {self.id}: {self.action} on {self.wir_id}>"


# ── WirDiscussion ────────────────────────────────────────────────────────────


class WirDiscussion(db.Model):
    """
    Comment thread entry on a record.

    Flat list; clients thread by ``parent_id``. Only the author may edit
    or delete. Deletion is soft so replies keep their parent.
    """

    __tablename__ = "wir_discussions"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    wir_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    parent_id = db.Column(
        db.String(36),
        db.ForeignKey("wir_discussions.id", ondelete="SET NULL"),
        nullable=True,
    )
    author_id = db.Column(db.String(64), nullable=False)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "wir_id": self.wir_id,
            "parent_id": self.parent_id,
            "author_id": self.author_id,
            "body": self.body,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<WirDiscussion {self.id} by {self.author_id} on {self.wir_id}>"
