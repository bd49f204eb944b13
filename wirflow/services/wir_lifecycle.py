"""
WIR Lifecycle Engine — record creation, transitions and follow-up chaining.

Status flow:
    Draft --dispatch--> Submitted --send_to_hod--> Recommended --finalize--> Approved | Rejected
    Submitted: runner_update, reschedule (status unchanged)
    Approved:  spawn_follow_up -> new Draft record (same code, version + 1)

Every action follows the same shape:
    1. load the record (project scoped)
    2. status check against WIR_TRANSITIONS     -> InvariantViolation
    3. authority: ball-in-court / acting role   -> PermissionDenied
    4. input + readiness validation              -> ValidationError (nothing written)
    5. commit staged evidence (dependent transitions only)
    6. ONE gateway write: header + runs + history entry

Concurrency:
    - ``transition_guard`` rejects a second in-flight transition on the same
      record id (InvariantViolation)
    - the gateway rejects stale writes (ConflictError); pass the row_version
      you read as ``expected_row_version`` to reject a stale snapshot too

Usage:
    from wirflow.services import wir_lifecycle

    record = wir_lifecycle.dispatch(project_id, wir_id, inspector_id="U1", actor_id="C1")
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import date, datetime, time, timezone

from flask import current_app, has_app_context

from wirflow.core.exceptions import (
    InvariantViolation,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from wirflow.integrations.checklist_catalog import checklist_catalog
from wirflow.integrations.persistence_gateway import persistence_gateway
from wirflow.models.wir import (
    DISCIPLINES,
    DISCUSSION_BODY_MAX,
    HOD_OUTCOMES,
    ITEM_STATUSES,
    PATCHABLE_HEADER_FIELDS,
    RECOMMENDATIONS,
    TERMINAL_STATUSES,
    WIR_TRANSITIONS,
    WirChecklistSelection,
    WirDiscussion,
    WirItem,
    WirItemRun,
    WirRecord,
)
from wirflow.services.evidence_store import EvidenceStore
from wirflow.services.role_resolver import (
    HOD_CAPABILITIES,
    INSPECTOR_CAPABILITIES,
    can_raise,
    resolve_for_actor,
)
from wirflow.services.validation_gate import check_readiness, parse_measurement

logger = logging.getLogger(__name__)

DEFAULT_REMARK_MAX_LEN = 200
RESCHEDULE_REASON_MAX_LEN = 500
TITLE_MAX_LEN = 200

_TIME_FORMATS = ("%H:%M", "%I:%M %p", "%I:%M%p")


# ── Transition guard ─────────────────────────────────────────────────────────


class TransitionGuard:
    """Tracks record ids with a transition in flight."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()

    @contextmanager
    def hold(self, wir_id: str, action: str):
        with self._lock:
            if wir_id in self._in_flight:
                logger.warning(
                    "Rejected overlapping '%s' on record %s", action, wir_id,
                    extra={"wir_id": wir_id, "event_type": action},
                )
                raise InvariantViolation(action, reason="another transition is in progress for this record")
            self._in_flight.add(wir_id)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(wir_id)

    def is_busy(self, wir_id: str) -> bool:
        with self._lock:
            return wir_id in self._in_flight


transition_guard = TransitionGuard()


# ── Routing ──────────────────────────────────────────────────────────────────

# (outcome, prior recommendation bucket) -> who holds the ball afterwards.
# "contractor" routes to the record's contractor (None when it has none).
_NEXT_BIC_ROUTES = {
    ("APPROVE", "APPROVE_WITH_COMMENTS"): "contractor",
    ("APPROVE", "APPROVE"): None,
    ("APPROVE", "OTHER"): None,
    ("REJECT", "APPROVE_WITH_COMMENTS"): "contractor",
    ("REJECT", "APPROVE"): "contractor",
    ("REJECT", "OTHER"): "contractor",
}


def _recommendation_bucket(recommendation: str | None) -> str:
    if recommendation in ("APPROVE", "APPROVE_WITH_COMMENTS"):
        return recommendation
    return "OTHER"


def next_bic(outcome: str, prior_recommendation: str | None, contractor_id: str | None) -> str | None:
    """Ball-in-court after the HOD decision.

    APPROVE after APPROVE_WITH_COMMENTS goes back to the contractor so the
    comments can be closed out; a plain APPROVE ends the chain (NULL);
    any REJECT goes back to the contractor.
    """
    key = (outcome, _recommendation_bucket(prior_recommendation))
    if key not in _NEXT_BIC_ROUTES:
        raise InvariantViolation("finalize", reason=f"unknown outcome '{outcome}'")
    return contractor_id if _NEXT_BIC_ROUTES[key] == "contractor" else None


# ── Helpers ──────────────────────────────────────────────────────────────────


def _gateway(gateway):
    return gateway or persistence_gateway


def _remark_limit() -> int:
    if has_app_context():
        return int(current_app.config.get("WIR_REMARK_MAX_LEN", DEFAULT_REMARK_MAX_LEN))
    return DEFAULT_REMARK_MAX_LEN


def _utcnow():
    return datetime.now(timezone.utc)


def _log_event(record: WirRecord, action: str, actor_id: str | None, from_status: str, message: str, *args) -> None:
    logger.info(
        message, *args,
        extra={
            "project_id": record.project_id,
            "wir_id": record.id,
            "actor_id": actor_id,
            "event_type": action,
            "from_status": from_status,
            "to_status": record.status,
        },
    )


def _require_status(record: WirRecord, action: str) -> None:
    allowed = WIR_TRANSITIONS[action]["from"]
    if record.status not in allowed:
        logger.warning(
            "Invalid '%s' on %s (status=%s)", action, record.code, record.status,
            extra={"project_id": record.project_id, "wir_id": record.id, "event_type": action},
        )
        raise InvariantViolation(
            action, record.status, f"allowed only from {', '.join(allowed)}",
        )


def _require_bic(record: WirRecord, actor_id: str | None, action: str) -> None:
    if not actor_id or record.bic != actor_id:
        raise PermissionDenied(actor_id, action, "actor does not hold the ball in court")


def _require_creator(record: WirRecord, actor_id: str | None, action: str) -> None:
    if not actor_id or record.creator_id != actor_id:
        raise PermissionDenied(actor_id, action, "only the record's author may do this")


def _require_acting(record: WirRecord, actor_id: str | None, allowed: frozenset, action: str):
    acting = resolve_for_actor(record.project_id, actor_id)
    if acting not in allowed:
        raise PermissionDenied(actor_id, action, f"acting capability is {acting.value}")
    return acting


def _check_remark(remark: str | None, field: str) -> str | None:
    text = (remark or "").strip()
    if not text:
        return None
    limit = _remark_limit()
    if len(text) > limit:
        raise ValidationError(
            f"{field} must be at most {limit} characters",
            details={field: f"{len(text)} characters"},
        )
    return text


def _history(action: str, actor_id: str | None, record: WirRecord, *, from_status: str | None = None,
             from_bic: str | None = None, to_status: str | None = None, to_bic: str | None = None,
             notes: str | None = None, meta: dict | None = None) -> dict:
    return {
        "action": action,
        "actor_id": actor_id,
        "from_status": from_status if from_status is not None else record.status,
        "to_status": to_status if to_status is not None else record.status,
        "from_bic": from_bic if from_bic is not None else record.bic,
        "to_bic": to_bic,
        "notes": notes,
        "meta": meta or {},
    }


def _commit_evidence(record: WirRecord, evidence: EvidenceStore | None, gateway, actor_id: str | None) -> int:
    """Upload the caller's staged files; any failure aborts the transition."""
    if evidence is None or not evidence.has_staged:
        return 0
    if evidence.wir_id != record.id:
        raise InvariantViolation("commit_evidence", record.status, "evidence store belongs to another record")
    return len(evidence.commit(gateway, uploaded_by=actor_id))


def parse_date(value) -> date:
    """Accept a date or a ``YYYY-MM-DD`` string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValidationError("Date must be YYYY-MM-DD", details={"date": value})


def parse_time(value) -> str:
    """Accept ``HH:MM`` (24h) or ``HH:MM AM/PM``; return ``HH:MM`` 24h."""
    if isinstance(value, time):
        return value.strftime("%H:%M")
    text = str(value or "").strip().upper()
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).strftime("%H:%M")
        except ValueError:
            continue
    raise ValidationError("Time must be HH:MM or HH:MM AM/PM", details={"time": value})


def _parse_planned_at(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip())
        except ValueError:
            raise ValidationError("planned_at must be an ISO date-time", details={"planned_at": value})
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _normalize_header(header: dict) -> tuple[dict, list[str] | None]:
    """Validate header fields; return (columns, checklist_ids or None)."""
    header = dict(header or {})
    checklist_ids = header.pop("checklist_ids", None)
    unknown = sorted(set(header) - PATCHABLE_HEADER_FIELDS)
    if unknown:
        raise ValidationError(
            f"Field(s) not editable: {', '.join(unknown)}",
            details={f: "not editable" for f in unknown},
        )

    clean: dict = {}
    errors: dict = {}
    for field, value in header.items():
        if field == "planned_at":
            try:
                clean[field] = _parse_planned_at(value)
            except ValidationError as exc:
                errors.update(exc.details)
            continue
        text = value.strip() if isinstance(value, str) else value
        if text in ("", None):
            clean[field] = None
            continue
        if field == "discipline":
            match = next((d for d in DISCIPLINES if d.lower() == str(text).lower()), None)
            if match is None:
                errors[field] = f"must be one of {', '.join(sorted(DISCIPLINES))}"
                continue
            text = match
        elif field == "title" and len(str(text)) > TITLE_MAX_LEN:
            errors[field] = f"must be at most {TITLE_MAX_LEN} characters"
            continue
        clean[field] = str(text)

    if "title" in clean and clean["title"] is None:
        errors["title"] = "must not be empty"
    if checklist_ids is not None:
        if not isinstance(checklist_ids, (list, tuple)):
            errors["checklist_ids"] = "must be a list"
        else:
            checklist_ids = [str(c) for c in checklist_ids if c]
    if errors:
        raise ValidationError("Invalid record header", details=errors)
    return clean, checklist_ids


# ── Reads ────────────────────────────────────────────────────────────────────


def get_wir(project_id: str, wir_id: str, actor_id: str | None = None, *, gateway=None) -> WirRecord:
    """Load a record; a Draft is only visible to its author."""
    record = _gateway(gateway).get(wir_id, project_id)
    if record.status == "Draft" and record.creator_id != actor_id:
        raise NotFoundError(resource="WirRecord", resource_id=wir_id, project_id=project_id)
    return record


def list_wirs(project_id: str, actor_id: str | None, status: str | None = None, *, gateway=None) -> list[WirRecord]:
    return _gateway(gateway).list_records(project_id, visible_to=actor_id, status=status)


def get_history(project_id: str, wir_id: str, actor_id: str | None = None, *, gateway=None) -> list[dict]:
    """Chronological history with a 1-based serial number."""
    record = get_wir(project_id, wir_id, actor_id, gateway=gateway)
    return [{"s_no": idx, **entry.to_dict()} for idx, entry in enumerate(record.history, start=1)]


def list_item_runs(project_id: str, wir_id: str, item_id: str | None = None, actor_id: str | None = None,
                   *, gateway=None) -> list[dict]:
    record = get_wir(project_id, wir_id, actor_id, gateway=gateway)
    items = record.items
    if item_id is not None:
        items = [it for it in items if it.id == item_id]
        if not items:
            raise NotFoundError(resource="WirItem", resource_id=item_id, project_id=project_id)
    runs = [run for it in items for run in it.runs]
    runs.sort(key=lambda r: r.id)
    return [r.to_dict() for r in runs]


def readiness(project_id: str, wir_id: str, actor_id: str | None = None, pending_edits: dict | None = None,
              *, gateway=None) -> dict:
    record = get_wir(project_id, wir_id, actor_id, gateway=gateway)
    return check_readiness(record, pending_edits).to_dict()


def available_actions(record: WirRecord, actor_id: str | None, *, gateway=None) -> list[str]:
    """Engine actions whose status / BIC / capability preconditions hold now."""
    if not actor_id:
        return []
    actions: list[str] = []
    status = record.status
    is_bic = record.bic == actor_id

    if status == "Draft" and record.creator_id == actor_id:
        actions += ["patch", "delete", "dispatch"]
    elif status == "Submitted" and is_bic:
        acting = resolve_for_actor(record.project_id, actor_id)
        if acting in INSPECTOR_CAPABILITIES:
            actions += ["runner_update", "reschedule"]
        actions.append("send_to_hod")
    elif status == "Recommended":
        if resolve_for_actor(record.project_id, actor_id) in HOD_CAPABILITIES:
            actions.append("finalize")
    elif status == "Approved" and is_bic:
        if (
            record.inspector_recommendation == "APPROVE_WITH_COMMENTS"
            and record.hod_outcome == "APPROVE"
            and record.failed_items
            and not _gateway(gateway).has_later_version(record)
        ):
            actions.append("spawn_follow_up")
    return actions


# ── Draft lifecycle ──────────────────────────────────────────────────────────


def create_wir(project_id: str, creator_id: str, header: dict, *, gateway=None) -> WirRecord:
    """Create a Draft record. The creator needs the ``raise`` capability."""
    gw = _gateway(gateway)
    if not can_raise(project_id, creator_id):
        raise PermissionDenied(creator_id, "create", "raise capability required")

    columns, checklist_ids = _normalize_header(header)
    record = WirRecord(
        project_id=project_id,
        status="Draft",
        creator_id=creator_id,
        bic=creator_id,
        is_follow_up=False,
        **columns,
    )
    if not record.title:
        record.title = "Inspection Request"
    if not record.contractor_id:
        record.contractor_id = creator_id
    if checklist_ids:
        record.checklist_selections = [
            WirChecklistSelection(checklist_id=cid) for cid in dict.fromkeys(checklist_ids)
        ]

    gw.create(record, history={
        "action": "Created",
        "actor_id": creator_id,
        "from_status": None,
        "to_status": "Draft",
        "from_bic": None,
        "to_bic": creator_id,
        "meta": {"checklist_ids": record.checklist_ids},
    })
    _log_event(record, "create", creator_id, "", "WIR %s created as Draft", record.code)
    return record


def patch_wir(project_id: str, wir_id: str, actor_id: str, changes: dict, *,
              expected_row_version: int | None = None, gateway=None) -> WirRecord:
    """Edit header fields of a Draft. Status is never changed here."""
    gw = _gateway(gateway)
    record = gw.get(wir_id, project_id)
    if record.status != "Draft":
        raise InvariantViolation("patch", record.status, "only Draft records can be edited")
    _require_creator(record, actor_id, "patch")

    columns, checklist_ids = _normalize_header(changes)
    if checklist_ids is not None and record.is_follow_up:
        raise ValidationError(
            "A follow-up carries its items; checklists cannot be selected",
            details={"checklist_ids": "not allowed on a follow-up"},
        )
    if not columns and checklist_ids is None:
        raise ValidationError("Nothing to update")
    if "contractor_id" in columns and columns["contractor_id"] is None:
        columns["contractor_id"] = record.creator_id

    fields = sorted(columns) + (["checklist_ids"] if checklist_ids is not None else [])
    record = gw.patch(
        wir_id,
        columns,
        expected_row_version=expected_row_version,
        selections=checklist_ids,
        history=_history("Updated", actor_id, record, to_bic=record.bic, meta={"fields": fields}),
    )
    _log_event(record, "patch", actor_id, "Draft", "WIR %s updated (%s)", record.code, ", ".join(fields))
    return record


def delete_draft(project_id: str, wir_id: str, actor_id: str, *, gateway=None) -> None:
    """Delete a Draft. Only its author may do this."""
    gw = _gateway(gateway)
    record = gw.get(wir_id, project_id)
    if record.status != "Draft":
        raise InvariantViolation("delete", record.status, "only Draft records can be deleted")
    _require_creator(record, actor_id, "delete")
    code = record.code
    gw.delete(wir_id)
    logger.info(
        "WIR %s draft deleted", code,
        extra={"project_id": project_id, "wir_id": wir_id, "actor_id": actor_id, "event_type": "delete"},
    )


# ── Transitions ──────────────────────────────────────────────────────────────


def _materialize_items(record: WirRecord, catalog) -> list[WirItem]:
    items: list[WirItem] = []
    for checklist_id in record.checklist_ids:
        for template in catalog.fetch_items(record.project_id, checklist_id):
            tolerance = template.get("tolerance") or {}
            item = WirItem(
                sequence=len(items) + 1,
                code=template.get("code"),
                name=template["name"],
                requirement=template.get("requirement") or "Optional",
                unit=template.get("unit"),
                tolerance_base=tolerance.get("base"),
                tolerance_plus=tolerance.get("plus"),
                tolerance_minus=tolerance.get("minus"),
                critical=bool(template.get("critical")),
                source_checklist_id=checklist_id,
            )
            item.tags = template.get("tags") or []
            items.append(item)
    return items


def dispatch(project_id: str, wir_id: str, inspector_id: str, actor_id: str, *,
             evidence: EvidenceStore | None = None, expected_row_version: int | None = None,
             gateway=None, catalog=None) -> WirRecord:
    """Draft -> Submitted. Materializes checklist items unless the record carries items."""
    gw = _gateway(gateway)
    catalog = catalog or checklist_catalog
    with transition_guard.hold(wir_id, "dispatch"):
        record = gw.get(wir_id, project_id)
        _require_status(record, "dispatch")
        _require_creator(record, actor_id, "dispatch")

        missing = {}
        for field in ("discipline", "activity_id", "planned_at"):
            if not getattr(record, field):
                missing[field] = "required before dispatch"
        if not inspector_id:
            missing["inspector_id"] = "required"
        if not record.is_follow_up and not record.checklist_ids:
            missing["checklist_ids"] = "select at least one checklist"
        if missing:
            raise ValidationError("Record is not ready to dispatch", details=missing)

        new_items: list[WirItem] = []
        if not record.items:
            new_items = _materialize_items(record, catalog)
            if not new_items:
                raise ValidationError(
                    "Selected checklists contain no items",
                    details={"checklist_ids": record.checklist_ids},
                )

        committed = _commit_evidence(record, evidence, gw, actor_id)
        from_status = record.status
        entry = _history(
            "Dispatched", actor_id, record,
            to_status="Submitted", to_bic=inspector_id,
            meta={
                "inspector_id": inspector_id,
                "materialized_items": len(new_items),
                "evidence_committed": committed,
            },
        )
        record = gw.patch(
            wir_id,
            {
                "status": "Submitted",
                "bic": inspector_id,
                "inspector_id": inspector_id,
                "version": record.version or 1,
            },
            expected_row_version=expected_row_version,
            new_items=new_items,
            history=entry,
        )
    _log_event(record, "dispatch", actor_id, from_status, "WIR %s v%s dispatched to %s",
               record.code, record.version, inspector_id)
    return record


def _normalize_item_updates(item_updates) -> dict[str, dict]:
    if not item_updates:
        return {}
    if isinstance(item_updates, dict):
        bad = sorted(str(k) for k, v in item_updates.items() if v is not None and not isinstance(v, dict))
        if bad:
            raise ValidationError("Each item update must be an object",
                                  details={item_id: ["must be an object"] for item_id in bad})
        return {str(k): dict(v or {}) for k, v in item_updates.items()}
    if not isinstance(item_updates, (list, tuple)):
        raise ValidationError("Item updates must be a list or an object", details={"items": "invalid"})
    normalized: dict[str, dict] = {}
    for position, entry in enumerate(item_updates):
        if not isinstance(entry, dict):
            raise ValidationError("Each item update must be an object",
                                  details={f"items[{position}]": ["must be an object"]})
        entry = dict(entry)
        item_id = entry.pop("item_id", None)
        if not item_id:
            raise ValidationError("Each item update needs an item_id", details={"item_id": "required"})
        normalized.setdefault(str(item_id), {}).update(entry)
    return normalized


def runner_update(project_id: str, wir_id: str, actor_id: str, item_updates, *,
                  expected_row_version: int | None = None, gateway=None) -> WirRecord:
    """Record inspector progress on items. The whole batch is applied or none of it.

    ``item_updates``: {item_id: {"status", "value", "unit", "comment"}} or a
    list of the same dicts each carrying ``item_id``.
    """
    gw = _gateway(gateway)
    with transition_guard.hold(wir_id, "runner_update"):
        record = gw.get(wir_id, project_id)
        _require_status(record, "runner_update")
        _require_bic(record, actor_id, "runner_update")
        _require_acting(record, actor_id, INSPECTOR_CAPABILITIES, "runner_update")

        updates = _normalize_item_updates(item_updates)
        if not updates:
            raise ValidationError("No item updates given")

        by_id = {it.id: it for it in record.items}
        errors: dict[str, list[str]] = {}
        parsed: dict[str, dict] = {}
        for item_id, change in updates.items():
            problems = []
            item = by_id.get(item_id)
            if item is None:
                errors[item_id] = ["unknown item"]
                continue
            status = change.get("status")
            if status not in (None, ""):
                status = str(status).strip().upper()
                if status not in ITEM_STATUSES:
                    problems.append(f"status must be one of {', '.join(sorted(ITEM_STATUSES))}")
            else:
                status = None
            raw_value = change.get("value")
            value = None
            if raw_value not in (None, ""):
                value = parse_measurement(raw_value)
                if value is None:
                    problems.append(f"value '{raw_value}' is not a number")
            if problems:
                errors[item_id] = problems
                continue
            comment = change.get("comment")
            comment = comment.strip() if isinstance(comment, str) and comment.strip() else None
            if status is None and value is None and comment is None:
                errors[item_id] = ["nothing to record"]
                continue
            parsed[item_id] = {"status": status, "value": value, "comment": comment,
                               "unit": change.get("unit") or item.unit}
        if errors:
            raise ValidationError("Item updates rejected; nothing was saved", details=errors)

        runs: list[WirItemRun] = []
        mirrors: dict[str, dict] = {}
        for item_id, p in parsed.items():
            runs.append(WirItemRun(
                item_id=item_id,
                actor_id=actor_id,
                value=p["value"],
                unit=p["unit"],
                status=p["status"],
                comment=p["comment"],
            ))
            mirror = {}
            if p["status"] is not None:
                mirror["inspector_status"] = p["status"]
            if p["comment"] is not None:
                mirror["inspector_note"] = p["comment"]
            if mirror:
                mirrors[item_id] = mirror

        from_status = record.status
        record = gw.patch(
            wir_id,
            {},
            expected_row_version=expected_row_version,
            runs=runs,
            item_updates=mirrors,
            history=_history("RunnerUpdated", actor_id, record, to_bic=record.bic,
                             meta={"item_ids": sorted(parsed)}),
        )
    _log_event(record, "runner_update", actor_id, from_status, "WIR %s: %d item(s) updated",
               record.code, len(parsed))
    return record


def send_to_hod(project_id: str, wir_id: str, hod_id: str, recommendation: str | None, remark: str | None,
                actor_id: str, *, evidence: EvidenceStore | None = None,
                expected_row_version: int | None = None, gateway=None) -> WirRecord:
    """Submitted -> Recommended, gated by the readiness check.

    A critical item marked FAIL forces the recommendation to REJECT.
    """
    gw = _gateway(gateway)
    with transition_guard.hold(wir_id, "send_to_hod"):
        record = gw.get(wir_id, project_id)
        _require_status(record, "send_to_hod")
        _require_bic(record, actor_id, "send_to_hod")

        if not hod_id:
            raise ValidationError("An HOD must be selected", details={"hod_id": "required"})
        requested = str(recommendation).strip().upper() if recommendation else None
        if requested is not None and requested not in RECOMMENDATIONS:
            raise ValidationError(
                f"Unknown recommendation '{recommendation}'",
                details={"recommendation": f"must be one of {', '.join(sorted(RECOMMENDATIONS))}"},
            )
        remarks = _check_remark(remark, "remark")

        gate = check_readiness(record, {
            "recommendation": requested,
            "staged_evidence": evidence.staged_counts() if evidence is not None else {},
        })
        if not gate.ok:
            raise ValidationError("Record is not ready for HOD review", missing=gate.missing)

        final = requested or record.inspector_recommendation
        forced = any(it.critical for it in record.failed_items) and final != "REJECT"
        if forced:
            logger.info(
                "WIR %s: critical item failed, recommendation %s forced to REJECT", record.code, final,
                extra={"project_id": project_id, "wir_id": wir_id, "event_type": "send_to_hod"},
            )
            final = "REJECT"

        committed = _commit_evidence(record, evidence, gw, actor_id)
        from_status = record.status
        entry = _history(
            "Recommended", actor_id, record,
            to_status="Recommended", to_bic=hod_id, notes=remarks,
            meta={
                "recommendation": final,
                "requested_recommendation": requested,
                "forced_reject": forced,
                "hod_id": hod_id,
                "evidence_committed": committed,
            },
        )
        record = gw.patch(
            wir_id,
            {
                "status": "Recommended",
                "bic": hod_id,
                "hod_id": hod_id,
                "version": record.version or 1,
                "contractor_id": record.contractor_id or record.creator_id,
                "inspector_recommendation": final,
                "inspector_remarks": remarks,
                "inspector_reviewed_at": _utcnow(),
            },
            expected_row_version=expected_row_version,
            history=entry,
        )
    _log_event(record, "send_to_hod", actor_id, from_status, "WIR %s recommended %s to HOD %s",
               record.code, final, hod_id)
    return record


def finalize(project_id: str, wir_id: str, outcome: str, remark: str | None, actor_id: str, *,
             evidence: EvidenceStore | None = None, expected_row_version: int | None = None,
             gateway=None) -> WirRecord:
    """Recommended -> Approved | Rejected, written in a single update."""
    gw = _gateway(gateway)
    with transition_guard.hold(wir_id, "finalize"):
        record = gw.get(wir_id, project_id)
        _require_status(record, "finalize")
        _require_acting(record, actor_id, HOD_CAPABILITIES, "finalize")

        decision = str(outcome or "").strip().upper()
        if decision not in HOD_OUTCOMES:
            raise ValidationError(
                f"Unknown outcome '{outcome}'",
                details={"outcome": f"must be one of {', '.join(sorted(HOD_OUTCOMES))}"},
            )
        remarks = _check_remark(remark, "remark")
        new_status = "Approved" if decision == "APPROVE" else "Rejected"
        new_bic = next_bic(decision, record.inspector_recommendation, record.contractor_id)

        committed = _commit_evidence(record, evidence, gw, actor_id)
        header = {
            "hod_outcome": decision,
            "hod_decided_at": _utcnow(),
            "bic": new_bic,
            "status": new_status,
        }
        if remarks:
            header["hod_remarks"] = remarks

        from_status = record.status
        entry = _history(
            new_status, actor_id, record,
            to_status=new_status, to_bic=new_bic, notes=remarks,
            meta={
                "outcome": decision,
                "prior_recommendation": record.inspector_recommendation,
                "evidence_committed": committed,
            },
        )
        record = gw.patch(wir_id, header, expected_row_version=expected_row_version, history=entry)
    _log_event(record, "finalize", actor_id, from_status, "WIR %s finalized: %s", record.code, new_status)
    return record


def reschedule(project_id: str, wir_id: str, new_date, new_time, reason: str | None, actor_id: str, *,
               expected_row_version: int | None = None, gateway=None) -> WirRecord:
    """Record a new inspection slot. Status, version and BIC are unchanged."""
    gw = _gateway(gateway)
    with transition_guard.hold(wir_id, "reschedule"):
        record = gw.get(wir_id, project_id)
        _require_status(record, "reschedule")
        _require_bic(record, actor_id, "reschedule")
        _require_acting(record, actor_id, INSPECTOR_CAPABILITIES, "reschedule")

        slot_date = parse_date(new_date)
        slot_time = parse_time(new_time)
        why = (reason or "").strip() or None
        if why and len(why) > RESCHEDULE_REASON_MAX_LEN:
            raise ValidationError(
                f"reason must be at most {RESCHEDULE_REASON_MAX_LEN} characters",
                details={"reason": f"{len(why)} characters"},
            )

        previous = None
        if record.reschedule_date or record.reschedule_time:
            previous = {
                "date": record.reschedule_date.isoformat() if record.reschedule_date else None,
                "time": record.reschedule_time,
            }
        record = gw.patch(
            wir_id,
            {
                "reschedule_date": slot_date,
                "reschedule_time": slot_time,
                "reschedule_reason": why,
                "rescheduled_by_id": actor_id,
            },
            expected_row_version=expected_row_version,
            history=_history(
                "Rescheduled", actor_id, record, to_bic=record.bic, notes=why,
                meta={"date": slot_date.isoformat(), "time": slot_time, "previous": previous},
            ),
        )
    _log_event(record, "reschedule", actor_id, record.status, "WIR %s rescheduled to %s %s",
               record.code, slot_date.isoformat(), slot_time)
    return record


def spawn_follow_up(project_id: str, wir_id: str, new_date, new_time, note: str | None, actor_id: str, *,
                    expected_row_version: int | None = None, gateway=None) -> WirRecord:
    """Create the next version of an approved-with-comments record.

    The child is a Draft carrying copies of the parent's FAIL items; the
    parent gets a FollowUpSpawned history entry in the same write.
    """
    gw = _gateway(gateway)
    with transition_guard.hold(wir_id, "spawn_follow_up"):
        parent = gw.get(wir_id, project_id)
        _require_status(parent, "spawn_follow_up")
        if parent.inspector_recommendation != "APPROVE_WITH_COMMENTS" or parent.hod_outcome != "APPROVE":
            raise ValidationError(
                "Follow-ups are only raised for records approved with comments",
                details={
                    "inspector_recommendation": parent.inspector_recommendation,
                    "hod_outcome": parent.hod_outcome,
                },
            )
        _require_bic(parent, actor_id, "spawn_follow_up")
        if gw.has_later_version(parent):
            raise ValidationError(
                f"A follow-up of {parent.code} already exists",
                details={"code": parent.code, "version": parent.version},
            )

        failed = parent.failed_items
        if not failed:
            raise ValidationError("Nothing to carry forward", details={"failed_items": 0})

        planned_at = None
        if new_date not in (None, ""):
            slot_date = parse_date(new_date)
            slot_time = parse_time(new_time) if new_time not in (None, "") else "00:00"
            hour, minute = (int(p) for p in slot_time.split(":"))
            planned_at = datetime.combine(slot_date, time(hour, minute))

        contractor_id = parent.contractor_id
        child = WirRecord(
            project_id=parent.project_id,
            code=parent.code,
            title=parent.title,
            discipline=parent.discipline,
            activity_id=parent.activity_id,
            status="Draft",
            version=(parent.version or 1) + 1,
            planned_at=planned_at,
            location=parent.location,
            description=(note or "").strip() or parent.description,
            creator_id=actor_id,
            contractor_id=contractor_id,
            bic=contractor_id or actor_id,
            prev_record_id=parent.id,
            is_follow_up=True,
        )
        for seq, item in enumerate(failed, start=1):
            copy = WirItem(
                sequence=seq,
                code=item.code,
                name=item.name,
                requirement=item.requirement,
                unit=item.unit,
                tolerance_base=item.tolerance_base,
                tolerance_plus=item.tolerance_plus,
                tolerance_minus=item.tolerance_minus,
                critical=item.critical,
                tags_json=item.tags_json,
                source_checklist_id=item.source_checklist_id,
                carried_from_item_id=item.id,
            )
            child.items.append(copy)

        carried = [it.id for it in failed]
        parent_entry = _history(
            "FollowUpSpawned", actor_id, parent, to_bic=parent.bic, notes=note,
            meta={"version": child.version, "carried_item_ids": carried},
        )
        gw.create(
            child,
            history={
                "action": "Created",
                "actor_id": actor_id,
                "from_status": None,
                "to_status": "Draft",
                "from_bic": None,
                "to_bic": child.bic,
                "notes": note,
                "meta": {"prev_record_id": parent.id, "carried_item_ids": carried},
            },
            linked=(parent.id, parent_entry, expected_row_version),
        )
    _log_event(child, "spawn_follow_up", actor_id, "Approved", "WIR %s v%s follow-up raised with %d item(s)",
               child.code, child.version, len(carried))
    return child


# ── Evidence outside a transition ────────────────────────────────────────────


def _require_evidence_access(record: WirRecord, actor_id: str | None, action: str) -> None:
    if record.status in TERMINAL_STATUSES:
        raise InvariantViolation(action, record.status, "finalized records are frozen")
    _require_bic(record, actor_id, action)


def add_evidence(project_id: str, wir_id: str, item_id: str, files: list[dict], actor_id: str, *,
                 gateway=None) -> list[dict]:
    """Attach files to an item right away (stage + commit in one call)."""
    gw = _gateway(gateway)
    record = gw.get(wir_id, project_id)
    _require_evidence_access(record, actor_id, "add_evidence")
    if item_id not in {it.id for it in record.items}:
        raise NotFoundError(resource="WirItem", resource_id=item_id, project_id=project_id)
    if not files:
        raise ValidationError("No files given")

    store = EvidenceStore.for_record(record)
    before = len(store.persisted(item_id))
    for f in files:
        store.stage(item_id, filename=f.get("filename") or "attachment", kind=f.get("kind") or "photo",
                    content=f.get("content"), url=f.get("url"))
    try:
        store.commit(gw, uploaded_by=actor_id)
    except Exception:
        # Files committed before the failure stay valid and are still recorded.
        refs = store.persisted(item_id)[before:]
        if refs:
            try:
                _record_evidence_added(gw, record, item_id, refs, actor_id)
            except Exception:
                logger.warning(
                    "EvidenceAdded history not written after a failed upload on %s", record.code,
                    exc_info=True, extra={"wir_id": wir_id, "actor_id": actor_id, "event_type": "add_evidence"},
                )
        raise
    refs = store.persisted(item_id)[before:]
    _record_evidence_added(gw, record, item_id, refs, actor_id)
    return refs


def _record_evidence_added(gw, record: WirRecord, item_id: str, refs: list[dict], actor_id: str) -> None:
    gw.append_history(record.id, _history(
        "EvidenceAdded", actor_id, record, to_bic=record.bic,
        meta={"item_id": item_id, "evidence_ids": [r["id"] for r in refs]},
    ))


def delete_evidence(project_id: str, wir_id: str, evidence_id: str, actor_id: str, *, gateway=None) -> None:
    gw = _gateway(gateway)
    record = gw.get(wir_id, project_id)
    _require_evidence_access(record, actor_id, "delete_evidence")
    store = EvidenceStore.for_record(record)
    store.delete(gw, evidence_id)
    gw.append_history(wir_id, _history(
        "EvidenceDeleted", actor_id, record, to_bic=record.bic,
        meta={"evidence_id": evidence_id},
    ))


# ── Discussions ──────────────────────────────────────────────────────────────


def _check_discussion_body(body) -> str:
    if body is not None and not isinstance(body, str):
        raise ValidationError("Comment body must be text", details={"body": "invalid"})
    text = (body or "").strip()
    if not text:
        raise ValidationError("Comment body is required", details={"body": "required"})
    if len(text) > DISCUSSION_BODY_MAX:
        raise ValidationError(
            f"Comment body must be at most {DISCUSSION_BODY_MAX} characters",
            details={"body": f"{len(text)} characters"},
        )
    return text


def list_discussions(project_id: str, wir_id: str, actor_id: str | None = None, *, gateway=None) -> list[dict]:
    """Live comments in posting order. Replies are flat; clients thread by parent_id."""
    gw = _gateway(gateway)
    record = get_wir(project_id, wir_id, actor_id, gateway=gw)
    return [row.to_dict() for row in gw.list_discussions(record.id)]


def add_discussion(project_id: str, wir_id: str, actor_id: str, body, parent_id: str | None = None, *,
                   gateway=None) -> WirDiscussion:
    gw = _gateway(gateway)
    record = get_wir(project_id, wir_id, actor_id, gateway=gw)
    if not actor_id:
        raise PermissionDenied(actor_id, "add_discussion", "an actor is required")
    text = _check_discussion_body(body)
    if parent_id:
        try:
            gw.get_discussion(record.id, parent_id)
        except NotFoundError:
            raise ValidationError("Reply target is not a comment on this record",
                                  details={"parent_id": parent_id}) from None

    row = WirDiscussion(id=str(uuid.uuid4()), wir_id=record.id, parent_id=parent_id or None,
                        author_id=actor_id, body=text)
    gw.save_discussion(row, _history(
        "DiscussionAdded", actor_id, record, to_bic=record.bic,
        meta={"discussion_id": row.id, "parent_id": row.parent_id},
    ))
    logger.info("Comment added on %s", record.code,
                extra={"wir_id": record.id, "actor_id": actor_id, "event_type": "add_discussion"})
    return row


def _own_discussion(gw, record: WirRecord, discussion_id: str, actor_id: str | None, action: str) -> WirDiscussion:
    row = gw.get_discussion(record.id, discussion_id)
    if not actor_id or row.author_id != actor_id:
        raise PermissionDenied(actor_id, action, "only the comment's author may do this")
    return row


def update_discussion(project_id: str, wir_id: str, discussion_id: str, actor_id: str, body, *,
                      gateway=None) -> WirDiscussion:
    gw = _gateway(gateway)
    record = get_wir(project_id, wir_id, actor_id, gateway=gw)
    row = _own_discussion(gw, record, discussion_id, actor_id, "update_discussion")
    row.body = _check_discussion_body(body)
    return gw.save_discussion(row, _history(
        "DiscussionUpdated", actor_id, record, to_bic=record.bic, meta={"discussion_id": row.id},
    ))


def delete_discussion(project_id: str, wir_id: str, discussion_id: str, actor_id: str, *, gateway=None) -> None:
    """Soft delete; replies keep pointing at the removed comment."""
    gw = _gateway(gateway)
    record = get_wir(project_id, wir_id, actor_id, gateway=gw)
    row = _own_discussion(gw, record, discussion_id, actor_id, "delete_discussion")
    row.deleted_at = _utcnow()
    gw.save_discussion(row, _history(
        "DiscussionDeleted", actor_id, record, to_bic=record.bic, meta={"discussion_id": row.id},
    ))
