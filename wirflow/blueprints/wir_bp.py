"""WIR blueprint — Work Inspection Request records and lifecycle actions.

Endpoint groups:
  Records           GET/POST         /api/v1/projects/<project_id>/wir
                    GET/PATCH/DELETE /api/v1/projects/<project_id>/wir/<wir_id>
  Transitions       POST /wir/<wir_id>/dispatch
                    POST /wir/<wir_id>/runner
                    POST /wir/<wir_id>/send-to-hod
                    POST /wir/<wir_id>/finalize
                    POST /wir/<wir_id>/reschedule
                    POST /wir/<wir_id>/follow-up
  Read models       GET  /wir/<wir_id>/readiness
                    GET  /wir/<wir_id>/history
                    GET  /wir/<wir_id>/actions
                    GET  /wir/<wir_id>/items/<item_id>/runs
  Evidence          POST   /wir/<wir_id>/items/<item_id>/evidences
                    DELETE /wir/<wir_id>/evidences/<evidence_id>
  Discussions       GET/POST         /wir/<wir_id>/discussions
                    PATCH/DELETE     /wir/<wir_id>/discussions/<discussion_id>

The acting user comes from the ``X-Actor-Id`` header. Write bodies may carry
``expected_row_version`` (the ``row_version`` the caller last read); a stale
value is answered with 409.
The lifecycle service owns all business rules and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from wirflow.blueprints import paginate
from wirflow.core.exceptions import (
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PermissionDenied,
    TransientIOError,
    ValidationError,
)
from wirflow.services import wir_lifecycle as lifecycle
from wirflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

wir_bp = Blueprint("wir", __name__, url_prefix="/api/v1/projects/<project_id>")


# ── Request helpers ───────────────────────────────────────────────────────────


def _actor_id() -> str | None:
    return (request.headers.get("X-Actor-Id") or "").strip() or None


def _actor_required() -> tuple[str | None, tuple | None]:
    actor_id = _actor_id()
    if not actor_id:
        return None, api_error(E.UNAUTHENTICATED, "X-Actor-Id header is required")
    return actor_id, None


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _row_version(data: dict) -> int | None:
    value = data.get("expected_row_version")
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("expected_row_version must be an integer",
                              details={"expected_row_version": value})


# ── Error handlers ────────────────────────────────────────────────────────────


@wir_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@wir_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    if error.missing:
        return api_error(E.GATE_BLOCKED, str(error), details={"missing": error.missing, **error.details})
    return api_error(E.VALIDATION_RULE, str(error), details=error.details)


@wir_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STALE, str(error), details={"expected": error.expected, "actual": error.actual})


@wir_bp.errorhandler(InvariantViolation)
def _handle_invariant(error: InvariantViolation):
    logger.warning("Invariant violation: %s", error)
    return api_error(E.CONFLICT_STATE, str(error), details={"current_status": error.current_status})


@wir_bp.errorhandler(PermissionDenied)
def _handle_forbidden(error: PermissionDenied):
    return api_error(E.FORBIDDEN, str(error))


@wir_bp.errorhandler(TransientIOError)
def _handle_transient(error: TransientIOError):
    details = {"filename": error.filename} if error.filename else None
    return api_error(E.TRANSIENT_IO, str(error), details=details)


@wir_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in wir_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Records
# ═════════════════════════════════════════════════════════════════════════


@wir_bp.route("/wir", methods=["GET"])
def list_wirs(project_id):
    """List records visible to the caller. Query: status?, limit?, offset?"""
    records = lifecycle.list_wirs(project_id, _actor_id(), status=request.args.get("status"))
    page, total = paginate(records)
    return jsonify({"items": [r.to_dict() for r in page], "total": total}), 200


@wir_bp.route("/wir", methods=["POST"])
def create_wir(project_id):
    """Create a Draft.

    Body: {title?, discipline?, activity_id?, planned_at?, location?,
           description?, contractor_id?, checklist_ids?: [...]}
    """
    actor_id, err = _actor_required()
    if err:
        return err
    record = lifecycle.create_wir(project_id, actor_id, _body())
    return jsonify(record.to_dict(include_items=True)), 201


@wir_bp.route("/wir/<wir_id>", methods=["GET"])
def get_wir(project_id, wir_id):
    record = lifecycle.get_wir(project_id, wir_id, _actor_id())
    return jsonify(record.to_dict(include_items=True)), 200


@wir_bp.route("/wir/<wir_id>", methods=["PATCH"])
def patch_wir(project_id, wir_id):
    actor_id, err = _actor_required()
    if err:
        return err
    data = dict(_body())
    expected = _row_version(data)
    data.pop("expected_row_version", None)
    record = lifecycle.patch_wir(project_id, wir_id, actor_id, data, expected_row_version=expected)
    return jsonify(record.to_dict(include_items=True)), 200


@wir_bp.route("/wir/<wir_id>", methods=["DELETE"])
def delete_wir(project_id, wir_id):
    actor_id, err = _actor_required()
    if err:
        return err
    lifecycle.delete_draft(project_id, wir_id, actor_id)
    return jsonify({"deleted": True, "id": wir_id}), 200


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════


@wir_bp.route("/wir/<wir_id>/dispatch", methods=["POST"])
def dispatch(project_id, wir_id):
    """Body: {inspector_id, expected_row_version?}"""
    actor_id, err = _actor_required()
    if err:
        return err
    data = _body()
    inspector_id = (data.get("inspector_id") or "").strip()
    if not inspector_id:
        return api_error(E.VALIDATION_REQUIRED, "inspector_id is required")
    record = lifecycle.dispatch(project_id, wir_id, inspector_id, actor_id,
                                expected_row_version=_row_version(data))
    return jsonify(record.to_dict(include_items=True)), 200


@wir_bp.route("/wir/<wir_id>/runner", methods=["POST"])
def runner_update(project_id, wir_id):
    """Body: {items: [{item_id, status?, value?, unit?, comment?}], expected_row_version?}"""
    actor_id, err = _actor_required()
    if err:
        return err
    data = _body()
    items = data.get("items")
    if not isinstance(items, (list, dict)) or not items:
        return api_error(E.VALIDATION_REQUIRED, "items is required")
    record = lifecycle.runner_update(project_id, wir_id, actor_id, items,
                                     expected_row_version=_row_version(data))
    return jsonify(record.to_dict(include_items=True)), 200


@wir_bp.route("/wir/<wir_id>/send-to-hod", methods=["POST"])
def send_to_hod(project_id, wir_id):
    """Body: {hod_id, recommendation, remark?, expected_row_version?}"""
    actor_id, err = _actor_required()
    if err:
        return err
    data = _body()
    hod_id = (data.get("hod_id") or "").strip()
    if not hod_id:
        return api_error(E.VALIDATION_REQUIRED, "hod_id is required")
    record = lifecycle.send_to_hod(
        project_id, wir_id, hod_id, data.get("recommendation"), data.get("remark"), actor_id,
        expected_row_version=_row_version(data),
    )
    return jsonify(record.to_dict(include_items=True)), 200


@wir_bp.route("/wir/<wir_id>/finalize", methods=["POST"])
def finalize(project_id, wir_id):
    """Body: {outcome: APPROVE|REJECT, remark?, expected_row_version?}"""
    actor_id, err = _actor_required()
    if err:
        return err
    data = _body()
    if not data.get("outcome"):
        return api_error(E.VALIDATION_REQUIRED, "outcome is required")
    record = lifecycle.finalize(project_id, wir_id, data["outcome"], data.get("remark"), actor_id,
                                expected_row_version=_row_version(data))
    return jsonify(record.to_dict(include_items=True)), 200


@wir_bp.route("/wir/<wir_id>/reschedule", methods=["POST"])
def reschedule(project_id, wir_id):
    """Body: {date: YYYY-MM-DD, time: HH:MM | HH:MM AM/PM, reason?, expected_row_version?}"""
    actor_id, err = _actor_required()
    if err:
        return err
    data = _body()
    if not data.get("date") or not data.get("time"):
        return api_error(E.VALIDATION_REQUIRED, "date and time are required")
    record = lifecycle.reschedule(project_id, wir_id, data["date"], data["time"], data.get("reason"),
                                  actor_id, expected_row_version=_row_version(data))
    return jsonify(record.to_dict()), 200


@wir_bp.route("/wir/<wir_id>/follow-up", methods=["POST"])
def spawn_follow_up(project_id, wir_id):
    """Body: {date?, time?, note?, expected_row_version?}  Returns the new Draft (201)."""
    actor_id, err = _actor_required()
    if err:
        return err
    data = _body()
    child = lifecycle.spawn_follow_up(project_id, wir_id, data.get("date"), data.get("time"),
                                      data.get("note"), actor_id,
                                      expected_row_version=_row_version(data))
    return jsonify(child.to_dict(include_items=True)), 201


# ═════════════════════════════════════════════════════════════════════════
# Read models
# ═════════════════════════════════════════════════════════════════════════


@wir_bp.route("/wir/<wir_id>/readiness", methods=["GET"])
def readiness(project_id, wir_id):
    """Query: recommendation? (overlaid as a pending selection)"""
    pending = {}
    if request.args.get("recommendation"):
        pending["recommendation"] = request.args["recommendation"].strip().upper()
    return jsonify(lifecycle.readiness(project_id, wir_id, _actor_id(), pending)), 200


@wir_bp.route("/wir/<wir_id>/history", methods=["GET"])
def history(project_id, wir_id):
    entries = lifecycle.get_history(project_id, wir_id, _actor_id())
    return jsonify({"items": entries, "total": len(entries)}), 200


@wir_bp.route("/wir/<wir_id>/actions", methods=["GET"])
def actions(project_id, wir_id):
    actor_id = _actor_id()
    record = lifecycle.get_wir(project_id, wir_id, actor_id)
    return jsonify({"actions": lifecycle.available_actions(record, actor_id)}), 200


@wir_bp.route("/wir/<wir_id>/items/<item_id>/runs", methods=["GET"])
def item_runs(project_id, wir_id, item_id):
    runs = lifecycle.list_item_runs(project_id, wir_id, item_id, _actor_id())
    return jsonify({"items": runs, "total": len(runs)}), 200


# ═════════════════════════════════════════════════════════════════════════
# Evidence
# ═════════════════════════════════════════════════════════════════════════


def _uploaded_files() -> list[dict]:
    """Multipart ``files`` parts, or JSON {files: [{filename, url, kind?}]}."""
    kind = request.form.get("kind") or "photo"
    files = [
        {"filename": f.filename, "content": f.read(), "kind": kind}
        for f in request.files.getlist("files")
        if f and f.filename
    ]
    if files:
        return files
    entries = _body().get("files") or []
    return [
        {"filename": e.get("filename"), "url": e.get("url"), "kind": e.get("kind") or "photo"}
        for e in entries
        if isinstance(e, dict)
    ]


@wir_bp.route("/wir/<wir_id>/items/<item_id>/evidences", methods=["POST"])
def add_evidence(project_id, wir_id, item_id):
    actor_id, err = _actor_required()
    if err:
        return err
    files = _uploaded_files()
    if not files:
        return api_error(E.VALIDATION_REQUIRED, "At least one file is required")
    refs = lifecycle.add_evidence(project_id, wir_id, item_id, files, actor_id)
    return jsonify({"items": refs, "total": len(refs)}), 201


@wir_bp.route("/wir/<wir_id>/evidences/<evidence_id>", methods=["DELETE"])
def delete_evidence(project_id, wir_id, evidence_id):
    actor_id, err = _actor_required()
    if err:
        return err
    lifecycle.delete_evidence(project_id, wir_id, evidence_id, actor_id)
    return jsonify({"deleted": True, "id": evidence_id}), 200


# ═════════════════════════════════════════════════════════════════════════
# Discussions
# ═════════════════════════════════════════════════════════════════════════


@wir_bp.route("/wir/<wir_id>/discussions", methods=["GET"])
def list_discussions(project_id, wir_id):
    rows = lifecycle.list_discussions(project_id, wir_id, _actor_id())
    return jsonify({"items": rows, "total": len(rows)}), 200


@wir_bp.route("/wir/<wir_id>/discussions", methods=["POST"])
def add_discussion(project_id, wir_id):
    """Body: {body, parent_id?}"""
    actor_id, err = _actor_required()
    if err:
        return err
    data = _body()
    row = lifecycle.add_discussion(project_id, wir_id, actor_id, data.get("body"), data.get("parent_id"))
    return jsonify(row.to_dict()), 201


@wir_bp.route("/wir/<wir_id>/discussions/<discussion_id>", methods=["PATCH"])
def update_discussion(project_id, wir_id, discussion_id):
    """Body: {body}"""
    actor_id, err = _actor_required()
    if err:
        return err
    row = lifecycle.update_discussion(project_id, wir_id, discussion_id, actor_id, _body().get("body"))
    return jsonify(row.to_dict()), 200


@wir_bp.route("/wir/<wir_id>/discussions/<discussion_id>", methods=["DELETE"])
def delete_discussion(project_id, wir_id, discussion_id):
    actor_id, err = _actor_required()
    if err:
        return err
    lifecycle.delete_discussion(project_id, wir_id, discussion_id, actor_id)
    return jsonify({"deleted": True, "id": discussion_id}), 200
