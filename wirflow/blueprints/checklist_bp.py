"""Checklist & member picker blueprint.

Read-only endpoints that feed the record form:
  GET /api/v1/projects/<project_id>/checklists              ?discipline=&q=
  GET /api/v1/projects/<project_id>/checklists/<id>/items
  GET /api/v1/projects/<project_id>/members                 ?role=&on=YYYY-MM-DD
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import Blueprint, jsonify, request
from werkzeug.exceptions import HTTPException

from wirflow.core.exceptions import NotFoundError
from wirflow.integrations.checklist_catalog import checklist_catalog
from wirflow.integrations.identity_directory import identity_directory
from wirflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

checklist_bp = Blueprint("checklist", __name__, url_prefix="/api/v1/projects/<project_id>")


@checklist_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@checklist_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in checklist_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


@checklist_bp.route("/checklists", methods=["GET"])
def list_checklists(project_id):
    filters = {
        "discipline": request.args.get("discipline"),
        "q": (request.args.get("q") or "").strip() or None,
    }
    checklists = checklist_catalog.list_checklists(project_id, filters)
    return jsonify({"items": checklists, "total": len(checklists)}), 200


@checklist_bp.route("/checklists/<checklist_id>/items", methods=["GET"])
def checklist_items(project_id, checklist_id):
    items = checklist_catalog.fetch_items(project_id, checklist_id)
    return jsonify({"items": items, "total": len(items)}), 200


@checklist_bp.route("/members", methods=["GET"])
def list_members(project_id):
    on_date = None
    raw = request.args.get("on")
    if raw:
        try:
            on_date = datetime.strptime(raw, "%Y-%m-%d").date()
        except ValueError:
            return api_error(E.VALIDATION_INVALID, "on must be YYYY-MM-DD")
    members = identity_directory.list_active_members(project_id, request.args.get("role"), on_date)
    return jsonify({"items": members, "total": len(members)}), 200
