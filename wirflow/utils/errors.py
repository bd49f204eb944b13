"""JSON error envelope shared by every WIR endpoint.

    {"error": "<human message>", "code": "<E.* constant>", "details": {...}?}

Blueprints translate engine exceptions into this envelope:

    return api_error(E.NOT_FOUND, "WirRecord id=... not found")
    return api_error(E.GATE_BLOCKED, "Not ready", details={"missing": [...]})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes. ``ERR_`` for general failures, ``GATE_`` for the readiness gate."""

    # 400 malformed request / 422 business rule
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    VALIDATION_RULE = "ERR_VALIDATION_RULE"
    GATE_BLOCKED = "GATE_BLOCKED"

    # 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    NOT_FOUND = "ERR_NOT_FOUND"

    # 409: stale row token vs. action not valid in the current status
    CONFLICT_STALE = "ERR_CONFLICT_STALE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"

    # 503 retryable storage failure / 500
    TRANSIENT_IO = "ERR_TRANSIENT_IO"
    INTERNAL = "ERR_INTERNAL"


HTTP_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.GATE_BLOCKED: 422,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_STALE: 409,
    E.CONFLICT_STATE: 409,
    E.TRANSIENT_IO: 503,
    E.INTERNAL: 500,
}

RETRYABLE = frozenset({E.CONFLICT_STALE, E.TRANSIENT_IO})


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Return ``(response, status)`` for ``code``.

    ``status`` overrides the code's default (400 for unknown codes).
    Retryable codes always carry ``details.retryable = True``.
    """
    body: dict = {"error": message, "code": code}
    if code in RETRYABLE:
        details = {**(details or {}), "retryable": True}
    if details:
        body["details"] = details
    return jsonify(body), status or HTTP_STATUS.get(code, 400)
