"""
Rate limiting configuration.

The Limiter instance is created in wirflow/__init__.py with no default
limits; this module applies per-blueprint limits.

Limits:
    - WIR writes (POST/PATCH/DELETE): WIR_WRITE_RATE_LIMIT (default 60/minute)
    - Reads and the checklist picker: WIR_READ_RATE_LIMIT (default 200/minute)
    - Health check: exempt

Requests carrying an ``X-Actor-Id`` header are counted per actor; anything
else per remote address. Rate limiting is disabled in testing mode.

Usage:
    from wirflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

WRITE_METHODS = ["POST", "PATCH", "DELETE"]
DEFAULT_READ_LIMIT = "200/minute"


def actor_or_address() -> str:
    actor_id = flask_request.headers.get("X-Actor-Id")
    if actor_id:
        return f"actor:{actor_id}"
    return get_remote_address() or "unknown"


def init_rate_limits(app, limiter):
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    write_limit = app.config.get("WIR_WRITE_RATE_LIMIT", "60/minute")
    read_limit = app.config.get("WIR_READ_RATE_LIMIT", DEFAULT_READ_LIMIT)
    bp = app.blueprints.get("wir")
    if bp:
        limiter.limit(write_limit, key_func=actor_or_address, methods=WRITE_METHODS)(bp)
        limiter.limit(read_limit, key_func=actor_or_address, methods=["GET"])(bp)

    bp = app.blueprints.get("checklist")
    if bp:
        limiter.limit(read_limit, key_func=actor_or_address)(bp)

    app.logger.info("Rate limiter configured (write=%s, read=%s)", write_limit, read_limit)
