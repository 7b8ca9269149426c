"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies limits per route category, keyed by the JWT user when
one is present and by remote IP otherwise.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

DEFAULT_WRITE_LIMIT = "60/minute"
DEFAULT_READ_LIMIT = "300/minute"


def rate_limit_key():
    """Key requests by authenticated user, falling back to remote IP."""
    user_id = getattr(g, "jwt_user_id", None)
    if user_id:
        return f"user:{user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Approval actions:     APPROVAL_WRITE_RATE_LIMIT (default 60/minute)
        - Admin blueprints:     APPROVAL_WRITE_RATE_LIMIT
        - Scheduler control:    APPROVAL_READ_RATE_LIMIT (default 300/minute)
        - Health check:         exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    write_limit = app.config.get("APPROVAL_WRITE_RATE_LIMIT", DEFAULT_WRITE_LIMIT)
    read_limit = app.config.get("APPROVAL_READ_RATE_LIMIT", DEFAULT_READ_LIMIT)

    for bp_name in ("approval_bp", "delegation_bp", "matrix_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(write_limit, key_func=rate_limit_key,
                          methods=["POST", "PUT", "PATCH", "DELETE"])(bp)
            limiter.limit(read_limit, key_func=rate_limit_key, methods=["GET"])(bp)

    bp = app.blueprints.get("scheduler_bp")
    if bp:
        limiter.limit(read_limit, key_func=rate_limit_key)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — write: %s, read: %s", write_limit, read_limit)
