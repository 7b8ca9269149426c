"""
Idempotency middleware — view decorator for mutating routes.

Usage:
    @approval_bp.route("/approvals/<int:request_id>/approve", methods=["POST"])
    @jwt_required
    @idempotent
    def approve(request_id):
        ...

Requests without an ``Idempotency-Key`` header pass straight through.
Replayed responses carry ``Idempotent-Replayed: true``.
"""

import functools

from flask import current_app, g, make_response, request

from app.services import idempotency_service
from app.utils.errors import E, api_error

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotent-Replayed"
MAX_KEY_LENGTH = 255


def idempotent(view):
    """Wrap a view so retried requests with the same key take effect once."""

    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        key = request.headers.get(IDEMPOTENCY_HEADER)
        if key is None:
            return view(*args, **kwargs)

        key = key.strip()
        if not key or len(key) > MAX_KEY_LENGTH:
            return api_error(
                E.VALIDATION_INVALID,
                f"{IDEMPOTENCY_HEADER} must be 1-{MAX_KEY_LENGTH} characters",
            )

        user_id = getattr(g, "jwt_user_id", None)
        route = request.path
        request_hash = idempotency_service.hash_request(route, request.get_json(silent=True))

        result = idempotency_service.check(key, user_id, route, request_hash)
        if result.outcome == idempotency_service.CONFLICT:
            return api_error(
                E.IDEMPOTENCY_CONFLICT,
                f"{IDEMPOTENCY_HEADER} was already used for a different request",
            )
        if result.outcome == idempotency_service.REPLAY:
            replay = current_app.response_class(
                result.record.response_body,
                status=result.record.status_code,
                mimetype="application/json",
            )
            replay.headers[REPLAY_HEADER] = "true"
            return replay

        response = make_response(view(*args, **kwargs))
        if 200 <= response.status_code < 300:
            idempotency_service.save(
                key, user_id, route, request_hash,
                response.status_code, response.get_data(as_text=True),
            )
        return response

    return wrapper
