"""
JWT Auth Middleware — Parses JWT from Authorization header, sets g.jwt_*.

    Authorization: Bearer <token>  →  g.jwt_user_id

The hook never rejects a request on its own; routes that need an
identity use ``@jwt_required`` and get a 401 when none was established.
"""

import functools
import logging

import jwt as pyjwt
from flask import g, request

from app.services.jwt_service import decode_access_token
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip JWT parsing entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
            g.jwt_user_id = int(payload.get("sub"))
        except pyjwt.ExpiredSignatureError:
            logger.debug("Expired JWT on %s", path)
        except (pyjwt.InvalidTokenError, TypeError, ValueError):
            logger.debug("Invalid JWT on %s", path)


def jwt_required(view):
    """Reject the request with 401 unless a valid bearer token was presented."""

    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        if getattr(g, "jwt_user_id", None) is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        return view(*args, **kwargs)

    return wrapper
