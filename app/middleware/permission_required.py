"""
Permission Decorators — JWT-aware capability checks for route protection.

Usage:
    @bp.route("/api/v1/delegations", methods=["POST"])
    @jwt_required
    @require_approval_admin
    def create_delegation():
        ...

Capabilities live on roles (``Role.can_override_approvals``,
``Role.is_top_admin``), never on role codes.
"""

import functools
import logging

from flask import g

from app.models import db
from app.models.auth import User
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def current_user() -> User | None:
    """The active user behind the request's bearer token, if any."""
    user_id = getattr(g, "jwt_user_id", None)
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_available:
        return None
    return user


def require_approval_admin(f):
    """
    Decorator: require a user whose roles may administer approvals.

    Administrators manage matrix rules and delegations and may override
    any approval step.
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        user = current_user()
        if user is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        if not user.can_override_approvals:
            logger.warning("User %d denied approval administration on %s", user.id, f.__name__)
            return api_error(E.FORBIDDEN, "Approval administrator role required")
        return f(*args, **kwargs)
    return decorated
