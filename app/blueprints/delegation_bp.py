"""
Approval Delegation Blueprint.

Routes:
  GET    /delegations?user_id=&active=true   – list delegations
  POST   /delegations                        – create a delegation (admins)
  PATCH  /delegations/<did>/disable          – soft-disable a delegation (admins)

Non-administrators only ever see delegations they give or receive.
"""

from flask import Blueprint, g, jsonify, request

from app.middleware.idempotency import idempotent
from app.middleware.jwt_auth import jwt_required
from app.middleware.permission_required import current_user, require_approval_admin
from app.services import delegation_service
from app.utils.errors import E, api_error, register_service_error_handlers
from app.utils.helpers import parse_datetime_input

delegation_bp = Blueprint("delegation_bp", __name__, url_prefix="/api/v1")
register_service_error_handlers(delegation_bp)


def _int_field(data, name):
    value = data.get(name)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


@delegation_bp.route("/delegations", methods=["GET"])
@jwt_required
def list_delegations():
    user = current_user()
    if user is None:
        return api_error(E.UNAUTHENTICATED, "Authentication required")

    user_id = request.args.get("user_id", type=int)
    if not user.can_override_approvals:
        user_id = user.id
    active_only = request.args.get("active", "").lower() == "true"

    items = delegation_service.list_delegations(user_id=user_id, active_only=active_only)
    return jsonify([d.to_dict() for d in items])


@delegation_bp.route("/delegations", methods=["POST"])
@jwt_required
@require_approval_admin
@idempotent
def create_delegation():
    """Create a delegation.

    Body: { from_user_id, to_user_id, start_date, end_date }  (ISO 8601)
    """
    data = request.get_json(silent=True) or {}

    errors = {}
    from_user_id = _int_field(data, "from_user_id")
    to_user_id = _int_field(data, "to_user_id")
    if from_user_id is None:
        errors["from_user_id"] = "integer is required"
    if to_user_id is None:
        errors["to_user_id"] = "integer is required"

    dates = {}
    for name in ("start_date", "end_date"):
        try:
            dates[name] = parse_datetime_input(data.get(name))
        except ValueError as exc:
            errors[name] = str(exc)
            continue
        if dates[name] is None:
            errors[name] = "is required"

    if errors:
        return api_error(E.VALIDATION_INVALID, "Invalid delegation", details=errors)

    delegation = delegation_service.create_delegation(
        from_user_id, to_user_id, dates["start_date"], dates["end_date"], actor_id=g.jwt_user_id,
    )
    return jsonify(delegation.to_dict()), 201


@delegation_bp.route("/delegations/<int:did>/disable", methods=["PATCH"])
@jwt_required
@require_approval_admin
def disable_delegation(did):
    delegation = delegation_service.disable_delegation(did, actor_id=g.jwt_user_id)
    return jsonify(delegation.to_dict())
