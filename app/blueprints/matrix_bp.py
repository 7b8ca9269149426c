"""
Approval Matrix Blueprint.

Routes:
  GET    /approval-matrix?doc_type=&project_id=&include_inactive=true – list rules
  POST   /approval-matrix                      – add a rule (admins)
  POST   /approval-matrix/<mid>/replace        – replace a rule (admins)
  GET    /approval-matrix/resolve?doc_type=&amount=&project_id=&department=
                                               – preview which steps a submission would get

Rules are never edited in place: a replacement deactivates the old row and
inserts a new one, so in-flight requests keep their original rule.
"""

from flask import Blueprint, g, jsonify, request

from app.middleware.idempotency import idempotent
from app.middleware.jwt_auth import jwt_required
from app.middleware.permission_required import require_approval_admin
from app.models.approval import DOC_TYPES
from app.services import matrix_resolver
from app.utils.errors import E, api_error, register_service_error_handlers
from app.utils.helpers import parse_amount

matrix_bp = Blueprint("matrix_bp", __name__, url_prefix="/api/v1")
register_service_error_handlers(matrix_bp)

_INT_FIELDS = ("project_id", "role_id", "step_order", "escalation_hours")
_AMOUNT_FIELDS = ("min_amount", "max_amount")


def _parse_rule(data, *, partial=False):
    """Type-check a rule payload. Returns (clean_dict, errors)."""
    clean, errors = {}, {}

    if "doc_type" in data or not partial:
        raw = data.get("doc_type")
        doc_type = raw.strip().upper() if isinstance(raw, str) else None
        if doc_type not in DOC_TYPES:
            errors["doc_type"] = f"must be one of {sorted(DOC_TYPES)}"
        else:
            clean["doc_type"] = doc_type

    for name in _INT_FIELDS:
        if name not in data:
            continue
        value = data[name]
        if value is None and name in ("project_id", "escalation_hours"):
            clean[name] = None
        elif isinstance(value, bool) or not isinstance(value, int):
            errors[name] = "must be an integer"
        else:
            clean[name] = value
    if not partial:
        for name in ("role_id", "step_order"):
            if name not in data:
                errors[name] = "is required"

    for name in _AMOUNT_FIELDS:
        if name not in data:
            continue
        if data[name] is None:
            clean[name] = None
            continue
        try:
            clean[name] = parse_amount(data[name])
        except ValueError as exc:
            errors[name] = str(exc).replace("amount", name, 1)

    if "department" in data:
        department = data["department"]
        if department is not None and not isinstance(department, str):
            errors["department"] = "must be a string"
        else:
            clean["department"] = (department or "").strip() or None

    return clean, errors


@matrix_bp.route("/approval-matrix", methods=["GET"])
@jwt_required
def list_rules():
    raw = request.args.get("doc_type")
    doc_type = raw.strip().upper() if raw else None
    if doc_type and doc_type not in DOC_TYPES:
        return api_error(E.VALIDATION_INVALID, f"doc_type must be one of {sorted(DOC_TYPES)}")
    rules = matrix_resolver.list_rules(
        doc_type=doc_type,
        project_id=request.args.get("project_id", type=int),
        include_inactive=request.args.get("include_inactive", "").lower() == "true",
    )
    return jsonify([r.to_dict() for r in rules])


@matrix_bp.route("/approval-matrix", methods=["POST"])
@jwt_required
@require_approval_admin
@idempotent
def create_rule():
    """Add a rule.

    Body: { doc_type, role_id, step_order, project_id?, min_amount?, max_amount?,
            department?, escalation_hours? }
    """
    clean, errors = _parse_rule(request.get_json(silent=True) or {})
    if errors:
        return api_error(E.VALIDATION_INVALID, "Invalid matrix rule", details=errors)
    rule = matrix_resolver.create_rule(clean, actor_id=g.jwt_user_id)
    return jsonify(rule.to_dict()), 201


@matrix_bp.route("/approval-matrix/<int:mid>/replace", methods=["POST"])
@jwt_required
@require_approval_admin
@idempotent
def replace_rule(mid):
    """Replace a rule; omitted fields are carried over from the old row."""
    clean, errors = _parse_rule(request.get_json(silent=True) or {}, partial=True)
    if errors:
        return api_error(E.VALIDATION_INVALID, "Invalid matrix rule", details=errors)
    rule = matrix_resolver.replace_rule(mid, clean, actor_id=g.jwt_user_id)
    return jsonify(rule.to_dict()), 201


@matrix_bp.route("/approval-matrix/resolve", methods=["GET"])
@jwt_required
def resolve():
    raw = request.args.get("doc_type")
    doc_type = raw.strip().upper() if raw else None
    if doc_type not in DOC_TYPES:
        return api_error(E.VALIDATION_INVALID, f"doc_type must be one of {sorted(DOC_TYPES)}")
    try:
        amount = parse_amount(request.args.get("amount"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))
    department = (request.args.get("department") or "").strip() or None
    return jsonify(matrix_resolver.preview(
        doc_type, request.args.get("project_id", type=int), amount, department,
    ))
