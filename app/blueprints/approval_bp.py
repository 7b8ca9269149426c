"""
Approval Request Blueprint.

Routes:
  POST   /approvals/request                 – open an approval request for a document
  GET    /approvals/inbox?status=           – actor's inbox (pending by default)
  GET    /approvals/history?doc_type=&doc_id= – every approval run for a document
  GET    /approvals/<rid>                   – request detail with steps
  POST   /approvals/<rid>/approve           – approve the current step
  POST   /approvals/<rid>/reject            – reject (remarks mandatory)
  POST   /approvals/<rid>/cancel            – withdraw (requester / admin)

All routes require a bearer token. Mutating routes honour ``Idempotency-Key``.
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.middleware.idempotency import idempotent
from app.middleware.jwt_auth import jwt_required
from app.models.approval import DOC_TYPES, REMARKS_MAX_LENGTH, STEP_PENDING
from app.services.approval_service import INBOX_FILTERS, get_orchestrator
from app.utils.errors import E, api_error, register_service_error_handlers
from app.utils.helpers import parse_amount

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1")
register_service_error_handlers(approval_bp)


# ── helpers ──────────────────────────────────────────────────────────────

def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _doc_type(raw):
    """Normalise doc_type to upper-case; None when unknown."""
    if not isinstance(raw, str):
        return None
    value = raw.strip().upper()
    return value if value in DOC_TYPES else None


def _remarks(data, *, required=False):
    """Return (remarks, error_response)."""
    remarks = data.get("remarks")
    if remarks is not None and not isinstance(remarks, str):
        return None, api_error(E.VALIDATION_INVALID, "remarks must be a string")
    remarks = (remarks or "").strip()
    if required and not remarks:
        return None, api_error(E.VALIDATION_REQUIRED, "remarks are required when rejecting")
    if len(remarks) > REMARKS_MAX_LENGTH:
        return None, api_error(
            E.VALIDATION_INVALID, f"remarks must be at most {REMARKS_MAX_LENGTH} characters"
        )
    return remarks or None, None


# ═════════════════════════════════════════════════════════════════════════════
# SUBMIT
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approvals/request", methods=["POST"])
@jwt_required
@idempotent
def request_approval():
    """Open an approval request.

    Body: { doc_type, doc_id, project_id?, amount, department? }
    """
    data = _json_body()

    errors = {}
    doc_type = _doc_type(data.get("doc_type"))
    if doc_type is None:
        errors["doc_type"] = f"must be one of {sorted(DOC_TYPES)}"

    doc_id = data.get("doc_id")
    if isinstance(doc_id, int) and not isinstance(doc_id, bool):
        doc_id = str(doc_id)
    if not isinstance(doc_id, str) or not doc_id.strip():
        errors["doc_id"] = "is required"
    else:
        doc_id = doc_id.strip()

    project_id = data.get("project_id")
    if project_id is not None and (not isinstance(project_id, int) or isinstance(project_id, bool)):
        errors["project_id"] = "must be an integer"

    amount = None
    try:
        amount = parse_amount(data.get("amount"))
    except ValueError as exc:
        errors["amount"] = str(exc)

    department = data.get("department")
    if department is not None and not isinstance(department, str):
        errors["department"] = "must be a string"

    if errors:
        missing = "doc_type" in errors and data.get("doc_type") is None
        code = E.VALIDATION_REQUIRED if missing else E.VALIDATION_INVALID
        return api_error(code, "Invalid approval request", details=errors)

    result = get_orchestrator().request_approval(
        {
            "doc_type": doc_type,
            "doc_id": doc_id,
            "project_id": project_id,
            "amount": amount,
            "department": (department or "").strip() or None,
        },
        actor_id=g.jwt_user_id,
    )
    return jsonify(result), 201


# ═════════════════════════════════════════════════════════════════════════════
# QUERIES
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approvals/inbox", methods=["GET"])
@jwt_required
def inbox():
    """Inbox for the calling user, filtered by ``status``."""
    status = (request.args.get("status") or STEP_PENDING).strip().lower()
    if status not in INBOX_FILTERS:
        return api_error(
            E.VALIDATION_INVALID,
            f"status must be one of {sorted(INBOX_FILTERS)}",
        )
    items = get_orchestrator().get_inbox(g.jwt_user_id, status)
    return jsonify({"status": status, "items": items, "total": len(items)})


@approval_bp.route("/approvals/history", methods=["GET"])
@jwt_required
def history():
    doc_type = _doc_type(request.args.get("doc_type"))
    doc_id = (request.args.get("doc_id") or "").strip()
    if doc_type is None or not doc_id:
        return api_error(E.VALIDATION_REQUIRED, "doc_type and doc_id query parameters are required")
    return jsonify(get_orchestrator().get_history(doc_type, doc_id))


@approval_bp.route("/approvals/<int:rid>", methods=["GET"])
@jwt_required
def get_request(rid):
    return jsonify(get_orchestrator().get_request(rid))


# ═════════════════════════════════════════════════════════════════════════════
# ACTIONS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approvals/<int:rid>/approve", methods=["POST"])
@jwt_required
@idempotent
def approve(rid):
    """Approve the current step. Body: { remarks? }"""
    remarks, err = _remarks(_json_body())
    if err:
        return err
    return jsonify(get_orchestrator().approve_step(rid, g.jwt_user_id, remarks))


@approval_bp.route("/approvals/<int:rid>/reject", methods=["POST"])
@jwt_required
@idempotent
def reject(rid):
    """Reject the request. Body: { remarks } (mandatory)"""
    remarks, err = _remarks(_json_body(), required=True)
    if err:
        return err
    return jsonify(get_orchestrator().reject_step(rid, g.jwt_user_id, remarks))


@approval_bp.route("/approvals/<int:rid>/cancel", methods=["POST"])
@jwt_required
@idempotent
def cancel(rid):
    """Withdraw an in-progress request. Body: { remarks? }"""
    remarks, err = _remarks(_json_body())
    if err:
        return err
    return jsonify(get_orchestrator().cancel_approval(rid, g.jwt_user_id, remarks))
