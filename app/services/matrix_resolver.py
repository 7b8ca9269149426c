"""
Approval Matrix Resolver.

Answers "which rules apply to this document?" and administers the rule
table. Project-scoped rules win; global rules (project_id NULL) are the
fallback only when no project rule matches.

Usage:
    from app.services.matrix_resolver import find_matrices
    rules = find_matrices("PR", project_id=3, amount=Decimal("50000"), department=None)
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import or_, select

from app.core.exceptions import ConfigurationError, ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.approval import DOC_TYPES, ApprovalMatrixRule
from app.models.auth import Role
from app.models.project import Project
from app.models.audit import write_audit

logger = logging.getLogger(__name__)


# ── Lookup ───────────────────────────────────────────────────────────────────

def _matching_rules(doc_type: str, project_id: int | None, amount: Decimal, department: str | None):
    stmt = select(ApprovalMatrixRule).where(
        ApprovalMatrixRule.doc_type == doc_type,
        ApprovalMatrixRule.is_active.is_(True),
        or_(ApprovalMatrixRule.min_amount.is_(None), ApprovalMatrixRule.min_amount <= amount),
        or_(ApprovalMatrixRule.max_amount.is_(None), ApprovalMatrixRule.max_amount >= amount),
    )
    if project_id is None:
        stmt = stmt.where(ApprovalMatrixRule.project_id.is_(None))
    else:
        stmt = stmt.where(ApprovalMatrixRule.project_id == project_id)
    if department:
        stmt = stmt.where(
            or_(ApprovalMatrixRule.department.is_(None), ApprovalMatrixRule.department == department)
        )
    stmt = stmt.order_by(ApprovalMatrixRule.step_order, ApprovalMatrixRule.id)
    return list(db.session.execute(stmt).scalars())


def find_matrices(
    doc_type: str,
    project_id: int | None,
    amount,
    department: str | None = None,
) -> list[ApprovalMatrixRule]:
    """Return the ordered rule set for a document, or [] when nothing matches.

    Project rules first; if none match, the same filters over global rules.
    Amount bounds are inclusive, NULL bounds are unbounded. When
    ``department`` is given, rules for all departments (NULL) still apply.
    """
    amount = Decimal(str(amount))
    rules = []
    if project_id is not None:
        rules = _matching_rules(doc_type, project_id, amount, department)
    if not rules:
        rules = _matching_rules(doc_type, None, amount, department)
    logger.debug(
        "Matrix lookup %s project=%s amount=%s department=%s → %d rule(s)",
        doc_type, project_id, amount, department, len(rules),
    )
    return rules


def require_matrices(doc_type, project_id, amount, department=None) -> list[ApprovalMatrixRule]:
    """Like :func:`find_matrices` but a miss is a configuration error."""
    rules = find_matrices(doc_type, project_id, amount, department)
    if not rules:
        raise ConfigurationError(
            f"No approval matrix configured for {doc_type}",
            details={
                "doc_type": doc_type,
                "project_id": project_id,
                "amount": str(amount),
                "department": department,
            },
        )
    return rules


def preview(doc_type, project_id, amount, department=None) -> dict:
    """Resolved rule set grouped by step order, without creating anything."""
    rules = find_matrices(doc_type, project_id, amount, department)
    orders: dict[int, list[dict]] = {}
    for rule in rules:
        orders.setdefault(rule.step_order, []).append(rule.to_dict())
    return {
        "doc_type": doc_type,
        "project_id": project_id,
        "amount": float(amount),
        "department": department,
        "total_steps": len(orders),
        "steps": [
            {"step_order": order, "is_parallel": len(items) > 1, "rules": items}
            for order, items in sorted(orders.items())
        ],
    }


# ── Administration ───────────────────────────────────────────────────────────

def list_rules(doc_type: str | None = None, project_id: int | None = None, include_inactive=False):
    q = ApprovalMatrixRule.query
    if doc_type:
        q = q.filter(ApprovalMatrixRule.doc_type == doc_type)
    if project_id is not None:
        q = q.filter(ApprovalMatrixRule.project_id == project_id)
    if not include_inactive:
        q = q.filter(ApprovalMatrixRule.is_active.is_(True))
    return q.order_by(
        ApprovalMatrixRule.doc_type,
        ApprovalMatrixRule.project_id,
        ApprovalMatrixRule.step_order,
        ApprovalMatrixRule.id,
    ).all()


def _build_rule(data: dict, actor_id: int | None) -> ApprovalMatrixRule:
    doc_type = data["doc_type"]
    if doc_type not in DOC_TYPES:
        raise ValidationError(f"Unknown doc_type {doc_type!r}", details={"doc_type": sorted(DOC_TYPES)})
    role = db.session.get(Role, data["role_id"])
    if role is None or not role.is_active:
        raise NotFoundError(resource="Role", resource_id=data["role_id"])
    project_id = data.get("project_id")
    if project_id is not None and db.session.get(Project, project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    min_amount, max_amount = data.get("min_amount"), data.get("max_amount")
    if min_amount is not None and max_amount is not None and min_amount > max_amount:
        raise ValidationError("min_amount must not exceed max_amount")
    if data["step_order"] < 1:
        raise ValidationError("step_order must be 1 or greater")
    hours = data.get("escalation_hours")
    if hours is not None and hours < 1:
        raise ValidationError("escalation_hours must be 1 or greater")
    return ApprovalMatrixRule(
        doc_type=doc_type,
        project_id=project_id,
        min_amount=min_amount,
        max_amount=max_amount,
        department=data.get("department"),
        role_id=role.id,
        step_order=data["step_order"],
        escalation_hours=hours,
        is_active=True,
        created_by_id=actor_id,
    )


def create_rule(data: dict, actor_id: int | None) -> ApprovalMatrixRule:
    """Add a rule. ``data`` is already type-checked by the blueprint."""
    rule = _build_rule(data, actor_id)
    db.session.add(rule)
    db.session.flush()
    write_audit(
        entity_type="approval_matrix_rule", entity_id=rule.id,
        action="matrix.create", actor_user_id=actor_id, diff={"rule": rule.to_dict()},
    )
    db.session.commit()
    logger.info("Matrix rule %s created for %s step %s", rule.id, rule.doc_type, rule.step_order)
    return rule


def replace_rule(rule_id: int, data: dict, actor_id: int | None) -> ApprovalMatrixRule:
    """Deactivate ``rule_id`` and insert its replacement in one transaction.

    In-flight requests keep referencing the old row.
    """
    old = db.session.get(ApprovalMatrixRule, rule_id)
    if old is None:
        raise NotFoundError(resource="ApprovalMatrixRule", resource_id=rule_id)
    if not old.is_active:
        raise ConflictError(f"Matrix rule {rule_id} was already replaced or deactivated")

    merged = {
        "doc_type": old.doc_type,
        "project_id": old.project_id,
        "min_amount": old.min_amount,
        "max_amount": old.max_amount,
        "department": old.department,
        "role_id": old.role_id,
        "step_order": old.step_order,
        "escalation_hours": old.escalation_hours,
    }
    merged.update(data)
    new = _build_rule(merged, actor_id)
    db.session.add(new)
    db.session.flush()
    old.is_active = False
    old.replaced_by_id = new.id
    write_audit(
        entity_type="approval_matrix_rule", entity_id=old.id,
        action="matrix.replace", actor_user_id=actor_id,
        diff={"replaced_by": new.id, "rule": new.to_dict()},
    )
    db.session.commit()
    logger.info("Matrix rule %s replaced by %s", old.id, new.id)
    return new
