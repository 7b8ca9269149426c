"""
ERP Approval Engine
Approval domain models.

Models:
    - ApprovalMatrixRule: policy row (doc type, scope, amount band, role, step order)
    - ApprovalRequest:    one approval run for one document
    - ApprovalStep:       one approver slot inside a request
    - ApprovalDelegation: time-boxed hand-over of approval authority

Matrix rules are immutable: administrators add rows or replace a row
(the old row is deactivated and points at its replacement). Requests are
never physically deleted. At most one in_progress request may exist per
(doc_type, doc_id), enforced by a partial unique index.
"""

from datetime import datetime, timezone

from sqlalchemy import text

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

DOC_TYPES = {
    "PR", "RFQ", "PO", "GRN", "MATERIAL_ISSUE",
    "AP_INVOICE", "CLIENT_INVOICE", "PAYMENT", "PAYROLL_RUN", "RA_BILL",
}

REQUEST_IN_PROGRESS = "in_progress"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"
REQUEST_CANCELLED = "cancelled"

STEP_PENDING = "pending"
STEP_APPROVED = "approved"
STEP_REJECTED = "rejected"
STEP_SKIPPED = "skipped"
STEP_STATUSES = {STEP_PENDING, STEP_APPROVED, STEP_REJECTED, STEP_SKIPPED}

# Statuses pushed to the owning document module
DOCUMENT_STATUSES = {"in_approval", "approved", "rejected", "cancelled"}

REMARKS_MAX_LENGTH = 1000


def _iso(value):
    return value.isoformat() if value else None


def _num(value):
    return float(value) if value is not None else None


# ═════════════════════════════════════════════════════════════════════════════
# MATRIX
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalMatrixRule(db.Model):
    """One row of the approval policy table."""

    __tablename__ = "approval_matrix_rules"
    __table_args__ = (
        db.Index("ix_matrix_lookup", "doc_type", "project_id", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    doc_type = db.Column(db.String(30), nullable=False)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=True, index=True,
        comment="NULL = global rule",
    )
    min_amount = db.Column(db.Numeric(18, 2), nullable=True, comment="NULL = unbounded")
    max_amount = db.Column(db.Numeric(18, 2), nullable=True, comment="NULL = unbounded")
    department = db.Column(db.String(100), nullable=True, comment="NULL = all departments")
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False, index=True)
    step_order = db.Column(db.Integer, nullable=False)
    escalation_hours = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    replaced_by_id = db.Column(
        db.Integer, db.ForeignKey("approval_matrix_rules.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    role = db.relationship("Role", lazy="joined")
    project = db.relationship("Project")

    def to_dict(self):
        return {
            "id": self.id,
            "doc_type": self.doc_type,
            "project_id": self.project_id,
            "min_amount": _num(self.min_amount),
            "max_amount": _num(self.max_amount),
            "department": self.department,
            "role_id": self.role_id,
            "role_code": self.role.code if self.role else None,
            "step_order": self.step_order,
            "escalation_hours": self.escalation_hours,
            "is_active": self.is_active,
            "created_by_id": self.created_by_id,
            "replaced_by_id": self.replaced_by_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ApprovalMatrixRule {self.id}: {self.doc_type} #{self.step_order} role={self.role_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# REQUESTS & STEPS
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalRequest(db.Model):
    """One approval run for a document."""

    __tablename__ = "approval_requests"
    __table_args__ = (
        db.Index(
            "uq_approval_request_active_doc", "doc_type", "doc_id",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
            postgresql_where=text("status = 'in_progress'"),
        ),
        db.Index("ix_approval_request_doc", "doc_type", "doc_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    doc_type = db.Column(db.String(30), nullable=False)
    doc_id = db.Column(db.String(64), nullable=False)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    requested_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=REQUEST_IN_PROGRESS, index=True)
    current_step = db.Column(db.Integer, nullable=False, default=1)
    total_steps = db.Column(db.Integer, nullable=False, default=1)
    amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    department = db.Column(db.String(100), nullable=True)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project")
    requested_by = db.relationship("User", foreign_keys=[requested_by_id])
    steps = db.relationship(
        "ApprovalStep", back_populates="request", lazy="selectin",
        order_by=lambda: [ApprovalStep.step_order, ApprovalStep.id],
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "doc_type": self.doc_type,
            "doc_id": self.doc_id,
            "project_id": self.project_id,
            "project_name": self.project.name if self.project else None,
            "requested_by": self.requested_by.to_summary() if self.requested_by else None,
            "status": self.status,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "amount": _num(self.amount),
            "department": self.department,
            "is_completed": self.is_completed,
            "completed_at": _iso(self.completed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_steps:
            d["steps"] = [s.to_dict() for s in self.steps]
        return d

    def __repr__(self):
        return f"<ApprovalRequest {self.id}: {self.doc_type}/{self.doc_id} [{self.status}]>"


class ApprovalStep(db.Model):
    """
    One approver slot inside a request.

    Steps sharing ``step_order`` form a parallel group: the request only
    advances past an order once every step in the group has left ``pending``.
    """

    __tablename__ = "approval_steps"
    __table_args__ = (
        db.Index("ix_approval_step_request_order", "approval_request_id", "step_order"),
        db.Index("ix_approval_step_status", "status", "escalated"),
    )

    id = db.Column(db.Integer, primary_key=True)
    approval_request_id = db.Column(
        db.Integer, db.ForeignKey("approval_requests.id", ondelete="CASCADE"), nullable=False,
    )
    matrix_rule_id = db.Column(
        db.Integer, db.ForeignKey("approval_matrix_rules.id", ondelete="SET NULL"), nullable=True,
    )
    step_order = db.Column(db.Integer, nullable=False)
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False)
    approver_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    delegated_from_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Original approver when the step was redirected or acted on by a delegate",
    )
    is_parallel = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(20), nullable=False, default=STEP_PENDING)
    action = db.Column(db.String(20), nullable=True)
    remarks = db.Column(db.String(REMARKS_MAX_LENGTH), nullable=True)
    acted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalated = db.Column(db.Boolean, nullable=False, default=False)
    escalated_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    request = db.relationship("ApprovalRequest", back_populates="steps")
    matrix_rule = db.relationship("ApprovalMatrixRule")
    role = db.relationship("Role", lazy="joined")
    approver = db.relationship("User", foreign_keys=[approver_user_id])
    delegated_from = db.relationship("User", foreign_keys=[delegated_from_id])
    escalated_to = db.relationship("User", foreign_keys=[escalated_to_id])

    def to_dict(self):
        return {
            "id": self.id,
            "approval_request_id": self.approval_request_id,
            "matrix_rule_id": self.matrix_rule_id,
            "step_order": self.step_order,
            "role": {"id": self.role.id, "code": self.role.code, "name": self.role.name} if self.role else None,
            "approver": self.approver.to_summary() if self.approver else None,
            "delegated_from": self.delegated_from.to_summary() if self.delegated_from else None,
            "is_parallel": self.is_parallel,
            "status": self.status,
            "action": self.action,
            "remarks": self.remarks,
            "acted_at": _iso(self.acted_at),
            "escalated": self.escalated,
            "escalated_to": self.escalated_to.to_summary() if self.escalated_to else None,
            "escalated_at": _iso(self.escalated_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ApprovalStep {self.id}: req={self.approval_request_id} #{self.step_order} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# DELEGATIONS
# ═════════════════════════════════════════════════════════════════════════════

class ApprovalDelegation(db.Model):
    """Time-boxed hand-over of one user's approval authority to another."""

    __tablename__ = "approval_delegations"
    __table_args__ = (
        db.Index("ix_delegation_from_active", "from_user_id", "is_active"),
        db.Index("ix_delegation_to_active", "to_user_id", "is_active"),
        db.CheckConstraint("from_user_id <> to_user_id", name="ck_delegation_not_self"),
    )

    id = db.Column(db.Integer, primary_key=True)
    from_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    to_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    disabled_by_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    disabled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    from_user = db.relationship("User", foreign_keys=[from_user_id])
    to_user = db.relationship("User", foreign_keys=[to_user_id])

    def to_dict(self):
        return {
            "id": self.id,
            "from_user": self.from_user.to_summary() if self.from_user else None,
            "to_user": self.to_user.to_summary() if self.to_user else None,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "is_active": self.is_active,
            "created_by_id": self.created_by_id,
            "disabled_by_id": self.disabled_by_id,
            "disabled_at": _iso(self.disabled_at),
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ApprovalDelegation {self.id}: {self.from_user_id}→{self.to_user_id}>"
