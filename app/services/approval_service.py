"""
Approval Request Orchestrator.

Owns the approval state machine:

    in_progress ──approve (last order)──► approved
        │  ├──reject─────────────────────► rejected
        │  └──cancel─────────────────────► cancelled
        └──approve (more orders)──► in_progress (current_step advances)

Terminal states are final. Steps sharing a step order are a parallel
group: the request only advances once every step in the group has left
``pending``.

Each transition is one transaction. The request row is read with
``FOR UPDATE`` (where the dialect supports it) and every write is a
conditional UPDATE guarded on the state that was read; a guard miss
rolls the whole transition back and surfaces as a 409. The document
status adapter and the audit trail run after commit and can never undo
a transition.

Usage:
    from app.services.approval_service import get_orchestrator
    result = get_orchestrator().approve_step(request_id=7, actor_id=3)
"""

from __future__ import annotations

import logging
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import (
    AuthorizationError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.models.approval import (
    REQUEST_APPROVED,
    REQUEST_CANCELLED,
    REQUEST_IN_PROGRESS,
    REQUEST_REJECTED,
    STEP_APPROVED,
    STEP_PENDING,
    STEP_REJECTED,
    STEP_SKIPPED,
    STEP_STATUSES,
    ApprovalRequest,
    ApprovalStep,
)
from app.models.audit import write_audit
from app.models.auth import User
from app.models.project import Project
from app.services.approver_resolver import (
    ActorContext,
    can_act_on_step,
    resolve_approver,
    role_holders,
)
from app.services.document_status import DocumentStatusAdapter, NoopDocumentStatusAdapter
from app.services.matrix_resolver import require_matrices

logger = logging.getLogger(__name__)

INBOX_FILTERS = STEP_STATUSES | {"sent", "all_sent"}

_EXTENSION_KEY = "approval_orchestrator"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _transaction():
    """Commit on success, roll back and re-raise on any error."""
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


class ApprovalOrchestrator:
    """Creates and advances approval requests."""

    def __init__(self, status_adapter: DocumentStatusAdapter | None = None) -> None:
        self.status_adapter = status_adapter or NoopDocumentStatusAdapter()

    # ── Loading ──────────────────────────────────────────────────────────

    @staticmethod
    def _load_actor(actor_id: int) -> User:
        actor = db.session.get(User, actor_id)
        if actor is None or not actor.is_available:
            raise NotFoundError(resource="User", resource_id=actor_id)
        return actor

    @staticmethod
    def _lock_request(request_id: int) -> ApprovalRequest:
        stmt = (
            select(ApprovalRequest)
            .where(ApprovalRequest.id == request_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        req = db.session.execute(stmt).scalar_one_or_none()
        if req is None:
            raise NotFoundError(resource="ApprovalRequest", resource_id=request_id)
        return req

    @staticmethod
    def _load_steps(request_id: int) -> list[ApprovalStep]:
        stmt = (
            select(ApprovalStep)
            .where(ApprovalStep.approval_request_id == request_id)
            .order_by(ApprovalStep.step_order, ApprovalStep.id)
            .execution_options(populate_existing=True)
        )
        return list(db.session.execute(stmt).scalars())

    # ── Guarded writes ───────────────────────────────────────────────────

    @staticmethod
    def _update_step(step_id: int, values: dict) -> None:
        result = db.session.execute(
            update(ApprovalStep)
            .where(ApprovalStep.id == step_id, ApprovalStep.status == STEP_PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(f"Approval step {step_id} is no longer pending", resource="ApprovalStep")

    @staticmethod
    def _skip_pending_steps(request_id: int, now: datetime) -> int:
        result = db.session.execute(
            update(ApprovalStep)
            .where(
                ApprovalStep.approval_request_id == request_id,
                ApprovalStep.status == STEP_PENDING,
            )
            .values(status=STEP_SKIPPED, acted_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    def _update_request(request_id: int, expected_step: int, values: dict, now: datetime) -> None:
        result = db.session.execute(
            update(ApprovalRequest)
            .where(
                ApprovalRequest.id == request_id,
                ApprovalRequest.status == REQUEST_IN_PROGRESS,
                ApprovalRequest.current_step == expected_step,
            )
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Approval request {request_id} was modified concurrently; reload and retry",
                resource="ApprovalRequest",
            )

    @staticmethod
    def _pending_count(request_id: int, step_order: int) -> int:
        return db.session.execute(
            select(func.count(ApprovalStep.id)).where(
                ApprovalStep.approval_request_id == request_id,
                ApprovalStep.step_order == step_order,
                ApprovalStep.status == STEP_PENDING,
            )
        ).scalar_one()

    @staticmethod
    def _next_pending_order(request_id: int, after: int) -> int | None:
        return db.session.execute(
            select(func.min(ApprovalStep.step_order)).where(
                ApprovalStep.approval_request_id == request_id,
                ApprovalStep.status == STEP_PENDING,
                ApprovalStep.step_order > after,
            )
        ).scalar_one()

    # ── Post-commit side effects ─────────────────────────────────────────

    def _notify(self, req: ApprovalRequest, status: str) -> dict:
        try:
            result = self.status_adapter.notify(req.doc_type, req.doc_id, status) or {}
        except Exception as exc:
            logger.exception("Document status adapter raised for %s/%s → %s",
                             req.doc_type, req.doc_id, status,
                             extra={"approval_request_id": req.id})
            return {"success": False, "error": str(exc)}
        if not result.get("success", False):
            logger.warning("Document status update not applied for %s/%s → %s: %s",
                           req.doc_type, req.doc_id, status, result.get("error"),
                           extra={"approval_request_id": req.id})
        return result

    @staticmethod
    def _audit(**kwargs) -> None:
        try:
            write_audit(**kwargs)
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Audit write failed for %s %s/%s",
                             kwargs.get("action"), kwargs.get("entity_type"), kwargs.get("entity_id"))

    @staticmethod
    def _outcome(req: ApprovalRequest, **extra) -> dict:
        d = {
            "approval_request_id": req.id,
            "status": req.status,
            "current_step": req.current_step if req.status == REQUEST_IN_PROGRESS else None,
        }
        d.update(extra)
        return d

    # ═════════════════════════════════════════════════════════════════════
    # Create
    # ═════════════════════════════════════════════════════════════════════

    def request_approval(self, data: dict, actor_id: int, now: datetime | None = None) -> dict:
        """Open an approval request for a document.

        ``data`` keys: doc_type, doc_id, project_id (optional), amount (Decimal),
        department (optional). Raises ConflictError when a request is already
        in progress for the document, ConfigurationError when no rule (or no
        role holder) can route it.
        """
        now = now or _utcnow()
        doc_type, doc_id = data["doc_type"], data["doc_id"]
        project_id, amount = data.get("project_id"), data["amount"]
        department = data.get("department")

        try:
            with _transaction():
                actor = self._load_actor(actor_id)
                if project_id is not None and db.session.get(Project, project_id) is None:
                    raise NotFoundError(resource="Project", resource_id=project_id)

                active = db.session.execute(
                    select(ApprovalRequest.id).where(
                        ApprovalRequest.doc_type == doc_type,
                        ApprovalRequest.doc_id == doc_id,
                        ApprovalRequest.status == REQUEST_IN_PROGRESS,
                    )
                ).first()
                if active is not None:
                    raise ConflictError(
                        f"Approval already in progress for {doc_type}/{doc_id}",
                        resource="ApprovalRequest",
                    )

                rules = require_matrices(doc_type, project_id, amount, department)
                assignments = []
                for rule in rules:
                    if not role_holders(rule.role_id):
                        raise ConfigurationError(
                            f"No active user holds role {rule.role.code!r} required by matrix rule {rule.id}",
                            details={"matrix_rule_id": rule.id, "role_id": rule.role_id},
                        )
                    assignments.append((rule, resolve_approver(rule.role_id, actor.id, now)))

                orders = sorted({r.step_order for r in rules})
                group_sizes = Counter(r.step_order for r in rules)

                req = ApprovalRequest(
                    doc_type=doc_type,
                    doc_id=doc_id,
                    project_id=project_id,
                    requested_by_id=actor.id,
                    status=REQUEST_IN_PROGRESS,
                    current_step=orders[0],
                    total_steps=len(orders),
                    amount=amount,
                    department=department,
                    created_at=now,
                    updated_at=now,
                )
                db.session.add(req)
                db.session.flush()
                for rule, resolved in assignments:
                    db.session.add(ApprovalStep(
                        approval_request_id=req.id,
                        matrix_rule_id=rule.id,
                        step_order=rule.step_order,
                        role_id=rule.role_id,
                        approver_user_id=resolved.user_id if resolved else None,
                        delegated_from_id=resolved.delegated_from_id if resolved else None,
                        is_parallel=group_sizes[rule.step_order] > 1,
                        status=STEP_PENDING,
                        created_at=now,
                    ))
                    if resolved is None:
                        logger.info("Step for role %s on %s/%s left unassigned (role match at inbox time)",
                                    rule.role_id, doc_type, doc_id)
                db.session.flush()
        except IntegrityError as exc:
            raise ConflictError(
                f"Approval already in progress for {doc_type}/{doc_id}",
                resource="ApprovalRequest",
            ) from exc

        logger.info("Approval request %s opened for %s/%s: %d step(s) over %d order(s)",
                    req.id, doc_type, doc_id, len(assignments), len(orders),
                    extra={"approval_request_id": req.id, "doc_type": doc_type, "doc_id": doc_id})
        self._notify(req, "in_approval")
        self._audit(
            entity_type="approval_request", entity_id=req.id, action="approval.request",
            actor_user_id=actor_id,
            diff={"doc_type": doc_type, "doc_id": doc_id, "amount": amount, "total_steps": len(orders)},
        )
        return {
            "approval_request_id": req.id,
            "status": REQUEST_IN_PROGRESS,
            "total_steps": len(orders),
            "current_step": orders[0],
        }

    # ═════════════════════════════════════════════════════════════════════
    # Approve
    # ═════════════════════════════════════════════════════════════════════

    def approve_step(self, request_id: int, actor_id: int, remarks: str | None = None,
                     now: datetime | None = None) -> dict:
        """Approve every step the actor may act on at the current order.

        Re-approval by an actor who already approved a step at the current
        order, or of a request that has since been approved, returns the
        existing outcome instead of failing. Earlier orders do not count.
        """
        now = now or _utcnow()
        with _transaction():
            actor = self._load_actor(actor_id)
            req = self._lock_request(request_id)
            steps = self._load_steps(req.id)
            approved_by_actor = [s for s in steps
                                 if s.status == STEP_APPROVED and s.approver_user_id == actor.id]

            if req.status != REQUEST_IN_PROGRESS:
                if req.status == REQUEST_APPROVED and approved_by_actor:
                    return self._outcome(req, already_approved=True)
                raise ConflictError(f"Approval request {request_id} is {req.status}", resource="ApprovalRequest")

            if req.requested_by_id == actor.id and not actor.is_top_admin:
                raise AuthorizationError("You cannot approve a document you requested")

            ctx = ActorContext.for_user(actor, now)
            actable = []
            for step in steps:
                if step.step_order != req.current_step or step.status != STEP_PENDING:
                    continue
                eligibility = can_act_on_step(step, ctx)
                if eligibility.allowed:
                    actable.append((step, eligibility))

            if not actable:
                if any(s.step_order == req.current_step for s in approved_by_actor):
                    return self._outcome(req, already_approved=True)
                raise AuthorizationError("You are not an approver for the current step")

            order = req.current_step
            for step, eligibility in actable:
                values = {
                    "status": STEP_APPROVED,
                    "action": "approve",
                    "approver_user_id": actor.id,
                    "acted_at": now,
                    "remarks": remarks,
                }
                if eligibility.delegated_from_id is not None:
                    values["delegated_from_id"] = eligibility.delegated_from_id
                self._update_step(step.id, values)

            if self._pending_count(req.id, order):
                self._update_request(req.id, order, {}, now)
            else:
                next_order = self._next_pending_order(req.id, order)
                if next_order is not None:
                    self._update_request(req.id, order, {"current_step": next_order}, now)
                else:
                    self._update_request(req.id, order, {
                        "status": REQUEST_APPROVED,
                        "is_completed": True,
                        "completed_at": now,
                    }, now)
            approved_ids = [s.id for s, _ in actable]

        db.session.refresh(req)
        logger.info("Request %s: user %s approved step(s) %s at order %s → %s",
                    req.id, actor_id, approved_ids, order, req.status,
                    extra={"approval_request_id": req.id, "user_id": actor_id})
        if req.status == REQUEST_APPROVED:
            self._notify(req, "approved")
        self._audit(
            entity_type="approval_request", entity_id=req.id, action="approval.approve",
            actor_user_id=actor_id,
            diff={"steps": approved_ids, "step_order": order,
                  "status": req.status, "current_step": req.current_step},
        )
        return self._outcome(req)

    # ═════════════════════════════════════════════════════════════════════
    # Reject
    # ═════════════════════════════════════════════════════════════════════

    def reject_step(self, request_id: int, actor_id: int, remarks: str,
                    now: datetime | None = None) -> dict:
        """Reject the request; every other pending step is skipped."""
        remarks = (remarks or "").strip()
        if not remarks:
            raise ValidationError("remarks are required when rejecting", details={"remarks": "required"})
        now = now or _utcnow()
        with _transaction():
            actor = self._load_actor(actor_id)
            req = self._lock_request(request_id)
            if req.status != REQUEST_IN_PROGRESS:
                raise ConflictError(f"Approval request {request_id} is {req.status}", resource="ApprovalRequest")

            ctx = ActorContext.for_user(actor, now)
            target = None
            for step in self._load_steps(req.id):
                if step.step_order != req.current_step or step.status != STEP_PENDING:
                    continue
                eligibility = can_act_on_step(step, ctx)
                if eligibility.allowed:
                    target = (step, eligibility)
                    break
            if target is None:
                raise AuthorizationError("You are not an approver for the current step")

            step, eligibility = target
            values = {
                "status": STEP_REJECTED,
                "action": "reject",
                "approver_user_id": actor.id,
                "acted_at": now,
                "remarks": remarks,
            }
            if eligibility.delegated_from_id is not None:
                values["delegated_from_id"] = eligibility.delegated_from_id
            self._update_step(step.id, values)
            skipped = self._skip_pending_steps(req.id, now)
            self._update_request(req.id, req.current_step, {
                "status": REQUEST_REJECTED,
                "is_completed": True,
                "completed_at": now,
            }, now)

        db.session.refresh(req)
        logger.info("Request %s rejected by user %s at step %s (%d step(s) skipped)",
                    req.id, actor_id, step.id, skipped,
                    extra={"approval_request_id": req.id, "user_id": actor_id})
        self._notify(req, "rejected")
        self._audit(
            entity_type="approval_request", entity_id=req.id, action="approval.reject",
            actor_user_id=actor_id,
            diff={"step_id": step.id, "remarks": remarks, "skipped": skipped},
        )
        return self._outcome(req)

    # ═════════════════════════════════════════════════════════════════════
    # Cancel
    # ═════════════════════════════════════════════════════════════════════

    def cancel_approval(self, request_id: int, actor_id: int, remarks: str | None = None,
                        now: datetime | None = None) -> dict:
        """Withdraw an in-progress request (requester or top admin only)."""
        now = now or _utcnow()
        with _transaction():
            actor = self._load_actor(actor_id)
            req = self._lock_request(request_id)
            if req.requested_by_id != actor.id and not actor.is_top_admin:
                raise AuthorizationError("Only the requester or an administrator can cancel this request")
            if req.status != REQUEST_IN_PROGRESS:
                raise ConflictError(f"Approval request {request_id} is {req.status}", resource="ApprovalRequest")
            skipped = self._skip_pending_steps(req.id, now)
            self._update_request(req.id, req.current_step, {
                "status": REQUEST_CANCELLED,
                "is_completed": True,
                "completed_at": now,
            }, now)

        db.session.refresh(req)
        logger.info("Request %s cancelled by user %s", req.id, actor_id,
                    extra={"approval_request_id": req.id, "user_id": actor_id})
        self._notify(req, "cancelled")
        self._audit(
            entity_type="approval_request", entity_id=req.id, action="approval.cancel",
            actor_user_id=actor_id, diff={"remarks": remarks, "skipped": skipped},
        )
        return self._outcome(req)

    # ═════════════════════════════════════════════════════════════════════
    # Queries
    # ═════════════════════════════════════════════════════════════════════

    def get_request(self, request_id: int) -> dict:
        req = db.session.get(ApprovalRequest, request_id)
        if req is None:
            raise NotFoundError(resource="ApprovalRequest", resource_id=request_id)
        return req.to_dict(include_steps=True)

    def get_history(self, doc_type: str, doc_id: str) -> list[dict]:
        """Every approval run for a document, newest first."""
        reqs = (
            ApprovalRequest.query
            .filter_by(doc_type=doc_type, doc_id=doc_id)
            .order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc())
            .all()
        )
        return [r.to_dict(include_steps=True) for r in reqs]

    def get_inbox(self, actor_id: int, status: str = STEP_PENDING, now: datetime | None = None) -> list[dict]:
        """Items for the actor's inbox.

        ``pending``/``approved``/``rejected``/``skipped`` list steps the actor
        may act on (or acted on), using the same predicate as approve and
        reject; ``pending`` is limited to the current order of in-progress
        requests. ``sent`` lists the actor's own requests; ``all_sent`` lists
        every request and is reserved to administrators.
        """
        if status not in INBOX_FILTERS:
            raise ValidationError(f"Unknown inbox filter {status!r}",
                                  details={"status": sorted(INBOX_FILTERS)})
        now = now or _utcnow()
        actor = self._load_actor(actor_id)

        if status in ("sent", "all_sent"):
            q = ApprovalRequest.query
            if status == "sent":
                q = q.filter(ApprovalRequest.requested_by_id == actor.id)
            elif not actor.can_override_approvals:
                raise AuthorizationError("Only administrators can list all submitted requests")
            reqs = q.order_by(ApprovalRequest.created_at.desc(), ApprovalRequest.id.desc()).all()
            return [r.to_dict() for r in reqs]

        ctx = ActorContext.for_user(actor, now)
        stmt = (
            select(ApprovalStep)
            .join(ApprovalRequest, ApprovalRequest.id == ApprovalStep.approval_request_id)
            .where(ApprovalStep.status == status)
        )
        if status == STEP_PENDING:
            stmt = stmt.where(
                ApprovalRequest.status == REQUEST_IN_PROGRESS,
                ApprovalStep.step_order == ApprovalRequest.current_step,
            )
        if not ctx.can_override:
            user_ids = {ctx.user_id, *ctx.delegators}
            role_ids = set(ctx.role_ids)
            for delegator_roles in ctx.delegators.values():
                role_ids |= delegator_roles
            stmt = stmt.where(or_(
                ApprovalStep.approver_user_id.in_(user_ids),
                ApprovalStep.role_id.in_(role_ids),
                ApprovalStep.escalated_to_id == ctx.user_id,
            ))
        stmt = stmt.order_by(ApprovalRequest.created_at.desc(), ApprovalStep.step_order, ApprovalStep.id)

        items = []
        for step in db.session.execute(stmt).scalars():
            eligibility = can_act_on_step(step, ctx)
            if not eligibility.allowed:
                continue
            items.append(self._inbox_item(step, eligibility))
        return items

    @staticmethod
    def _inbox_item(step: ApprovalStep, eligibility) -> dict:
        req = step.request
        delegated_from_id = eligibility.delegated_from_id or step.delegated_from_id
        delegated_from = db.session.get(User, delegated_from_id) if delegated_from_id else None
        return {
            "step_id": step.id,
            "approval_request_id": req.id,
            "doc_type": req.doc_type,
            "doc_id": req.doc_id,
            "project_id": req.project_id,
            "project_name": req.project.name if req.project else None,
            "amount": float(req.amount) if req.amount is not None else None,
            "department": req.department,
            "requested_by": req.requested_by.to_summary() if req.requested_by else None,
            "request_status": req.status,
            "current_step": req.current_step,
            "total_steps": req.total_steps,
            "step_order": step.step_order,
            "role": {"id": step.role.id, "code": step.role.code, "name": step.role.name} if step.role else None,
            "approver": step.approver.to_summary() if step.approver else None,
            "status": step.status,
            "is_parallel": step.is_parallel,
            "escalated": step.escalated,
            "escalated_to": step.escalated_to.to_summary() if step.escalated_to else None,
            "delegated_from": delegated_from.to_summary() if delegated_from else None,
            "remarks": step.remarks,
            "acted_at": step.acted_at.isoformat() if step.acted_at else None,
            "submitted_at": req.created_at.isoformat() if req.created_at else None,
        }


# ── App wiring ───────────────────────────────────────────────────────────────

def init_orchestrator(app, status_adapter: DocumentStatusAdapter | None = None) -> ApprovalOrchestrator:
    """Build the orchestrator for ``app`` with the injected document status adapter."""
    orchestrator = ApprovalOrchestrator(status_adapter)
    app.extensions[_EXTENSION_KEY] = orchestrator
    logger.debug("Approval orchestrator ready (adapter=%s)", type(orchestrator.status_adapter).__name__)
    return orchestrator


def get_orchestrator() -> ApprovalOrchestrator:
    return current_app.extensions[_EXTENSION_KEY]
