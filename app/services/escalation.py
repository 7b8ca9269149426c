"""
Escalation Service — SLA breach handling for pending approval steps.

A pending, not-yet-escalated step of an in-progress request is escalated
once the time since the request was submitted reaches the SLA
(``escalation_hours``) of the matrix rule that produced it. Steps whose
rule has no SLA are never escalated.

Target, first match wins:
    1. the assigned approver's manager, if active
    2. the first active top administrator
    3. nobody: the step is flagged with no target and a warning is logged

The flag is set with a conditional UPDATE (``escalated = false AND
status = 'pending'``), so overlapping scans escalate a step exactly once.

Usage:
    from app.services.escalation import EscalationService
    result = EscalationService.run_escalation()
    # {"scanned": 12, "escalated_count": 2, "error_count": 0, ...}
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update

from app.models import db
from app.models.approval import (
    REQUEST_IN_PROGRESS,
    STEP_PENDING,
    ApprovalMatrixRule,
    ApprovalRequest,
    ApprovalStep,
)
from app.models.audit import write_audit
from app.models.auth import User
from app.services.approver_resolver import top_admins
from app.utils.helpers import as_utc

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EscalationService:
    """Finds SLA-breached steps and flags them for escalation."""

    @staticmethod
    def sla_hours(step: ApprovalStep) -> int | None:
        """SLA of the rule behind ``step``.

        Steps whose rule row has since been removed fall back to an active
        rule with an SLA for the same doc type, order and role.
        """
        rule = step.matrix_rule
        if rule is not None:
            return rule.escalation_hours
        fallback = db.session.execute(
            select(ApprovalMatrixRule.escalation_hours)
            .where(
                ApprovalMatrixRule.doc_type == step.request.doc_type,
                ApprovalMatrixRule.step_order == step.step_order,
                ApprovalMatrixRule.role_id == step.role_id,
                ApprovalMatrixRule.escalation_hours.is_not(None),
                ApprovalMatrixRule.is_active.is_(True),
            )
            .order_by(ApprovalMatrixRule.id)
            .limit(1)
        ).scalar_one_or_none()
        return fallback

    @staticmethod
    def resolve_target(step: ApprovalStep) -> User | None:
        approver = step.approver
        if approver is not None and approver.manager_id is not None:
            manager = db.session.get(User, approver.manager_id)
            if manager is not None and manager.is_available:
                return manager
        admins = top_admins()
        return admins[0] if admins else None

    @staticmethod
    def claim(step_id: int, target_id: int | None, now: datetime) -> bool:
        """Flip the escalated flag if nobody else has; True when this call won."""
        result = db.session.execute(
            update(ApprovalStep)
            .where(
                ApprovalStep.id == step_id,
                ApprovalStep.escalated.is_(False),
                ApprovalStep.status == STEP_PENDING,
            )
            .values(escalated=True, escalated_to_id=target_id, escalated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @classmethod
    def candidates(cls) -> list[int]:
        stmt = (
            select(ApprovalStep.id)
            .join(ApprovalRequest, ApprovalRequest.id == ApprovalStep.approval_request_id)
            .where(
                ApprovalStep.status == STEP_PENDING,
                ApprovalStep.escalated.is_(False),
                ApprovalRequest.status == REQUEST_IN_PROGRESS,
            )
            .order_by(ApprovalStep.id)
        )
        return list(db.session.execute(stmt).scalars())

    @classmethod
    def run_escalation(cls, now: datetime | None = None) -> dict:
        """Scan once. Per-step failures are counted and do not stop the scan."""
        now = now or _utcnow()
        results = {
            "scanned": 0,
            "escalated_count": 0,
            "error_count": 0,
            "no_sla": 0,
            "within_sla": 0,
            "no_target": 0,
        }

        step_ids = cls.candidates()
        results["scanned"] = len(step_ids)

        for step_id in step_ids:
            try:
                step = db.session.get(ApprovalStep, step_id)
                if step is None:
                    continue
                hours = cls.sla_hours(step)
                if hours is None:
                    results["no_sla"] += 1
                    continue
                elapsed_hours = (now - as_utc(step.request.created_at)).total_seconds() / 3600
                if elapsed_hours < hours:
                    results["within_sla"] += 1
                    continue

                target = cls.resolve_target(step)
                target_id = target.id if target is not None else None
                request_id = step.approval_request_id
                if not cls.claim(step_id, target_id, now):
                    db.session.rollback()
                    logger.debug("Step %s already escalated by a concurrent scan", step_id)
                    continue
                db.session.commit()
                results["escalated_count"] += 1

                if target_id is None:
                    results["no_target"] += 1
                    logger.warning("Step %s breached its %sh SLA but no escalation target is available",
                                   step_id, hours, extra={"approval_request_id": request_id})
                else:
                    logger.info("Step %s escalated to user %s after %.1fh (SLA %sh)",
                                step_id, target_id, elapsed_hours, hours,
                                extra={"approval_request_id": request_id})
                cls._audit(step_id, request_id, target_id, hours)
            except Exception:
                db.session.rollback()
                results["error_count"] += 1
                logger.exception("Escalation failed for step %s", step_id)

        logger.info("Escalation scan: %s", results)
        return results

    @staticmethod
    def _audit(step_id: int, request_id: int, target_id: int | None, hours: int) -> None:
        try:
            write_audit(
                entity_type="approval_step", entity_id=step_id, action="approval.escalate",
                diff={"approval_request_id": request_id, "escalated_to": target_id, "sla_hours": hours},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Audit write failed for escalation of step %s", step_id)
