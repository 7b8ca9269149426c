"""
Delegation Service — hand-over of approval authority.

Rules enforced here (not in the blueprint):
    - a user cannot delegate to themselves
    - both users must exist, be active and not deleted
    - end_date must be after start_date
    - no two active delegations from the same user may overlap in time
    - no active 2-cycle: A→B is refused while an overlapping B→A is active
    - delegations are disabled, never deleted
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.approval import ApprovalDelegation
from app.models.audit import write_audit
from app.models.auth import User
from app.utils.helpers import as_utc

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _available_user(user_id: int, label: str) -> User:
    user = db.session.get(User, user_id)
    if user is None or not user.is_available:
        raise NotFoundError(resource=label, resource_id=user_id)
    return user


def _overlapping(from_user_id: int, to_user_id: int | None, start: datetime, end: datetime):
    stmt = select(ApprovalDelegation).where(
        ApprovalDelegation.from_user_id == from_user_id,
        ApprovalDelegation.is_active.is_(True),
        ApprovalDelegation.start_date <= end,
        ApprovalDelegation.end_date >= start,
    )
    if to_user_id is not None:
        stmt = stmt.where(ApprovalDelegation.to_user_id == to_user_id)
    return db.session.execute(stmt.limit(1)).scalar_one_or_none()


def create_delegation(
    from_user_id: int,
    to_user_id: int,
    start_date: datetime,
    end_date: datetime,
    actor_id: int | None,
) -> ApprovalDelegation:
    """Create an active delegation after validating the rules above."""
    if from_user_id == to_user_id:
        raise ValidationError("A user cannot delegate approvals to themselves",
                              details={"to_user_id": "must differ from from_user_id"})
    start_date, end_date = as_utc(start_date), as_utc(end_date)
    if end_date <= start_date:
        raise ValidationError("end_date must be after start_date")

    _available_user(from_user_id, "User")
    _available_user(to_user_id, "User")

    if _overlapping(to_user_id, from_user_id, start_date, end_date) is not None:
        raise ConflictError(
            f"Circular delegation: user {to_user_id} already delegates to user {from_user_id}",
            resource="ApprovalDelegation",
        )
    clash = _overlapping(from_user_id, None, start_date, end_date)
    if clash is not None:
        raise ConflictError(
            f"User {from_user_id} already has an active delegation (id={clash.id}) in this period",
            resource="ApprovalDelegation",
        )

    delegation = ApprovalDelegation(
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        start_date=start_date,
        end_date=end_date,
        is_active=True,
        created_by_id=actor_id,
    )
    db.session.add(delegation)
    db.session.flush()
    write_audit(
        entity_type="approval_delegation", entity_id=delegation.id,
        action="delegation.create", actor_user_id=actor_id,
        diff={"from_user_id": from_user_id, "to_user_id": to_user_id,
              "start_date": start_date, "end_date": end_date},
    )
    db.session.commit()
    logger.info("Delegation %s created: %s → %s", delegation.id, from_user_id, to_user_id)
    return delegation


def disable_delegation(delegation_id: int, actor_id: int | None) -> ApprovalDelegation:
    delegation = db.session.get(ApprovalDelegation, delegation_id)
    if delegation is None:
        raise NotFoundError(resource="ApprovalDelegation", resource_id=delegation_id)
    if not delegation.is_active:
        raise ConflictError(f"Delegation {delegation_id} is already disabled",
                            resource="ApprovalDelegation")
    delegation.is_active = False
    delegation.disabled_at = _utcnow()
    delegation.disabled_by_id = actor_id
    write_audit(
        entity_type="approval_delegation", entity_id=delegation.id,
        action="delegation.disable", actor_user_id=actor_id,
        diff={"is_active": {"old": True, "new": False}},
    )
    db.session.commit()
    logger.info("Delegation %s disabled by %s", delegation_id, actor_id)
    return delegation


def list_delegations(user_id: int | None = None, active_only: bool = False) -> list[ApprovalDelegation]:
    """Delegations given or received by ``user_id`` (all when None), newest first."""
    q = ApprovalDelegation.query
    if user_id is not None:
        q = q.filter(
            (ApprovalDelegation.from_user_id == user_id) | (ApprovalDelegation.to_user_id == user_id)
        )
    if active_only:
        now = _utcnow()
        q = q.filter(
            ApprovalDelegation.is_active.is_(True),
            ApprovalDelegation.end_date >= now,
        )
    return q.order_by(ApprovalDelegation.created_at.desc(), ApprovalDelegation.id.desc()).all()
