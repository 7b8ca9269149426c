"""
Approver Resolver.

Two questions, both answered here so inbox, approve and reject can never
disagree:

    resolve_approver(role_id, requester_id, now)
        Who should a freshly created step be assigned to?

    can_act_on_step(step, ctx)
        May this actor act on this step right now (and on whose behalf)?

Delegations are honoured in both: a candidate with an active delegation
is redirected to the delegate at creation time, and a delegate may act
on steps still assigned to the delegator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db
from app.models.approval import ApprovalDelegation
from app.models.auth import Role, User, UserRole

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResolvedApprover:
    user_id: int
    delegated: bool = False
    delegated_from_id: int | None = None


@dataclass(frozen=True)
class StepEligibility:
    allowed: bool
    delegated_from_id: int | None = None
    reason: str | None = None


@dataclass
class ActorContext:
    """Everything the can-act predicate needs to know about the actor."""

    user_id: int
    role_ids: set = field(default_factory=set)
    is_top_admin: bool = False
    can_override: bool = False
    # delegator user id -> role ids the delegator holds
    delegators: dict = field(default_factory=dict)

    @classmethod
    def for_user(cls, user: User, now: datetime | None = None) -> "ActorContext":
        now = now or _utcnow()
        delegators = {}
        for delegation in active_delegations_to(user.id, now):
            delegator = delegation.from_user
            if delegator is not None and delegator.is_available:
                delegators[delegator.id] = delegator.role_ids
        return cls(
            user_id=user.id,
            role_ids=user.role_ids,
            is_top_admin=user.is_top_admin,
            can_override=user.can_override_approvals,
            delegators=delegators,
        )


# ═════════════════════════════════════════════════════════════════════════════
# Delegation lookups
# ═════════════════════════════════════════════════════════════════════════════

def _active_window(now: datetime):
    return (
        ApprovalDelegation.is_active.is_(True),
        ApprovalDelegation.start_date <= now,
        ApprovalDelegation.end_date >= now,
    )


def active_delegation_from(user_id: int, now: datetime | None = None) -> ApprovalDelegation | None:
    """The delegation currently forwarding *user_id*'s approvals, if any."""
    now = now or _utcnow()
    stmt = (
        select(ApprovalDelegation)
        .where(ApprovalDelegation.from_user_id == user_id, *_active_window(now))
        .order_by(ApprovalDelegation.start_date.desc(), ApprovalDelegation.id.desc())
        .limit(1)
    )
    return db.session.execute(stmt).scalar_one_or_none()


def active_delegations_to(user_id: int, now: datetime | None = None) -> list[ApprovalDelegation]:
    """Delegations currently making *user_id* a stand-in for someone else."""
    now = now or _utcnow()
    stmt = (
        select(ApprovalDelegation)
        .where(ApprovalDelegation.to_user_id == user_id, *_active_window(now))
        .order_by(ApprovalDelegation.id)
    )
    return list(db.session.execute(stmt).scalars())


# ═════════════════════════════════════════════════════════════════════════════
# Resolution
# ═════════════════════════════════════════════════════════════════════════════

def role_holders(role_id: int) -> list[User]:
    """Active, non-deleted holders of a role in stable (id) order."""
    stmt = (
        select(User)
        .join(UserRole, UserRole.user_id == User.id)
        .where(
            UserRole.role_id == role_id,
            User.is_active.is_(True),
            User.deleted_at.is_(None),
        )
        .order_by(User.id)
    )
    return list(db.session.execute(stmt).scalars().unique())


def resolve_approver(role_id: int, requester_id: int, now: datetime | None = None) -> ResolvedApprover | None:
    """Pick the approver for a new step holding ``role_id``.

    The requester is skipped unless they are a top admin. A candidate
    with an active delegation is replaced by the delegate, unless the
    delegate is the requester, in which case the next candidate is tried.
    Returns None when no identity qualifies.
    """
    now = now or _utcnow()
    for candidate in role_holders(role_id):
        if candidate.id == requester_id and not candidate.is_top_admin:
            continue
        delegation = active_delegation_from(candidate.id, now)
        if delegation is not None:
            delegate = delegation.to_user
            if delegate is None or not delegate.is_available:
                return ResolvedApprover(user_id=candidate.id)
            if delegate.id == requester_id:
                continue
            logger.debug("Role %s: candidate %s redirected to delegate %s",
                         role_id, candidate.id, delegate.id)
            return ResolvedApprover(user_id=delegate.id, delegated=True, delegated_from_id=candidate.id)
        return ResolvedApprover(user_id=candidate.id)
    return None


def top_admins() -> list[User]:
    """Active holders of any top-admin role, oldest account first."""
    stmt = (
        select(User)
        .join(UserRole, UserRole.user_id == User.id)
        .join(Role, Role.id == UserRole.role_id)
        .where(
            Role.is_top_admin.is_(True),
            Role.is_active.is_(True),
            User.is_active.is_(True),
            User.deleted_at.is_(None),
        )
        .order_by(User.id)
    )
    return list(db.session.execute(stmt).scalars().unique())


# ═════════════════════════════════════════════════════════════════════════════
# Can-act predicate
# ═════════════════════════════════════════════════════════════════════════════

def can_act_on_step(step, ctx: ActorContext) -> StepEligibility:
    """Decide whether ``ctx`` may act on ``step``.

    Pure: reads only the step's own columns and the pre-loaded context.
    Step status and the request's current order are checked by callers.
    """
    if ctx.can_override:
        return StepEligibility(True, reason="override")
    if step.approver_user_id == ctx.user_id:
        return StepEligibility(True, reason="direct")
    if step.role_id in ctx.role_ids:
        return StepEligibility(True, reason="role")
    if step.escalated_to_id is not None and step.escalated_to_id == ctx.user_id:
        return StepEligibility(True, reason="escalation")
    if step.approver_user_id is not None:
        if step.approver_user_id in ctx.delegators:
            return StepEligibility(True, delegated_from_id=step.approver_user_id, reason="delegate")
        return StepEligibility(False)
    for delegator_id, delegator_roles in ctx.delegators.items():
        if step.role_id in delegator_roles:
            return StepEligibility(True, delegated_from_id=delegator_id, reason="delegate")
    return StepEligibility(False)
