"""
Approver resolution and the can-act predicate.

Tests cover:
  - Role holder ordering and availability filtering
  - Requester skipping (except top admins)
  - Delegation redirect at assignment time
  - can_act_on_step reasons: override, direct, role, escalation, delegate
"""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from app.models import db
from app.services.approver_resolver import (
    ActorContext,
    active_delegation_from,
    active_delegations_to,
    can_act_on_step,
    resolve_approver,
    role_holders,
    top_admins,
)


def _step(role_id, approver_user_id=None, escalated_to_id=None):
    return SimpleNamespace(role_id=role_id, approver_user_id=approver_user_id,
                           escalated_to_id=escalated_to_id)


# ═════════════════════════════════════════════════════════════════════════
# RESOLUTION
# ═════════════════════════════════════════════════════════════════════════

class TestRoleHolders:
    def test_ordered_by_id(self, users, roles):
        assert [u.id for u in role_holders(roles["pm"].id)] == [users["pm"].id, users["pm2"].id]

    def test_inactive_and_deleted_excluded(self, users, roles):
        users["pm"].is_active = False
        users["pm2"].soft_delete()
        db.session.commit()
        assert role_holders(roles["pm"].id) == []

    def test_top_admins(self, users):
        assert [u.id for u in top_admins()] == [users["admin"].id]


class TestResolveApprover:
    def test_first_holder(self, users, roles):
        resolved = resolve_approver(roles["pm"].id, users["buyer"].id)
        assert resolved.user_id == users["pm"].id
        assert resolved.delegated is False

    def test_requester_skipped(self, users, roles):
        resolved = resolve_approver(roles["pm"].id, users["pm"].id)
        assert resolved.user_id == users["pm2"].id

    def test_top_admin_requester_not_skipped(self, users, roles):
        resolved = resolve_approver(roles["admin"].id, users["admin"].id)
        assert resolved.user_id == users["admin"].id

    def test_only_holder_is_requester(self, users, roles):
        assert resolve_approver(roles["finance"].id, users["finance"].id) is None

    def test_delegation_redirect(self, users, roles, make_delegation):
        make_delegation(users["pm"], users["outsider"])
        resolved = resolve_approver(roles["pm"].id, users["buyer"].id)
        assert resolved.user_id == users["outsider"].id
        assert resolved.delegated is True
        assert resolved.delegated_from_id == users["pm"].id

    def test_delegate_who_is_requester_falls_through(self, users, roles, make_delegation):
        make_delegation(users["pm"], users["buyer"])
        resolved = resolve_approver(roles["pm"].id, users["buyer"].id)
        assert resolved.user_id == users["pm2"].id

    def test_future_delegation_not_active(self, users, roles, make_delegation):
        now = datetime.now(timezone.utc)
        make_delegation(users["pm"], users["outsider"],
                        start=now + timedelta(days=1), end=now + timedelta(days=3))
        assert active_delegation_from(users["pm"].id, now) is None
        assert resolve_approver(roles["pm"].id, users["buyer"].id, now).user_id == users["pm"].id

    def test_disabled_delegation_not_active(self, users, make_delegation):
        make_delegation(users["pm"], users["outsider"], active=False)
        assert active_delegations_to(users["outsider"].id) == []


# ═════════════════════════════════════════════════════════════════════════
# CAN-ACT PREDICATE
# ═════════════════════════════════════════════════════════════════════════

class TestCanActOnStep:
    def test_override(self):
        ctx = ActorContext(user_id=1, can_override=True)
        result = can_act_on_step(_step(role_id=99, approver_user_id=5), ctx)
        assert result.allowed and result.reason == "override"

    def test_direct_assignment(self):
        ctx = ActorContext(user_id=5)
        assert can_act_on_step(_step(role_id=99, approver_user_id=5), ctx).reason == "direct"

    def test_role_match_even_when_assigned_elsewhere(self):
        ctx = ActorContext(user_id=6, role_ids={3})
        assert can_act_on_step(_step(role_id=3, approver_user_id=5), ctx).reason == "role"

    def test_escalation_target(self):
        ctx = ActorContext(user_id=7)
        result = can_act_on_step(_step(role_id=3, approver_user_id=5, escalated_to_id=7), ctx)
        assert result.allowed and result.reason == "escalation"

    def test_delegate_of_assignee(self):
        ctx = ActorContext(user_id=8, delegators={5: {3}})
        result = can_act_on_step(_step(role_id=3, approver_user_id=5), ctx)
        assert result.allowed
        assert result.delegated_from_id == 5

    def test_delegate_of_unrelated_user(self):
        ctx = ActorContext(user_id=8, delegators={4: {3}})
        assert not can_act_on_step(_step(role_id=3, approver_user_id=5), ctx).allowed

    def test_unassigned_step_via_delegator_role(self):
        ctx = ActorContext(user_id=8, delegators={4: {3}})
        result = can_act_on_step(_step(role_id=3), ctx)
        assert result.allowed and result.delegated_from_id == 4

    def test_stranger(self):
        assert not can_act_on_step(_step(role_id=3, approver_user_id=5), ActorContext(user_id=9)).allowed

    def test_context_from_user(self, users, make_delegation):
        make_delegation(users["pm"], users["outsider"])
        ctx = ActorContext.for_user(users["outsider"])
        assert ctx.delegators == {users["pm"].id: users["pm"].role_ids}
        assert ctx.can_override is False
        assert ActorContext.for_user(users["admin"]).is_top_admin is True
