"""
SLA escalation tests.

Tests cover:
  - Breached steps escalated to the approver's manager
  - Fallback to the first top admin when the manager is unavailable
  - Steps with no available target flagged without a target
  - Steps within SLA / without SLA left alone
  - Exactly-once escalation across repeated scans
  - Escalation targets gaining the right to act
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.models import db
from app.models.approval import ApprovalStep
from app.models.audit import AuditLog
from app.services.approval_service import ApprovalOrchestrator
from app.services.escalation import EscalationService

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def orchestrator():
    return ApprovalOrchestrator()


@pytest.fixture()
def grn_matrix(roles, make_rule):
    """GRN: procurement officer approves with a 4h SLA."""
    return make_rule(roles["buyer"], 1, doc_type="GRN", escalation_hours=4)


def _submit(orchestrator, requester, hours_ago, doc_type="PR", doc_id="D-1", amount="50000"):
    result = orchestrator.request_approval(
        {"doc_type": doc_type, "doc_id": doc_id, "amount": Decimal(amount)},
        requester.id, now=NOW - timedelta(hours=hours_ago),
    )
    return result["approval_request_id"]


def _step(request_id, order=1):
    return ApprovalStep.query.filter_by(approval_request_id=request_id, step_order=order).one()


# ═════════════════════════════════════════════════════════════════════════
# SCAN
# ═════════════════════════════════════════════════════════════════════════

class TestRunEscalation:
    def test_breached_step_goes_to_manager(self, orchestrator, users, pr_matrix):
        rid = _submit(orchestrator, users["buyer"], hours_ago=25)
        result = EscalationService.run_escalation(now=NOW)
        assert result["escalated_count"] == 1
        assert result["error_count"] == 0

        step = _step(rid)
        assert step.escalated is True
        assert step.escalated_to_id == users["admin"].id  # pm's manager
        assert step.escalated_at is not None

    def test_within_sla_untouched(self, orchestrator, users, pr_matrix):
        rid = _submit(orchestrator, users["buyer"], hours_ago=23)
        result = EscalationService.run_escalation(now=NOW)
        assert result["within_sla"] == 1
        assert result["escalated_count"] == 0
        assert _step(rid).escalated is False

    def test_no_sla_never_escalated(self, orchestrator, users, roles, make_rule):
        make_rule(roles["pm"], 1, doc_type="RFQ")
        _submit(orchestrator, users["buyer"], hours_ago=1000, doc_type="RFQ")
        result = EscalationService.run_escalation(now=NOW)
        assert result["no_sla"] == 1
        assert result["escalated_count"] == 0

    def test_future_orders_escalate_on_submission_clock(self, orchestrator, users, pr_matrix):
        rid = _submit(orchestrator, users["buyer"], hours_ago=49, amount="2000000")
        result = EscalationService.run_escalation(now=NOW)
        assert result["scanned"] == 2
        assert result["escalated_count"] == 2
        assert _step(rid, 2).escalated_to_id == users["admin"].id

    def test_escalates_once(self, orchestrator, users, pr_matrix):
        _submit(orchestrator, users["buyer"], hours_ago=30)
        EscalationService.run_escalation(now=NOW)
        second = EscalationService.run_escalation(now=NOW + timedelta(hours=5))
        assert second["scanned"] == 0
        assert second["escalated_count"] == 0

    def test_terminal_requests_ignored(self, orchestrator, users, pr_matrix):
        rid = _submit(orchestrator, users["buyer"], hours_ago=30)
        orchestrator.cancel_approval(rid, users["buyer"].id)
        assert EscalationService.run_escalation(now=NOW)["scanned"] == 0

    def test_escalation_audited(self, orchestrator, users, pr_matrix):
        rid = _submit(orchestrator, users["buyer"], hours_ago=30)
        EscalationService.run_escalation(now=NOW)
        row = AuditLog.query.filter_by(action="approval.escalate").one()
        assert row.entity_id == str(_step(rid).id)
        assert row.actor_user_id is None
        assert row.diff["escalated_to"] == users["admin"].id

    def test_failing_step_does_not_stop_scan(self, orchestrator, users, pr_matrix, monkeypatch):
        first = _submit(orchestrator, users["buyer"], hours_ago=30, doc_id="D-1")
        second = _submit(orchestrator, users["buyer"], hours_ago=30, doc_id="D-2")
        broken_id = _step(first).id
        original = EscalationService.resolve_target

        def flaky(step):
            if step.id == broken_id:
                raise RuntimeError("manager lookup failed")
            return original(step)

        monkeypatch.setattr(EscalationService, "resolve_target", staticmethod(flaky))
        result = EscalationService.run_escalation(now=NOW)
        assert result["scanned"] == 2
        assert result["error_count"] == 1
        assert result["escalated_count"] == 1

        db.session.expire_all()
        assert _step(first).escalated is False
        assert _step(second).escalated is True


# ═════════════════════════════════════════════════════════════════════════
# TARGETS
# ═════════════════════════════════════════════════════════════════════════

class TestEscalationTarget:
    def test_manager_unavailable_falls_back_to_top_admin(self, orchestrator, users, grn_matrix):
        users["pm"].is_active = False
        db.session.commit()
        rid = _submit(orchestrator, users["finance"], hours_ago=5, doc_type="GRN")
        EscalationService.run_escalation(now=NOW)
        assert _step(rid).escalated_to_id == users["admin"].id

    def test_no_target_flags_step(self, orchestrator, users, grn_matrix):
        users["pm"].is_active = False
        users["admin"].is_active = False
        db.session.commit()
        rid = _submit(orchestrator, users["finance"], hours_ago=5, doc_type="GRN")
        result = EscalationService.run_escalation(now=NOW)
        assert result["no_target"] == 1
        step = _step(rid)
        assert step.escalated is True
        assert step.escalated_to_id is None

    def test_target_may_act(self, orchestrator, users, grn_matrix):
        """pm holds no procurement role but becomes eligible as the buyer's manager."""
        rid = _submit(orchestrator, users["finance"], hours_ago=5, doc_type="GRN")
        EscalationService.run_escalation(now=NOW)
        assert _step(rid).escalated_to_id == users["pm"].id

        inbox = orchestrator.get_inbox(users["pm"].id)
        assert inbox[0]["escalated"] is True
        assert inbox[0]["escalated_to"]["id"] == users["pm"].id
        assert orchestrator.approve_step(rid, users["pm"].id)["status"] == "approved"


# ═════════════════════════════════════════════════════════════════════════
# SLA LOOKUP / CLAIM
# ═════════════════════════════════════════════════════════════════════════

class TestSlaAndClaim:
    def test_sla_falls_back_to_equivalent_rule(self, orchestrator, users, pr_matrix):
        rid = _submit(orchestrator, users["buyer"], hours_ago=1)
        step = _step(rid)
        step.matrix_rule_id = None
        db.session.commit()
        assert EscalationService.sla_hours(_step(rid)) == 24

    def test_claim_only_once(self, orchestrator, users, pr_matrix):
        rid = _submit(orchestrator, users["buyer"], hours_ago=1)
        step_id = _step(rid).id
        assert EscalationService.claim(step_id, users["admin"].id, NOW) is True
        assert EscalationService.claim(step_id, users["admin"].id, NOW) is False
        db.session.commit()
