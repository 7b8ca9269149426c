"""
Approval API tests.

Tests cover:
  - Submitting documents (single-step and two-step PR routing)
  - Input validation (400), missing token (401), forbidden actors (403)
  - Duplicate in-progress requests (409) and unroutable documents (422)
  - Approve / reject / cancel transitions and terminal-state conflicts
  - Inbox filters, request detail and document history
  - Idempotency-Key replay and conflict on write routes
"""
import pytest


def _submit(client, headers, **overrides):
    body = {"doc_type": "PR", "doc_id": "PR-0001", "amount": 50000}
    body.update(overrides)
    return client.post("/api/v1/approvals/request", json=body, headers=headers)


@pytest.fixture()
def small_pr(client, users, pr_matrix, project, auth_headers):
    """A 50,000 PR raised by the buyer against the demo project (one step)."""
    res = _submit(client, auth_headers(users["buyer"]), project_id=project.id)
    assert res.status_code == 201
    return res.get_json()


@pytest.fixture()
def large_pr(client, users, pr_matrix, auth_headers):
    """A 2,000,000 PR raised by the buyer (two steps)."""
    res = _submit(client, auth_headers(users["buyer"]), doc_id="PR-0002", amount=2000000)
    assert res.status_code == 201
    return res.get_json()


# ═════════════════════════════════════════════════════════════════════════
# SUBMIT
# ═════════════════════════════════════════════════════════════════════════

class TestSubmit:
    def test_small_pr_gets_one_step(self, small_pr):
        assert small_pr["status"] == "in_progress"
        assert small_pr["total_steps"] == 1
        assert small_pr["current_step"] == 1

    def test_large_pr_gets_two_steps(self, large_pr):
        assert large_pr["total_steps"] == 2
        assert large_pr["current_step"] == 1

    def test_step_assigned_to_role_holder(self, client, users, small_pr, auth_headers):
        res = client.get(f"/api/v1/approvals/{small_pr['approval_request_id']}",
                         headers=auth_headers(users["buyer"]))
        assert res.status_code == 200
        data = res.get_json()
        assert data["doc_type"] == "PR"
        assert data["project_name"] == "Plant Expansion"
        assert len(data["steps"]) == 1
        step = data["steps"][0]
        assert step["role"]["code"] == "project_manager"
        assert step["approver"]["id"] == users["pm"].id
        assert step["status"] == "pending"

    def test_doc_type_is_case_insensitive(self, client, users, pr_matrix, auth_headers):
        res = _submit(client, auth_headers(users["buyer"]), doc_type="pr")
        assert res.status_code == 201

    def test_numeric_doc_id_accepted(self, client, users, pr_matrix, auth_headers):
        res = _submit(client, auth_headers(users["buyer"]), doc_id=42)
        assert res.status_code == 201
        rid = res.get_json()["approval_request_id"]
        detail = client.get(f"/api/v1/approvals/{rid}", headers=auth_headers(users["buyer"])).get_json()
        assert detail["doc_id"] == "42"

    def test_duplicate_in_progress_request_409(self, client, users, small_pr, auth_headers):
        res = _submit(client, auth_headers(users["buyer"]))
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_no_matrix_422(self, client, users, pr_matrix, auth_headers):
        res = _submit(client, auth_headers(users["buyer"]), doc_type="PO")
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_APPROVAL_CONFIGURATION"

    def test_unknown_project_404(self, client, users, pr_matrix, auth_headers):
        res = _submit(client, auth_headers(users["buyer"]), project_id=9999)
        assert res.status_code == 404

    def test_resubmit_after_terminal_allowed(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        client.post(f"/api/v1/approvals/{rid}/cancel", json={}, headers=auth_headers(users["buyer"]))
        res = _submit(client, auth_headers(users["buyer"]))
        assert res.status_code == 201
        assert res.get_json()["approval_request_id"] != rid


class TestSubmitValidation:
    def test_missing_doc_type(self, client, users, auth_headers):
        res = client.post("/api/v1/approvals/request", json={"doc_id": "X", "amount": 1},
                          headers=auth_headers(users["buyer"]))
        assert res.status_code == 400
        data = res.get_json()
        assert data["code"] == "ERR_VALIDATION_REQUIRED"
        assert "doc_type" in data["details"]

    def test_unknown_doc_type(self, client, users, auth_headers):
        res = _submit(client, auth_headers(users["buyer"]), doc_type="TIMESHEET")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    @pytest.mark.parametrize("amount", [-1, "abc", None, True])
    def test_bad_amount(self, client, users, auth_headers, amount):
        res = _submit(client, auth_headers(users["buyer"]), amount=amount)
        assert res.status_code == 400
        assert "amount" in res.get_json()["details"]

    def test_blank_doc_id(self, client, users, auth_headers):
        res = _submit(client, auth_headers(users["buyer"]), doc_id="   ")
        assert res.status_code == 400
        assert "doc_id" in res.get_json()["details"]

    def test_project_id_must_be_int(self, client, users, auth_headers):
        res = _submit(client, auth_headers(users["buyer"]), project_id="1")
        assert res.status_code == 400
        assert "project_id" in res.get_json()["details"]

    def test_non_json_body_415(self, client, users, auth_headers):
        res = client.post("/api/v1/approvals/request", data="doc_type=PR",
                          content_type="text/plain", headers=auth_headers(users["buyer"]))
        assert res.status_code == 415

    def test_no_token_401(self, client):
        res = client.post("/api/v1/approvals/request", json={"doc_type": "PR"})
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_garbage_token_401(self, client):
        res = client.get("/api/v1/approvals/inbox", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401


# ═════════════════════════════════════════════════════════════════════════
# APPROVE
# ═════════════════════════════════════════════════════════════════════════

class TestApprove:
    def test_single_step_approval_completes(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/approve", json={"remarks": "OK"},
                          headers=auth_headers(users["pm"]))
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "approved"
        assert data["current_step"] is None

        detail = client.get(f"/api/v1/approvals/{rid}", headers=auth_headers(users["pm"])).get_json()
        assert detail["is_completed"] is True
        assert detail["steps"][0]["remarks"] == "OK"
        assert detail["steps"][0]["action"] == "approve"

    def test_two_step_flow(self, client, users, large_pr, auth_headers):
        rid = large_pr["approval_request_id"]
        first = client.post(f"/api/v1/approvals/{rid}/approve", json={},
                            headers=auth_headers(users["pm"]))
        assert first.status_code == 200
        assert first.get_json() == {"approval_request_id": rid, "status": "in_progress", "current_step": 2}

        second = client.post(f"/api/v1/approvals/{rid}/approve", json={},
                             headers=auth_headers(users["admin"]))
        assert second.status_code == 200
        assert second.get_json()["status"] == "approved"

    def test_other_role_holder_may_approve(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/approve", json={},
                          headers=auth_headers(users["pm2"]))
        assert res.status_code == 200
        detail = client.get(f"/api/v1/approvals/{rid}", headers=auth_headers(users["pm2"])).get_json()
        assert detail["steps"][0]["approver"]["id"] == users["pm2"].id

    def test_outsider_forbidden(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/approve", json={},
                          headers=auth_headers(users["outsider"]))
        assert res.status_code == 403

    def test_requester_cannot_self_approve(self, client, users, pr_matrix, auth_headers):
        res = _submit(client, auth_headers(users["pm"]), doc_id="PR-SELF")
        rid = res.get_json()["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/approve", json={},
                          headers=auth_headers(users["pm"]))
        assert res.status_code == 403
        assert "requested" in res.get_json()["error"]

    def test_top_admin_may_self_approve(self, client, users, pr_matrix, auth_headers):
        res = _submit(client, auth_headers(users["admin"]), doc_id="PR-ADM")
        rid = res.get_json()["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/approve", json={},
                          headers=auth_headers(users["admin"]))
        assert res.status_code == 200
        assert res.get_json()["status"] == "approved"

    def test_reapprove_is_idempotent(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        client.post(f"/api/v1/approvals/{rid}/approve", json={}, headers=auth_headers(users["pm"]))
        again = client.post(f"/api/v1/approvals/{rid}/approve", json={}, headers=auth_headers(users["pm"]))
        assert again.status_code == 200
        assert again.get_json()["already_approved"] is True

    def test_remarks_too_long(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/approve", json={"remarks": "x" * 1001},
                          headers=auth_headers(users["pm"]))
        assert res.status_code == 400

    def test_unknown_request_404(self, client, users, auth_headers):
        res = client.post("/api/v1/approvals/9999/approve", json={}, headers=auth_headers(users["pm"]))
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# REJECT / CANCEL
# ═════════════════════════════════════════════════════════════════════════

class TestReject:
    def test_reject_requires_remarks(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/reject", json={"remarks": "  "},
                          headers=auth_headers(users["pm"]))
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_reject_skips_remaining_steps(self, client, users, large_pr, auth_headers):
        rid = large_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/reject", json={"remarks": "Over budget"},
                          headers=auth_headers(users["pm"]))
        assert res.status_code == 200
        assert res.get_json()["status"] == "rejected"

        steps = client.get(f"/api/v1/approvals/{rid}", headers=auth_headers(users["pm"])).get_json()["steps"]
        assert [s["status"] for s in steps] == ["rejected", "skipped"]
        assert steps[0]["remarks"] == "Over budget"

    def test_approve_after_reject_409(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        client.post(f"/api/v1/approvals/{rid}/reject", json={"remarks": "No"},
                    headers=auth_headers(users["pm"]))
        res = client.post(f"/api/v1/approvals/{rid}/approve", json={}, headers=auth_headers(users["pm2"]))
        assert res.status_code == 409

    def test_outsider_cannot_reject(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/reject", json={"remarks": "No"},
                          headers=auth_headers(users["outsider"]))
        assert res.status_code == 403


class TestCancel:
    def test_requester_cancels(self, client, users, large_pr, auth_headers):
        rid = large_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/cancel", json={"remarks": "Duplicate"},
                          headers=auth_headers(users["buyer"]))
        assert res.status_code == 200
        assert res.get_json()["status"] == "cancelled"
        steps = client.get(f"/api/v1/approvals/{rid}", headers=auth_headers(users["buyer"])).get_json()["steps"]
        assert {s["status"] for s in steps} == {"skipped"}

    def test_admin_cancels(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/cancel", json={}, headers=auth_headers(users["admin"]))
        assert res.status_code == 200

    def test_approver_cannot_cancel(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        res = client.post(f"/api/v1/approvals/{rid}/cancel", json={}, headers=auth_headers(users["pm"]))
        assert res.status_code == 403

    def test_cancel_twice_409(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        client.post(f"/api/v1/approvals/{rid}/cancel", json={}, headers=auth_headers(users["buyer"]))
        res = client.post(f"/api/v1/approvals/{rid}/cancel", json={}, headers=auth_headers(users["buyer"]))
        assert res.status_code == 409


# ═════════════════════════════════════════════════════════════════════════
# INBOX / HISTORY
# ═════════════════════════════════════════════════════════════════════════

class TestInbox:
    def test_pending_inbox_for_approver(self, client, users, small_pr, auth_headers):
        res = client.get("/api/v1/approvals/inbox", headers=auth_headers(users["pm"]))
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "pending"
        assert data["total"] == 1
        item = data["items"][0]
        assert item["approval_request_id"] == small_pr["approval_request_id"]
        assert item["doc_id"] == "PR-0001"
        assert item["amount"] == 50000.0
        assert item["requested_by"]["id"] == users["buyer"].id

    def test_pending_inbox_empty_for_outsider(self, client, users, small_pr, auth_headers):
        res = client.get("/api/v1/approvals/inbox", headers=auth_headers(users["outsider"]))
        assert res.get_json()["total"] == 0

    def test_second_order_hidden_until_current(self, client, users, large_pr, auth_headers):
        rid = large_pr["approval_request_id"]
        pending = client.get("/api/v1/approvals/inbox", headers=auth_headers(users["pm"])).get_json()
        assert [i["step_order"] for i in pending["items"]] == [1]

        client.post(f"/api/v1/approvals/{rid}/approve", json={}, headers=auth_headers(users["pm"]))
        pending = client.get("/api/v1/approvals/inbox", headers=auth_headers(users["pm"])).get_json()
        assert pending["total"] == 0
        approved = client.get("/api/v1/approvals/inbox?status=approved",
                              headers=auth_headers(users["pm"])).get_json()
        assert approved["total"] == 1

    def test_sent_lists_own_requests(self, client, users, small_pr, auth_headers):
        res = client.get("/api/v1/approvals/inbox?status=sent", headers=auth_headers(users["buyer"]))
        items = res.get_json()["items"]
        assert [i["id"] for i in items] == [small_pr["approval_request_id"]]

    def test_all_sent_admin_only(self, client, users, small_pr, auth_headers):
        res = client.get("/api/v1/approvals/inbox?status=all_sent", headers=auth_headers(users["pm"]))
        assert res.status_code == 403
        res = client.get("/api/v1/approvals/inbox?status=all_sent", headers=auth_headers(users["admin"]))
        assert res.status_code == 200
        assert res.get_json()["total"] == 1

    def test_unknown_status_400(self, client, users, auth_headers):
        res = client.get("/api/v1/approvals/inbox?status=archived", headers=auth_headers(users["pm"]))
        assert res.status_code == 400


class TestHistory:
    def test_history_newest_first(self, client, users, small_pr, auth_headers):
        first = small_pr["approval_request_id"]
        client.post(f"/api/v1/approvals/{first}/cancel", json={}, headers=auth_headers(users["buyer"]))
        second = _submit(client, auth_headers(users["buyer"])).get_json()["approval_request_id"]

        res = client.get("/api/v1/approvals/history?doc_type=PR&doc_id=PR-0001",
                         headers=auth_headers(users["buyer"]))
        assert res.status_code == 200
        runs = res.get_json()
        assert [r["id"] for r in runs] == [second, first]
        assert runs[1]["status"] == "cancelled"
        assert "steps" in runs[0]

    def test_history_requires_params(self, client, users, auth_headers):
        res = client.get("/api/v1/approvals/history?doc_type=PR", headers=auth_headers(users["buyer"]))
        assert res.status_code == 400

    def test_detail_404(self, client, users, auth_headers):
        res = client.get("/api/v1/approvals/9999", headers=auth_headers(users["buyer"]))
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# IDEMPOTENCY-KEY
# ═════════════════════════════════════════════════════════════════════════

class TestIdempotentWrites:
    def test_replayed_submit_returns_same_response(self, client, users, pr_matrix, auth_headers):
        headers = auth_headers(users["buyer"], idempotency_key="submit-PR-0001")
        first = _submit(client, headers)
        second = _submit(client, headers)
        assert first.status_code == second.status_code == 201
        assert second.headers.get("Idempotent-Replayed") == "true"
        assert second.data == first.data

        history = client.get("/api/v1/approvals/history?doc_type=PR&doc_id=PR-0001",
                             headers=auth_headers(users["buyer"])).get_json()
        assert len(history) == 1

    def test_same_key_different_body_409(self, client, users, pr_matrix, auth_headers):
        headers = auth_headers(users["buyer"], idempotency_key="k-1")
        _submit(client, headers)
        res = _submit(client, headers, doc_id="PR-OTHER")
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_IDEMPOTENCY_CONFLICT"

    def test_replayed_approve(self, client, users, small_pr, auth_headers):
        rid = small_pr["approval_request_id"]
        headers = auth_headers(users["pm"], idempotency_key=f"approve-{rid}")
        first = client.post(f"/api/v1/approvals/{rid}/approve", json={}, headers=headers)
        second = client.post(f"/api/v1/approvals/{rid}/approve", json={}, headers=headers)
        assert second.headers.get("Idempotent-Replayed") == "true"
        assert second.data == first.data
        assert "already_approved" not in second.get_json()

    def test_failed_request_not_stored(self, client, users, pr_matrix, auth_headers):
        headers = auth_headers(users["buyer"], idempotency_key="k-fail")
        assert _submit(client, headers, doc_type="PO").status_code == 422
        res = _submit(client, headers, doc_type="PO")
        assert res.status_code == 422
        assert res.headers.get("Idempotent-Replayed") is None

    def test_overlong_key_400(self, client, users, pr_matrix, auth_headers):
        res = _submit(client, auth_headers(users["buyer"], idempotency_key="k" * 256))
        assert res.status_code == 400
