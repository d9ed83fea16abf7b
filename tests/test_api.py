"""
Tests: HTTP API. Covers status codes and error envelopes for every blueprint.
"""

import pytest

from conftest import LEAVE_PAYLOAD, LEAVE_SCHEMA, stage

REQUESTER = {"X-User-Id": "1"}


def _as(user_id):
    return {"X-User-Id": str(user_id)}


@pytest.fixture()
def leave_route(client):
    cat = client.post("/api/v1/approval-categories", json={
        "tenant_id": 1, "code": "LEAVE_REQUEST", "name": "Leave", "field_schema": LEAVE_SCHEMA,
    })
    assert cat.status_code == 201
    cat_id = cat.get_json()["id"]
    tmpl = client.post("/api/v1/route-templates", json={
        "tenant_id": 1, "name": "Leave route", "category_id": cat_id, "is_default": True,
        "stages": [stage([10]), stage([20])],
    })
    assert tmpl.status_code == 201
    return {"category_id": cat_id, "template_id": tmpl.get_json()["id"]}


def _submit(client, category_id, payload=None):
    return client.post("/api/v1/approvals/submit", headers=REQUESTER, json={
        "tenant_id": 1, "category_id": category_id,
        "payload": LEAVE_PAYLOAD if payload is None else payload,
    })


class TestHealth:
    def test_health(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_request_id_header(self, client):
        res = client.get("/api/v1/health")
        assert res.headers.get("X-Request-ID")

    def test_unknown_route(self, client):
        assert client.get("/api/v1/nope").status_code == 404


class TestCategoryApi:
    def test_crud(self, client):
        res = client.post("/api/v1/approval-categories",
                          json={"tenant_id": 1, "code": "EXPENSE", "name": "Expense"})
        assert res.status_code == 201
        cid = res.get_json()["id"]

        assert client.get(f"/api/v1/approval-categories/{cid}?tenant_id=1").status_code == 200
        res = client.put(f"/api/v1/approval-categories/{cid}", json={"tenant_id": 1, "name": "Expenses"})
        assert res.get_json()["name"] == "Expenses"
        assert len(client.get("/api/v1/approval-categories?tenant_id=1").get_json()) == 1

        res = client.delete(f"/api/v1/approval-categories/{cid}?tenant_id=1")
        assert res.get_json()["deleted"] is True
        assert client.get(f"/api/v1/approval-categories/{cid}?tenant_id=1").status_code == 404

    def test_duplicate_code_is_409(self, client):
        body = {"tenant_id": 1, "code": "EXPENSE", "name": "Expense"}
        client.post("/api/v1/approval-categories", json=body)
        res = client.post("/api/v1/approval-categories", json=body)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_missing_tenant_is_400(self, client):
        res = client.get("/api/v1/approval-categories")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_validate_endpoint(self, client, leave_route):
        res = client.post(f"/api/v1/approval-categories/{leave_route['category_id']}/validate",
                          json={"tenant_id": 1, "payload": {"start_date": "2026-01-01"}})
        body = res.get_json()
        assert body["valid"] is False
        assert body["errors"] == [{"field": "end_date", "message": "is required"}]


class TestRouteTemplateApi:
    def test_stage_insert_and_delete(self, client, leave_route):
        tid = leave_route["template_id"]
        res = client.post(f"/api/v1/route-templates/{tid}/stages",
                          json={"tenant_id": 1, "order_index": 0, **stage([5])})
        assert res.status_code == 201
        assert [s["order_index"] for s in res.get_json()["stages"]] == [0, 1, 2]

        res = client.delete(f"/api/v1/route-templates/{tid}/stages/1?tenant_id=1")
        assert res.status_code == 200
        assert [s["approvers"][0]["user_id"] for s in res.get_json()["stages"]] == [5, 20]

    def test_empty_active_template_is_422(self, client):
        res = client.post("/api/v1/route-templates", json={"tenant_id": 1, "name": "Empty", "stages": []})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_ROUTE_INVARIANT"

    def test_delete_in_use_is_409(self, client, leave_route):
        _submit(client, leave_route["category_id"])
        res = client.delete(f"/api/v1/route-templates/{leave_route['template_id']}?tenant_id=1")
        assert res.status_code == 409
        assert res.get_json()["details"]["pending_count"] == 1


class TestApprovalApi:
    def test_submit_decide_flow(self, client, leave_route):
        res = _submit(client, leave_route["category_id"])
        assert res.status_code == 201
        iid = res.get_json()["id"]

        res = client.post(f"/api/v1/approvals/{iid}/decide", headers=_as(10), json={"decision": "APPROVED"})
        assert res.status_code == 200
        assert res.get_json()["current_stage_index"] == 1

        pending = client.get("/api/v1/approvals/pending", headers=_as(20)).get_json()
        assert [p["id"] for p in pending] == [iid]

        res = client.post(f"/api/v1/approvals/{iid}/decide", headers=_as(20), json={"decision": "APPROVED"})
        assert res.get_json()["status"] == "APPROVED"

        mine = client.get("/api/v1/approvals/mine?status=APPROVED", headers=REQUESTER).get_json()
        assert [m["id"] for m in mine] == [iid]

    def test_payload_errors_are_422(self, client, leave_route):
        res = _submit(client, leave_route["category_id"], {"start_date": "soon"})
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_PAYLOAD"
        assert set(body["details"]) == {"start_date", "end_date"}

    def test_missing_user_header_is_400(self, client, leave_route):
        res = client.post("/api/v1/approvals/submit",
                          json={"tenant_id": 1, "category_id": leave_route["category_id"]})
        assert res.status_code == 400

    def test_no_approver_is_422(self, client):
        cat = client.post("/api/v1/approval-categories",
                          json={"tenant_id": 1, "code": "MISC", "name": "Misc"}).get_json()
        res = _submit(client, cat["id"], {})
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_NO_APPROVER_RESOLVED"

    @pytest.mark.parametrize("user,status,code", [
        (99, 403, "ERR_APPROVER_NOT_AUTHORIZED"),
        (20, 409, "ERR_OUT_OF_SEQUENCE"),
    ])
    def test_decide_errors(self, client, leave_route, user, status, code):
        iid = _submit(client, leave_route["category_id"]).get_json()["id"]
        res = client.post(f"/api/v1/approvals/{iid}/decide", headers=_as(user), json={"decision": "APPROVED"})
        assert res.status_code == status
        assert res.get_json()["code"] == code

    def test_stale_expected_version_is_409(self, client, leave_route):
        inst = _submit(client, leave_route["category_id"]).get_json()
        res = client.post(f"/api/v1/approvals/{inst['id']}/decide", headers=_as(10),
                          json={"decision": "APPROVED", "expected_version": inst["version"] + 3})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_VERSION_CONFLICT"

    def test_cancel(self, client, leave_route):
        iid = _submit(client, leave_route["category_id"]).get_json()["id"]
        res = client.post(f"/api/v1/approvals/{iid}/cancel", headers=_as(10), json={})
        assert res.status_code == 403
        res = client.post(f"/api/v1/approvals/{iid}/cancel", headers=REQUESTER, json={"reason": "dup"})
        assert res.status_code == 200
        assert res.get_json()["status"] == "CANCELLED"
        res = client.post(f"/api/v1/approvals/{iid}/cancel", headers=REQUESTER, json={})
        assert res.status_code == 409

    def test_unknown_instance_is_404(self, client):
        assert client.get("/api/v1/approvals/999").status_code == 404

    def test_statistics(self, client, leave_route):
        _submit(client, leave_route["category_id"])
        res = client.get("/api/v1/approvals/statistics?tenant_id=1&period=week")
        assert res.status_code == 200
        assert res.get_json()["total"] == 1
        assert client.get("/api/v1/approvals/statistics?tenant_id=1&period=century").status_code == 422

    def test_run_auto_approvals(self, client):
        res = client.post("/api/v1/approvals/auto-approvals/run")
        assert res.status_code == 200
        assert res.get_json()["result"]["due"] == 0


class TestAutoApprovalRuleApi:
    def test_crud(self, client, leave_route):
        res = client.post("/api/v1/auto-approval-rules", json={
            "tenant_id": 1, "name": "Short leave", "category_id": leave_route["category_id"],
            "bypass_approver_ids": [10],
        })
        assert res.status_code == 201
        rid = res.get_json()["id"]

        res = client.put(f"/api/v1/auto-approval-rules/{rid}", json={"tenant_id": 1, "delay_seconds": 30})
        assert res.get_json()["delay_seconds"] == 30
        assert client.delete(f"/api/v1/auto-approval-rules/{rid}?tenant_id=1").status_code == 200
        assert client.get(f"/api/v1/auto-approval-rules/{rid}?tenant_id=1").status_code == 404

    def test_invalid_rule_is_422(self, client, leave_route):
        res = client.post("/api/v1/auto-approval-rules", json={
            "tenant_id": 1, "name": "Bad", "category_id": leave_route["category_id"], "delay_seconds": -1,
        })
        assert res.status_code == 422


class TestScheduledJobApi:
    def test_list_jobs(self, client):
        jobs = client.get("/api/v1/scheduled-jobs").get_json()
        runner = next(j for j in jobs if j["job_name"] == "auto_approval_runner")
        assert runner["state"] == "active"
        assert runner["interval_seconds"] == 60

    def test_paused_job_is_skipped(self, client):
        res = client.patch("/api/v1/scheduled-jobs/auto_approval_runner", json={"paused": True})
        assert res.get_json()["state"] == "paused"
        res = client.post("/api/v1/approvals/auto-approvals/run")
        assert res.get_json()["status"] == "skipped"

        client.patch("/api/v1/scheduled-jobs/auto_approval_runner", json={"paused": False})
        client.post("/api/v1/approvals/auto-approvals/run")
        runner = client.get("/api/v1/scheduled-jobs").get_json()[0]
        assert runner["runs"] == 1
        assert runner["last_outcome"] == "success"

    def test_unknown_job_is_404(self, client):
        res = client.patch("/api/v1/scheduled-jobs/nope", json={"paused": True})
        assert res.status_code == 404
