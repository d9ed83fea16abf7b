"""
Tests: end-to-end approval scenarios.

    A  single ALL/APPROVAL stage, approver approves        → APPROVED
    B  same route, approver rejects                         → REJECTED
    C  A then B in order; B acting first is out of sequence → APPROVED
    D  auto-approval rule on amount                         → APPROVED at submit
    E  no template, isolated requester                      → NoApproverResolved
"""

import pytest

from conftest import EXPENSE_SCHEMA, LEAVE_PAYLOAD, make_category, make_member, make_template, stage
from eapproval.core.exceptions import NoApproverResolvedError, OutOfSequenceError
from eapproval.models.instance import ApprovalInstance
from eapproval.services import approval_engine as engine
from eapproval.services import auto_approval

REQUESTER = 1
APPROVER_A = 10
APPROVER_B = 20


@pytest.fixture()
def leave_category(tenant_id):
    return make_category(code="LEAVE_REQUEST")


def test_scenario_a_single_approver_approves(tenant_id, leave_category):
    make_template([stage([APPROVER_A])], category_id=leave_category["id"], is_default=True)
    inst = engine.submit_request(tenant_id, REQUESTER, leave_category["id"], LEAVE_PAYLOAD)

    result = engine.decide(inst["id"], APPROVER_A, "APPROVED", "Enjoy")
    assert result["status"] == "APPROVED"
    assert result["is_terminal"] is True


def test_scenario_b_single_approver_rejects(tenant_id, leave_category):
    make_template([stage([APPROVER_A]), stage([APPROVER_B])],
                  category_id=leave_category["id"], is_default=True)
    inst = engine.submit_request(tenant_id, REQUESTER, leave_category["id"], LEAVE_PAYLOAD)

    result = engine.decide(inst["id"], APPROVER_A, "REJECTED")
    assert result["status"] == "REJECTED"
    fresh = engine.get_instance(inst["id"])
    assert fresh["stages"][1]["status"] == "SKIPPED"
    assert fresh["stages"][1]["slots"][0]["decision"] == "SKIPPED"


@pytest.mark.parametrize("stages", [
    [stage([APPROVER_A, APPROVER_B], mode="SEQUENTIAL")],
    [stage([APPROVER_A]), stage([APPROVER_B])],
], ids=["sequential-stage", "two-stages"])
def test_scenario_c_out_of_sequence_then_in_order(tenant_id, leave_category, stages):
    make_template(stages, category_id=leave_category["id"], is_default=True)
    inst = engine.submit_request(tenant_id, REQUESTER, leave_category["id"], LEAVE_PAYLOAD)

    with pytest.raises(OutOfSequenceError):
        engine.decide(inst["id"], APPROVER_B, "APPROVED")

    engine.decide(inst["id"], APPROVER_A, "APPROVED")
    result = engine.decide(inst["id"], APPROVER_B, "APPROVED")
    assert result["status"] == "APPROVED"


def test_scenario_d_auto_approval_on_amount(tenant_id):
    cat = make_category(code="EXPENSE", schema=EXPENSE_SCHEMA)
    make_template([stage([APPROVER_A])], category_id=cat["id"], is_default=True)
    rule = auto_approval.create_rule(tenant_id, {
        "name": "Small expenses",
        "category_id": cat["id"],
        "conditions": [{"type": "max_amount", "value": 100_000}],
    })

    inst = engine.submit_request(tenant_id, REQUESTER, cat["id"], {"amount": 50_000, "purpose": "Books"})
    assert inst["status"] == "APPROVED"
    slot = inst["stages"][0]["slots"][0]
    assert slot["decision"] == "APPROVED"
    assert slot["decision_source"] == f"AUTO_RULE:{rule['id']}"


def test_scenario_d_large_amount_waits_for_human(tenant_id):
    cat = make_category(code="EXPENSE", schema=EXPENSE_SCHEMA)
    make_template([stage([APPROVER_A])], category_id=cat["id"], is_default=True)
    auto_approval.create_rule(tenant_id, {
        "name": "Small expenses",
        "category_id": cat["id"],
        "conditions": [{"type": "max_amount", "value": 100_000}],
    })

    inst = engine.submit_request(tenant_id, REQUESTER, cat["id"], {"amount": 500_000, "purpose": "Laptop"})
    assert inst["status"] == "PENDING"


def test_scenario_e_isolated_requester(tenant_id, leave_category):
    make_member(REQUESTER)
    with pytest.raises(NoApproverResolvedError):
        engine.submit_request(tenant_id, REQUESTER, leave_category["id"], LEAVE_PAYLOAD)
    assert ApprovalInstance.query.count() == 0
