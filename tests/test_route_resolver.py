"""
Tests: Route Resolver. Covers resolution order, explicit routes, organisation
hierarchy, snapshot isolation.
"""

import pytest

from conftest import LEAVE_PAYLOAD, OTHER_TENANT_ID, make_category, make_member, make_template, stage
from eapproval.core.exceptions import (
    HierarchyCycleDetectedError,
    NoApproverResolvedError,
    TemplateInactiveError,
    TemplateNotFoundError,
    ValidationError,
)
from eapproval.models import db as _db
from eapproval.models.category import ApprovalCategory
from eapproval.models.instance import ApprovalInstance
from eapproval.services import approval_engine, route_resolver, route_template_service
from eapproval.services.org_directory import MemberInfo, OrgDirectory, resolve_org_hierarchy


def _category_row(cat):
    return _db.session.get(ApprovalCategory, cat["id"])


def _directory(*members):
    index = {m.user_id: m for m in members}
    return index.get


class TestResolutionOrder:
    def test_explicit_template_wins_over_defaults(self, tenant_id):
        cat = make_category()
        make_template([stage([10])], category_id=cat["id"], is_default=True)
        chosen = make_template([stage([20])], category_id=cat["id"])
        route = route_resolver.resolve(tenant_id, 1, _category_row(cat), explicit_template_id=chosen["id"])
        assert route.source == "TEMPLATE"
        assert route.template_id == chosen["id"]
        assert route.approver_ids == [20]

    def test_manual_stages(self, tenant_id):
        cat = make_category()
        make_template([stage([10])], category_id=cat["id"], is_default=True)
        route = route_resolver.resolve(
            tenant_id, 1, _category_row(cat),
            manual_stages=[stage([30, 31], mode="SEQUENTIAL")],
        )
        assert route.source == "MANUAL"
        assert route.template_id is None
        assert route.stages[0].mode == "SEQUENTIAL"
        assert route.approver_ids == [30, 31]

    def test_bound_default_preferred_over_flagged_default(self, tenant_id):
        flagged = make_template([stage([10])], is_default=True)
        bound = make_template([stage([20])])
        cat = make_category(default_template_id=bound["id"])
        route = route_resolver.resolve(tenant_id, 1, _category_row(cat))
        assert route.template_id == bound["id"]
        assert route.template_id != flagged["id"]

    def test_category_default_preferred_over_global(self, tenant_id):
        cat = make_category()
        make_template([stage([10])], is_default=True)
        own = make_template([stage([20])], category_id=cat["id"], is_default=True)
        route = route_resolver.resolve(tenant_id, 1, _category_row(cat))
        assert route.template_id == own["id"]

    def test_global_default_used_when_category_has_none(self, tenant_id):
        cat = make_category()
        glob = make_template([stage([10])], is_default=True)
        route = route_resolver.resolve(tenant_id, 1, _category_row(cat))
        assert route.template_id == glob["id"]

    def test_inactive_default_falls_through_to_hierarchy(self, tenant_id):
        cat = make_category()
        make_template([stage([10])], category_id=cat["id"], is_default=True, is_active=False)
        make_member(1, manager=2)
        make_member(2, level=1)
        route = route_resolver.resolve(tenant_id, 1, _category_row(cat))
        assert route.source == "HIERARCHY"
        assert route.approver_ids == [2]

    def test_both_template_and_stages_is_ambiguous(self, tenant_id):
        cat = make_category()
        tmpl = make_template([stage([10])])
        with pytest.raises(ValidationError):
            route_resolver.resolve(tenant_id, 1, _category_row(cat),
                                   explicit_template_id=tmpl["id"], manual_stages=[stage([11])])


class TestExplicitTemplateErrors:
    def test_missing_template(self, tenant_id):
        cat = make_category()
        with pytest.raises(TemplateNotFoundError):
            route_resolver.resolve(tenant_id, 1, _category_row(cat), explicit_template_id=999)

    def test_template_of_other_tenant_is_not_found(self, tenant_id):
        cat = make_category()
        foreign = make_template([stage([10])], tenant=OTHER_TENANT_ID)
        with pytest.raises(TemplateNotFoundError):
            route_resolver.resolve(tenant_id, 1, _category_row(cat), explicit_template_id=foreign["id"])

    def test_template_of_other_category_is_not_found(self, tenant_id):
        cat = make_category()
        other = make_category(code="EXPENSE", schema=[])
        tmpl = make_template([stage([10])], category_id=other["id"])
        with pytest.raises(TemplateNotFoundError):
            route_resolver.resolve(tenant_id, 1, _category_row(cat), explicit_template_id=tmpl["id"])

    def test_inactive_template(self, tenant_id):
        cat = make_category()
        tmpl = make_template([stage([10])], is_active=False)
        with pytest.raises(TemplateInactiveError):
            route_resolver.resolve(tenant_id, 1, _category_row(cat), explicit_template_id=tmpl["id"])


class TestHierarchy:
    def test_nearest_managers_above_min_level(self):
        get_member = _directory(
            MemberInfo(1, manager_user_id=2),
            MemberInfo(2, manager_user_id=3, level=0),
            MemberInfo(3, manager_user_id=4, level=1),
            MemberInfo(4, manager_user_id=5, level=2),
            MemberInfo(5, level=3),
        )
        assert resolve_org_hierarchy(1, get_member) == [3, 4]
        assert resolve_org_hierarchy(1, get_member, max_approvers=3) == [3, 4, 5]
        assert resolve_org_hierarchy(1, get_member, min_level=0, max_approvers=1) == [2]

    def test_inactive_managers_are_skipped(self):
        get_member = _directory(
            MemberInfo(1, manager_user_id=2),
            MemberInfo(2, manager_user_id=3, level=1, is_active=False),
            MemberInfo(3, level=2),
        )
        assert resolve_org_hierarchy(1, get_member) == [3]

    def test_cycle_detected(self):
        get_member = _directory(
            MemberInfo(1, manager_user_id=2),
            MemberInfo(2, manager_user_id=3, level=1),
            MemberInfo(3, manager_user_id=2, level=2),
        )
        with pytest.raises(HierarchyCycleDetectedError):
            resolve_org_hierarchy(1, get_member)

    def test_depth_cap(self):
        members = [MemberInfo(i, manager_user_id=i + 1, level=1) for i in range(1, 30)]
        with pytest.raises(HierarchyCycleDetectedError):
            resolve_org_hierarchy(1, _directory(*members), max_depth=5)

    def test_unknown_requester_has_no_chain(self):
        assert resolve_org_hierarchy(1, _directory()) == []

    def test_owner_appended_after_hierarchy(self, tenant_id):
        cat = make_category(owner_user_id=90)
        make_member(1, manager=2)
        make_member(2, level=1)
        route = route_resolver.resolve(tenant_id, 1, _category_row(cat))
        assert route.approver_ids == [2, 90]
        assert [s.name for s in route.stages] == ["Approver 1", "Approver 2"]
        assert all(s.mode == "ALL" and s.stage_type == "APPROVAL" for s in route.stages)

    def test_owner_who_is_requester_not_added(self, tenant_id):
        cat = make_category(owner_user_id=1)
        with pytest.raises(NoApproverResolvedError):
            route_resolver.resolve(tenant_id, 1, _category_row(cat), directory=OrgDirectory(tenant_id))

    def test_no_approver_means_no_instance(self, tenant_id):
        cat = make_category()
        with pytest.raises(NoApproverResolvedError):
            approval_engine.submit_request(tenant_id, 1, cat["id"], LEAVE_PAYLOAD)
        assert ApprovalInstance.query.count() == 0

    def test_cycle_through_database_directory(self, tenant_id):
        cat = make_category()
        make_member(1, manager=2)
        make_member(2, manager=3, level=1)
        make_member(3, manager=1, level=2)
        with pytest.raises(HierarchyCycleDetectedError):
            approval_engine.submit_request(tenant_id, 1, cat["id"], LEAVE_PAYLOAD)
        assert ApprovalInstance.query.count() == 0


class TestSnapshotIsolation:
    def test_editing_template_does_not_touch_running_instance(self, tenant_id):
        cat = make_category()
        tmpl = make_template([stage([10]), stage([20])], category_id=cat["id"], is_default=True)
        inst = approval_engine.submit_request(tenant_id, 1, cat["id"], LEAVE_PAYLOAD)

        route_template_service.insert_stage(tenant_id, tmpl["id"], 0, stage([99]))
        route_template_service.delete_stage(tenant_id, tmpl["id"], 2)

        fresh = approval_engine.get_instance(inst["id"])
        assert [s["slots"][0]["approver_id"] for s in fresh["stages"]] == [10, 20]

        approval_engine.decide(inst["id"], 10, "APPROVED")
        result = approval_engine.decide(inst["id"], 20, "APPROVED")
        assert result["status"] == "APPROVED"

    def test_template_deleted_after_request_concluded(self, tenant_id):
        cat = make_category()
        tmpl = make_template([stage([10])], category_id=cat["id"], is_default=True)
        inst = approval_engine.submit_request(tenant_id, 1, cat["id"], LEAVE_PAYLOAD)
        approval_engine.decide(inst["id"], 10, "APPROVED")

        route_template_service.delete_template(tenant_id, tmpl["id"])
        fresh = approval_engine.get_instance(inst["id"])
        assert fresh["status"] == "APPROVED"
        assert fresh["stages"][0]["slots"][0]["decision"] == "APPROVED"
