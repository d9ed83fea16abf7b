"""
Tests: Category Registry service.
"""

import pytest

from conftest import LEAVE_PAYLOAD, OTHER_TENANT_ID, make_category, make_template, stage
from eapproval.core.exceptions import ConflictError, NotFoundError, ValidationError
from eapproval.models import db as _db
from eapproval.models.category import ApprovalCategory
from eapproval.models.route_template import RouteTemplate
from eapproval.services import approval_engine, category_service


class TestCreateCategory:
    def test_code_is_normalised_to_upper_case(self, tenant_id):
        cat = make_category(code="leave_request")
        assert cat["code"] == "LEAVE_REQUEST"
        assert cat["is_active"] is True
        assert [f["name"] for f in cat["field_schema"]] == ["start_date", "end_date", "reason"]

    def test_duplicate_code_in_same_tenant_conflicts(self, tenant_id):
        make_category()
        with pytest.raises(ConflictError):
            make_category()

    def test_same_code_allowed_in_other_tenant(self, tenant_id):
        make_category()
        other = make_category(tenant=OTHER_TENANT_ID)
        assert other["tenant_id"] == OTHER_TENANT_ID

    def test_invalid_code_rejected(self, tenant_id):
        with pytest.raises(ValidationError):
            make_category(code="leave request!")

    def test_invalid_schema_rejected_at_write_time(self, tenant_id):
        with pytest.raises(ValidationError):
            make_category(schema=[{"name": "x", "type": "nope"}])
        assert ApprovalCategory.query.count() == 0

    def test_mistyped_date_bound_rejected_at_write_time(self, tenant_id):
        schema = [{"name": "start_date", "type": "date", "constraints": {"min": "not-a-date"}}]
        with pytest.raises(ValidationError) as exc:
            make_category(schema=schema)
        assert "start_date" in exc.value.details
        assert ApprovalCategory.query.count() == 0

    def test_default_template_must_belong_to_category_or_be_global(self, tenant_id):
        other = make_category(code="EXPENSE", schema=[])
        tmpl = make_template([stage([10])], category_id=other["id"])
        with pytest.raises(ValidationError):
            make_category(default_template_id=tmpl["id"])


class TestReadAndUpdate:
    def test_get_by_code(self, tenant_id):
        cat = make_category()
        assert category_service.get_category_by_code(tenant_id, "leave_request")["id"] == cat["id"]

    def test_cross_tenant_lookup_is_not_found(self, tenant_id):
        cat = make_category()
        with pytest.raises(NotFoundError):
            category_service.get_category(OTHER_TENANT_ID, cat["id"])

    def test_code_is_immutable(self, tenant_id):
        cat = make_category()
        with pytest.raises(ValidationError):
            category_service.update_category(tenant_id, cat["id"], {"code": "OTHER"})

    def test_update_name_and_schema(self, tenant_id):
        cat = make_category()
        updated = category_service.update_category(tenant_id, cat["id"], {
            "name": "Annual Leave",
            "code": "LEAVE_REQUEST",
            "field_schema": [{"name": "days", "type": "number", "required": True}],
        })
        assert updated["name"] == "Annual Leave"
        assert updated["field_schema"][0]["name"] == "days"

    def test_list_hides_inactive_by_default(self, tenant_id):
        make_category()
        cat = make_category(code="EXPENSE", schema=[])
        category_service.update_category(tenant_id, cat["id"], {"is_active": False})
        assert [c["code"] for c in category_service.list_categories(tenant_id)] == ["LEAVE_REQUEST"]
        assert len(category_service.list_categories(tenant_id, include_inactive=True)) == 2


class TestDeleteCategory:
    def test_unreferenced_category_is_deleted_with_its_templates(self, tenant_id):
        cat = make_category()
        make_template([stage([10])], category_id=cat["id"])
        result = category_service.delete_category(tenant_id, cat["id"])
        assert result["deleted"] is True
        assert _db.session.get(ApprovalCategory, cat["id"]) is None
        assert RouteTemplate.query.count() == 0

    def test_referenced_category_is_deactivated(self, tenant_id):
        cat = make_category()
        make_template([stage([10])], category_id=cat["id"], is_default=True)
        approval_engine.submit_request(tenant_id, 1, cat["id"], LEAVE_PAYLOAD)

        result = category_service.delete_category(tenant_id, cat["id"])
        assert result == {"id": cat["id"], "deleted": False, "deactivated": True}
        assert _db.session.get(ApprovalCategory, cat["id"]).is_active is False


def test_validate_payload_uses_category_schema(tenant_id):
    cat = make_category()
    clean, errors = category_service.validate_payload(cat, {"start_date": "2026-01-01"})
    assert clean == {"start_date": "2026-01-01"}
    assert [e["field"] for e in errors] == ["end_date"]


class TestRejectedUpdateLeavesNoTrace:
    def test_bad_schema_does_not_rename(self, tenant_id):
        cat = make_category()
        with pytest.raises(ValidationError):
            category_service.update_category(tenant_id, cat["id"], {
                "name": "Renamed",
                "field_schema": [{"name": "x", "type": "nope"}],
            })
        _db.session.commit()
        row = _db.session.get(ApprovalCategory, cat["id"])
        assert row.name == "Leave Request"
        assert row.field_schema[0]["name"] == "start_date"

    def test_bad_default_template_does_not_deactivate(self, tenant_id):
        cat = make_category()
        with pytest.raises(ValidationError):
            category_service.update_category(tenant_id, cat["id"], {
                "is_active": False, "default_template_id": 999,
            })
        _db.session.commit()
        assert _db.session.get(ApprovalCategory, cat["id"]).is_active is True

    @pytest.mark.parametrize("body", [
        {"is_active": "no"},
        {"is_active": 0},
        {"owner_user_id": "hr"},
        {"owner_user_id": -3},
        {"owner_user_id": True},
    ])
    def test_flag_and_owner_types_checked(self, tenant_id, body):
        cat = make_category()
        with pytest.raises(ValidationError):
            category_service.update_category(tenant_id, cat["id"], body)

    def test_create_checks_flag_type(self, tenant_id):
        with pytest.raises(ValidationError):
            make_category(is_active="yes")
        assert ApprovalCategory.query.count() == 0

    def test_owner_may_be_cleared(self, tenant_id):
        cat = make_category(owner_user_id=90)
        updated = category_service.update_category(tenant_id, cat["id"], {"owner_user_id": None})
        assert updated["owner_user_id"] is None
