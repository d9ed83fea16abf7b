"""
Tests: dynamic field schema parsing and payload validation.

Pure functions; no database access needed (the autouse session fixture still
runs but nothing is written).
"""

import pytest

from eapproval.core.exceptions import ValidationError
from eapproval.services.form_schema import FieldDefinition, parse_schema, validate_payload


def _errors_by_field(errors):
    return {e["field"]: e["message"] for e in errors}


class TestParseSchema:
    def test_returns_frozen_definitions_in_order(self):
        fields = parse_schema([
            {"name": "amount", "type": "currency", "required": True},
            {"name": "note", "type": "text"},
        ])
        assert [f.name for f in fields] == ["amount", "note"]
        assert isinstance(fields[0], FieldDefinition)
        assert fields[0].required is True
        with pytest.raises(AttributeError):
            fields[0].name = "other"

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse_schema([{"name": "x", "type": "hologram"}])
        assert "x" in exc.value.details

    def test_duplicate_field_name_rejected(self):
        with pytest.raises(ValidationError):
            parse_schema([{"name": "a", "type": "text"}, {"name": "a", "type": "number"}])

    def test_select_requires_options(self):
        with pytest.raises(ValidationError):
            parse_schema([{"name": "kind", "type": "select"}])

    def test_unknown_constraint_rejected(self):
        with pytest.raises(ValidationError):
            parse_schema([{"name": "a", "type": "text", "constraints": {"colour": "red"}}])

    def test_bad_pattern_rejected(self):
        with pytest.raises(ValidationError):
            parse_schema([{"name": "a", "type": "text", "constraints": {"pattern": "("}}])

    def test_non_list_schema_rejected(self):
        with pytest.raises(ValidationError):
            parse_schema({"name": "a"})

    @pytest.mark.parametrize("ftype,constraints", [
        ("date", {"min": "not-a-date"}),
        ("date", {"max": 20250101}),
        ("number", {"max": "lots"}),
        ("currency", {"min": True}),
        ("text", {"max_length": "10"}),
        ("textarea", {"min_length": -1}),
        ("file", {"max_files": 2.5}),
        ("text", {"pattern": 123}),
    ])
    def test_constraint_value_types_checked(self, ftype, constraints):
        with pytest.raises(ValidationError) as exc:
            parse_schema([{"name": "f", "type": ftype, "constraints": constraints}])
        assert "f" in exc.value.details

    @pytest.mark.parametrize("ftype,constraints", [
        ("number", {"max_length": 5}),
        ("boolean", {"options": ["a"]}),
        ("text", {"min": 1}),
        ("time", {"max": "12:00"}),
    ])
    def test_constraint_not_applicable_to_type(self, ftype, constraints):
        with pytest.raises(ValidationError) as exc:
            parse_schema([{"name": "f", "type": ftype, "constraints": constraints}])
        assert "not supported" in exc.value.details["f"]

    @pytest.mark.parametrize("ftype,constraints", [
        ("number", {"min": 10, "max": 1}),
        ("date", {"min": "2025-12-31", "max": "2025-01-01"}),
        ("text", {"min_length": 5, "max_length": 2}),
    ])
    def test_inverted_bounds_rejected(self, ftype, constraints):
        with pytest.raises(ValidationError):
            parse_schema([{"name": "f", "type": ftype, "constraints": constraints}])

    def test_constraints_must_be_object(self):
        with pytest.raises(ValidationError):
            parse_schema([{"name": "f", "type": "text", "constraints": ["max_length"]}])

    def test_well_typed_constraints_accepted(self):
        fields = parse_schema([
            {"name": "from", "type": "date", "constraints": {"min": "2025-01-01", "max": "2025-12-31"}},
            {"name": "days", "type": "number", "constraints": {"min": 0.5, "max": 30}},
            {"name": "docs", "type": "file", "constraints": {"max_files": 0}},
        ])
        clean, errors = validate_payload(fields, {"from": "2025-06-01", "days": 2})
        assert errors == []
        assert clean == {"from": "2025-06-01", "days": 2}


class TestValidatePayload:
    SCHEMA = [
        {"name": "amount", "type": "currency", "required": True, "constraints": {"max": 1000}},
        {"name": "days", "type": "number", "constraints": {"min": 1, "max": 30}},
        {"name": "start", "type": "date"},
        {"name": "at", "type": "time"},
        {"name": "when", "type": "datetime"},
        {"name": "kind", "type": "select", "constraints": {"options": ["ANNUAL", "SICK"]}},
        {"name": "tags", "type": "multiselect", "constraints": {"options": ["a", "b", "c"]}},
        {"name": "urgent", "type": "boolean"},
        {"name": "contact", "type": "email"},
        {"name": "phone", "type": "phone"},
        {"name": "files", "type": "file", "constraints": {"max_files": 2}},
        {"name": "account", "type": "bank_account"},
        {"name": "code", "type": "text", "constraints": {"pattern": "[A-Z]{3}", "max_length": 3}},
    ]

    def test_valid_payload_is_coerced(self):
        clean, errors = validate_payload(self.SCHEMA, {
            "amount": "250.5",
            "days": "3",
            "start": "2026-05-01",
            "at": "09:30",
            "when": "2026-05-01T09:30:00",
            "kind": "ANNUAL",
            "tags": ["a", "b", "a"],
            "urgent": False,
            "contact": "Jane@Example.com",
            "phone": "+82 10-1234-5678",
            "files": "s3://bucket/receipt.pdf",
            "account": {"bank": "KB", "account_number": "123-456-7890", "holder": "Jane"},
            "code": "ABC",
        })
        assert errors == []
        assert clean["amount"] == 250.5
        assert clean["days"] == 3
        assert clean["start"] == "2026-05-01"
        assert clean["at"] == "09:30:00"
        assert clean["tags"] == ["a", "b"]
        assert clean["urgent"] is False
        assert clean["contact"] == "jane@example.com"
        assert clean["files"] == ["s3://bucket/receipt.pdf"]
        assert clean["account"]["holder"] == "Jane"

    def test_missing_required_field(self):
        _, errors = validate_payload(self.SCHEMA, {})
        assert _errors_by_field(errors) == {"amount": "is required"}

    def test_unknown_keys_rejected(self):
        _, errors = validate_payload(self.SCHEMA, {"amount": 10, "salary": 5})
        assert "salary" in _errors_by_field(errors)

    @pytest.mark.parametrize("field,value", [
        ("amount", -1),
        ("amount", 5000),
        ("amount", True),
        ("days", 0),
        ("start", "01/05/2026"),
        ("kind", "MATERNITY"),
        ("tags", ["z"]),
        ("urgent", "yes"),
        ("contact", "not-an-email"),
        ("phone", "call me"),
        ("files", ["a", "b", "c"]),
        ("account", {"bank": "KB", "account_number": "x", "holder": "J"}),
        ("code", "abc"),
    ])
    def test_invalid_values_reported_per_field(self, field, value):
        payload = {"amount": 10, field: value}
        _, errors = validate_payload(self.SCHEMA, payload)
        assert field in _errors_by_field(errors)

    def test_non_object_payload(self):
        clean, errors = validate_payload(self.SCHEMA, ["amount", 10])
        assert clean == {}
        assert errors[0]["field"] == "_payload"

    def test_empty_schema_accepts_empty_payload(self):
        assert validate_payload([], None) == ({}, [])
