"""
Category Registry service layer.

Centralises all ORM queries and mutations for ApprovalCategory so that
blueprints remain HTTP-only.  Every db.session.commit() in this module is
intentional and constitutes the single source of truth for transaction
ownership.

A category's ``code`` is an immutable external identifier; its field schema
is validated at write time (``form_schema.parse_schema``) so submissions
never meet a malformed schema.
"""

import logging
import re

from eapproval.core.exceptions import ConflictError, NotFoundError, ValidationError
from eapproval.models import db
from eapproval.models.category import ApprovalCategory
from eapproval.models.instance import ApprovalInstance
from eapproval.models.auto_approval import AutoApprovalRule
from eapproval.models.route_template import RouteTemplate
from eapproval.services import form_schema

logger = logging.getLogger(__name__)

_CODE_RE = re.compile(r"^[A-Z][A-Z0-9_]{1,59}$")


def _owner_user_id(value):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError("owner_user_id must be a positive integer", {"owner_user_id": "invalid"})
    return value


def _flag(data: dict, key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false", {key: "invalid"})
    return value


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_category_row(tenant_id: int, category_id: int) -> ApprovalCategory:
    """Return the ORM row, scoped to the tenant.

    Raises:
        NotFoundError: missing, or owned by another tenant.
    """
    category = db.session.get(ApprovalCategory, category_id)
    if category is None or category.tenant_id != tenant_id:
        raise NotFoundError(resource="ApprovalCategory", resource_id=category_id, tenant_id=tenant_id)
    return category


def get_category(tenant_id: int, category_id: int) -> dict:
    return get_category_row(tenant_id, category_id).to_dict()


def get_category_by_code(tenant_id: int, code: str) -> dict:
    category = ApprovalCategory.query_for_tenant(tenant_id).filter_by(code=(code or "").upper()).first()
    if category is None:
        raise NotFoundError(resource="ApprovalCategory", resource_id=code, tenant_id=tenant_id)
    return category.to_dict()


def list_categories(tenant_id: int, include_inactive: bool = False) -> list[dict]:
    q = ApprovalCategory.query_for_tenant(tenant_id)
    if not include_inactive:
        q = q.filter_by(is_active=True)
    return [c.to_dict() for c in q.order_by(ApprovalCategory.code).all()]


# ── Mutations ────────────────────────────────────────────────────────────────


def _check_default_template(tenant_id: int, category_id: int | None, template_id) -> int | None:
    if template_id is None:
        return None
    template = db.session.get(RouteTemplate, template_id)
    if template is None or template.tenant_id != tenant_id:
        raise ValidationError(
            f"default_template_id {template_id} does not exist",
            {"default_template_id": "unknown template"},
        )
    if template.category_id is not None and template.category_id != category_id:
        raise ValidationError(
            "default template is bound to a different category",
            {"default_template_id": "category mismatch"},
        )
    return template.id


def create_category(tenant_id: int, data: dict) -> dict:
    """Create a category after validating its code and field schema.

    Raises:
        ValidationError: missing name, malformed code or invalid schema.
        ConflictError: the code is already used in this tenant.
    """
    code = (data.get("code") or "").strip().upper()
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", {"name": "required"})
    if not _CODE_RE.match(code):
        raise ValidationError(
            "code must be 2-60 characters of A-Z, 0-9 or underscore",
            {"code": "invalid format"},
        )
    if ApprovalCategory.query_for_tenant(tenant_id).filter_by(code=code).first():
        raise ConflictError("ApprovalCategory", "code", code)

    fields = form_schema.parse_schema(data.get("field_schema") or [])
    # a new category has no templates of its own, so only global ones qualify
    default_template_id = _check_default_template(tenant_id, None, data.get("default_template_id"))

    category = ApprovalCategory(
        tenant_id=tenant_id,
        code=code,
        name=name,
        description=data.get("description"),
        field_schema=[f.to_dict() for f in fields],
        owner_user_id=_owner_user_id(data.get("owner_user_id")),
        is_active=_flag(data, "is_active", True),
        default_template_id=default_template_id,
    )
    db.session.add(category)
    db.session.commit()
    logger.info("ApprovalCategory created id=%s code=%s tenant=%s", category.id, code, tenant_id)
    return category.to_dict()


def update_category(tenant_id: int, category_id: int, data: dict) -> dict:
    """Apply a partial update.  The code can never change.

    Raises:
        ValidationError: code change attempted, empty name or invalid schema.
    """
    category = get_category_row(tenant_id, category_id)

    if "code" in data and (data["code"] or "").strip().upper() != category.code:
        raise ValidationError("category code is immutable", {"code": "immutable"})

    # everything is validated into ``changes`` before the row is touched
    changes = {}
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required", {"name": "required"})
        changes["name"] = name
    if "description" in data:
        changes["description"] = data["description"]
    if "owner_user_id" in data:
        changes["owner_user_id"] = _owner_user_id(data["owner_user_id"])
    if "is_active" in data:
        changes["is_active"] = _flag(data, "is_active", category.is_active)
    if "field_schema" in data:
        fields = form_schema.parse_schema(data["field_schema"] or [])
        changes["field_schema"] = [f.to_dict() for f in fields]
    if "default_template_id" in data:
        changes["default_template_id"] = _check_default_template(
            tenant_id, category.id, data["default_template_id"],
        )

    for key, value in changes.items():
        setattr(category, key, value)
    db.session.commit()
    logger.info("ApprovalCategory updated id=%s tenant=%s", category.id, tenant_id)
    return category.to_dict()


def delete_category(tenant_id: int, category_id: int) -> dict:
    """Delete an unreferenced category, otherwise deactivate it.

    Categories that requests were filed against stay in the database so the
    instances keep a valid reference.

    Returns:
        {"id", "deleted": bool, "deactivated": bool}
    """
    category = get_category_row(tenant_id, category_id)
    referenced = ApprovalInstance.query.filter_by(category_id=category.id).first() is not None

    if referenced:
        category.is_active = False
        db.session.commit()
        logger.info("ApprovalCategory deactivated id=%s (referenced by requests)", category.id)
        return {"id": category_id, "deleted": False, "deactivated": True}

    AutoApprovalRule.query.filter_by(category_id=category.id).delete()
    for template in RouteTemplate.query.filter_by(category_id=category.id).all():
        db.session.delete(template)
    db.session.delete(category)
    db.session.commit()
    logger.info("ApprovalCategory deleted id=%s tenant=%s", category_id, tenant_id)
    return {"id": category_id, "deleted": True, "deactivated": False}


# ── Payload validation ───────────────────────────────────────────────────────


def validate_payload(category, payload) -> tuple[dict, list[dict]]:
    """Validate ``payload`` against the category's field schema.

    ``category`` may be an ApprovalCategory row or its ``to_dict()``.
    """
    schema = category["field_schema"] if isinstance(category, dict) else category.field_schema
    return form_schema.validate_payload(schema or [], payload)
