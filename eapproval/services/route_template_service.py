"""
Route Template Store service layer.

Owns RouteTemplate / RouteStage / RouteStageApprover writes.  Blueprints stay
HTTP-only; every commit in this module is the transaction boundary.

Write-time invariants (checked before anything is persisted):
    - stage order indices are contiguous 0..N-1 (maintained by re-indexing
      on insert/delete, never supplied by callers)
    - every stage has at least one approver slot, with no duplicate approver
    - an ALL stage has at least one required slot
    - an active template has at least one non-REFERENCE stage
    - at most one default template per category (NULL category = global)

Instances copy the stage list at submission, so editing the stages of a
template that PENDING requests were routed through is allowed.  Deleting or
deactivating such a template is not (``TemplateInUseError``).
"""

from __future__ import annotations

import logging

from flask import current_app

from eapproval.core.exceptions import (
    ConflictError,
    InvariantError,
    NotFoundError,
    TemplateInUseError,
    ValidationError,
)
from eapproval.models import db
from eapproval.models.category import ApprovalCategory
from eapproval.models.instance import STATUS_PENDING, ApprovalInstance
from eapproval.models.route_template import (
    AGGREGATION_MODES,
    AGREEMENT_POLICIES,
    MODE_ALL,
    STAGE_APPROVAL,
    STAGE_REFERENCE,
    STAGE_TYPES,
    RouteStage,
    RouteStageApprover,
    RouteTemplate,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Stage definition validation (shared with manual routes)
# ═════════════════════════════════════════════════════════════════════════════


def _normalize_approvers(raw_approvers, where: str) -> list[dict]:
    if not isinstance(raw_approvers, list) or not raw_approvers:
        raise InvariantError(f"{where} has no approver slots", {where: "at least one approver required"})

    slots: list[dict] = []
    seen: set[int] = set()
    for pos, raw in enumerate(raw_approvers):
        if isinstance(raw, dict):
            user_id = raw.get("user_id")
            is_required = bool(raw.get("is_required", True))
        else:
            user_id, is_required = raw, True
        if not isinstance(user_id, int) or isinstance(user_id, bool):
            raise InvariantError(f"{where} slot {pos} has no valid user_id", {where: "invalid user_id"})
        if user_id in seen:
            raise InvariantError(
                f"{where} lists approver {user_id} more than once",
                {where: "duplicate approver"},
            )
        seen.add(user_id)
        slots.append({"user_id": user_id, "is_required": is_required, "slot_order": pos})
    return slots


def normalize_stage(raw: dict, position: int) -> dict:
    """Validate one stage definition and return its normalised form.

    Raises:
        InvariantError: bad type/mode, empty slot list, duplicate approver or
            an ALL stage without a required slot.
    """
    where = f"stage[{position}]"
    if not isinstance(raw, dict):
        raise InvariantError(f"{where} must be an object", {where: "not an object"})

    stage_type = (raw.get("stage_type") or STAGE_APPROVAL).upper()
    mode = (raw.get("mode") or MODE_ALL).upper()
    if stage_type not in STAGE_TYPES:
        raise InvariantError(f"{where} has unknown stage_type {stage_type!r}", {where: "invalid stage_type"})
    if mode not in AGGREGATION_MODES:
        raise InvariantError(f"{where} has unknown mode {mode!r}", {where: "invalid mode"})

    approvers = _normalize_approvers(raw.get("approvers"), where)
    if mode == MODE_ALL and stage_type != STAGE_REFERENCE and not any(a["is_required"] for a in approvers):
        raise InvariantError(f"{where} is ALL but has no required approver", {where: "no required approver"})

    return {
        "name": raw.get("name") or f"Stage {position + 1}",
        "stage_type": stage_type,
        "mode": mode,
        "approvers": approvers,
    }


def normalize_stages(raw_stages, *, require_actionable: bool = True) -> list[dict]:
    """Validate an ordered list of stage definitions.

    With ``require_actionable`` the list must be non-empty and contain at least
    one stage that is not REFERENCE (a route nobody can approve never ends).
    """
    if raw_stages is None:
        raw_stages = []
    if not isinstance(raw_stages, list):
        raise InvariantError("stages must be a list", {"stages": "not a list"})

    stages = [normalize_stage(raw, i) for i, raw in enumerate(raw_stages)]
    if require_actionable:
        _check_actionable(stages)
    return stages


def _check_actionable(stages) -> None:
    if not stages:
        raise InvariantError("an active route needs at least one stage", {"stages": "empty"})
    types = [s["stage_type"] if isinstance(s, dict) else s.stage_type for s in stages]
    if all(t == STAGE_REFERENCE for t in types):
        raise InvariantError(
            "an active route needs at least one AGREEMENT or APPROVAL stage",
            {"stages": "reference only"},
        )


def _build_stage(normalized: dict, order_index: int) -> RouteStage:
    stage = RouteStage(
        order_index=order_index,
        name=normalized["name"],
        stage_type=normalized["stage_type"],
        mode=normalized["mode"],
    )
    stage.approvers = [
        RouteStageApprover(
            user_id=a["user_id"],
            is_required=a["is_required"],
            slot_order=a["slot_order"],
        )
        for a in normalized["approvers"]
    ]
    return stage


def _renumber(stages: list[RouteStage]) -> None:
    """Rewrite order indices as 0..N-1 following list order.

    Two passes through negative placeholders keep the
    (template_id, order_index) unique constraint satisfied mid-flush.
    """
    for i, stage in enumerate(stages):
        stage.order_index = -(i + 1)
    db.session.flush()
    for i, stage in enumerate(stages):
        stage.order_index = i
    db.session.flush()


# ═════════════════════════════════════════════════════════════════════════════
# Lookups
# ═════════════════════════════════════════════════════════════════════════════


def get_template_row(tenant_id: int, template_id: int) -> RouteTemplate:
    template = db.session.get(RouteTemplate, template_id)
    if template is None or template.tenant_id != tenant_id:
        raise NotFoundError(resource="RouteTemplate", resource_id=template_id, tenant_id=tenant_id)
    return template


def get_template(tenant_id: int, template_id: int) -> dict:
    return get_template_row(tenant_id, template_id).to_dict()


def list_templates(
    tenant_id: int,
    category_id: int | None = None,
    include_inactive: bool = True,
    include_global: bool = True,
) -> list[dict]:
    """List templates, optionally those usable by one category.

    With ``category_id`` the result holds the category's own templates plus
    (unless ``include_global`` is False) the global ones.
    """
    q = RouteTemplate.query_for_tenant(tenant_id)
    if category_id is not None:
        if include_global:
            q = q.filter(db.or_(RouteTemplate.category_id == category_id,
                                RouteTemplate.category_id.is_(None)))
        else:
            q = q.filter(RouteTemplate.category_id == category_id)
    if not include_inactive:
        q = q.filter(RouteTemplate.is_active.is_(True))
    templates = q.order_by(RouteTemplate.id).all()
    return [t.to_dict(include_stages=False) for t in templates]


def pending_instance_count(template_id: int) -> int:
    return ApprovalInstance.query.filter_by(template_id=template_id, status=STATUS_PENDING).count()


# ═════════════════════════════════════════════════════════════════════════════
# Template writes
# ═════════════════════════════════════════════════════════════════════════════


def _check_category(tenant_id: int, category_id) -> None:
    if category_id is None:
        return
    category = db.session.get(ApprovalCategory, category_id)
    if category is None or category.tenant_id != tenant_id:
        raise ValidationError(f"category {category_id} does not exist", {"category_id": "unknown category"})


def _check_single_default(tenant_id: int, category_id, exclude_id: int | None = None) -> None:
    q = RouteTemplate.query_for_tenant(tenant_id).filter(RouteTemplate.is_default.is_(True))
    if category_id is None:
        q = q.filter(RouteTemplate.category_id.is_(None))
    else:
        q = q.filter(RouteTemplate.category_id == category_id)
    if exclude_id is not None:
        q = q.filter(RouteTemplate.id != exclude_id)
    existing = q.first()
    if existing is not None:
        scope = "global" if category_id is None else f"category {category_id}"
        raise ConflictError("RouteTemplate", "is_default", f"{scope} (template {existing.id})")


def _check_policy(policy: str) -> str:
    policy = (policy or "").upper()
    if policy not in AGREEMENT_POLICIES:
        raise ValidationError(
            f"agreement_policy must be one of {', '.join(AGREEMENT_POLICIES)}",
            {"agreement_policy": "invalid"},
        )
    return policy


def create_template(tenant_id: int, data: dict) -> dict:
    """Create a template together with its stages.

    A template without stages may only be created inactive.

    Raises:
        ValidationError / InvariantError / ConflictError
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", {"name": "required"})

    category_id = data.get("category_id")
    _check_category(tenant_id, category_id)

    is_active = bool(data.get("is_active", True))
    is_default = bool(data.get("is_default", False))
    stages = normalize_stages(data.get("stages"), require_actionable=is_active)
    policy = _check_policy(data.get("agreement_policy")
                           or current_app.config.get("DEFAULT_AGREEMENT_POLICY", "BLOCKING"))
    if is_default:
        _check_single_default(tenant_id, category_id)

    template = RouteTemplate(
        tenant_id=tenant_id,
        name=name,
        description=data.get("description"),
        category_id=category_id,
        is_default=is_default,
        is_active=is_active,
        agreement_policy=policy,
    )
    template.stages = [_build_stage(s, i) for i, s in enumerate(stages)]
    db.session.add(template)
    db.session.commit()
    logger.info("RouteTemplate created id=%s stages=%d tenant=%s",
                template.id, len(stages), tenant_id)
    return template.to_dict()


def update_template(tenant_id: int, template_id: int, data: dict) -> dict:
    """Partial update of template attributes (not stages).

    Raises:
        TemplateInUseError: deactivating while PENDING requests reference it.
        InvariantError: activating a template without an actionable stage.
        ConflictError: a second default for the same category.
    """
    template = get_template_row(tenant_id, template_id)

    # all checks run before the first attribute is assigned
    changes = {}
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("name is required", {"name": "required"})
        changes["name"] = name
    if "description" in data:
        changes["description"] = data["description"]
    if "agreement_policy" in data:
        changes["agreement_policy"] = _check_policy(data["agreement_policy"])

    category_id = template.category_id
    if "category_id" in data and data["category_id"] != template.category_id:
        category_id = data["category_id"]
        _check_category(tenant_id, category_id)

    is_default = bool(data.get("is_default", template.is_default))
    if is_default and (not template.is_default or category_id != template.category_id):
        _check_single_default(tenant_id, category_id, exclude_id=template.id)
    changes["category_id"] = category_id
    changes["is_default"] = is_default

    if "is_active" in data:
        activate = bool(data["is_active"])
        if activate and not template.is_active:
            _check_actionable(template.stages)
        if not activate and template.is_active:
            pending = pending_instance_count(template.id)
            if pending:
                raise TemplateInUseError(template.id, pending)
        changes["is_active"] = activate

    for key, value in changes.items():
        setattr(template, key, value)
    db.session.commit()
    logger.info("RouteTemplate updated id=%s tenant=%s", template.id, tenant_id)
    return template.to_dict()


def delete_template(tenant_id: int, template_id: int) -> None:
    """Delete a template.  Category bindings to it are cleared.

    Raises:
        TemplateInUseError: PENDING requests were routed through it.
    """
    template = get_template_row(tenant_id, template_id)
    pending = pending_instance_count(template.id)
    if pending:
        raise TemplateInUseError(template.id, pending)

    ApprovalCategory.query_for_tenant(tenant_id).filter_by(
        default_template_id=template.id,
    ).update({"default_template_id": None})
    db.session.delete(template)
    db.session.commit()
    logger.info("RouteTemplate deleted id=%s tenant=%s", template_id, tenant_id)


# ═════════════════════════════════════════════════════════════════════════════
# Stage writes
# ═════════════════════════════════════════════════════════════════════════════


def replace_stages(tenant_id: int, template_id: int, raw_stages) -> dict:
    """Replace the whole stage list of a template."""
    template = get_template_row(tenant_id, template_id)
    stages = normalize_stages(raw_stages, require_actionable=template.is_active)

    template.stages = []
    db.session.flush()
    template.stages = [_build_stage(s, i) for i, s in enumerate(stages)]
    db.session.commit()
    logger.info("RouteTemplate %s stages replaced (%d)", template.id, len(stages))
    return template.to_dict()


def insert_stage(tenant_id: int, template_id: int, index: int | None, raw_stage: dict) -> dict:
    """Insert a stage at ``index`` (append when None) and shift later stages."""
    template = get_template_row(tenant_id, template_id)
    current = list(template.stages)
    if index is None:
        index = len(current)
    if not isinstance(index, int) or index < 0 or index > len(current):
        raise InvariantError(
            f"stage index {index} out of range 0..{len(current)}",
            {"order_index": "out of range"},
        )

    normalized = normalize_stage(raw_stage, index)
    new_stage = _build_stage(normalized, -(len(current) + 1))
    current.insert(index, new_stage)
    template.stages.append(new_stage)
    _renumber(current)
    db.session.commit()
    db.session.refresh(template)
    logger.info("RouteTemplate %s stage inserted at %d", template.id, index)
    return template.to_dict()


def delete_stage(tenant_id: int, template_id: int, index: int) -> dict:
    """Remove the stage at ``index`` and close the gap.

    Raises:
        InvariantError: out-of-range index, or the removal would leave an
            active template without an actionable stage.
    """
    template = get_template_row(tenant_id, template_id)
    current = list(template.stages)
    if not 0 <= index < len(current):
        raise InvariantError(
            f"stage index {index} out of range 0..{len(current) - 1}",
            {"order_index": "out of range"},
        )

    remaining = current[:index] + current[index + 1:]
    if template.is_active:
        _check_actionable(remaining)

    template.stages.remove(current[index])
    db.session.flush()
    _renumber(remaining)
    db.session.commit()
    db.session.refresh(template)
    logger.info("RouteTemplate %s stage %d deleted", template.id, index)
    return template.to_dict()
